"""Consent receipt validation: freshness window, holder signature and metadata."""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from intake_common.config import ConsentSettings
from intake_common.errors import IntakeError, error_message

from .clients import PostboxClient
from .metadata import MetadataGenerator
from .organizations import EntityConfig, HolderProfile
from .verification import VerifierContext

logger = logging.getLogger(__name__)

SECONDS_PER_WEEK = 7 * 24 * 60 * 60


def check_consent_window(
    consent_timestamp: Any,
    now: float | None = None,
    clock_skew_seconds: int = 5,
    retention_weeks: int = 8,
    tx_id: str = "",
) -> bool:
    """Accept ``consent_timestamp`` (unix seconds) unless it is in the future or too old.

    Both bounds are compared against ``now`` plus the clock skew tolerance.
    """
    try:
        timestamp = float(consent_timestamp)
    except (TypeError, ValueError):
        timestamp = math.nan
    if not math.isfinite(timestamp):
        logger.warning("[%s] Consent receipt has no usable timestamp, ignoring", tx_id)
        return False
    current = (time.time() if now is None else now) + clock_skew_seconds
    if current < timestamp:
        logger.warning("[%s] Found futuristic consent receipt, ignoring", tx_id)
        return False
    if timestamp + retention_weeks * SECONDS_PER_WEEK < current:
        logger.warning("[%s] Found ancient consent receipt, ignoring", tx_id)
        return False
    return True


@dataclass(slots=True)
class HolderContext:
    """What the pipeline knows about the holder behind a submission."""

    holder_id: str
    profile: HolderProfile
    public_key: str | None = None
    public_key_type: str | None = None
    document_id: str | None = None
    link_id: str | None = None
    authorization: str | None = None


@dataclass(slots=True)
class ConsentResult:
    is_valid: bool
    metadata: dict[str, Any] | None = None
    error_message: str | None = None


@dataclass(slots=True)
class ConsentValidator:
    settings: ConsentSettings = field(default_factory=ConsentSettings)
    metadata: MetadataGenerator | None = None
    postbox: PostboxClient | None = None
    clock: Callable[[], float] = time.time

    async def _delete_bundle(self, holder: HolderContext, tx_id: str) -> None:
        if self.postbox is None or not holder.document_id:
            return
        try:
            await self.postbox.delete_document(
                holder.document_id,
                holder.link_id,
                holder.profile.upload_token,
                tx_id=tx_id,
                authorization=holder.authorization,
            )
        except IntakeError as e:
            logger.warning("[%s] Unable to delete postbox document with id %s. %s", tx_id, holder.document_id, e.message)

    async def _generate_metadata(self, document: dict[str, Any], tx_id: str) -> dict[str, Any]:
        if self.metadata is None:
            return {}
        generated = await self.metadata.generate(document, tx_id)
        if isinstance(generated, dict) and isinstance(generated.get("metadata"), dict):
            return generated["metadata"]
        return {}

    async def validate(
        self,
        receipt: dict[str, Any],
        holder: HolderContext,
        entity: EntityConfig,
        context: VerifierContext,
        validate_signature: bool = True,
        tx_id: str = "",
    ) -> ConsentResult:
        within_window = check_consent_window(
            receipt.get("consentTimestamp"),
            now=self.clock(),
            clock_skew_seconds=self.settings.clock_skew_seconds,
            retention_weeks=self.settings.retention_weeks,
            tx_id=tx_id,
        )
        if not within_window:
            logger.warning("[%s] Found invalid consent receipt, ignoring", tx_id)
            return ConsentResult(is_valid=False)

        if not validate_signature:
            return ConsentResult(is_valid=True, metadata={})

        extras = {"publicKey": holder.public_key, "publicKeyType": holder.public_key_type}
        result = await context.verify(receipt, extras, return_credential=False)
        if result.success:
            if not entity.verifier_config_id:
                return ConsentResult(is_valid=True, metadata={})
            try:
                metadata = await self._generate_metadata(result.to_document(), tx_id)
            except Exception as e:
                logger.error("[%s] Error occurred generating metadata : %s", tx_id, error_message(e))
                return ConsentResult(is_valid=False, error_message=error_message(e))
            return ConsentResult(is_valid=True, metadata=metadata)

        if result.error:
            logger.error("[%s] Consent receipt verification error: %s", tx_id, result.message)
            return ConsentResult(is_valid=False)

        logger.warning("[%s] Consent receipt contains an invalid signature. %s", tx_id, result.message)
        await self._delete_bundle(holder, tx_id)
        return ConsentResult(is_valid=False, error_message=result.message)
