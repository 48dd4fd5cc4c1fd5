"""Row processing for holder-download batches: issue, encrypt and deliver a credential."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from intake_common.crypto import encrypt_to_base64
from intake_common.errors import IntakeError, status_for

from .batch import RowResult
from .clients import IssuanceClient, PostboxClient
from .mapping import MappingEngine
from .organizations import EntityConfig, HolderProfile, ProfileStore

logger = logging.getLogger(__name__)

EXPIRATION_DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def calculate_expiration_date(seconds: Any, now: datetime | None = None) -> str:
    current = now or datetime.now(timezone.utc)
    return (current + timedelta(seconds=int(seconds))).strftime(EXPIRATION_DATE_FORMAT)


def get_display_color(row: dict[str, Any], entity: EntityConfig) -> str:
    return entity.display_colors.get(str(row.get("testResult")), "") if entity.display_colors else ""


class CredentialIssuanceProcessor:
    """Turns one validated CSV row into a credential in the holder's download postbox."""

    def __init__(
        self,
        profiles: ProfileStore,
        engine: MappingEngine,
        issuance: IssuanceClient,
        postbox: PostboxClient,
        holder_id_for: Callable[[dict[str, Any]], str | None],
    ) -> None:
        self._profiles = profiles
        self._engine = engine
        self._issuance = issuance
        self._postbox = postbox
        self._holder_id_for = holder_id_for

    async def prepare_credential_data(
        self, row: dict[str, Any], entity: EntityConfig, credential_type: str, holder_id: str, tx_id: str
    ) -> dict[str, Any]:
        logger.debug("[%s] Preparing test result credential data for %s", tx_id, holder_id)
        mapping = entity.download_mapping(credential_type)
        data = await self._engine.transform(row, mapping.get("mapper", ""))
        credential_data = {"id": holder_id, "display": get_display_color(row, entity), **data}
        if row.get("idGeneration"):
            credential_data.pop("id", None)
            credential_data.pop("display", None)
        return credential_data

    async def create_credential(
        self,
        row: dict[str, Any],
        entity: EntityConfig,
        credential_type: str,
        credential_data: dict[str, Any],
        tx_id: str,
        authorization: str | None = None,
    ) -> dict[str, Any]:
        mapping = entity.download_mapping(credential_type)
        expiration_date = None
        if "credentialExpiry" in mapping:
            expiration_date = calculate_expiration_date(mapping["credentialExpiry"])
        issuer_id = entity.issuer_id or ""
        schema_id = mapping.get("schemaId", "")
        logger.debug(
            "[%s] Attempting to create test result credential by issuer=%s with schema=%s", tx_id, issuer_id, schema_id
        )
        try:
            return await self._issuance.create_credential(
                issuer_id,
                schema_id,
                credential_data,
                expiration_date=expiration_date,
                cred_type=mapping.get("type") or [],
                tx_id=tx_id,
                authorization=authorization,
                output_type=row.get("type") if row.get("type") == "string" else None,
            )
        except IntakeError as e:
            msg = f"Failed to create test result credential by issuer={issuer_id} with schema={schema_id}: {e.message}"
            logger.error("[%s] %s", tx_id, msg)
            raise IntakeError(msg, e.category) from e

    async def upload_credential(
        self,
        profile: HolderProfile,
        credential: dict[str, Any],
        credential_type: str,
        tx_id: str,
        authorization: str | None = None,
    ) -> None:
        logger.debug("[%s] Attempting to encrypt test result credential", tx_id)
        key = profile.symmetric_key
        encrypted = encrypt_to_base64(json.dumps(credential), key.key_bytes(), key.iv_bytes(), key.algorithm)
        logger.debug("[%s] Attempting to upload credential to Postbox", tx_id)
        try:
            response = await self._postbox.upload_document(
                profile.download_link_id or "",
                profile.download_token or "",
                credential_type,
                encrypted,
                tx_id=tx_id,
                authorization=authorization,
            )
        except IntakeError as e:
            msg = f"Failed to uploadDocument to PostBox: {e.message}"
            logger.error("[%s] %s", tx_id, msg)
            raise IntakeError(msg, e.category) from e
        document_id = (response.get("payload") or {}).get("id")
        if document_id:
            logger.info("[%s] Uploaded test result credential to Postbox as documentId %s", tx_id, document_id)

    async def __call__(
        self,
        row: dict[str, Any],
        entity: EntityConfig,
        credential_type: str,
        tx_id: str,
        authorization: str | None = None,
    ) -> RowResult:
        holder_id = self._holder_id_for(row)
        if not holder_id:
            return RowResult(status=400, message="Unable to determine holder id for row")

        logger.debug("[%s] Attempting to get profile doc for %s", tx_id, holder_id)
        try:
            profile = await self._profiles.get_profile(entity.entity, holder_id)
        except IntakeError as e:
            logger.error("[%s] Failed to get profile doc for %s", tx_id, holder_id)
            return RowResult(status=status_for(e), message=e.message)

        try:
            credential_data = await self.prepare_credential_data(row, entity, credential_type, holder_id, tx_id)
            credential = await self.create_credential(
                row, entity, credential_type, credential_data, tx_id, authorization
            )
            await self.upload_credential(profile, credential, credential_type, tx_id, authorization)
        except IntakeError as e:
            return RowResult(status=400, message=e.message)

        schema = credential.get("credentialSchema") or {}
        subject = credential.get("credentialSubject") or {}
        stat_doc = {
            "holderId": holder_id,
            "credId": credential.get("id"),
            "schemaId": schema.get("id") if isinstance(schema, dict) else None,
            "credType": subject.get("type") if isinstance(subject, dict) else None,
            "submissionId": tx_id,
        }
        return RowResult(status=200, stat_doc=stat_doc)
