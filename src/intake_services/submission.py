"""Holder submissions: download, decrypt, validate and persist a credential bundle."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from intake_common.crypto import b64decode_any, decrypt
from intake_common.errors import IntakeError, ValidationError, status_for
from intake_common.infrastructure import CosInfoRepository, DatabaseManager, ObjectStore, StatsRepository

from .clients import PostboxClient
from .consent import ConsentValidator, HolderContext
from .credentials import CredentialValidator
from .organizations import EntityConfig, ProfileStore
from .verification import VerifierContextRegistry

logger = logging.getLogger(__name__)

CONSENT_ID_KEY = "consentId"


class SubmissionState(str, Enum):
    RECEIVED = "received"
    BUNDLE_DECRYPTED = "bundle_decrypted"
    ITEMS_CLASSIFIED = "items_classified"
    CONSENT_CHECKED = "consent_checked"
    CREDENTIALS_CHECKED = "credentials_checked"
    REJECTED = "rejected"
    PERSISTED = "persisted"
    STATS_RECORDED = "stats_recorded"


@dataclass(slots=True)
class SubmissionRequest:
    """Request body of a holder submission."""

    document_id: str
    link_id: str | None = None
    public_key: str | None = None
    public_key_type: str | None = None
    include_file_name: bool = False
    authorization: str | None = None
    body: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any], authorization: str | None = None) -> SubmissionRequest:
        document_id = raw.get("documentId")
        if not document_id:
            msg = "documentId is required"
            raise ValidationError(msg)
        return cls(
            document_id=document_id,
            link_id=raw.get("link") or raw.get("linkId"),
            public_key=raw.get("publicKey"),
            public_key_type=raw.get("publicKeyType"),
            include_file_name=bool(raw.get("includeFileName", False)),
            authorization=authorization,
            body=dict(raw),
        )


@dataclass(slots=True)
class SubmissionOutcome:
    status: int
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    file_name: str | None = None
    state: SubmissionState = SubmissionState.RECEIVED

    @property
    def valid_credentials(self) -> list[dict[str, Any]]:
        return list(self.data.get("credentialsProcessed") or [])

    @property
    def invalid_credentials(self) -> list[dict[str, Any]]:
        return list(self.data.get("credentialsNotProcessed") or [])

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"status": self.status, "message": self.message, "data": self.data}
        if self.file_name:
            result["fileName"] = self.file_name
        return result


@dataclass
class _Accumulator:
    consent_id: Any = None
    consent_error: str = ""
    stat_docs: list[dict[str, Any]] = field(default_factory=list)
    valid: list[dict[str, Any]] = field(default_factory=list)
    invalid: list[dict[str, Any]] = field(default_factory=list)
    payload: list[Any] = field(default_factory=list)
    metadata: list[dict[str, Any]] = field(default_factory=list)


class SubmissionAssembler:
    """Runs one holder bundle through consent and credential validation."""

    def __init__(
        self,
        profiles: ProfileStore,
        postbox: PostboxClient,
        contexts: VerifierContextRegistry,
        consent: ConsentValidator,
        credentials: CredentialValidator,
        object_store: ObjectStore,
        database: DatabaseManager,
        consent_key: str = CONSENT_ID_KEY,
        append_metadata: bool = True,
    ) -> None:
        self._profiles = profiles
        self._postbox = postbox
        self._contexts = contexts
        self._consent = consent
        self._credentials = credentials
        self._object_store = object_store
        self._database = database
        self.consent_key = consent_key
        self.append_metadata = append_metadata

    def is_consent(self, item: Any) -> bool:
        return isinstance(item, dict) and self.consent_key in item

    async def _load_bundle(self, request: SubmissionRequest, holder: HolderContext, tx_id: str) -> list[Any]:
        content = await self._postbox.download_document(
            request.document_id,
            request.link_id,
            holder.profile.upload_token,
            tx_id=tx_id,
            authorization=request.authorization,
        )
        key = holder.profile.symmetric_key
        logger.debug("[%s] Attempting to decrypt payload content of document %s", tx_id, request.document_id)
        plaintext = decrypt(b64decode_any(content), key.key_bytes(), key.iv_bytes(), key.algorithm)
        try:
            items = json.loads(plaintext)
        except ValueError as e:
            msg = f"Document {request.document_id} does not contain a JSON bundle"
            raise ValidationError(msg) from e
        if not isinstance(items, list):
            msg = f"Document {request.document_id} does not contain a list of credentials"
            raise ValidationError(msg)
        return items

    async def _persist(self, entity: str, file_name: str, payload: list[Any], tx_id: str) -> bool:
        logger.debug("[%s] Attempting to submit data (write to object storage)", tx_id)
        try:
            await self._object_store.put_object(entity, file_name, json.dumps(payload).encode("utf-8"))
        except IntakeError as e:
            logger.error("[%s] Error occurred submitting data: %s", tx_id, e.message)
            return False
        return True

    async def _save_cos_info(self, entity: str, holder_id: str, file_name: str, tx_id: str) -> bool:
        logger.debug("[%s] Attempting to save holder cos info", tx_id)
        try:
            async with self._database.session_scope() as session:
                await CosInfoRepository(session).save(entity, file_name, holder_id)
        except SQLAlchemyError as e:
            logger.error("[%s] Error occurred saving holder cos info: %s", tx_id, e)
            return False
        return True

    async def _update_stats(
        self, entity: str, stat_docs: list[dict[str, Any]], timestamp: datetime, tx_id: str
    ) -> None:
        for doc in stat_docs:
            doc["submissionTimestamp"] = timestamp
        try:
            async with self._database.session_scope() as session:
                created = await StatsRepository(session).bulk_insert(entity, stat_docs)
            logger.info("[%s] Successfully created %d stat docs", tx_id, created)
        except SQLAlchemyError as e:
            logger.error("[%s] Error occurred creating stat docs: %s", tx_id, e)

    async def submit(
        self,
        request: SubmissionRequest,
        holder_id: str,
        entity: EntityConfig,
        tx_id: str,
        validate_signature: bool = True,
    ) -> SubmissionOutcome:
        try:
            profile = await self._profiles.get_profile(entity.entity, holder_id)
            holder = HolderContext(
                holder_id=holder_id,
                profile=profile,
                public_key=request.public_key or holder_id,
                public_key_type=request.public_key_type,
                document_id=request.document_id,
                link_id=request.link_id,
                authorization=request.authorization,
            )
            items = await self._load_bundle(request, holder, tx_id)
        except IntakeError as e:
            logger.error("[%s] Failed to load bundle for %s: %s", tx_id, holder_id, e.message)
            return SubmissionOutcome(status_for(e), e.message, state=SubmissionState.REJECTED)
        logger.debug("[%s] Submission state %s", tx_id, SubmissionState.BUNDLE_DECRYPTED.value)

        context = await self._contexts.get(entity)
        acc = _Accumulator()
        for item in items:
            if self.is_consent(item):
                await self._handle_consent(item, holder, entity, context, validate_signature, acc, tx_id)
                continue
            logger.debug("[%s] Processing verifiable credential", tx_id)
            result = await self._credentials.validate(item, entity, holder_id, context, tx_id)
            if result.is_valid:
                acc.stat_docs.append(result.stat_doc or {})
                acc.valid.append(result.valid_cred or {})
                acc.payload.append(result.credential)
                if result.metadata is not None:
                    acc.metadata.append(result.metadata)
            elif result.invalid_cred:
                acc.invalid.append(result.invalid_cred)
        logger.debug("[%s] Submission state %s", tx_id, SubmissionState.CREDENTIALS_CHECKED.value)

        if not acc.consent_id:
            msg = f"Failed to submit data for {holder_id}, no valid consent receipt found. {acc.consent_error}"
            logger.error("[%s] %s", tx_id, msg)
            return SubmissionOutcome(400, msg, state=SubmissionState.REJECTED)

        if not acc.valid:
            msg = f"Failed to submit data for {holder_id}, no valid credential found"
            logger.error("[%s] %s", tx_id, msg)
            data = {"credentialsNotProcessed": acc.invalid} if acc.invalid else {}
            return SubmissionOutcome(400, msg, data, state=SubmissionState.REJECTED)

        return await self._finalize(holder_id, entity, acc, request, tx_id)

    async def _handle_consent(
        self,
        item: dict[str, Any],
        holder: HolderContext,
        entity: EntityConfig,
        context: Any,
        validate_signature: bool,
        acc: _Accumulator,
        tx_id: str,
    ) -> None:
        logger.debug("[%s] Processing consent receipt %s", tx_id, item.get(self.consent_key))
        if acc.consent_id:
            logger.warning("[%s] Found multiple consent receipts, ignoring", tx_id)
            return
        result = await self._consent.validate(item, holder, entity, context, validate_signature, tx_id)
        if result.is_valid:
            acc.consent_id = item.get(self.consent_key)
            acc.payload.append(item)
            acc.metadata.append(result.metadata or {})
        elif result.error_message:
            acc.consent_error = result.error_message

    async def _finalize(
        self,
        holder_id: str,
        entity: EntityConfig,
        acc: _Accumulator,
        request: SubmissionRequest,
        tx_id: str,
    ) -> SubmissionOutcome:
        submission_timestamp = datetime.now(timezone.utc)
        if self.append_metadata:
            acc.payload.append({"metadata": acc.metadata})
        file_name = f"{tx_id}.json"
        if not await self._persist(entity.entity, file_name, acc.payload, tx_id):
            logger.error("[%s] Failed to submit data for %s", tx_id, holder_id)
            return SubmissionOutcome(500, "Internal error submitting data", state=SubmissionState.REJECTED)
        logger.info("[%s] Submitted data for %s as %s", tx_id, holder_id, file_name)

        if not await self._save_cos_info(entity.entity, holder_id, file_name, tx_id):
            logger.error("[%s] Failed to save holder cos info for %s", tx_id, holder_id)
            return SubmissionOutcome(500, "Internal error saving holder cos info", state=SubmissionState.PERSISTED)

        await self._update_stats(entity.entity, acc.stat_docs, submission_timestamp, tx_id)
        data: dict[str, Any] = {"credentialsProcessed": acc.valid, "credentialsNotProcessed": acc.invalid}
        if request.include_file_name:
            data["fileName"] = file_name
        return SubmissionOutcome(
            200, "Data submitted", data, file_name=file_name, state=SubmissionState.STATS_RECORDED
        )
