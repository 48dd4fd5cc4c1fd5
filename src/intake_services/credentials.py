"""Per-credential validation: verify, classify, transform and build the stat record."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from intake_common.errors import error_message

from .mapping import MappingEngine, get_mapper_name
from .metadata import MetadataGenerator
from .organizations import EntityConfig
from .verification import CredType, VerificationResult, VerifierContext

logger = logging.getLogger(__name__)

OA_PREFIX_LENGTH = 44
_DCC_CATEGORIES = (("v", "VACCINATION"), ("r", "RECOVERY"), ("t", "TEST"))


def get_credential_type(credential: Any, default_type: str = "unknown") -> str:
    subject = credential.get("credentialSubject") if isinstance(credential, dict) else None
    if isinstance(subject, dict) and subject.get("type"):
        return subject["type"]
    return default_type


def _first(entries: Any) -> dict[str, Any]:
    if isinstance(entries, list) and entries and isinstance(entries[0], dict):
        return entries[0]
    return {}


def get_stat_doc_info(credential: Any, cred_type: str) -> dict[str, Any]:
    """Logical ``credID``/``schemaID``/``credType`` of a credential by wire format."""
    if not isinstance(credential, dict):
        return {}
    if cred_type == CredType.DCC:
        for key, label in _DCC_CATEGORIES:
            if credential.get(key):
                return {"credID": _first(credential[key]).get("ci"), "credType": f"{CredType.DCC} {label}"}
        return {}
    if cred_type == CredType.SHC:
        vc_types = (credential.get("vc") or {}).get("type") or []
        return {
            "credID": credential.get("nbf"),
            "credType": vc_types[1] if len(vc_types) > 1 else None,
        }
    if cred_type == CredType.OA:
        data = credential.get("data") or {}
        cred_id = data.get("id")
        name = data.get("name")
        return {
            "credID": cred_id[OA_PREFIX_LENGTH:] if isinstance(cred_id, str) else None,
            "credType": name[OA_PREFIX_LENGTH:] if isinstance(name, str) else None,
        }
    schema = credential.get("credentialSchema")
    return {
        "credID": credential.get("id"),
        "schemaID": schema.get("id") if isinstance(schema, dict) else None,
        "credType": get_credential_type(credential, None) if isinstance(schema, dict) else None,
    }


@dataclass(slots=True)
class CredentialResult:
    is_valid: bool
    credential: Any = None
    valid_cred: dict[str, Any] | None = None
    invalid_cred: dict[str, Any] | None = None
    stat_doc: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None


class CredentialValidator:
    """Turns one bundle item into a valid or invalid entry; never raises."""

    def __init__(self, engine: MappingEngine, metadata: MetadataGenerator | None = None) -> None:
        self._engine = engine
        self._metadata = metadata

    @staticmethod
    def _invalid(item: Any, cred_type: str, cred_id: Any, reason: str) -> CredentialResult:
        return CredentialResult(
            is_valid=False,
            invalid_cred={
                "credentialType": get_credential_type(item, cred_type),
                "credentialId": cred_id,
                "reason": f"Credential not valid: {reason}",
            },
        )

    async def _transform(self, result: VerificationResult, entity: EntityConfig, item: Any) -> Any:
        if not entity.is_data_transform:
            return item
        mapper_name = get_mapper_name(result.credential or {}, result.cred_type, entity.mappers)
        if not mapper_name:
            return item
        return await self._engine.transform(result.credential, mapper_name)

    async def _metadata_for(self, result: VerificationResult, entity: EntityConfig, tx_id: str) -> dict[str, Any]:
        if self._metadata is None or not entity.verifier_config_id:
            return {}
        generated = await self._metadata.generate(result.to_document(), tx_id)
        if isinstance(generated, dict) and isinstance(generated.get("metadata"), dict):
            return generated["metadata"]
        return {}

    async def validate(
        self,
        item: Any,
        entity: EntityConfig,
        holder_id: str,
        context: VerifierContext,
        tx_id: str = "",
    ) -> CredentialResult:
        try:
            return await self._validate(item, entity, holder_id, context, tx_id)
        except Exception as e:
            logger.exception("[%s] Unexpected error validating credential", tx_id)
            return self._invalid(item, CredType.UNKNOWN, None, error_message(e))

    async def _validate(
        self,
        item: Any,
        entity: EntityConfig,
        holder_id: str,
        context: VerifierContext,
        tx_id: str,
    ) -> CredentialResult:
        logger.debug("[%s] Attempting to verify credential with issuerId %s", tx_id, entity.issuer_id)
        result = await context.verify(item)
        info = get_stat_doc_info(result.credential or item, result.cred_type)
        cred_id = info.get("credID")

        if result.error:
            logger.error("[%s] %s : %s", tx_id, result.message, result.error)
        if not result.success or result.cred_type == CredType.UNKNOWN:
            logger.warning("[%s] Found non-verifiable credential :: %s", tx_id, result.message)
            return self._invalid(item, result.cred_type, cred_id, result.message)

        try:
            credential = await self._transform(result, entity, item)
            metadata = await self._metadata_for(result, entity, tx_id)
        except Exception as e:
            logger.error("[%s] Error occurred transforming credential %s: %s", tx_id, cred_id, error_message(e))
            return self._invalid(item, result.cred_type, cred_id, error_message(e))

        logger.debug("[%s] Found valid verifiable, transformable credential %s", tx_id, cred_id)
        stat_doc = {
            "holderId": holder_id,
            "credId": cred_id,
            "schemaId": info.get("schemaID"),
            "submissionId": tx_id,
            "credType": info.get("credType"),
        }
        return CredentialResult(
            is_valid=True,
            credential=credential,
            valid_cred={
                "credentialType": get_credential_type(result.credential, info.get("credType") or result.cred_type),
                "credentialId": cred_id,
            },
            stat_doc=stat_doc,
            metadata=metadata,
        )
