"""Organization-category behavior selected through a registry built at startup.

Each onboarded organization belongs to a category (``entityType``), or uses its
own name when it has none. The category decides how holder ids are derived,
how registration credentials are prepared and which of the holder submission
and batch upload flows the organization supports.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from intake_common.crypto import hash_strings
from intake_common.errors import IntakeError, NotFoundError, ValidationError

from .batch import BatchCoordinator, BatchInfo, RowProcessor
from .mapping import MappingEngine
from .organizations import EntityConfig, HolderProfile
from .submission import SubmissionAssembler, SubmissionOutcome, SubmissionRequest

logger = logging.getLogger(__name__)

PROFILE_CREDENTIAL = "profile"
USER_CREDENTIAL = "id"

HOLDER_UPLOAD = "holder-upload"
HOLDER_DOWNLOAD = "holder-download"
NIH = "nih"


def upload_holder_id(body: dict[str, Any]) -> str | None:
    return body.get("id") or body.get("publicKey")


def download_holder_id(body: dict[str, Any]) -> str | None:
    if not (body.get("id") and body.get("clientName")):
        return None
    return hash_strings([str(body["id"]), str(body["clientName"])])


def nih_holder_id(body: dict[str, Any]) -> str | None:
    return body.get("publicKey")


def not_implemented(operation: str) -> dict[str, Any]:
    return {"status": 501, "message": f"{operation} is not implemented"}


class OrganizationCapability(ABC):
    """Operations an organization category provides to the data and onboarding flows."""

    category: str = ""
    holder_id_field = "id"

    @abstractmethod
    def get_holder_id(self, body: dict[str, Any]) -> str | None:
        """Derive the holder id from a request body or CSV row."""

    def validate_holder_id(self, body: dict[str, Any]) -> bool:
        return bool(self.get_holder_id(body))

    @abstractmethod
    async def prepare_user_credential_data(
        self, body: dict[str, Any], entity: EntityConfig, tx_id: str = ""
    ) -> dict[str, Any] | None: ...

    @abstractmethod
    async def prepare_profile_credential_data(
        self, profile: HolderProfile, holder_id: str, entity: EntityConfig, tx_id: str = ""
    ) -> dict[str, Any] | None: ...

    async def submit_entity_data(
        self,
        request: SubmissionRequest,
        entity: EntityConfig,
        tx_id: str = "",
        validate_signature: bool = True,
    ) -> SubmissionOutcome:
        result = not_implemented("submitEntityData")
        return SubmissionOutcome(result["status"], result["message"])

    async def upload_entity_data(
        self, entity: EntityConfig, batch: BatchInfo, credential_type: str, tx_id: str = ""
    ) -> dict[str, Any]:
        return not_implemented("uploadEntityData")


class _MapperBackedCapability(OrganizationCapability):
    def __init__(self, engine: MappingEngine) -> None:
        self._engine = engine

    async def _map_registration(
        self, document: dict[str, Any], entity: EntityConfig, kind: str, holder_id: str | None, tx_id: str
    ) -> dict[str, Any] | None:
        mapper_name = entity.registration_mapper(kind)
        label = "user" if kind == "holder" else kind
        if not mapper_name:
            logger.error("[%s] Failed to get %s mapper for %s", tx_id, label, entity.entity)
            return None
        try:
            data = await self._engine.transform(document, mapper_name)
        except NotFoundError:
            logger.error("[%s] Failed to get %s mapper %s", tx_id, label, mapper_name)
            return None
        except IntakeError as e:
            logger.error("[%s] Failed to prepare %s credential data for %s: %s", tx_id, label, holder_id, e.message)
            return None
        return dict(data) if isinstance(data, dict) else {}


class _SubmittingCapability(_MapperBackedCapability):
    def __init__(self, engine: MappingEngine, assembler: SubmissionAssembler) -> None:
        super().__init__(engine)
        self._assembler = assembler

    async def submit_entity_data(
        self,
        request: SubmissionRequest,
        entity: EntityConfig,
        tx_id: str = "",
        validate_signature: bool = True,
    ) -> SubmissionOutcome:
        holder_id = self.get_holder_id(request.body)
        if not holder_id:
            msg = f"Request body must contain '{self.holder_id_field}'"
            logger.error("[%s] %s", tx_id, msg)
            return SubmissionOutcome(400, msg)
        return await self._assembler.submit(request, holder_id, entity, tx_id, validate_signature)


class HolderUploadCapability(_SubmittingCapability):
    """Holders upload credential bundles to the organization."""

    category = HOLDER_UPLOAD

    def get_holder_id(self, body: dict[str, Any]) -> str | None:
        return upload_holder_id(body)

    async def prepare_user_credential_data(
        self, body: dict[str, Any], entity: EntityConfig, tx_id: str = ""
    ) -> dict[str, Any] | None:
        holder_id = self.get_holder_id(body)
        data = await self._map_registration(body, entity, "holder", holder_id, tx_id)
        if data is None:
            return None
        data["type"] = USER_CREDENTIAL
        data[self.holder_id_field] = holder_id
        data["organization"] = entity.entity
        return data

    async def prepare_profile_credential_data(
        self, profile: HolderProfile, holder_id: str, entity: EntityConfig, tx_id: str = ""
    ) -> dict[str, Any] | None:
        data = await self._map_registration(entity.raw, entity, "profile", holder_id, tx_id)
        if data is None:
            return None
        data["type"] = PROFILE_CREDENTIAL
        data["orgId"] = entity.entity
        data["technical"] = {
            "upload": {
                "id": holder_id,
                "url": profile.details.get("uploadUrl"),
                "linkId": profile.upload_link_id,
                "passcode": profile.upload_token,
            },
            "symmetricKey": profile.symmetric_key.to_dict(),
        }
        return data


class HolderDownloadCapability(_MapperBackedCapability):
    """The organization issues credentials from CSV batches for holders to download."""

    category = HOLDER_DOWNLOAD

    def __init__(self, engine: MappingEngine, coordinator: BatchCoordinator, processor: RowProcessor) -> None:
        super().__init__(engine)
        self._coordinator = coordinator
        self._processor = processor

    def get_holder_id(self, body: dict[str, Any]) -> str | None:
        return download_holder_id(body)

    async def prepare_user_credential_data(
        self, body: dict[str, Any], entity: EntityConfig, tx_id: str = ""
    ) -> dict[str, Any] | None:
        holder_id = self.get_holder_id(body)
        data = await self._map_registration(body, entity, "holder", holder_id, tx_id)
        if data is None:
            return None
        return {"type": USER_CREDENTIAL, "id": holder_id, **data}

    async def prepare_profile_credential_data(
        self, profile: HolderProfile, holder_id: str, entity: EntityConfig, tx_id: str = ""
    ) -> dict[str, Any] | None:
        data = await self._map_registration(entity.raw, entity, "profile", holder_id, tx_id)
        if data is None:
            return None
        download = {
            "id": holder_id,
            "url": profile.details.get("downloadUrl"),
            "linkId": profile.download_link_id,
            "passcode": profile.download_token,
        }
        return {
            "type": PROFILE_CREDENTIAL,
            "orgId": entity.entity,
            "technical": {"download": download, "symmetricKey": profile.symmetric_key.to_dict()},
            **data,
        }

    async def upload_entity_data(
        self, entity: EntityConfig, batch: BatchInfo, credential_type: str, tx_id: str = ""
    ) -> dict[str, Any]:
        report = await self._coordinator.upload_entity_data(entity, batch, self._processor, credential_type, tx_id)
        return {"status": 200, "message": "", "report": report}


class NihCapability(_SubmittingCapability):
    """Holder uploads keyed by public key, with consent receipts instead of consent ids."""

    category = NIH
    holder_id_field = "publicKey"

    def get_holder_id(self, body: dict[str, Any]) -> str | None:
        return nih_holder_id(body)

    async def prepare_user_credential_data(
        self, body: dict[str, Any], entity: EntityConfig, tx_id: str = ""
    ) -> dict[str, Any] | None:
        holder_id = self.get_holder_id(body)
        controllers = entity.consent_info.get("piiControllers") or []
        if not controllers or not isinstance(controllers[0], dict):
            logger.error("[%s] Failed to prepare user credential data for %s: no piiControllers", tx_id, holder_id)
            return None
        data: dict[str, Any] = {"type": USER_CREDENTIAL, "id": holder_id, "key": body.get("publicKey")}
        for field_name in entity.user_data:
            data[field_name] = body.get(field_name)
        data["issuer"] = {"name": controllers[0].get("piiController")}
        return data

    async def prepare_profile_credential_data(
        self, profile: HolderProfile, holder_id: str, entity: EntityConfig, tx_id: str = ""
    ) -> dict[str, Any] | None:
        po_box = {
            "id": holder_id,
            "url": profile.details.get("url"),
            "linkId": profile.upload_link_id,
            "passcode": profile.upload_token,
            "symmetricKey": profile.symmetric_key.to_dict(),
        }
        return {
            "type": PROFILE_CREDENTIAL,
            "orgId": entity.entity,
            "consentInfo": {**entity.consent_info, "piiPrincipalId": holder_id},
            "technical": {"poBox": po_box},
            "termination": entity.termination,
        }


class CapabilityRegistry:
    """Maps organization categories onto their capability."""

    def __init__(self) -> None:
        self._capabilities: dict[str, OrganizationCapability] = {}

    def register(self, capability: OrganizationCapability, category: str | None = None) -> None:
        name = category or capability.category
        if not name:
            msg = "Capability must declare a category"
            raise ValueError(msg)
        if name in self._capabilities:
            logger.warning("Replacing capability for category %s", name)
        self._capabilities[name] = capability

    def categories(self) -> list[str]:
        return sorted(self._capabilities)

    def get(self, category: str) -> OrganizationCapability | None:
        return self._capabilities.get(category)

    def for_entity(self, entity: EntityConfig) -> OrganizationCapability:
        capability = self.get(entity.category)
        if capability is None:
            msg = f"Invalid organization {entity.entity}, no entity helpers found"
            raise ValidationError(msg)
        return capability
