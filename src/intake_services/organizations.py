"""Organization configuration and holder profiles."""

from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass, field
from typing import Any

from intake_common.crypto import DEFAULT_ALGORITHM, b64decode_any
from intake_common.errors import NotFoundError, ValidationError
from intake_common.infrastructure import (
    DatabaseManager,
    HolderProfileRecord,
    HolderProfileRepository,
    OrganizationRepository,
)

logger = logging.getLogger(__name__)

_KEY_SIZES = {"128": 16, "192": 24, "256": 32}


@dataclass(slots=True)
class SymmetricKey:
    """Base64 key material stored on a holder profile."""

    value: str
    iv: str
    algorithm: str = DEFAULT_ALGORITHM

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> SymmetricKey:
        try:
            return cls(value=raw["value"], iv=raw["iv"], algorithm=raw.get("algorithm", DEFAULT_ALGORITHM))
        except KeyError as e:
            msg = f"Symmetric key is missing {e.args[0]}"
            raise ValidationError(msg) from e

    @classmethod
    def generate(cls, algorithm: str = DEFAULT_ALGORITHM) -> SymmetricKey:
        size = _KEY_SIZES.get(algorithm.split("-")[1] if algorithm.count("-") == 2 else "", 32)
        iv_size = 12 if algorithm.endswith("gcm") else 16
        return cls(
            value=base64.b64encode(os.urandom(size)).decode("ascii"),
            iv=base64.b64encode(os.urandom(iv_size)).decode("ascii"),
            algorithm=algorithm,
        )

    def key_bytes(self) -> bytes:
        return b64decode_any(self.value)

    def iv_bytes(self) -> bytes:
        return b64decode_any(self.iv)

    def to_dict(self) -> dict[str, str]:
        return {"value": self.value, "iv": self.iv, "algorithm": self.algorithm}


@dataclass(slots=True)
class HolderProfile:
    holder_id: str
    symmetric_key: SymmetricKey
    upload_token: str | None = None
    upload_link_id: str | None = None
    download_token: str | None = None
    download_link_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: HolderProfileRecord) -> HolderProfile:
        return cls(
            holder_id=record.holder_id,
            symmetric_key=SymmetricKey.from_dict(record.symmetric_key),
            upload_token=record.upload_token,
            upload_link_id=record.upload_link_id,
            download_token=record.download_token,
            download_link_id=record.download_link_id,
            details=dict(record.details or {}),
        )


@dataclass(slots=True)
class EntityConfig:
    """Onboarded organization settings used by the pipeline."""

    entity: str
    entity_type: str | None = None
    issuer_id: str | None = None
    verifier_config_id: str | None = None
    verifier_org_id: str | None = None
    verifier_cust_id: str | None = None
    is_data_transform: bool = False
    mappers: dict[str, Any] = field(default_factory=dict)
    display_colors: dict[str, str] = field(default_factory=dict)
    consent_info: dict[str, Any] = field(default_factory=dict)
    user_data: list[str] = field(default_factory=list)
    termination: dict[str, Any] | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> EntityConfig:
        entity = raw.get("entity")
        if not entity:
            msg = "Organization config requires an entity"
            raise ValidationError(msg)
        return cls(
            entity=str(entity).lower(),
            entity_type=raw.get("entityType"),
            issuer_id=raw.get("issuerId"),
            verifier_config_id=raw.get("verifierConfigId"),
            verifier_org_id=raw.get("verifierOrgId"),
            verifier_cust_id=raw.get("verifierCustId"),
            is_data_transform=bool(raw.get("isDataTransform", False)),
            mappers=dict(raw.get("mappers") or {}),
            display_colors=dict(raw.get("displayColors") or {}),
            consent_info=dict(raw.get("consentInfo") or {}),
            user_data=list(raw.get("userData") or []),
            termination=raw.get("termination"),
            raw=dict(raw),
        )

    @property
    def category(self) -> str:
        """Capability category; organizations without a type use their own name."""
        return self.entity_type or self.entity

    def download_mapping(self, credential_type: str) -> dict[str, Any]:
        download = self.mappers.get("download") or {}
        mapping = download.get(credential_type)
        if not mapping:
            msg = f"credentialType: {credential_type} is not supported"
            raise ValidationError(msg)
        return mapping

    def registration_mapper(self, kind: str) -> str | None:
        reg = self.mappers.get("reg") or {}
        return (reg.get(kind) or {}).get("mapper")


class OrganizationStore:
    """Reads and writes organization configs."""

    def __init__(self, database: DatabaseManager) -> None:
        self._database = database

    async def get_entity(self, entity: str) -> EntityConfig:
        async with self._database.session_scope() as session:
            record = await OrganizationRepository(session).get(entity)
            if record is None:
                msg = f"Organization {entity} not found"
                raise NotFoundError(msg)
            return EntityConfig.from_dict({**record.config, "entity": record.entity})

    async def list_entities(self) -> list[EntityConfig]:
        async with self._database.session_scope() as session:
            records = await OrganizationRepository(session).list_all()
            return [EntityConfig.from_dict({**r.config, "entity": r.entity}) for r in records]

    async def save_entity(self, raw: dict[str, Any]) -> EntityConfig:
        config = EntityConfig.from_dict(raw)
        async with self._database.session_scope() as session:
            await OrganizationRepository(session).upsert(config.entity, raw, config.entity_type)
        logger.info("Saved organization %s", config.entity)
        return config


class ProfileStore:
    def __init__(self, database: DatabaseManager) -> None:
        self._database = database

    async def get_profile(self, entity: str, holder_id: str) -> HolderProfile:
        async with self._database.session_scope() as session:
            record = await HolderProfileRepository(session).get(entity, holder_id)
            if record is None:
                msg = f"Profile not found for holder {holder_id}"
                raise NotFoundError(msg)
            return HolderProfile.from_record(record)

    async def save_profile(self, entity: str, profile: HolderProfile) -> None:
        async with self._database.session_scope() as session:
            await HolderProfileRepository(session).upsert(
                entity,
                profile.holder_id,
                profile.symmetric_key.to_dict(),
                upload_token=profile.upload_token,
                upload_link_id=profile.upload_link_id,
                download_token=profile.download_token,
                download_link_id=profile.download_link_id,
                details=profile.details,
            )
