"""Metadata generation for verified consent receipts and credentials.

The input is a verification result document. A ``credentialTypeMapper``
transform detects its type; the mapper named after that type then supplies
the metadata transform plus optional date, variable, replacement and
mandatory-field rules.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from intake_common.errors import NotFoundError, ValidationError

from .mapping import MappingEngine, apply_spec, delete_field, get_path, set_path

logger = logging.getLogger(__name__)

TYPE_MAPPER_NAME = "credentialTypeMapper"
CREDENTIAL_DICTIONARY = "credentialDictionary"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


@dataclass(slots=True)
class ReplaceField:
    path: str
    variable_name: str | None = None
    direct: bool = False
    default: Any = None
    dictionary: str | None = None
    field_name: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ReplaceField:
        return cls(
            path=raw["path"],
            variable_name=raw.get("variableName"),
            direct=bool(raw.get("direct", False)),
            default=raw.get("default"),
            dictionary=raw.get("dictionary"),
            field_name=raw.get("fieldName"),
        )


@dataclass(slots=True)
class MetadataConfig:
    mapper: Any
    add_date: bool = False
    date_field: str | None = None
    variables: list[dict[str, Any]] = field(default_factory=list)
    replace_fields: list[ReplaceField] = field(default_factory=list)
    required_fields: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> MetadataConfig:
        if not isinstance(raw, dict) or "mapper" not in raw:
            msg = "Metadata config requires a mapper"
            raise ValidationError(msg)
        return cls(
            mapper=raw["mapper"],
            add_date=bool(raw.get("addDate", False)),
            date_field=raw.get("dateField"),
            variables=list(raw.get("variables") or []),
            replace_fields=[ReplaceField.from_dict(f) for f in raw.get("replaceFields") or []],
            required_fields=list(raw.get("requiredFields") or []),
        )


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def verify_required_fields(required_fields: list[dict[str, Any]], metadata: dict[str, Any]) -> list[str]:
    """Names of required fields for which no group is fully populated."""
    empty_fields: list[str] = []
    for required in required_fields:
        groups = required.get("groups") or []
        satisfied = any(all(not _is_empty(get_path(metadata, p)) for p in group) for group in groups)
        if not satisfied:
            empty_fields.append(required.get("name", ""))
    return empty_fields


class MetadataGenerator:
    def __init__(self, engine: MappingEngine) -> None:
        self._engine = engine

    async def check_type(self, document: dict[str, Any]) -> str | None:
        type_mapper = await self._engine.store.get_mapper(TYPE_MAPPER_NAME)
        if type_mapper is None:
            msg = f"Mapper {TYPE_MAPPER_NAME} not found"
            raise NotFoundError(msg)
        result = self._engine.apply(document, type_mapper, TYPE_MAPPER_NAME)
        detected: str | None = None
        if isinstance(result, dict):
            for key, value in result.items():
                if value:
                    detected = key
        return detected

    @staticmethod
    def load_variables(variables: list[dict[str, Any]], document: dict[str, Any]) -> dict[str, Any]:
        loaded: dict[str, Any] = {}
        for variable in variables:
            value = None
            for option in variable.get("options") or []:
                value = apply_spec(document, option)
                if value:
                    break
            loaded[variable["name"]] = value
        return loaded

    async def _replace_fields(
        self, fields: list[ReplaceField], variables: dict[str, Any], metadata: dict[str, Any], tx_id: str
    ) -> None:
        dictionary: dict[str, Any] | None = None
        for replace in fields:
            variable = variables.get(replace.variable_name) if replace.variable_name else None
            if replace.direct:
                set_path(metadata, replace.path, variable if variable else replace.default)
                continue

            if dictionary is None:
                dictionary = await self._engine.store.get_mapper(CREDENTIAL_DICTIONARY)
                if dictionary is None:
                    logger.error("[%s] Cannot find %s", tx_id, CREDENTIAL_DICTIONARY)
                    continue
            entries = dictionary.get(replace.dictionary or "") or {}
            value = entries.get(str(variable)) if variable is not None else None
            if value:
                set_path(metadata, replace.path, value)
            elif replace.default:
                set_path(metadata, replace.path, replace.default)
            elif replace.field_name:
                delete_field(metadata, replace.path, replace.field_name)

    async def generate(self, document: dict[str, Any], tx_id: str = "") -> dict[str, Any] | None:
        """Build metadata for a verification result document.

        Returns None when the document type is not recognised.

        Raises:
            ValidationError: If a mandatory metadata field is empty
            NotFoundError: If a required mapper does not exist
        """
        detected = await self.check_type(document)
        if detected is None:
            logger.warning("[%s] Type not supported, cannot generate metadata!", tx_id)
            return None

        source_metadata = document.setdefault("metadata", {})
        source_metadata["type"] = detected

        raw_config = await self._engine.store.get_mapper(detected)
        if raw_config is None:
            msg = f"Mapper {detected} not found"
            raise NotFoundError(msg)
        config = MetadataConfig.from_dict(raw_config)

        metadata = self._engine.apply(document, config.mapper, detected)
        if not isinstance(metadata, dict):
            metadata = {}

        if config.add_date and config.date_field:
            timestamp = source_metadata.get(config.date_field)
            if timestamp is not None:
                date = datetime.fromtimestamp(float(timestamp), tz=timezone.utc)
                metadata.setdefault("metadata", {})["date"] = date.strftime(DATE_FORMAT)

        if config.variables:
            variables = self.load_variables(config.variables, document)
            await self._replace_fields(config.replace_fields, variables, metadata, tx_id)

        if config.required_fields:
            empty_fields = verify_required_fields(config.required_fields, metadata)
            if empty_fields:
                msg = f"These mandatory fields are empty: {','.join(empty_fields)}"
                logger.error("[%s] %s", tx_id, msg)
                raise ValidationError(msg)

        return metadata
