"""Declarative document mapping backed by persisted mappers.

A mapper document has the shape ``{"mapperName": ..., "mapper": spec}``. A
spec is either a JMESPath expression, or a dict/list whose string leaves are
JMESPath expressions evaluated against the input document. Non-string leaves
are copied as literals; use JMESPath raw strings (``'text'``) for literal text.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Any

import jmespath
from jmespath.exceptions import JMESPathError
from jmespath.parser import ParsedResult

from intake_common.cache import TTLCache
from intake_common.config import CacheSettings
from intake_common.errors import NotFoundError, ValidationError
from intake_common.infrastructure import DatabaseManager, MapperRepository

from .verification.base import CredType

logger = logging.getLogger(__name__)

SHC_MAPPER_ID = "shcmapper"
DCC_MAPPER_ID = "dccmapper"

_PATH_TOKEN = re.compile(r"([^.\[\]]+)|\[(\d+)\]")


class MapperCache(TTLCache[dict[str, Any]]):
    """Cache of full mapper documents keyed by mapper name."""

    @classmethod
    def from_settings(cls, settings: CacheSettings) -> MapperCache:
        return cls(max_size=settings.max_size, ttl_seconds=settings.ttl_seconds, enabled=settings.enabled)


class MapperStore:
    """Mapper CRUD with a read-through cache."""

    def __init__(self, database: DatabaseManager, cache: MapperCache | None = None) -> None:
        self._database = database
        self._cache = cache or MapperCache()

    async def create(self, mapper_name: str, document: dict[str, Any]) -> None:
        document = {**document, "mapperName": mapper_name}
        async with self._database.session_scope() as session:
            await MapperRepository(session).create(mapper_name, document)
        self._cache.set(mapper_name, document)
        logger.info("Created mapper %s", mapper_name)

    async def update(self, mapper_name: str, document: dict[str, Any]) -> None:
        document = {**document, "mapperName": mapper_name}
        async with self._database.session_scope() as session:
            await MapperRepository(session).update(mapper_name, document)
        self._cache.invalidate(mapper_name)
        logger.info("Updated mapper %s", mapper_name)

    async def delete(self, mapper_name: str) -> bool:
        async with self._database.session_scope() as session:
            deleted = await MapperRepository(session).delete(mapper_name)
        self._cache.invalidate(mapper_name)
        if not deleted:
            logger.warning("Mapper %s not found for delete", mapper_name)
        return deleted

    async def get(self, mapper_name: str) -> dict[str, Any] | None:
        """Full mapper document, or None when no such mapper exists."""

        async def _load() -> dict[str, Any] | None:
            async with self._database.session_scope() as session:
                record = await MapperRepository(session).get(mapper_name)
            if record is None:
                logger.warning("Mapper %s not found", mapper_name)
                return None
            return dict(record.document)

        return await self._cache.get_or_load(mapper_name, _load)

    async def get_mapper(self, mapper_name: str) -> Any:
        document = await self.get(mapper_name)
        if document is None:
            return None
        return document.get("mapper")

    async def list_all(self) -> list[dict[str, Any]]:
        async with self._database.session_scope() as session:
            records = await MapperRepository(session).list_all()
        return [dict(r.document) for r in records]


@lru_cache(maxsize=1024)
def _compile(expression: str) -> ParsedResult:
    return jmespath.compile(expression)


def apply_spec(document: Any, spec: Any) -> Any:
    """Evaluate a mapping spec against ``document``."""
    if isinstance(spec, str):
        return _compile(spec).search(document)
    if isinstance(spec, dict):
        return {key: apply_spec(document, value) for key, value in spec.items()}
    if isinstance(spec, list):
        return [apply_spec(document, value) for value in spec]
    return spec


class MappingEngine:
    def __init__(self, store: MapperStore) -> None:
        self._store = store

    @property
    def store(self) -> MapperStore:
        return self._store

    def apply(self, document: Any, spec: Any, mapper_name: str = "<inline>") -> Any:
        try:
            return apply_spec(document, spec)
        except JMESPathError as e:
            msg = f"Failed to transform with mapper {mapper_name}: {e}"
            raise ValidationError(msg) from e

    async def transform(self, document: Any, mapper_name: str) -> Any:
        """Apply the persisted mapper ``mapper_name`` to ``document``."""
        spec = await self._store.get_mapper(mapper_name)
        if spec is None:
            msg = f"Mapper {mapper_name} not found"
            raise NotFoundError(msg)
        result = self.apply(document, spec, mapper_name)
        return {} if result is None else result


def get_mapper_id(credential: dict[str, Any], cred_type: str) -> str | None:
    if cred_type == CredType.SHC:
        return SHC_MAPPER_ID
    if cred_type == CredType.DCC:
        return DCC_MAPPER_ID
    schema = credential.get("credentialSchema") if isinstance(credential, dict) else None
    return schema.get("id") if isinstance(schema, dict) else None


def get_mapper_name(credential: dict[str, Any], cred_type: str, mappers: dict[str, Any]) -> str | None:
    """Resolve the upload mapper configured for a credential, if any."""
    if not mappers:
        return None
    mapper_id = get_mapper_id(credential, cred_type)
    if mapper_id is None:
        return None
    upload = mappers.get("upload")
    if isinstance(upload, dict) and isinstance(upload.get(mapper_id), str):
        return upload[mapper_id]
    fallback = mappers.get(mapper_id)
    return fallback if isinstance(fallback, str) else None


def split_path(path: str) -> list[str | int]:
    """Split ``$.a.b[0].c`` or ``a.b.0.c`` into keys and indexes."""
    if path.startswith("$"):
        path = path[1:].lstrip(".")
    tokens: list[str | int] = []
    for name, index in _PATH_TOKEN.findall(path):
        if index:
            tokens.append(int(index))
        elif name.isdigit():
            tokens.append(int(name))
        else:
            tokens.append(name)
    return tokens


def get_path(document: Any, path: str, default: Any = None) -> Any:
    current = document
    for token in split_path(path):
        if isinstance(token, int) and isinstance(current, list) and -len(current) <= token < len(current):
            current = current[token]
        elif isinstance(current, dict) and str(token) in current:
            current = current[str(token)]
        else:
            return default
    return current


def set_path(document: dict[str, Any], path: str, value: Any) -> None:
    """Set ``value`` at ``path``, creating intermediate objects as needed."""
    tokens = split_path(path)
    if not tokens:
        msg = f"Invalid path: {path}"
        raise ValidationError(msg)
    current: Any = document
    for token, following in zip(tokens, tokens[1:]):
        if isinstance(current, list) and isinstance(token, int):
            while len(current) <= token:
                current.append(None)
            if not isinstance(current[token], (dict, list)):
                current[token] = [] if isinstance(following, int) else {}
            current = current[token]
            continue
        key = str(token)
        if not isinstance(current.get(key), (dict, list)):
            current[key] = [] if isinstance(following, int) else {}
        current = current[key]
    last = tokens[-1]
    if isinstance(current, list) and isinstance(last, int):
        while len(current) <= last:
            current.append(None)
        current[last] = value
    else:
        current[str(last)] = value


def delete_field(document: dict[str, Any], path: str, field_name: str) -> None:
    """Remove ``field_name`` from the object that contains ``path``."""
    tokens = split_path(path)
    parent = get_path(document, ".".join(str(t) for t in tokens[:-1])) if len(tokens) > 1 else document
    if isinstance(parent, dict):
        parent.pop(field_name, None)
