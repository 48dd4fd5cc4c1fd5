"""Issuer public key resolution."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from intake_common.cache import TTLCache

logger = logging.getLogger(__name__)

DCC_TRUST_LIST_ID = "dcc"


class IssuerKeyResolver(Protocol):
    """Looks up issuer keys for an organization.

    ``key_id=None`` asks only whether the issuer identity is known and returns
    any of its keys.
    """

    async def resolve_key(self, issuer_id: str, entity_id: str, key_id: str | None) -> dict[str, Any] | None: ...


def find_key(issuer: dict[str, Any], key_id: str | None) -> dict[str, Any] | None:
    """Pick a JWK from a published issuer document ``{"publicKey": [{id, publicKeyJwk}]}``."""
    for key in issuer.get("publicKey") or []:
        if not isinstance(key, dict):
            continue
        if key_id is None or key.get("id") == key_id:
            jwk = key.get("publicKeyJwk")
            if isinstance(jwk, dict):
                return jwk
    return None


class IssuerKeyCache:
    """Per-organization view of a resolver with a read-through cache."""

    def __init__(self, resolver: IssuerKeyResolver, entity_id: str, cache: TTLCache[dict[str, Any]] | None = None) -> None:
        self._resolver = resolver
        self._entity_id = entity_id
        self._cache: TTLCache[dict[str, Any]] = cache if cache is not None else TTLCache()

    @property
    def entity_id(self) -> str:
        return self._entity_id

    async def resolve(self, issuer_id: str, key_id: str | None = None) -> dict[str, Any] | None:
        async def _load() -> dict[str, Any] | None:
            key = await self._resolver.resolve_key(issuer_id, self._entity_id, key_id)
            if key is None:
                logger.warning("No key %s for issuer %s (org %s)", key_id, issuer_id, self._entity_id)
            return key

        return await self._cache.get_or_load((issuer_id, key_id), _load)

    def clear(self) -> None:
        self._cache.clear()
