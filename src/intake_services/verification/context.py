"""Per-organization verifier contexts."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from typing import Any

from intake_common.cache import TTLCache
from intake_common.config import CacheSettings

from ..organizations import EntityConfig
from .base import VerificationResult
from .keys import IssuerKeyCache, IssuerKeyResolver
from .registry import VerifierRegistry

logger = logging.getLogger(__name__)


class VerifierContext:
    """Verifier plugins plus the issuer-key cache of one organization."""

    def __init__(
        self,
        entity: str,
        registry: VerifierRegistry,
        keys: IssuerKeyCache,
        config_id: str | None = None,
        organization_id: str | None = None,
        customer_id: str | None = None,
    ) -> None:
        self.entity = entity
        self.registry = registry
        self.keys = keys
        self.config_id = config_id
        self.organization_id = organization_id or entity
        self.customer_id = customer_id

    async def verify(
        self, item: Any, extras: dict[str, Any] | None = None, return_credential: bool = True
    ) -> VerificationResult:
        return await self.registry.verify(item, self, extras, return_credential)


class VerifierContextRegistry:
    """Builds each organization's context once and keeps it for the process."""

    def __init__(
        self,
        registry_factory: Callable[[], VerifierRegistry],
        resolver: IssuerKeyResolver,
        cache_settings: CacheSettings | None = None,
        default_config_id: str | None = None,
    ) -> None:
        self._registry_factory = registry_factory
        self._resolver = resolver
        self._cache_settings = cache_settings or CacheSettings()
        self._default_config_id = default_config_id
        self._contexts: dict[str, VerifierContext] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, entity: str) -> bool:
        return entity in self._contexts

    def _build(self, config: EntityConfig) -> VerifierContext:
        settings = self._cache_settings
        key_cache: TTLCache[dict[str, Any]] = TTLCache(
            max_size=settings.max_size, ttl_seconds=settings.ttl_seconds, enabled=settings.enabled
        )
        logger.info("Building verifier context for org %s", config.entity)
        return VerifierContext(
            entity=config.entity,
            registry=self._registry_factory(),
            keys=IssuerKeyCache(self._resolver, config.entity, key_cache),
            config_id=config.verifier_config_id or self._default_config_id,
            organization_id=config.verifier_org_id,
            customer_id=config.verifier_cust_id,
        )

    async def get(self, config: EntityConfig) -> VerifierContext:
        context = self._contexts.get(config.entity)
        if context is not None:
            return context
        async with self._lock:
            context = self._contexts.get(config.entity)
            if context is None:
                context = self._build(config)
                self._contexts[config.entity] = context
            return context

    def invalidate(self, entity: str) -> None:
        context = self._contexts.pop(entity, None)
        if context is not None:
            context.keys.clear()
            logger.info("Invalidated verifier context for org %s", entity)

    async def refresh(self, config: EntityConfig) -> VerifierContext:
        self.invalidate(config.entity)
        return await self.get(config)

    async def preload(self, configs: Iterable[EntityConfig]) -> int:
        """Build contexts for organizations with a verifier configuration."""
        loaded = 0
        for config in configs:
            if config.verifier_config_id and config.verifier_org_id:
                logger.info("Loading verifier config id %s for org %s", config.verifier_config_id, config.entity)
                await self.get(config)
                loaded += 1
        return loaded
