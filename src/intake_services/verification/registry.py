"""Verifier plugin registry and dispatch."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from intake_common.errors import IntakeError, error_category, error_message

from .base import CredType, DecodedCredential, VerificationResult, VerifierPlugin

if TYPE_CHECKING:  # pragma: no cover - imported for type checking only
    from .context import VerifierContext

logger = logging.getLogger(__name__)


def _failed(cred_type: str, exc: Exception) -> VerificationResult:
    return VerificationResult(
        success=False,
        cred_type=cred_type,
        message=error_message(exc),
        error=error_category(exc).value,
    )


class VerifierRegistry:
    """Ordered set of plugins; the first registered claimant owns an item."""

    def __init__(self, plugins: Iterable[VerifierPlugin] = (), disabled: Iterable[str] = ()) -> None:
        self._disabled = set(disabled)
        self._plugins: list[VerifierPlugin] = []
        for plugin in plugins:
            self.register(plugin)

    @property
    def plugins(self) -> list[VerifierPlugin]:
        return list(self._plugins)

    def register(self, plugin: VerifierPlugin) -> None:
        if plugin.name in self._disabled:
            logger.debug("Verifier %s is disabled", plugin.name)
            return
        if any(p.name == plugin.name for p in self._plugins):
            msg = f"Verifier {plugin.name} already registered"
            raise ValueError(msg)
        self._plugins.append(plugin)

    def find(self, item: Any, extras: dict[str, Any] | None = None) -> VerifierPlugin | None:
        extras = extras or {}
        claimants = [p for p in self._plugins if p.claims(item, extras)]
        if not claimants:
            return None
        if len(claimants) > 1:
            logger.warning(
                "Verifiers %s all claim the same item, using %s",
                ", ".join(p.name for p in claimants),
                claimants[0].name,
            )
        return claimants[0]

    def decode(self, item: Any, extras: dict[str, Any] | None = None) -> DecodedCredential:
        """Decode ``item`` with its owning plugin, or return the UNKNOWN variant."""
        extras = extras or {}
        plugin = self.find(item, extras)
        if plugin is None:
            return DecodedCredential.unknown(item)
        return plugin.decode(item, extras)

    async def verify(
        self,
        item: Any,
        context: VerifierContext,
        extras: dict[str, Any] | None = None,
        return_credential: bool = True,
    ) -> VerificationResult:
        """Verify one bundle item. Plugin errors of any kind become a failed result."""
        extras = extras or {}
        try:
            plugin = self.find(item, extras)
        except Exception:
            logger.exception("Unable to match a verifier to item")
            return VerificationResult.unsupported()
        if plugin is None:
            return VerificationResult.unsupported()

        try:
            decoded = plugin.decode(item, extras)
        except IntakeError as e:
            logger.warning("Verifier %s could not decode item: %s", plugin.name, e.message)
            return _failed(getattr(plugin, "cred_type", CredType.UNKNOWN), e)
        except Exception as e:
            logger.exception("Verifier %s raised while decoding item", plugin.name)
            return _failed(getattr(plugin, "cred_type", CredType.UNKNOWN), e)

        try:
            result = await plugin.verify(decoded, context, extras)
        except IntakeError as e:
            logger.error("Verifier %s failed for %s item: %s", plugin.name, decoded.cred_type, e.message)
            return _failed(decoded.cred_type, e)
        except Exception as e:
            logger.exception("Verifier %s raised while verifying %s item", plugin.name, decoded.cred_type)
            return _failed(decoded.cred_type, e)

        if not return_credential:
            result.credential = None
        return result
