"""Shared types for credential verifier plugins."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover - imported for type checking only
    from .context import VerifierContext


class CredType:
    """Credential type labels reported in verification results."""

    CONSENT_RECEIPT = "CONSENT_RECEIPT"
    CONSENT_REVOKE = "CONSENT_REVOKE"
    COS_ACCESS = "COS_ACCESS"
    ID = "ID"
    DCC = "DCC"
    SHC = "SHC"
    OA = "OA"
    VC = "VC"
    UNKNOWN = "UNKNOWN"


class CredentialFormat(str, Enum):
    SELF_ATTESTED = "self_attested"
    ISSUER_ID = "issuer_id"
    DCC = "dcc"
    SHC = "shc"
    OPEN_ATTESTATION = "open_attestation"
    VERIFIABLE_CREDENTIAL = "verifiable_credential"
    UNKNOWN = "unknown"


UNKNOWN_CREDENTIAL_MESSAGE = "Unknown Credential Type"


@dataclass(slots=True)
class DecodedCredential:
    """A raw bundle item decoded by the plugin that owns its wire format.

    ``document`` is the logical credential (the health certificate for DCC,
    the JWS payload for SHC, the item itself for JSON formats). ``envelope``
    keeps format-specific material needed for signature checks.
    """

    format: CredentialFormat
    cred_type: str
    raw: Any
    document: dict[str, Any] = field(default_factory=dict)
    envelope: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def unknown(cls, raw: Any) -> DecodedCredential:
        return cls(format=CredentialFormat.UNKNOWN, cred_type=CredType.UNKNOWN, raw=raw)


@dataclass(slots=True)
class VerificationResult:
    success: bool
    cred_type: str
    message: str
    credential: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    error: str | None = None

    @classmethod
    def unsupported(cls) -> VerificationResult:
        return cls(success=False, cred_type=CredType.UNKNOWN, message=UNKNOWN_CREDENTIAL_MESSAGE)

    def to_document(self) -> dict[str, Any]:
        """Plain document form used as metadata generation input."""
        document: dict[str, Any] = {
            "success": self.success,
            "credType": self.cred_type,
            "message": self.message,
            "metadata": dict(self.metadata or {}),
        }
        if self.credential is not None:
            document["credential"] = self.credential
        if self.error is not None:
            document["error"] = self.error
        return document


class VerifierPlugin(ABC):
    """Claim, decode and verify one family of credential encodings."""

    name: str = "verifier"

    @abstractmethod
    def claims(self, item: Any, extras: dict[str, Any]) -> bool:
        """Return True if this plugin owns ``item``."""

    @abstractmethod
    def decode(self, item: Any, extras: dict[str, Any]) -> DecodedCredential:
        """Decode a claimed item. Raises ``ValidationError`` on malformed input."""

    @abstractmethod
    async def verify(
        self, decoded: DecodedCredential, context: VerifierContext, extras: dict[str, Any]
    ) -> VerificationResult:
        """Check the signature of a decoded item."""
