"""Credential verification plugins."""

from __future__ import annotations

from collections.abc import Iterable

from .base import (
    UNKNOWN_CREDENTIAL_MESSAGE,
    CredentialFormat,
    CredType,
    DecodedCredential,
    VerificationResult,
    VerifierPlugin,
)
from .context import VerifierContext, VerifierContextRegistry
from .dcc import DccVerifier
from .issuer_id import GenericVcVerifier, IssuerIdVerifier
from .keys import DCC_TRUST_LIST_ID, IssuerKeyCache, IssuerKeyResolver, find_key
from .open_attestation import OpenAttestationVerifier
from .registry import VerifierRegistry
from .self_attested import SelfAttestedVerifier
from .shc import ShcVerifier


def default_registry(disabled: Iterable[str] = ()) -> VerifierRegistry:
    """Registry with every built-in plugin in dispatch order."""
    return VerifierRegistry(
        [
            SelfAttestedVerifier(),
            IssuerIdVerifier(),
            DccVerifier(),
            ShcVerifier(),
            OpenAttestationVerifier(),
            GenericVcVerifier(),
        ],
        disabled=disabled,
    )


__all__ = [
    "DCC_TRUST_LIST_ID",
    "UNKNOWN_CREDENTIAL_MESSAGE",
    "CredType",
    "CredentialFormat",
    "DccVerifier",
    "DecodedCredential",
    "GenericVcVerifier",
    "IssuerIdVerifier",
    "IssuerKeyCache",
    "IssuerKeyResolver",
    "OpenAttestationVerifier",
    "SelfAttestedVerifier",
    "ShcVerifier",
    "VerificationResult",
    "VerifierContext",
    "VerifierContextRegistry",
    "VerifierPlugin",
    "VerifierRegistry",
    "default_registry",
    "find_key",
]
