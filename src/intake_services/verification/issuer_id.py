"""Issuer-signed JSON credentials: ID credentials and generic verifiable credentials."""

from __future__ import annotations

import copy
import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from cryptography.hazmat.primitives.asymmetric import ec, rsa

from intake_common.crypto import (
    b64decode_any,
    compact_json,
    public_key_from_jwk,
    verify_ecdsa,
    verify_rsa_pss,
)
from intake_common.errors import ValidationError

from .base import CredentialFormat, CredType, DecodedCredential, VerificationResult, VerifierPlugin
from .self_attested import SIGNATURE_INVALID, SIGNATURE_UNDEFINED, SIGNATURE_VALID

if TYPE_CHECKING:  # pragma: no cover - imported for type checking only
    from .context import VerifierContext

logger = logging.getLogger(__name__)

ISSUER_KEY_NOT_FOUND = "Issuer's public key was not found"
CREDENTIAL_EXPIRED = "Credential has expired"
UNSIGNED_FIELDS = ("obfuscation",)


def parse_json_item(item: Any) -> dict[str, Any] | None:
    """An object, or a base64 string holding one."""
    if isinstance(item, dict):
        return item
    if not isinstance(item, str) or not item or item.lstrip().startswith(("HC1:", "shc:/")):
        return None
    try:
        parsed = json.loads(b64decode_any(item))
    except (ValidationError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def subject_type(document: dict[str, Any]) -> Any:
    subject = document.get("credentialSubject")
    return subject.get("type") if isinstance(subject, dict) else None


def issuer_of(document: dict[str, Any]) -> str | None:
    issuer = document.get("issuer")
    if isinstance(issuer, dict):
        issuer = issuer.get("id")
    return issuer if isinstance(issuer, str) else None


def _expired(document: dict[str, Any]) -> bool:
    expiration = document.get("expirationDate")
    if not isinstance(expiration, str):
        return False
    try:
        expires_at = datetime.fromisoformat(expiration.replace("Z", "+00:00"))
    except ValueError:
        return False
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at < datetime.now(timezone.utc)


class IssuerIdVerifier(VerifierPlugin):
    """ECDSA-signed ID credentials whose keys are published by the issuer."""

    name = "id-verifier"
    cred_type = CredType.ID
    credential_format = CredentialFormat.ISSUER_ID

    def claims(self, item: Any, extras: dict[str, Any]) -> bool:
        document = parse_json_item(item)
        return document is not None and subject_type(document) == "id"

    def decode(self, item: Any, extras: dict[str, Any]) -> DecodedCredential:
        document = parse_json_item(item)
        if document is None:
            msg = "Credential is not a JSON document"
            raise ValidationError(msg)
        metadata = {
            "issuer": issuer_of(document),
            "issuanceDate": document.get("issuanceDate"),
            "expirationDate": document.get("expirationDate"),
        }
        return DecodedCredential(
            format=self.credential_format,
            cred_type=self.cred_type,
            raw=item,
            document=document,
            metadata={k: v for k, v in metadata.items() if v is not None},
        )

    def _signed_bytes(self, document: dict[str, Any]) -> bytes:
        unsigned = copy.deepcopy(document)
        if isinstance(unsigned.get("proof"), dict):
            unsigned["proof"].pop("signatureValue", None)
        for field_name in UNSIGNED_FIELDS:
            unsigned.pop(field_name, None)
        return compact_json(unsigned, sort_keys=True)

    async def verify(
        self, decoded: DecodedCredential, context: VerifierContext, extras: dict[str, Any]
    ) -> VerificationResult:
        document = decoded.document
        metadata = dict(decoded.metadata)
        proof = document.get("proof") if isinstance(document.get("proof"), dict) else {}
        signature = proof.get("signatureValue")
        if not signature:
            return VerificationResult(False, self.cred_type, SIGNATURE_UNDEFINED, metadata=metadata)

        issuer_id = issuer_of(document)
        creator = proof.get("creator")
        jwk = await context.keys.resolve(issuer_id, creator) if issuer_id and creator else None
        if jwk is None:
            return VerificationResult(False, self.cred_type, ISSUER_KEY_NOT_FOUND, metadata=metadata)

        try:
            public_key = public_key_from_jwk(jwk)
            signature_bytes = b64decode_any(signature)
        except ValidationError as e:
            return VerificationResult(False, self.cred_type, e.message, metadata=metadata)

        data = self._signed_bytes(document)
        if isinstance(public_key, ec.EllipticCurvePublicKey):
            valid = verify_ecdsa(data, signature_bytes, public_key)
        elif isinstance(public_key, rsa.RSAPublicKey):
            valid = verify_rsa_pss(data, signature_bytes, public_key)
        else:  # pragma: no cover - public_key_from_jwk only returns EC or RSA keys
            valid = False

        if not valid:
            return VerificationResult(False, self.cred_type, SIGNATURE_INVALID, metadata=metadata)
        if _expired(document):
            return VerificationResult(False, self.cred_type, CREDENTIAL_EXPIRED, metadata=metadata)
        return VerificationResult(True, self.cred_type, SIGNATURE_VALID, credential=document, metadata=metadata)


class GenericVcVerifier(IssuerIdVerifier):
    """Other W3C-shaped credentials signed with a JWK-resolvable ``proof.creator``."""

    name = "vc-verifier"
    cred_type = CredType.VC
    credential_format = CredentialFormat.VERIFIABLE_CREDENTIAL

    def claims(self, item: Any, extras: dict[str, Any]) -> bool:
        if not isinstance(item, dict) or "consentId" in item or "consentReceiptID" in item:
            return False
        proof = item.get("proof")
        return (
            isinstance(proof, dict)
            and bool(proof.get("creator"))
            and isinstance(item.get("credentialSubject"), dict)
            and subject_type(item) != "id"
        )
