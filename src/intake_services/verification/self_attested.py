"""Holder-signed documents: consent receipts, revocations and storage access grants."""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any

from intake_common.crypto import b64decode_any, compact_json, load_rsa_public_key, verify_rsa_pss
from intake_common.errors import ValidationError

from .base import CredentialFormat, CredType, DecodedCredential, VerificationResult, VerifierPlugin

if TYPE_CHECKING:  # pragma: no cover - imported for type checking only
    from .context import VerifierContext

logger = logging.getLogger(__name__)

SIGNATURE_UNDEFINED = "Signature is undefined"
SIGNATURE_VALID = "Certificate's signature passed verification"
SIGNATURE_INVALID = "Certificate's signature is not valid"
UNKNOWN_KEY_TYPE = "Unknown public key type.  Expected pkcs1 or spki"

_ARMOR = {
    "pkcs1": "RSA PUBLIC KEY",
    "spki": "PUBLIC KEY",
}


def format_public_key(public_key: str, key_type: str) -> str:
    """Wrap a bare base64 RSA key in PEM armor for ``pkcs1`` or ``spki``."""
    label = _ARMOR.get(key_type)
    if label is None:
        raise ValidationError(UNKNOWN_KEY_TYPE)
    body = "".join(
        line for line in public_key.replace("\r", "").split("\n") if not line.startswith("-----")
    ).strip()
    chunks = [body[i:i + 64] for i in range(0, len(body), 64)]
    return f"-----BEGIN {label}-----\n" + "\n".join(chunks) + f"\n-----END {label}-----\n"


def self_attested_kind(item: Any) -> str | None:
    if not isinstance(item, dict):
        return None
    if isinstance(item.get("proof"), dict):
        if "consentId" in item or "consentReceiptID" in item:
            return CredType.CONSENT_RECEIPT
        if "consentRevokeId" in item:
            return CredType.CONSENT_REVOKE
    cos_access = item.get("cosAccess")
    if isinstance(cos_access, dict) and isinstance(cos_access.get("proof"), dict):
        return CredType.COS_ACCESS
    return None


class SelfAttestedVerifier(VerifierPlugin):
    """RSA-PSS signatures made with the holder's own key."""

    name = "self-attested-verifier"
    cred_type = CredType.CONSENT_RECEIPT

    def claims(self, item: Any, extras: dict[str, Any]) -> bool:
        if not extras.get("publicKey") or not extras.get("publicKeyType"):
            return False
        return self_attested_kind(item) is not None

    def decode(self, item: Any, extras: dict[str, Any]) -> DecodedCredential:
        kind = self_attested_kind(item)
        if kind is None:
            msg = "Item is not a self-attested document"
            raise ValidationError(msg)
        document = item["cosAccess"] if kind == CredType.COS_ACCESS else item
        metadata = {
            key: item[key]
            for key in ("consentId", "consentReceiptID", "consentRevokeId", "consentTimestamp")
            if key in item
        }
        return DecodedCredential(
            format=CredentialFormat.SELF_ATTESTED,
            cred_type=kind,
            raw=item,
            document=document,
            metadata=metadata,
        )

    async def verify(
        self, decoded: DecodedCredential, context: VerifierContext, extras: dict[str, Any]
    ) -> VerificationResult:
        kind = decoded.cred_type
        signature = (decoded.document.get("proof") or {}).get("signatureValue")
        if not signature:
            return VerificationResult(False, kind, SIGNATURE_UNDEFINED)

        try:
            pem = format_public_key(str(extras["publicKey"]), str(extras["publicKeyType"]))
            public_key = load_rsa_public_key(pem)
            signature_bytes = b64decode_any(signature)
        except ValidationError as e:
            return VerificationResult(False, kind, e.message)

        unsigned = copy.deepcopy(decoded.document)
        unsigned["proof"].pop("signatureValue", None)
        if verify_rsa_pss(compact_json(unsigned), signature_bytes, public_key):
            return VerificationResult(
                True, kind, SIGNATURE_VALID, credential=decoded.raw, metadata=dict(decoded.metadata)
            )
        logger.debug("Self-attested %s signature mismatch", kind)
        return VerificationResult(False, kind, SIGNATURE_INVALID, metadata=dict(decoded.metadata))
