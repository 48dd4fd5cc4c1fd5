"""EU Digital COVID Certificates (``HC1:`` base45 / zlib / COSE_Sign1)."""

from __future__ import annotations

import base64
import logging
import time
import zlib
from typing import TYPE_CHECKING, Any

import base45
import cbor2
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from intake_common.crypto import public_key_from_jwk, raw_to_der_signature, verify_ecdsa, verify_rsa_pss
from intake_common.errors import ValidationError

from .base import CredentialFormat, CredType, DecodedCredential, VerificationResult, VerifierPlugin
from .issuer_id import ISSUER_KEY_NOT_FOUND
from .keys import DCC_TRUST_LIST_ID
from .self_attested import SIGNATURE_INVALID, SIGNATURE_VALID

if TYPE_CHECKING:  # pragma: no cover - imported for type checking only
    from .context import VerifierContext

logger = logging.getLogger(__name__)

PREFIX = "HC1:"
COSE_SIGN1_TAG = 18
HEADER_ALG = 1
HEADER_KID = 4
CWT_ISS = 1
CWT_EXP = 4
CWT_IAT = 6
CWT_HCERT = -260
ALG_ES256 = -7
ALG_PS256 = -37
CERTIFICATE_EXPIRED = "Certificate has expired"


def _decode_header(raw: Any) -> dict[Any, Any]:
    if isinstance(raw, bytes):
        return cbor2.loads(raw) if raw else {}
    return raw if isinstance(raw, dict) else {}


class DccVerifier(VerifierPlugin):
    name = "dcc-verifier"
    cred_type = CredType.DCC

    def claims(self, item: Any, extras: dict[str, Any]) -> bool:
        return isinstance(item, str) and item.strip().startswith(PREFIX)

    def decode(self, item: Any, extras: dict[str, Any]) -> DecodedCredential:
        try:
            compressed = base45.b45decode(item.strip()[len(PREFIX):])
            payload = zlib.decompress(compressed) if compressed[:1] == b"\x78" else compressed
            message = cbor2.loads(payload)
            if isinstance(message, cbor2.CBORTag):
                if message.tag != COSE_SIGN1_TAG:
                    msg = f"Unexpected COSE tag {message.tag}"
                    raise ValidationError(msg)
                message = message.value
            protected_bytes, unprotected, claims_bytes, signature = message
            protected = _decode_header(protected_bytes)
            unprotected = _decode_header(unprotected)
            claims = cbor2.loads(claims_bytes)
        except ValidationError:
            raise
        except (ValueError, TypeError, IndexError, zlib.error) as e:
            msg = f"Invalid DCC encoding: {e}"
            raise ValidationError(msg) from e

        hcert = (claims.get(CWT_HCERT) or {}).get(1) if isinstance(claims, dict) else None
        if not isinstance(hcert, dict):
            msg = "DCC payload has no health certificate"
            raise ValidationError(msg)

        metadata = {
            "issuer": claims.get(CWT_ISS),
            "issuedAt": claims.get(CWT_IAT),
            "expiresAt": claims.get(CWT_EXP),
        }
        return DecodedCredential(
            format=CredentialFormat.DCC,
            cred_type=CredType.DCC,
            raw=item,
            document=hcert,
            envelope={
                "protected": protected_bytes if isinstance(protected_bytes, bytes) else b"",
                "payload": claims_bytes,
                "signature": signature,
                "alg": protected.get(HEADER_ALG, unprotected.get(HEADER_ALG)),
                "kid": protected.get(HEADER_KID, unprotected.get(HEADER_KID)),
            },
            metadata={k: v for k, v in metadata.items() if v is not None},
        )

    async def verify(
        self, decoded: DecodedCredential, context: VerifierContext, extras: dict[str, Any]
    ) -> VerificationResult:
        envelope = decoded.envelope
        metadata = dict(decoded.metadata)
        expires_at = metadata.get("expiresAt")
        if isinstance(expires_at, (int, float)) and expires_at < time.time():
            return VerificationResult(False, CredType.DCC, CERTIFICATE_EXPIRED, metadata=metadata)

        kid = envelope.get("kid")
        if not isinstance(kid, bytes):
            return VerificationResult(False, CredType.DCC, ISSUER_KEY_NOT_FOUND, metadata=metadata)
        jwk = await context.keys.resolve(DCC_TRUST_LIST_ID, base64.b64encode(kid).decode("ascii"))
        if jwk is None:
            return VerificationResult(False, CredType.DCC, ISSUER_KEY_NOT_FOUND, metadata=metadata)

        try:
            public_key = public_key_from_jwk(jwk)
        except ValidationError as e:
            return VerificationResult(False, CredType.DCC, e.message, metadata=metadata)

        sig_structure = cbor2.dumps(["Signature1", envelope["protected"], b"", envelope["payload"]])
        alg = envelope.get("alg")
        signature = envelope.get("signature") or b""
        if alg == ALG_ES256 and isinstance(public_key, ec.EllipticCurvePublicKey):
            try:
                der = raw_to_der_signature(signature)
            except ValidationError:
                return VerificationResult(False, CredType.DCC, SIGNATURE_INVALID, metadata=metadata)
            valid = verify_ecdsa(sig_structure, der, public_key)
        elif alg == ALG_PS256 and isinstance(public_key, rsa.RSAPublicKey):
            valid = verify_rsa_pss(sig_structure, signature, public_key)
        else:
            return VerificationResult(
                False, CredType.DCC, f"Unsupported signature algorithm {alg}", metadata=metadata
            )

        if not valid:
            return VerificationResult(False, CredType.DCC, SIGNATURE_INVALID, metadata=metadata)
        return VerificationResult(True, CredType.DCC, SIGNATURE_VALID, credential=decoded.document, metadata=metadata)
