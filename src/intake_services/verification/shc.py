"""SMART Health Cards (``shc:/`` numeric JWS with a raw DEFLATE payload)."""

from __future__ import annotations

import json
import logging
import zlib
from typing import TYPE_CHECKING, Any

from jwt.api_jws import PyJWS
from jwt.exceptions import InvalidTokenError

from intake_common.crypto import b64decode_any, public_key_from_jwk
from intake_common.errors import ValidationError

from .base import CredentialFormat, CredType, DecodedCredential, VerificationResult, VerifierPlugin
from .issuer_id import ISSUER_KEY_NOT_FOUND
from .self_attested import SIGNATURE_INVALID, SIGNATURE_VALID

if TYPE_CHECKING:  # pragma: no cover - imported for type checking only
    from .context import VerifierContext

logger = logging.getLogger(__name__)

PREFIX = "shc:/"
NUMERIC_OFFSET = 45


def numeric_to_jws(numeric: str) -> str:
    if "/" in numeric:
        msg = "Chunked SMART Health Cards are not supported"
        raise ValidationError(msg)
    if len(numeric) % 2 or not numeric.isdigit():
        msg = "Invalid SMART Health Card numeric encoding"
        raise ValidationError(msg)
    return "".join(chr(int(numeric[i:i + 2]) + NUMERIC_OFFSET) for i in range(0, len(numeric), 2))


def inflate(data: bytes) -> bytes:
    try:
        return zlib.decompress(data, -15)
    except zlib.error as e:
        msg = f"Invalid SMART Health Card payload: {e}"
        raise ValidationError(msg) from e


class ShcVerifier(VerifierPlugin):
    name = "shc-verifier"
    cred_type = CredType.SHC

    def claims(self, item: Any, extras: dict[str, Any]) -> bool:
        return isinstance(item, str) and item.strip().startswith(PREFIX)

    def decode(self, item: Any, extras: dict[str, Any]) -> DecodedCredential:
        jws = numeric_to_jws(item.strip()[len(PREFIX):])
        parts = jws.split(".")
        if len(parts) != 3:
            msg = "SMART Health Card is not a compact JWS"
            raise ValidationError(msg)
        try:
            header = json.loads(b64decode_any(parts[0]))
            raw_payload = b64decode_any(parts[1])
            if isinstance(header, dict) and header.get("zip") == "DEF":
                raw_payload = inflate(raw_payload)
            payload = json.loads(raw_payload)
        except ValueError as e:
            msg = f"Invalid SMART Health Card JSON: {e}"
            raise ValidationError(msg) from e
        if not isinstance(header, dict) or not isinstance(payload, dict):
            msg = "Invalid SMART Health Card structure"
            raise ValidationError(msg)

        metadata = {"issuer": payload.get("iss"), "issuedAt": payload.get("nbf")}
        return DecodedCredential(
            format=CredentialFormat.SHC,
            cred_type=CredType.SHC,
            raw=item,
            document=payload,
            envelope={"jws": jws, "header": header},
            metadata={k: v for k, v in metadata.items() if v is not None},
        )

    async def verify(
        self, decoded: DecodedCredential, context: VerifierContext, extras: dict[str, Any]
    ) -> VerificationResult:
        metadata = dict(decoded.metadata)
        issuer = decoded.document.get("iss")
        kid = decoded.envelope["header"].get("kid")
        jwk = await context.keys.resolve(issuer, kid) if issuer and kid else None
        if jwk is None:
            return VerificationResult(False, CredType.SHC, ISSUER_KEY_NOT_FOUND, metadata=metadata)

        try:
            public_key = public_key_from_jwk(jwk)
        except ValidationError as e:
            return VerificationResult(False, CredType.SHC, e.message, metadata=metadata)

        try:
            PyJWS().decode_complete(decoded.envelope["jws"], key=public_key, algorithms=["ES256"])
        except InvalidTokenError as e:
            logger.debug("SHC signature rejected: %s", e)
            return VerificationResult(False, CredType.SHC, SIGNATURE_INVALID, metadata=metadata)
        return VerificationResult(True, CredType.SHC, SIGNATURE_VALID, credential=decoded.document, metadata=metadata)
