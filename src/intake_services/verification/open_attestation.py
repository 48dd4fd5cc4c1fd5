"""OpenAttestation v2 documents: salted data, keccak target hash and merkle proof."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from Crypto.Hash import keccak

from intake_common.crypto import compact_json
from intake_common.errors import ValidationError

from .base import CredentialFormat, CredType, DecodedCredential, VerificationResult, VerifierPlugin
from .issuer_id import ISSUER_KEY_NOT_FOUND

if TYPE_CHECKING:  # pragma: no cover - imported for type checking only
    from .context import VerifierContext

logger = logging.getLogger(__name__)

DOCUMENT_INTEGRITY_VALID = "Document integrity and issuer identity passed verification"
DOCUMENT_INTEGRITY_INVALID = "Document has been tampered with"
IDENTITY_FIELDS = ("documentStore", "certificateStore", "tokenRegistry")


def keccak256(data: bytes) -> str:
    return keccak.new(digest_bits=256, data=data).hexdigest()


def flatten(value: Any, prefix: str = "") -> dict[str, Any]:
    """Dot-path leaves of nested objects and arrays."""
    if isinstance(value, dict) and value:
        items = value.items()
    elif isinstance(value, list) and value:
        items = ((str(i), v) for i, v in enumerate(value))
    else:
        return {prefix: value} if prefix else {}
    flat: dict[str, Any] = {}
    for key, child in items:
        flat.update(flatten(child, f"{prefix}.{key}" if prefix else key))
    return flat


def digest_document(data: dict[str, Any], obfuscated: list[str] | None = None) -> str:
    hashes = [keccak256(compact_json({path: leaf})) for path, leaf in flatten(data).items()]
    hashes.extend(obfuscated or [])
    return keccak256(compact_json(sorted(hashes)))


def combine_hashes(first: str, second: str) -> str:
    left, right = sorted((bytes.fromhex(first), bytes.fromhex(second)))
    return keccak256(left + right)


def check_proof(proof: list[str], root: str, leaf: str) -> bool:
    current = leaf
    for sibling in proof:
        current = combine_hashes(current, sibling)
    return current == root


def _unsalt_value(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    parts = value.split(":", 2)
    if len(parts) != 3:
        return value
    kind, raw = parts[1], parts[2]
    if kind == "number":
        try:
            number = float(raw)
        except ValueError:
            return raw
        return int(number) if number.is_integer() else number
    if kind == "boolean":
        return raw == "true"
    if kind in ("null", "undefined"):
        return None
    return raw


def unsalt(value: Any) -> Any:
    """Strip the ``<salt>:<type>:`` prefix from every leaf."""
    if isinstance(value, dict):
        return {k: unsalt(v) for k, v in value.items()}
    if isinstance(value, list):
        return [unsalt(v) for v in value]
    return _unsalt_value(value)


def issuer_identity(issuer: dict[str, Any]) -> str | None:
    proof = issuer.get("identityProof")
    if isinstance(proof, dict) and proof.get("location"):
        return str(unsalt(proof["location"]))
    for field_name in IDENTITY_FIELDS:
        if issuer.get(field_name):
            return str(unsalt(issuer[field_name]))
    return None


class OpenAttestationVerifier(VerifierPlugin):
    name = "oa-verifier"
    cred_type = CredType.OA

    def claims(self, item: Any, extras: dict[str, Any]) -> bool:
        if not isinstance(item, dict) or not isinstance(item.get("data"), dict):
            return False
        signature = item.get("signature")
        return isinstance(signature, dict) and "targetHash" in signature and "merkleRoot" in signature

    def decode(self, item: Any, extras: dict[str, Any]) -> DecodedCredential:
        data = unsalt(item["data"])
        issuers = [i for i in data.get("issuers") or [] if isinstance(i, dict)]
        metadata: dict[str, Any] = {}
        if issuers:
            metadata["issuer"] = issuers[0].get("name")
        if data.get("issuedOn"):
            metadata["issuanceDate"] = data["issuedOn"]
        return DecodedCredential(
            format=CredentialFormat.OPEN_ATTESTATION,
            cred_type=CredType.OA,
            raw=item,
            document=item,
            envelope={"data": data, "issuers": issuers},
            metadata=metadata,
        )

    def check_integrity(self, document: dict[str, Any]) -> bool:
        signature = document["signature"]
        privacy = document.get("privacy") if isinstance(document.get("privacy"), dict) else {}
        try:
            target_hash = digest_document(document["data"], privacy.get("obfuscatedData"))
            proof = signature.get("proof") or []
            return target_hash == signature["targetHash"] and check_proof(
                proof, signature["merkleRoot"], target_hash
            )
        except (TypeError, ValueError) as e:
            msg = f"Invalid OpenAttestation signature block: {e}"
            raise ValidationError(msg) from e

    async def verify(
        self, decoded: DecodedCredential, context: VerifierContext, extras: dict[str, Any]
    ) -> VerificationResult:
        metadata = dict(decoded.metadata)
        if not self.check_integrity(decoded.document):
            return VerificationResult(False, CredType.OA, DOCUMENT_INTEGRITY_INVALID, metadata=metadata)

        issuers = decoded.envelope["issuers"]
        identities = [issuer_identity(issuer) for issuer in issuers]
        if not identities or any(identity is None for identity in identities):
            return VerificationResult(False, CredType.OA, ISSUER_KEY_NOT_FOUND, metadata=metadata)
        for identity in identities:
            if await context.keys.resolve(identity, None) is None:
                logger.info("OpenAttestation issuer %s is not known", identity)
                return VerificationResult(False, CredType.OA, ISSUER_KEY_NOT_FOUND, metadata=metadata)

        return VerificationResult(
            True, CredType.OA, DOCUMENT_INTEGRITY_VALID, credential=decoded.document, metadata=metadata
        )
