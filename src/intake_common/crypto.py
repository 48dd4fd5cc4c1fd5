"""
Cryptographic utilities for intake services.

Symmetric bundle encryption, signature verification helpers for the verifier
plugins, and the JSON serializations that signatures are computed over.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import json
from typing import Any, Literal

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, padding as sym_padding
from cryptography.hazmat.primitives.asymmetric import ec, padding as asym_padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.serialization import load_pem_public_key
from jwt.algorithms import ECAlgorithm, RSAAlgorithm
from jwt.exceptions import InvalidKeyError

from intake_common.errors import DecryptionError, ValidationError

DEFAULT_ALGORITHM = "aes-256-cbc"
GCM_TAG_LENGTH = 16

CipherMode = Literal["cbc", "gcm"]

_KEY_LENGTHS = {"128": 16, "192": 24, "256": 32}


def _parse_algorithm(algorithm: str) -> tuple[int, CipherMode]:
    """Split an OpenSSL style name such as ``aes-256-cbc``."""
    parts = algorithm.lower().split("-")
    if len(parts) != 3 or parts[0] != "aes" or parts[1] not in _KEY_LENGTHS or parts[2] not in ("cbc", "gcm"):
        msg = f"Unsupported cipher algorithm: {algorithm}"
        raise ValidationError(msg)
    return _KEY_LENGTHS[parts[1]], parts[2]  # type: ignore[return-value]


def _check_key_material(algorithm: str, key: bytes, iv: bytes) -> CipherMode:
    key_length, mode = _parse_algorithm(algorithm)
    if len(key) != key_length:
        msg = f"Invalid key length {len(key)} for {algorithm}, expected {key_length}"
        raise ValidationError(msg)
    if mode == "cbc" and len(iv) != 16:
        msg = f"Invalid IV length {len(iv)} for {algorithm}, expected 16"
        raise ValidationError(msg)
    if mode == "gcm" and len(iv) < 8:
        msg = f"Invalid IV length {len(iv)} for {algorithm}"
        raise ValidationError(msg)
    return mode


def encrypt(data: str | bytes, key: bytes, iv: bytes, algorithm: str = DEFAULT_ALGORITHM) -> bytes:
    """Encrypt ``data``. GCM output carries the 16 byte tag at the end."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    mode = _check_key_material(algorithm, key, iv)

    if mode == "cbc":
        padder = sym_padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(data) + padder.finalize()
        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        return encryptor.update(padded) + encryptor.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.GCM(iv)).encryptor()
    ciphertext = encryptor.update(data) + encryptor.finalize()
    return ciphertext + encryptor.tag


def decrypt(data: bytes, key: bytes, iv: bytes, algorithm: str = DEFAULT_ALGORITHM) -> bytes:
    """Decrypt ``data``.

    Raises:
        DecryptionError: If the ciphertext is malformed or authentication fails
    """
    mode = _check_key_material(algorithm, key, iv)
    try:
        if mode == "cbc":
            decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(data) + decryptor.finalize()
            unpadder = sym_padding.PKCS7(algorithms.AES.block_size).unpadder()
            return unpadder.update(padded) + unpadder.finalize()

        if len(data) < GCM_TAG_LENGTH:
            msg = "Ciphertext shorter than authentication tag"
            raise DecryptionError(msg)
        ciphertext, tag = data[:-GCM_TAG_LENGTH], data[-GCM_TAG_LENGTH:]
        decryptor = Cipher(algorithms.AES(key), modes.GCM(iv, tag)).decryptor()
        return decryptor.update(ciphertext) + decryptor.finalize()
    except (ValueError, InvalidTag) as e:
        raise DecryptionError("Error decrypting data", {"algorithm": algorithm}) from e


def encrypt_to_base64(data: str | bytes, key: bytes, iv: bytes, algorithm: str = DEFAULT_ALGORITHM) -> str:
    return base64.b64encode(encrypt(data, key, iv, algorithm)).decode("ascii")


def b64decode_any(value: str) -> bytes:
    """Decode standard or URL-safe base64 with or without padding."""
    normalized = value.strip().replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    try:
        return base64.b64decode(normalized, validate=True)
    except (binascii.Error, ValueError) as e:
        msg = "Invalid base64 value"
        raise ValidationError(msg) from e


def compact_json(document: Any, sort_keys: bool = False) -> bytes:
    """Serialize like ``JSON.stringify``: no whitespace, insertion order unless sorted."""
    return json.dumps(document, separators=(",", ":"), ensure_ascii=False, sort_keys=sort_keys).encode(
        "utf-8"
    )


def load_rsa_public_key(pem: str | bytes) -> rsa.RSAPublicKey:
    """Load a PKCS#1 or SubjectPublicKeyInfo RSA key."""
    if isinstance(pem, str):
        pem = pem.encode("ascii")
    try:
        key = load_pem_public_key(pem)
    except (ValueError, TypeError) as e:
        msg = "Invalid public key format - expected PEM"
        raise ValidationError(msg) from e
    if not isinstance(key, rsa.RSAPublicKey):
        msg = "Unsupported public key type (expected RSA)"
        raise ValidationError(msg)
    return key


def verify_rsa_pss(data: bytes, signature: bytes, public_key: rsa.RSAPublicKey) -> bool:
    try:
        public_key.verify(
            signature,
            data,
            asym_padding.PSS(mgf=asym_padding.MGF1(hashes.SHA256()), salt_length=asym_padding.PSS.AUTO),
            hashes.SHA256(),
        )
    except InvalidSignature:
        return False
    return True


def verify_ecdsa(data: bytes, signature: bytes, public_key: ec.EllipticCurvePublicKey) -> bool:
    """Verify a DER encoded ECDSA/SHA-256 signature."""
    try:
        public_key.verify(signature, data, ec.ECDSA(hashes.SHA256()))
    except (InvalidSignature, ValueError):
        return False
    return True


def raw_to_der_signature(raw: bytes) -> bytes:
    """Convert a fixed width ``r || s`` signature (COSE, JWS) to DER."""
    if len(raw) % 2:
        msg = "Raw ECDSA signature has odd length"
        raise ValidationError(msg)
    half = len(raw) // 2
    return encode_dss_signature(int.from_bytes(raw[:half], "big"), int.from_bytes(raw[half:], "big"))


def public_key_from_jwk(jwk: dict[str, Any] | str) -> rsa.RSAPublicKey | ec.EllipticCurvePublicKey:
    """Build a public key object from a JWK dict or JSON string."""
    raw = jwk if isinstance(jwk, str) else json.dumps(jwk)
    kty = (jwk if isinstance(jwk, dict) else json.loads(jwk)).get("kty")
    try:
        if kty == "EC":
            key = ECAlgorithm.from_jwk(raw)
        elif kty == "RSA":
            key = RSAAlgorithm.from_jwk(raw)
        else:
            msg = f"Unsupported JWK key type: {kty}"
            raise ValidationError(msg)
    except (InvalidKeyError, ValueError, KeyError) as e:
        msg = f"Invalid JWK: {e}"
        raise ValidationError(msg) from e
    if isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        return key.public_key()
    return key  # type: ignore[return-value]


def hash_strings(values: list[str]) -> str:
    """Stable identifier from a list of strings joined with ``-``."""
    return hashlib.md5("-".join(values).encode("utf-8")).hexdigest()  # noqa: S324
