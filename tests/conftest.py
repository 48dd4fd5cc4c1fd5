"""
Test configuration for the credential intake test suite.
"""

import base64
import copy
import json
from typing import Any

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from jwt.algorithms import ECAlgorithm

from intake_common.crypto import compact_json
from intake_common.errors import NotFoundError
from intake_common.infrastructure import DatabaseConfig, DatabaseManager


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


@pytest_asyncio.fixture
async def database():
    manager = DatabaseManager(DatabaseConfig(url="sqlite+aiosqlite:///:memory:"))
    await manager.create_all()
    yield manager
    await manager.dispose()


@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def holder_public_key(rsa_private_key):
    """Bare base64 SubjectPublicKeyInfo, as sent by holder wallets."""
    der = rsa_private_key.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return base64.b64encode(der).decode("ascii")


@pytest.fixture(scope="session")
def ec_private_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def ec_public_jwk(ec_private_key):
    return json.loads(ECAlgorithm.to_jwk(ec_private_key.public_key()))


@pytest.fixture
def sign_self_attested(rsa_private_key):
    """Return a signer that adds an RSA-PSS ``proof.signatureValue`` to a holder document."""

    def _sign(document: dict[str, Any]) -> dict[str, Any]:
        signed = copy.deepcopy(document)
        signed.setdefault("proof", {"created": "2024-01-01T00:00:00Z", "creator": "holder"})
        signature = rsa_private_key.sign(
            compact_json(signed),
            padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.MAX_LENGTH),
            hashes.SHA256(),
        )
        signed["proof"]["signatureValue"] = base64.b64encode(signature).decode("ascii")
        return signed

    return _sign


@pytest.fixture
def sign_credential(ec_private_key):
    """Return a signer that adds an ECDSA ``proof.signatureValue`` over the sorted credential."""

    def _sign(document: dict[str, Any]) -> dict[str, Any]:
        signed = copy.deepcopy(document)
        signature = ec_private_key.sign(compact_json(signed, sort_keys=True), ec.ECDSA(hashes.SHA256()))
        signed["proof"]["signatureValue"] = base64.b64encode(signature).decode("ascii")
        return signed

    return _sign


@pytest.fixture
def issuer_credential():
    return {
        "@context": ["https://www.w3.org/2018/credentials/v1"],
        "id": "did:issuer:1#vc-1",
        "type": ["VerifiableCredential"],
        "issuer": "did:issuer:1",
        "issuanceDate": "2024-01-01T00:00:00Z",
        "expirationDate": "2099-01-01T00:00:00Z",
        "credentialSchema": {"id": "did:issuer:1;schema-1", "type": "JsonSchemaValidator2018"},
        "credentialSubject": {"type": "TestResult", "testResult": "negative"},
        "proof": {
            "created": "2024-01-01T00:00:00Z",
            "creator": "did:issuer:1#key-1",
            "type": "EcdsaSecp256r1Signature2019",
        },
    }


class StubKeyResolver:
    """In-memory issuer key resolver keyed by ``(issuer_id, key_id)``."""

    def __init__(self, keys: dict[tuple[str, Any], dict[str, Any]] | None = None) -> None:
        self.keys = dict(keys or {})
        self.calls: list[tuple[str, str, Any]] = []

    async def resolve_key(self, issuer_id, entity_id, key_id):
        self.calls.append((issuer_id, entity_id, key_id))
        return self.keys.get((issuer_id, key_id))


@pytest.fixture
def make_resolver():
    return StubKeyResolver


@pytest.fixture
def key_resolver(ec_public_jwk):
    return StubKeyResolver({("did:issuer:1", "did:issuer:1#key-1"): ec_public_jwk})


class StubObjectStore:
    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], bytes] = {}

    async def put_object(self, container, name, data, content_type="application/json"):
        self.objects[(container, name)] = data

    async def get_object(self, container, name):
        try:
            return self.objects[(container, name)]
        except KeyError as e:
            msg = f"Object {container}/{name} not found"
            raise NotFoundError(msg) from e

    async def list_objects(self, container):
        return [name for (c, name) in self.objects if c == container]

    async def delete_object(self, container, name):
        self.objects.pop((container, name), None)


@pytest.fixture
def object_store():
    return StubObjectStore()
