import logging

import pytest

from intake_common.errors import ValidationError
from intake_services.organizations import EntityConfig
from intake_services.verification import (
    CredentialFormat,
    DecodedCredential,
    VerificationResult,
    VerifierContextRegistry,
    VerifierPlugin,
    VerifierRegistry,
    default_registry,
)


class _StubPlugin(VerifierPlugin):
    cred_type = "STUB"

    def __init__(self, name, claims=True, fail_decode=False, raise_in=None):
        self.name = name
        self._claims = claims
        self._fail_decode = fail_decode
        self._raise_in = raise_in

    def claims(self, item, extras):
        if self._raise_in == "claims":
            raise TypeError("unhashable type: 'list'")
        return self._claims

    def decode(self, item, extras):
        if self._fail_decode:
            raise ValidationError("cannot decode")
        if self._raise_in == "decode":
            raise AttributeError("'int' object has no attribute 'strip'")
        return DecodedCredential(CredentialFormat.UNKNOWN, self.cred_type, item, document={"item": item})

    async def verify(self, decoded, context, extras):
        if self._raise_in == "verify":
            raise KeyError("publicKeyJwk")
        return VerificationResult(True, decoded.cred_type, self.name, credential=decoded.document)


@pytest.mark.asyncio
async def test_first_registered_claimant_wins(caplog):
    registry = VerifierRegistry([_StubPlugin("first"), _StubPlugin("second")])

    with caplog.at_level(logging.WARNING):
        result = await registry.verify("item", context=None)

    assert result.message == "first"
    assert "all claim the same item" in caplog.text


@pytest.mark.asyncio
async def test_decode_errors_become_failed_results():
    registry = VerifierRegistry([_StubPlugin("broken", fail_decode=True)])

    result = await registry.verify("item", context=None)

    assert not result.success
    assert result.cred_type == "STUB"
    assert result.message == "cannot decode"
    assert result.error == "validation"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("stage", "message"),
    [
        ("decode", "'int' object has no attribute 'strip'"),
        ("verify", "'publicKeyJwk'"),
    ],
)
async def test_unexpected_plugin_errors_become_failed_results(stage, message, caplog):
    registry = VerifierRegistry([_StubPlugin("fragile", raise_in=stage)])

    with caplog.at_level(logging.ERROR):
        result = await registry.verify("item", context=None)

    assert not result.success
    assert result.cred_type == "STUB"
    assert result.message == message
    assert result.error == "internal"
    assert "Verifier fragile raised" in caplog.text


@pytest.mark.asyncio
async def test_claim_errors_leave_item_unsupported():
    registry = VerifierRegistry([_StubPlugin("fragile", raise_in="claims")])

    result = await registry.verify(["item"], context=None)

    assert not result.success
    assert result.cred_type == "UNKNOWN"
    assert result.message == "Unknown Credential Type"


def test_registration_rules():
    registry = VerifierRegistry([_StubPlugin("a")], disabled=["b"])
    registry.register(_StubPlugin("b"))
    assert [p.name for p in registry.plugins] == ["a"]
    with pytest.raises(ValueError):
        registry.register(_StubPlugin("a"))

    assert registry.find("x").name == "a"
    assert registry.decode("x").document == {"item": "x"}
    assert VerifierRegistry([_StubPlugin("none", claims=False)]).decode("x").cred_type == "UNKNOWN"


def test_default_registry_can_disable_plugins():
    names = [p.name for p in default_registry(disabled=["dcc-verifier"]).plugins]
    assert names == ["self-attested-verifier", "id-verifier", "shc-verifier", "oa-verifier", "vc-verifier"]


@pytest.mark.asyncio
async def test_context_registry_builds_each_context_once(key_resolver):
    contexts = VerifierContextRegistry(default_registry, key_resolver)
    lab = EntityConfig.from_dict({"entity": "Lab", "verifierConfigId": "cfg-1", "verifierOrgId": "org-1"})
    clinic = EntityConfig.from_dict({"entity": "clinic"})

    first = await contexts.get(lab)
    assert await contexts.get(lab) is first
    assert first.config_id == "cfg-1"
    assert first.organization_id == "org-1"
    assert "lab" in contexts

    refreshed = await contexts.refresh(lab)
    assert refreshed is not first

    contexts.invalidate("lab")
    assert "lab" not in contexts

    assert await contexts.preload([lab, clinic]) == 1
    assert "lab" in contexts
    assert "clinic" not in contexts
    assert (await contexts.get(clinic)).organization_id == "clinic"
