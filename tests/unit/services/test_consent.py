import pytest

from intake_common.cache import TTLCache
from intake_common.config import ConsentSettings
from intake_services.consent import ConsentValidator, HolderContext, check_consent_window
from intake_services.organizations import EntityConfig, HolderProfile, SymmetricKey
from intake_services.verification import IssuerKeyCache, VerifierContext, default_registry
from intake_services.verification.self_attested import SIGNATURE_INVALID

NOW = 1_700_000_000
WEEK = 7 * 24 * 60 * 60


def test_consent_window_bounds():
    assert check_consent_window(NOW, now=NOW)
    assert check_consent_window(NOW + 5, now=NOW)
    assert not check_consent_window(NOW + 6, now=NOW)
    assert check_consent_window(NOW + 5 - 8 * WEEK, now=NOW)
    assert not check_consent_window(NOW + 4 - 8 * WEEK, now=NOW)
    assert not check_consent_window("yesterday", now=NOW)
    assert not check_consent_window(None, now=NOW)
    assert check_consent_window(str(NOW), now=NOW)


def test_consent_window_rejects_non_finite_timestamps():
    assert not check_consent_window("nan", now=NOW)
    assert not check_consent_window(float("nan"), now=NOW)
    assert not check_consent_window("inf", now=NOW)
    assert not check_consent_window("-inf", now=NOW)


class _StubPostbox:
    def __init__(self) -> None:
        self.deleted = []

    async def delete_document(self, document_id, link_id, token, tx_id="", authorization=None):
        self.deleted.append((document_id, link_id, token, authorization))


def _holder(public_key):
    profile = HolderProfile("holder-1", SymmetricKey.generate(), upload_token="upload-token")
    return HolderContext(
        holder_id="holder-1",
        profile=profile,
        public_key=public_key,
        public_key_type="spki",
        document_id="doc-1",
        link_id="link-1",
        authorization="Bearer t",
    )


def _receipt(timestamp=NOW):
    return {
        "consentId": "consent-1",
        "consentTimestamp": timestamp,
        "proof": {"created": "2024-01-01T00:00:00Z", "creator": "holder-1"},
    }


@pytest.fixture
def context(key_resolver):
    return VerifierContext("lab", default_registry(), IssuerKeyCache(key_resolver, "lab", TTLCache()))


@pytest.mark.asyncio
async def test_valid_receipt(context, sign_self_attested, holder_public_key):
    validator = ConsentValidator(ConsentSettings(), clock=lambda: NOW)
    entity = EntityConfig.from_dict({"entity": "lab"})

    result = await validator.validate(sign_self_attested(_receipt()), _holder(holder_public_key), entity, context)

    assert result.is_valid
    assert result.metadata == {}


@pytest.mark.asyncio
async def test_stale_receipt_is_ignored(context, sign_self_attested, holder_public_key):
    validator = ConsentValidator(ConsentSettings(retention_weeks=1), clock=lambda: NOW)
    entity = EntityConfig.from_dict({"entity": "lab"})

    receipt = sign_self_attested(_receipt(NOW - 2 * WEEK))
    result = await validator.validate(receipt, _holder(holder_public_key), entity, context)

    assert not result.is_valid
    assert result.error_message is None


@pytest.mark.asyncio
async def test_signature_check_can_be_skipped(context, holder_public_key):
    validator = ConsentValidator(clock=lambda: NOW)
    entity = EntityConfig.from_dict({"entity": "lab"})

    result = await validator.validate(
        _receipt(), _holder(holder_public_key), entity, context, validate_signature=False
    )

    assert result.is_valid


@pytest.mark.asyncio
async def test_invalid_signature_deletes_bundle(context, sign_self_attested, holder_public_key):
    postbox = _StubPostbox()
    validator = ConsentValidator(postbox=postbox, clock=lambda: NOW)
    entity = EntityConfig.from_dict({"entity": "lab"})
    receipt = sign_self_attested(_receipt())
    receipt["consentId"] = "consent-2"

    result = await validator.validate(receipt, _holder(holder_public_key), entity, context)

    assert not result.is_valid
    assert result.error_message == SIGNATURE_INVALID
    assert postbox.deleted == [("doc-1", "link-1", "upload-token", "Bearer t")]


@pytest.mark.asyncio
async def test_malformed_signature_value_rejects_receipt(context, holder_public_key):
    postbox = _StubPostbox()
    validator = ConsentValidator(postbox=postbox, clock=lambda: NOW)
    receipt = _receipt()
    receipt["proof"]["signatureValue"] = 12345

    result = await validator.validate(
        receipt, _holder(holder_public_key), EntityConfig.from_dict({"entity": "lab"}), context
    )

    assert not result.is_valid
    assert postbox.deleted == []


class _BrokenMetadata:
    async def generate(self, document, tx_id=""):
        return {"metadata": {"value": float(document["credType"])}}


@pytest.mark.asyncio
async def test_metadata_errors_reject_receipt(context, sign_self_attested, holder_public_key):
    validator = ConsentValidator(metadata=_BrokenMetadata(), clock=lambda: NOW)
    entity = EntityConfig.from_dict({"entity": "lab", "verifierConfigId": "cfg-1"})

    result = await validator.validate(sign_self_attested(_receipt()), _holder(holder_public_key), entity, context)

    assert not result.is_valid
    assert result.error_message == "could not convert string to float: 'CONSENT_RECEIPT'"
