import hashlib

import pytest

from intake_common.errors import ValidationError
from intake_services.batch import BatchInfo
from intake_services.capabilities import (
    CapabilityRegistry,
    HolderDownloadCapability,
    HolderUploadCapability,
    NihCapability,
    download_holder_id,
    upload_holder_id,
)
from intake_services.mapping import MapperStore, MappingEngine
from intake_services.organizations import EntityConfig, HolderProfile, SymmetricKey
from intake_services.submission import SubmissionOutcome, SubmissionRequest

REG_MAPPERS = {"reg": {"holder": {"mapper": "reg-holder"}, "profile": {"mapper": "reg-profile"}}}


class _StubAssembler:
    def __init__(self) -> None:
        self.calls = []

    async def submit(self, request, holder_id, entity, tx_id, validate_signature=True):
        self.calls.append((holder_id, entity.entity, tx_id, validate_signature))
        return SubmissionOutcome(200, "Data submitted")


class _StubCoordinator:
    def __init__(self) -> None:
        self.calls = []

    async def upload_entity_data(self, entity, batch, processor, credential_type, tx_id=""):
        self.calls.append((entity.entity, batch.batch_id, processor, credential_type))
        return {"batchID": batch.batch_id}


async def _engine(database):
    store = MapperStore(database)
    await store.create("reg-holder", {"mapper": {"name": "name"}})
    await store.create("reg-profile", {"mapper": {"orgName": "entity"}})
    return MappingEngine(store)


def _profile():
    return HolderProfile(
        "holder-1",
        SymmetricKey.generate(),
        upload_token="up",
        upload_link_id="up-link",
        download_token="down",
        download_link_id="down-link",
        details={"uploadUrl": "https://postbox/up", "downloadUrl": "https://postbox/down", "url": "https://pobox"},
    )


def test_holder_id_strategies():
    assert upload_holder_id({"id": "h1", "publicKey": "pk"}) == "h1"
    assert upload_holder_id({"publicKey": "pk"}) == "pk"
    assert download_holder_id({"id": "h1"}) is None
    assert download_holder_id({"id": "h1", "clientName": "c"}) == hashlib.md5(b"h1-c").hexdigest()
    assert NihCapability(None, None).get_holder_id({"id": "h1", "publicKey": "pk"}) == "pk"


def test_registry_resolves_by_category():
    registry = CapabilityRegistry()
    upload = HolderUploadCapability(None, None)
    registry.register(upload)
    registry.register(NihCapability(None, None))

    assert registry.categories() == ["holder-upload", "nih"]
    assert registry.for_entity(EntityConfig.from_dict({"entity": "lab", "entityType": "holder-upload"})) is upload
    assert registry.for_entity(EntityConfig.from_dict({"entity": "nih"})).category == "nih"
    with pytest.raises(ValidationError, match="no entity helpers found"):
        registry.for_entity(EntityConfig.from_dict({"entity": "clinic"}))


@pytest.mark.asyncio
async def test_holder_upload_registration_data(database):
    capability = HolderUploadCapability(await _engine(database), _StubAssembler())
    entity = EntityConfig.from_dict({"entity": "lab", "mappers": REG_MAPPERS})

    user = await capability.prepare_user_credential_data({"id": "holder-1", "name": "Ada"}, entity)
    assert user == {"name": "Ada", "type": "id", "id": "holder-1", "organization": "lab"}

    profile = await capability.prepare_profile_credential_data(_profile(), "holder-1", entity)
    assert profile["type"] == "profile"
    assert profile["orgName"] == "lab"
    assert profile["technical"]["upload"] == {
        "id": "holder-1",
        "url": "https://postbox/up",
        "linkId": "up-link",
        "passcode": "up",
    }

    unmapped = EntityConfig.from_dict({"entity": "lab"})
    assert await capability.prepare_user_credential_data({"id": "holder-1"}, unmapped) is None


@pytest.mark.asyncio
async def test_holder_download_registration_data(database):
    capability = HolderDownloadCapability(await _engine(database), _StubCoordinator(), processor=None)
    entity = EntityConfig.from_dict({"entity": "lab", "mappers": REG_MAPPERS})
    holder_id = download_holder_id({"id": "p1", "clientName": "lab"})

    user = await capability.prepare_user_credential_data({"id": "p1", "clientName": "lab", "name": "Ada"}, entity)
    assert user == {"type": "id", "id": holder_id, "name": "Ada"}

    profile = await capability.prepare_profile_credential_data(_profile(), holder_id, entity)
    assert profile["technical"]["download"]["linkId"] == "down-link"
    assert "upload" not in profile["technical"]


@pytest.mark.asyncio
async def test_submissions_route_through_assembler(database):
    assembler = _StubAssembler()
    capability = HolderUploadCapability(await _engine(database), assembler)
    entity = EntityConfig.from_dict({"entity": "lab"})

    outcome = await capability.submit_entity_data(
        SubmissionRequest.from_dict({"documentId": "d", "id": "holder-1"}), entity, "tx-1"
    )
    assert outcome.status == 200
    assert assembler.calls == [("holder-1", "lab", "tx-1", True)]

    missing = await NihCapability(None, assembler).submit_entity_data(
        SubmissionRequest.from_dict({"documentId": "d", "id": "holder-1"}), entity, "tx-2"
    )
    assert missing.status == 400
    assert missing.message == "Request body must contain 'publicKey'"


@pytest.mark.asyncio
async def test_unsupported_flows_are_not_implemented():
    download = HolderDownloadCapability(None, _StubCoordinator(), processor=None)
    entity = EntityConfig.from_dict({"entity": "lab"})

    outcome = await download.submit_entity_data(SubmissionRequest.from_dict({"documentId": "d"}), entity)
    assert outcome.status == 501

    upload = HolderUploadCapability(None, _StubAssembler())
    assert await upload.upload_entity_data(entity, BatchInfo("b1", "f.csv"), "covid") == {
        "status": 501,
        "message": "uploadEntityData is not implemented",
    }


@pytest.mark.asyncio
async def test_download_batches_go_to_coordinator():
    coordinator = _StubCoordinator()
    processor = object()
    download = HolderDownloadCapability(None, coordinator, processor)
    entity = EntityConfig.from_dict({"entity": "lab"})

    result = await download.upload_entity_data(entity, BatchInfo("b1", "f.csv"), "covid")

    assert result == {"status": 200, "message": "", "report": {"batchID": "b1"}}
    assert coordinator.calls == [("lab", "b1", processor, "covid")]


@pytest.mark.asyncio
async def test_nih_registration_data():
    capability = NihCapability(None, None)
    entity = EntityConfig.from_dict(
        {
            "entity": "nih",
            "consentInfo": {"piiControllers": [{"piiController": "NIH"}]},
            "userData": ["email"],
            "termination": {"days": 30},
        }
    )

    user = await capability.prepare_user_credential_data({"publicKey": "pk", "email": "a@b.c"}, entity)
    assert user == {"type": "id", "id": "pk", "key": "pk", "email": "a@b.c", "issuer": {"name": "NIH"}}

    profile = await capability.prepare_profile_credential_data(_profile(), "pk", entity)
    assert profile["consentInfo"]["piiPrincipalId"] == "pk"
    assert profile["technical"]["poBox"]["url"] == "https://pobox"
    assert profile["termination"] == {"days": 30}

    no_controllers = EntityConfig.from_dict({"entity": "nih"})
    assert await capability.prepare_user_credential_data({"publicKey": "pk"}, no_controllers) is None
