import pytest
import pytest_asyncio

from intake_common.config import load_settings
from intake_services.capabilities import download_holder_id
from intake_services.organizations import HolderProfile, SymmetricKey
from intake_services.runtime import IntakeService, ServiceDependencies

DOWNLOAD_ORG = {
    "entity": "Lab",
    "entityType": "holder-download",
    "issuerId": "did:issuer:1",
    "mappers": {
        "download": {
            "covid": {"mapper": "csv-to-testresult", "schemaId": "did:issuer:1;schema-1", "type": ["TestResult"]}
        }
    },
}


class _StubIssuance:
    async def create_credential(self, issuer_id, schema_id, data, **kwargs):
        return {"id": f"vc-{data['id']}", "credentialSchema": {"id": schema_id}, "credentialSubject": data}


class _StubPostbox:
    def __init__(self) -> None:
        self.uploads = []

    async def upload_document(self, link_id, token, name, content, tx_id="", authorization=None):
        self.uploads.append((link_id, name, authorization))
        return {"payload": {"id": f"doc-{len(self.uploads)}"}}


@pytest_asyncio.fixture
async def service(database, object_store):
    deps = ServiceDependencies(
        settings=load_settings("testing"),
        database=database,
        object_store=object_store,
        postbox=_StubPostbox(),
        issuer=object(),
        issuance=_StubIssuance(),
    )
    service = IntakeService(deps)
    await service.organizations.save_entity(DOWNLOAD_ORG)
    await service.organizations.save_entity({"entity": "clinic", "entityType": "holder-upload"})
    await service.mappers.create("csv-to-testresult", {"mapper": {"testResult": "testResult"}})
    holder_id = download_holder_id({"id": "p1", "clientName": "lab"})
    await service.profiles.save_profile(
        "lab", HolderProfile(holder_id, SymmetricKey.generate(), download_token="t", download_link_id="dl-1")
    )
    return service


ROWS = [
    {"id": "p1", "clientName": "lab", "testResult": "negative"},
    {"id": "p2", "clientName": "lab", "testResult": "positive"},
]


@pytest.mark.asyncio
async def test_upload_data_processes_batch_in_background(service):
    response = await service.upload_data(
        "lab", [dict(r) for r in ROWS], "results.csv", "covid", authorization="Bearer t", tx_id="tx-1"
    )

    assert response == {"status": 200, "message": "Data received for uploading: tx-1", "batchID": "tx-1"}
    await service.coordinator.wait_for_batches()

    report = await service.get_batch_report("lab", "tx-1")
    payload = report["payload"]
    assert payload["fileName"] == "results.csv"
    assert payload["rowCount"] == 2
    assert payload["successCountTotal"] == 1
    assert payload["failureCountTotal"] == 1
    assert payload["failedRows"][0]["id"] == "p2"
    assert service.deps.postbox.uploads == [("dl-1", "covid", "Bearer t")]

    assert (await service.get_all_batches_report("lab"))["payload"][0]["batchID"] == "tx-1"


@pytest.mark.asyncio
async def test_upload_data_rejections(service):
    unsupported = await service.upload_data("lab", [dict(r) for r in ROWS], credential_type="flu")
    assert unsupported == {"status": 400, "message": "credentialType: flu is not supported"}

    missing = await service.upload_data("nobody", [dict(r) for r in ROWS], credential_type="covid")
    assert missing["status"] == 404

    invalid = await service.upload_data(
        "lab",
        [{"id": "p1", "clientName": "lab"}],
        credential_type="covid",
        headers=["id", "clientName", "testResult"],
    )
    assert invalid["status"] == 400
    assert invalid["invalidRows"][0]["invalidMessage"] == "Missing 'testResult' value"

    empty = await service.upload_data("lab", [], credential_type="covid")
    assert empty == {"status": 400, "message": "No rows to upload"}


@pytest.mark.asyncio
async def test_submit_data_routing(service):
    no_document = await service.submit_data("clinic", {"id": "holder-1"})
    assert no_document.status == 400
    assert no_document.message == "documentId is required"

    unknown = await service.submit_data("nobody", {"documentId": "d"})
    assert unknown.status == 404
    assert unknown.message == "Organization nobody not found"

    unsupported = await service.submit_data("lab", {"documentId": "d", "id": "p1"})
    assert unsupported.status == 501


@pytest.mark.asyncio
async def test_get_report_without_submissions(service):
    report = await service.get_report("lab", "2024-01-01", "2024-01-31")
    assert report["data"] == {}
    assert report["types"] == ["totalSubmissions", "totalCredentials"]


@pytest.mark.asyncio
async def test_startup_preloads_verifier_contexts(service):
    await service.startup()
    assert "lab" not in service.contexts

    await service.organizations.save_entity({"entity": "verifier", "verifierConfigId": "cfg-1"})
    await service.startup()
    assert "verifier" in service.contexts


@pytest.mark.asyncio
async def test_files_share_the_service_object_store(service, object_store):
    object_store.objects[("clinic", "tx-9.json")] = b"{}"

    listing = await service.files.list_files("clinic")
    removed = await service.files.delete_file("clinic", "tx-9.json")

    assert listing["payload"] == ["tx-9.json"]
    assert removed["status"] == 200
    assert object_store.objects == {}
