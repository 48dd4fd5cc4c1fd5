import pytest

from intake_common.errors import NotFoundError, ValidationError
from intake_services.mapping import (
    MapperCache,
    MapperStore,
    MappingEngine,
    delete_field,
    get_mapper_name,
    get_path,
    set_path,
    split_path,
)
from intake_services.verification import CredType


@pytest.mark.asyncio
async def test_mapper_store_reads_through_cache(database):
    store = MapperStore(database, MapperCache(max_size=10, ttl_seconds=60))
    await store.create("testresult", {"mapper": {"name": "person.name"}})

    assert await store.get("testresult") == {"mapper": {"name": "person.name"}, "mapperName": "testresult"}
    await store.update("testresult", {"mapper": {"fullName": "person.name"}})
    assert await store.get_mapper("testresult") == {"fullName": "person.name"}

    assert await store.delete("testresult")
    assert await store.get("testresult") is None
    assert not await store.delete("testresult")


@pytest.mark.asyncio
async def test_mapper_store_rejects_duplicates(database):
    store = MapperStore(database)
    await store.create("dup", {"mapper": "a"})
    with pytest.raises(ValidationError):
        await store.create("dup", {"mapper": "b"})
    with pytest.raises(NotFoundError):
        await store.update("missing", {"mapper": "c"})


@pytest.mark.asyncio
async def test_transform_applies_jmespath_spec(database):
    store = MapperStore(database)
    await store.create(
        "testresult",
        {
            "mapper": {
                "name": "join(' ', [firstName, lastName])",
                "result": "testResult",
                "issuer": "'Lab One'",
                "version": 2,
                "codes": ["codes[0]", "codes[-1]"],
            }
        },
    )
    engine = MappingEngine(store)

    row = {"firstName": "Ann", "lastName": "Lee", "testResult": "negative", "codes": ["a", "b", "c"]}
    assert await engine.transform(row, "testresult") == {
        "name": "Ann Lee",
        "result": "negative",
        "issuer": "Lab One",
        "version": 2,
        "codes": ["a", "c"],
    }


@pytest.mark.asyncio
async def test_transform_errors(database):
    store = MapperStore(database)
    await store.create("broken", {"mapper": {"name": "person.["}})
    engine = MappingEngine(store)

    with pytest.raises(NotFoundError, match="Mapper missing not found"):
        await engine.transform({}, "missing")
    with pytest.raises(ValidationError, match="Failed to transform with mapper broken"):
        await engine.transform({}, "broken")


def test_get_mapper_name_by_credential_format():
    mappers = {"upload": {"shcmapper": "shc-to-fhir", "did:issuer:1;schema-1": "vc-map"}, "dccmapper": "dcc-map"}
    vc = {"credentialSchema": {"id": "did:issuer:1;schema-1"}}

    assert get_mapper_name({}, CredType.SHC, mappers) == "shc-to-fhir"
    assert get_mapper_name({}, CredType.DCC, mappers) == "dcc-map"
    assert get_mapper_name(vc, CredType.VC, mappers) == "vc-map"
    assert get_mapper_name({"credentialSchema": {"id": "other"}}, CredType.VC, mappers) is None
    assert get_mapper_name(vc, CredType.VC, {}) is None


def test_path_helpers():
    assert split_path("$.metadata.codes[1].value") == ["metadata", "codes", 1, "value"]
    assert split_path("metadata.codes.0") == ["metadata", "codes", 0]

    document = {}
    set_path(document, "$.metadata.codes[1].value", "x")
    assert document == {"metadata": {"codes": [None, {"value": "x"}]}}
    assert get_path(document, "metadata.codes[1].value") == "x"
    assert get_path(document, "metadata.missing", "default") == "default"

    set_path(document, "metadata.label", "Alpha")
    delete_field(document, "metadata.label", "label")
    assert "label" not in document["metadata"]
