from datetime import datetime, timedelta, timezone

import pytest

from intake_common.config import CsvSettings
from intake_common.errors import ConsistencyError, ValidationError
from intake_common.infrastructure import BatchQueueRepository, BatchReportRepository, StatsRepository
from intake_services.batch import (
    BatchCoordinator,
    BatchInfo,
    DocType,
    RowResult,
    get_failed_rows,
    validate_row,
    validate_row_count,
    validate_rows,
)
from intake_services.organizations import EntityConfig

HEADERS = ["id", "testResult"]


class _StubProcessor:
    """Fails every row whose id starts with ``bad``."""

    def __init__(self) -> None:
        self.calls = []

    async def __call__(self, row, entity, credential_type, tx_id, authorization=None):
        self.calls.append((row["rowID"], credential_type, authorization))
        if row["id"].startswith("bad"):
            return RowResult(status=400, message="boom")
        return RowResult(
            status=200,
            stat_doc={
                "holderId": row["id"],
                "credId": f"cred-{row['id']}",
                "credType": "TestResult",
                "submissionId": tx_id,
            },
        )


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _settings(**overrides):
    values = {"process_min_interval": 0, "readback_delay": 0.5, "chunk_size": 2}
    values.update(overrides)
    return CsvSettings(**values)


def test_validate_row():
    assert validate_row({"id": "", "testResult": ""}, HEADERS) == "empty"
    assert validate_row({"id": "p1"}, HEADERS) == "Missing 'testResult' value"
    assert validate_row({"id": "x" * 101, "testResult": "negative"}, HEADERS) == (
        "Length of 'id' value exceeds max of 100"
    )
    assert validate_row({"id": "p1", "testResult": "negative"}, HEADERS) == ""


def test_validate_rows_skips_blank_rows_and_numbers_all():
    rows = [
        {"id": "p1", "testResult": "negative"},
        {"id": "", "testResult": ""},
        {"id": "p3"},
    ]

    validation = validate_rows(rows, HEADERS, max_error_threshold=5)

    assert not validation.ok
    assert validation.message == "Found 1 invalid rows"
    assert [r["rowID"] for r in validation.validated_rows] == [0]
    assert validation.invalid_rows == [{"id": "p3", "rowID": 2, "invalidMessage": "Missing 'testResult' value"}]


def test_validate_rows_abandons_at_threshold():
    rows = [{"id": f"p{i}"} for i in range(5)]

    validation = validate_rows(rows, HEADERS, max_error_threshold=2)

    assert validation.message == "Batch validation abandoned after 2 invalid rows"
    assert len(validation.invalid_rows) == 2


def test_validate_row_count():
    validate_row_count([{}] * 3, 3)
    with pytest.raises(ValidationError, match="Row count 4 exceeds the limit of 3"):
        validate_row_count([{}] * 4, 3)


def test_get_failed_rows_strips_bookkeeping():
    rows = [
        {"id": "p1", "type": DocType.TESTRESULT_ITEM, "batchID": "b1", "rowID": 0},
        {"id": "p2", "type": DocType.TESTRESULT_ITEM, "batchID": "b1", "rowID": 1, "errorMessage": "nope"},
    ]
    assert get_failed_rows(rows) == [{"id": "p2", "failureReasons": ["nope"]}]


@pytest.mark.asyncio
async def test_upload_queues_rows_in_chunks(database):
    coordinator = BatchCoordinator(database, _settings())
    rows = [{"id": f"p{i}", "testResult": "negative", "rowID": i} for i in range(5)]

    items = await coordinator.upload_batch_items_for_processing("lab", "batch-1", DocType.TESTRESULT_ITEM, rows)

    assert [i.row_id for i in items] == [0, 1, 2, 3, 4]
    assert items[0].payload == {"id": "p0", "testResult": "negative"}
    assert items[0].as_row()["type"] == DocType.TESTRESULT_ITEM


class _ShortReadCoordinator(BatchCoordinator):
    async def query_batch_items(self, entity, batch_id, doc_type):
        items = await super().query_batch_items(entity, batch_id, doc_type)
        return items[:-1]


@pytest.mark.asyncio
async def test_readback_gives_up_after_configured_attempts(database):
    sleep = _RecordingSleep()
    coordinator = _ShortReadCoordinator(database, _settings(readback_attempts=3), sleep=sleep)

    with pytest.raises(ConsistencyError, match="Batch items not ready after 3 retries"):
        await coordinator.upload_batch_items_for_processing(
            "lab", "batch-1", DocType.TESTRESULT_ITEM, [{"id": "p0"}, {"id": "p1"}]
        )

    assert sleep.delays == [0.5, 0.5, 0.5]


@pytest.mark.asyncio
async def test_batch_is_abandoned_after_error_threshold(database):
    coordinator = BatchCoordinator(database, _settings(batch_max_error_threshold=2))
    rows = [{"id": "p0"}, {"id": "bad1"}, {"id": "bad2"}, {"id": "p3"}]
    items = await coordinator.upload_batch_items_for_processing("lab", "batch-1", DocType.TESTRESULT_ITEM, rows)
    processor = _StubProcessor()
    entity = EntityConfig.from_dict({"entity": "lab"})

    report = await coordinator.upload_entity_data(
        entity, BatchInfo("batch-1", "results.csv", items, "Bearer t"), processor, "covid", "tx-1"
    )

    assert processor.calls == [(0, "covid", "Bearer t"), (1, "covid", "Bearer t"), (2, "covid", "Bearer t")]
    assert report["rowCount"] == 4
    assert report["successCount"] == 1
    assert report["failureCount"] == 2
    assert report["batchFailureMessages"] == ["Batch processing abandoned after 2 failures"]
    assert report["failedRows"][0] == {
        "id": "bad1",
        "failureReasons": ["Failed to create and upload test result credential for id bad1: boom"],
    }

    async with database.session_scope() as session:
        queue = BatchQueueRepository(session)
        remaining = await queue.query_batch_items("lab", "batch-1", DocType.TESTRESULT_ITEM)
        assert [(r.row_id, r.error_message is not None) for r in remaining] == [(1, True), (2, True), (3, False)]

        page = await BatchReportRepository(session).query("lab", DocType.TESTRESULT_BATCH_REPORT, batch_id="batch-1")
        assert len(page.docs) == 1
        assert page.docs[0].file_name == "results.csv"
        assert page.docs[0].failure_count == 2

        now = datetime.now(timezone.utc)
        stats = await StatsRepository(session).query_range("lab", now - timedelta(hours=1), now + timedelta(hours=1))
        assert [s.cred_id for s in stats] == ["cred-p0"]


@pytest.mark.asyncio
async def test_processor_errors_become_row_failures(database):
    coordinator = BatchCoordinator(database, _settings())
    items = await coordinator.upload_batch_items_for_processing(
        "lab", "batch-2", DocType.TESTRESULT_ITEM, [{"id": "p0"}]
    )

    async def _raising(row, entity, credential_type, tx_id, authorization=None):
        raise ValidationError("credentialType: flu is not supported")

    report = await coordinator.upload_entity_data(
        EntityConfig.from_dict({"entity": "lab"}), BatchInfo("batch-2", "f.csv", items), _raising, "flu"
    )

    assert report["failureCount"] == 1
    assert report["failedRows"][0]["failureReasons"][0].endswith("credentialType: flu is not supported")


@pytest.mark.asyncio
async def test_unexpected_processor_errors_fail_only_their_row(database):
    coordinator = BatchCoordinator(database, _settings())
    rows = [{"id": "p0"}, {"id": "p1"}, {"id": "p2"}]
    items = await coordinator.upload_batch_items_for_processing("lab", "batch-4", DocType.TESTRESULT_ITEM, rows)
    stub = _StubProcessor()

    async def _missing_schema(row, entity, credential_type, tx_id, authorization=None):
        if row["id"] == "p1":
            raise KeyError("schemaId")
        return await stub(row, entity, credential_type, tx_id, authorization)

    report = await coordinator.upload_entity_data(
        EntityConfig.from_dict({"entity": "lab"}), BatchInfo("batch-4", "f.csv", items), _missing_schema, "covid"
    )

    assert report["successCount"] == 2
    assert report["failureCount"] == 1
    assert report["failedRows"] == [
        {
            "id": "p1",
            "failureReasons": ["Failed to create and upload test result credential for id p1: 'schemaId'"],
        }
    ]
    async with database.session_scope() as session:
        page = await BatchReportRepository(session).query("lab", DocType.TESTRESULT_BATCH_REPORT, batch_id="batch-4")
        assert len(page.docs) == 1
        now = datetime.now(timezone.utc)
        stats = await StatsRepository(session).query_range("lab", now - timedelta(hours=1), now + timedelta(hours=1))
        assert sorted(s.cred_id for s in stats) == ["cred-p0", "cred-p2"]


class _CrashingCoordinator(BatchCoordinator):
    async def _process_item(self, item, *args, **kwargs):
        if item.row_id == 1:
            raise RuntimeError("worker lost")
        return await super()._process_item(item, *args, **kwargs)


@pytest.mark.asyncio
async def test_report_is_saved_when_processing_stops(database):
    coordinator = _CrashingCoordinator(database, _settings())
    rows = [{"id": "p0"}, {"id": "p1"}, {"id": "p2"}]
    items = await coordinator.upload_batch_items_for_processing("lab", "batch-5", DocType.TESTRESULT_ITEM, rows)

    with pytest.raises(RuntimeError, match="worker lost"):
        await coordinator.upload_entity_data(
            EntityConfig.from_dict({"entity": "lab"}), BatchInfo("batch-5", "f.csv", items), _StubProcessor(), "covid"
        )

    async with database.session_scope() as session:
        page = await BatchReportRepository(session).query("lab", DocType.TESTRESULT_BATCH_REPORT, batch_id="batch-5")
        assert len(page.docs) == 1
        assert page.docs[0].success_count == 1
        now = datetime.now(timezone.utc)
        stats = await StatsRepository(session).query_range("lab", now - timedelta(hours=1), now + timedelta(hours=1))
        assert [s.cred_id for s in stats] == ["cred-p0"]


@pytest.mark.asyncio
async def test_scheduled_batches_run_in_background(database):
    coordinator = BatchCoordinator(database, _settings())
    items = await coordinator.upload_batch_items_for_processing(
        "lab", "batch-3", DocType.TESTRESULT_ITEM, [{"id": "p0"}, {"id": "p1"}]
    )

    task = coordinator.start_batch(
        EntityConfig.from_dict({"entity": "lab"}), BatchInfo("batch-3", "f.csv", items), _StubProcessor(), "covid"
    )
    await coordinator.wait_for_batches()

    assert task.done()
    assert task.result()["successCount"] == 2
    async with database.session_scope() as session:
        assert await BatchQueueRepository(session).count("lab", "batch-3") == 0
