"""CSV batch ingestion: durable queueing, rate-limited row processing and reports.

Rows are first written to the batch queue in chunks and read back until the
store returns every row. A single worker then processes the rows in ``rowID``
order with a minimum delay between them. Processed rows are deleted from the
queue; failed rows stay and carry an ``errorMessage``. Once
``batch_max_error_threshold`` rows have failed, the rest of the batch is
skipped. A batch report and the stat records are written in every case.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from intake_common.config import CsvSettings
from intake_common.errors import ConsistencyError, IntakeError, PersistenceError, ValidationError, error_message
from intake_common.infrastructure import (
    BatchQueueRecord,
    BatchQueueRepository,
    BatchReportRepository,
    DatabaseManager,
    StatsRepository,
)
from intake_common.resilience import BatchErrorBreaker, BatchErrorBreakerConfig, RateLimitedWorker

from .organizations import EntityConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DocType:
    PREREG_ITEM = "PreRegItem"
    PREREG_BATCH_REPORT = "PreRegBatchReport"
    TESTRESULT_ITEM = "TestResultItem"
    TESTRESULT_BATCH_REPORT = "TestResultBatchReport"


BOOKKEEPING_FIELDS = ("_id", "_rev", "batchID", "errorMessage", "type", "rowID")
MAX_FIELD_VALUE_LENGTH = 100


@dataclass(slots=True)
class BatchItem:
    """A queued row, as read back from the batch queue."""

    record_id: int
    row_id: int
    batch_id: str
    doc_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None

    @classmethod
    def from_record(cls, record: BatchQueueRecord) -> BatchItem:
        return cls(
            record_id=record.id,
            row_id=record.row_id,
            batch_id=record.batch_id,
            doc_type=record.doc_type,
            payload=dict(record.payload or {}),
            error_message=record.error_message,
        )

    def as_row(self) -> dict[str, Any]:
        row = {**self.payload, "type": self.doc_type, "batchID": self.batch_id, "rowID": self.row_id}
        if self.error_message:
            row["errorMessage"] = self.error_message
        return row


@dataclass(slots=True)
class BatchInfo:
    batch_id: str
    file_name: str
    items: list[BatchItem] = field(default_factory=list)
    authorization: str | None = None


@dataclass(slots=True)
class RowResult:
    status: int
    message: str = ""
    stat_doc: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.status == 200


class RowProcessor(Protocol):
    async def __call__(
        self,
        row: dict[str, Any],
        entity: EntityConfig,
        credential_type: str,
        tx_id: str,
        authorization: str | None = None,
    ) -> RowResult: ...


@dataclass(slots=True)
class RowValidation:
    validated_rows: list[dict[str, Any]]
    invalid_rows: list[dict[str, Any]]
    message: str = ""

    @property
    def ok(self) -> bool:
        return not self.message


def validate_row_count(rows: Sequence[Any], row_max: int) -> None:
    if len(rows) > row_max:
        msg = f"Row count {len(rows)} exceeds the limit of {row_max}"
        raise ValidationError(msg)


def validate_row(row: dict[str, Any], headers: Sequence[str]) -> str:
    """Return an error message for ``row``, ``"empty"`` for a blank row, or ``""``."""
    keys = list(row)
    if all(not row[key] for key in keys):
        return "empty"
    if len(keys) < len(headers):
        return f"Missing '{headers[len(keys)]}' value"
    for key in keys:
        if len(str(row[key])) > MAX_FIELD_VALUE_LENGTH:
            return f"Length of '{key}' value exceeds max of {MAX_FIELD_VALUE_LENGTH}"
    return ""


def validate_rows(
    rows: Sequence[dict[str, Any]], headers: Sequence[str], max_error_threshold: int, tx_id: str = ""
) -> RowValidation:
    """Assign ``rowID`` to every row and split valid from invalid ones. Blank rows are skipped."""
    validated: list[dict[str, Any]] = []
    invalid: list[dict[str, Any]] = []
    for index, row in enumerate(rows):
        message = validate_row(row, headers)
        row["rowID"] = index
        if message:
            row["invalidMessage"] = message
            if message != "empty":
                invalid.append(row)
        else:
            validated.append(row)
        if len(invalid) >= max_error_threshold:
            abort = f"Batch validation abandoned after {len(invalid)} invalid rows"
            logger.error("[%s] %s", tx_id, abort)
            return RowValidation(validated, invalid, abort)
    if invalid:
        message = f"Found {len(invalid)} invalid rows"
        logger.error("[%s] %s", tx_id, message)
        return RowValidation(validated, invalid, message)
    return RowValidation(validated, invalid)


def get_failed_rows(rows: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """Rows that carry an ``errorMessage``, without queue bookkeeping fields."""
    failed = []
    for row in rows:
        if not row.get("errorMessage"):
            continue
        cleaned = {k: v for k, v in row.items() if k not in BOOKKEEPING_FIELDS}
        cleaned["failureReasons"] = [row["errorMessage"]]
        failed.append(cleaned)
    return failed


def _chunks(rows: Sequence[dict[str, Any]], size: int) -> Iterable[tuple[int, Sequence[dict[str, Any]]]]:
    for start in range(0, len(rows), size):
        yield start, rows[start:start + size]


class BatchCoordinator:
    def __init__(
        self,
        database: DatabaseManager,
        settings: CsvSettings | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._database = database
        self.settings = settings or CsvSettings()
        self._sleep = sleep
        self._tasks: set[asyncio.Task[Any]] = set()

    async def _upload_chunk(
        self, entity: str, batch_id: str, doc_type: str, start_index: int, chunk: Sequence[dict[str, Any]]
    ) -> None:
        rows = []
        for i, row in enumerate(chunk):
            row_id = row.get("rowID", start_index + i)
            payload = {k: v for k, v in row.items() if k not in ("type", "batchID", "rowID")}
            rows.append((int(row_id), payload))
        async with self._database.session_scope() as session:
            await BatchQueueRepository(session).bulk_insert(entity, batch_id, doc_type, rows)
        logger.info("Saved %d docs with batchID=%s to the batch queue", len(rows), batch_id)

    async def query_batch_items(self, entity: str, batch_id: str, doc_type: str) -> list[BatchItem]:
        try:
            async with self._database.session_scope() as session:
                records = await BatchQueueRepository(session).query_batch_items(entity, batch_id, doc_type)
                return [BatchItem.from_record(r) for r in records]
        except SQLAlchemyError as e:
            msg = f"Error occurred querying docs with batchID={batch_id}: {e}"
            logger.error(msg)
            raise PersistenceError(msg) from e

    async def upload_batch_items_for_processing(
        self,
        entity: str,
        batch_id: str,
        doc_type: str,
        rows: Sequence[dict[str, Any]],
        tx_id: str = "",
    ) -> list[BatchItem]:
        """Queue ``rows`` in chunks and return them once the store reads all of them back.

        Raises:
            PersistenceError: If a chunk cannot be written
            ConsistencyError: If the read-back count never matches
        """
        expected = len(rows)
        try:
            for start_index, chunk in _chunks(rows, self.settings.chunk_size):
                await self._upload_chunk(entity, batch_id, doc_type, start_index, chunk)
                logger.debug(
                    "[%s] Queued upload: batchID %s, chunkSize %d, startIndex %d",
                    tx_id, batch_id, len(chunk), start_index,
                )
        except SQLAlchemyError as e:
            msg = f"Error occurred uploading batch of {expected} docs with batchID {batch_id}: {e}"
            logger.error("[%s] %s", tx_id, msg)
            raise PersistenceError(msg) from e

        attempts = self.settings.readback_attempts
        for _ in range(attempts):
            items = await self.query_batch_items(entity, batch_id, doc_type)
            if len(items) == expected:
                return items
            logger.warning("[%s] Batch items not ready.  Expected %d but got %d", tx_id, expected, len(items))
            await self._sleep(self.settings.readback_delay)

        msg = f"Batch items not ready after {attempts} retries"
        logger.error("[%s] %s", tx_id, msg)
        raise ConsistencyError(msg)

    async def _delete_item(self, item: BatchItem, tx_id: str) -> None:
        try:
            async with self._database.session_scope() as session:
                await BatchQueueRepository(session).delete(item.record_id)
        except SQLAlchemyError as e:
            logger.error("[%s] Failed to delete batch item %d: %s", tx_id, item.row_id, e)

    async def _annotate_item(self, item: BatchItem, message: str, tx_id: str) -> None:
        item.error_message = message
        try:
            async with self._database.session_scope() as session:
                await BatchQueueRepository(session).annotate_error(item.record_id, message)
        except SQLAlchemyError as e:
            logger.error("[%s] Failed to update batch item %d: %s", tx_id, item.row_id, e)

    async def _process_item(
        self,
        item: BatchItem,
        entity: EntityConfig,
        processor: RowProcessor,
        credential_type: str,
        tx_id: str,
        authorization: str | None = None,
    ) -> RowResult:
        row = item.as_row()
        try:
            result = await processor(row, entity, credential_type, tx_id, authorization)
        except IntakeError as e:
            result = RowResult(status=400, message=e.message)
        except Exception as e:
            logger.exception("[%s] Unexpected error processing row %d", tx_id, item.row_id)
            result = RowResult(status=400, message=error_message(e))

        if result.ok:
            logger.debug("[%s] Success UploadCredential: %d", tx_id, item.row_id)
            await self._delete_item(item, tx_id)
        else:
            message = f"Failed to create and upload test result credential for id {row.get('id')}: {result.message}"
            logger.error("[%s] %s", tx_id, message)
            await self._annotate_item(item, message, tx_id)
        return result

    async def _update_stats(
        self, entity: str, stat_docs: list[dict[str, Any]], timestamp: datetime, tx_id: str
    ) -> None:
        for doc in stat_docs:
            doc["submissionTimestamp"] = timestamp
        try:
            async with self._database.session_scope() as session:
                await StatsRepository(session).bulk_insert(entity, stat_docs)
        except SQLAlchemyError as e:
            logger.error("[%s] Error occurred creating stat docs: %s", tx_id, e)

    async def save_upload_results(self, entity: str, report: dict[str, Any], tx_id: str = "") -> None:
        logger.info(
            "[%s] Attempting to save batch report %s: rowCount %d, success %d, failures %d",
            tx_id, report["type"], report["rowCount"], report["successCount"], report["failureCount"],
        )
        try:
            async with self._database.session_scope() as session:
                await BatchReportRepository(session).create(entity, report)
        except SQLAlchemyError as e:
            logger.error("[%s] Error occurred saving batch report %s: %s", tx_id, report["batchID"], e)

    async def upload_entity_data(
        self,
        entity: EntityConfig,
        batch: BatchInfo,
        processor: RowProcessor,
        credential_type: str,
        tx_id: str = "",
        report_type: str = DocType.TESTRESULT_BATCH_REPORT,
    ) -> dict[str, Any]:
        """Process queued rows one at a time and return the saved batch report."""
        row_count = len(batch.items)
        logger.debug("[%s] %s : uploadEntityData for file %s, rowCount %d", tx_id, batch.batch_id, batch.file_name, row_count)
        submitted = datetime.now(timezone.utc)

        breaker = BatchErrorBreaker(
            batch.batch_id,
            BatchErrorBreakerConfig(failure_threshold=self.settings.batch_max_error_threshold),
        )
        worker = RateLimitedWorker(self.settings.process_min_interval, name=f"batch-{batch.batch_id}")
        stat_docs: list[dict[str, Any]] = []
        processed: list[BatchItem] = []
        failure_messages: list[str] = []

        report: dict[str, Any] = {
            "type": report_type,
            "batchID": batch.batch_id,
            "rowCount": row_count,
            "batchFailureMessages": failure_messages,
            "fileName": batch.file_name,
            "submittedTimestamp": submitted,
        }

        await worker.start()
        try:
            for item in sorted(batch.items, key=lambda i: i.row_id):
                logger.debug("[%s] Test Result: batchID %s, rowID %d", tx_id, batch.batch_id, item.row_id)
                result = await worker.submit(
                    self._process_item, item, entity, processor, credential_type, tx_id, batch.authorization
                )
                processed.append(item)
                if result.ok:
                    breaker.record_success()
                    if result.stat_doc:
                        stat_docs.append(result.stat_doc)
                else:
                    breaker.record_failure()
                if not breaker.allow_request():
                    abort = f"Batch processing abandoned after {breaker.failure_count} failures"
                    logger.error("[%s] %s : %s", tx_id, batch.batch_id, abort)
                    failure_messages.append(abort)
                    break
        except Exception as e:
            failure_messages.append(f"Batch processing stopped: {error_message(e)}")
            raise
        finally:
            await worker.stop()
            logger.info(
                "[%s] batchID %s: rowCount %d, successCount %d, failureCount %d",
                tx_id, batch.batch_id, row_count, breaker.success_count, breaker.failure_count,
            )
            await self._update_stats(entity.entity, stat_docs, submitted, tx_id)
            failed_rows = get_failed_rows(item.as_row() for item in processed)
            report.update(successCount=breaker.success_count, failureCount=len(failed_rows), failedRows=failed_rows)
            await self.save_upload_results(entity.entity, report, tx_id)
        return report

    def start_batch(
        self,
        entity: EntityConfig,
        batch: BatchInfo,
        processor: RowProcessor,
        credential_type: str,
        tx_id: str = "",
    ) -> asyncio.Task[dict[str, Any]]:
        """Run ``upload_entity_data`` in the background; the caller does not wait for it."""
        return self.schedule(self.upload_entity_data(entity, batch, processor, credential_type, tx_id), batch.batch_id)

    def schedule(self, coro: Coroutine[Any, Any, T], batch_id: str) -> asyncio.Task[T]:
        task = asyncio.create_task(coro, name=f"batch-{batch_id}")
        self._tasks.add(task)
        task.add_done_callback(self._batch_done)
        return task

    def _batch_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Batch task %s failed: %s", task.get_name(), exc)

    async def wait_for_batches(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
