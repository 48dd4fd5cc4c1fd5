"""Submission statistics and batch reports."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import datetime, time, timedelta, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from intake_common.errors import PersistenceError, ValidationError
from intake_common.infrastructure import (
    BatchReportRecord,
    BatchReportRepository,
    CredentialStatRecord,
    DatabaseManager,
    StatsRepository,
)

from .batch import DocType

logger = logging.getLogger(__name__)

_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
BASE_REPORT_TYPES = ("totalSubmissions", "totalCredentials")


def _parse_date(value: Any) -> datetime | None:
    if not isinstance(value, str) or not _DATE_PATTERN.match(value):
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


def validate_report_dates(start: Any, end: Any, shift: Any) -> str:
    """Return an error message for the report query parameters, or ``""``."""
    start_date = _parse_date(start)
    end_date = _parse_date(end)
    if start_date is None or end_date is None:
        return "Dates in query must be valid and in the form of YYYY-MM-DD"
    if start_date > end_date:
        return "Start date cannot be later than end date"
    try:
        float(shift)
    except (TypeError, ValueError):
        return "Offset must be a number"
    return ""


def report_query_range(start: str, end: str, shift: float = 0) -> tuple[datetime, datetime]:
    """UTC bounds for local days ``start`` to ``end``.

    ``shift`` is the client's timezone offset in minutes as reported by
    ``Date.getTimezoneOffset`` (positive west of UTC).
    """
    offset = timedelta(minutes=float(shift))
    start_date = _parse_date(start)
    end_date = _parse_date(end)
    if start_date is None or end_date is None:
        msg = "Dates in query must be valid and in the form of YYYY-MM-DD"
        raise ValidationError(msg)
    end_of_day = datetime.combine(end_date.date(), time.max, tzinfo=timezone.utc)
    return start_date + offset, end_of_day + offset


def _stat_fields(doc: CredentialStatRecord | dict[str, Any]) -> tuple[str, str, datetime]:
    if isinstance(doc, CredentialStatRecord):
        return doc.cred_type or "", doc.submission_id, doc.submission_timestamp
    return doc.get("credType") or "", doc.get("submissionId"), doc["submissionTimestamp"]


def build_report(docs: Iterable[CredentialStatRecord | dict[str, Any]], shift: float = 0) -> dict[str, Any]:
    """Daily credential counts per type, with per-type daily averages.

    ``docs`` must be sorted by submission timestamp and submission id.
    """
    data: dict[str, dict[str, int]] = {}
    submission_ids: set[str] = set()
    types = list(BASE_REPORT_TYPES)
    offset = timedelta(minutes=float(shift))

    for doc in docs:
        cred_type, submission_id, timestamp = _stat_fields(doc)
        day = (_as_utc(timestamp) - offset).date().isoformat()
        stats = data.setdefault(day, {"totalSubmissions": 0, "totalCredentials": 0})

        type_key = f"{cred_type.lower()}Credentials"
        if type_key not in types:
            types.append(type_key)
        stats[type_key] = stats.get(type_key, 0) + 1

        if submission_id not in submission_ids:
            submission_ids.add(submission_id)
            stats["totalSubmissions"] += 1
        stats["totalCredentials"] += 1

    averages: dict[str, float] = {}
    for type_key in types:
        total = 0
        for stats in data.values():
            stats.setdefault(type_key, 0)
            total += stats[type_key]
        averages[type_key] = total / len(data) if data else 0
    return {"types": types, "data": data, "averages": averages}


def batch_report_to_dict(record: BatchReportRecord) -> dict[str, Any]:
    return {
        "type": record.report_type,
        "batchID": record.batch_id,
        "fileName": record.file_name,
        "rowCount": record.row_count,
        "successCount": record.success_count,
        "failureCount": record.failure_count,
        "failedRows": list(record.failed_rows or []),
        "batchFailureMessages": list(record.batch_failure_messages or []),
        "submittedTimestamp": _as_utc(record.submitted_timestamp).isoformat(),
    }


def build_single_batch_report(batch_id: str, docs: Iterable[dict[str, Any]]) -> dict[str, Any]:
    """Merge the report documents written for one batch."""
    report: dict[str, Any] = {
        "batchID": batch_id,
        "submittedTimestamp": None,
        "fileName": None,
        "rowCount": 0,
        "successCountTotal": 0,
        "failureCountTotal": 0,
        "failedRows": [],
    }
    for doc in docs:
        if not report["fileName"]:
            report["fileName"] = doc.get("fileName")
        if "batchFailureMessages" not in report:
            report["batchFailureMessages"] = doc.get("batchFailureMessages")
        report["rowCount"] += doc.get("rowCount", 0)
        report["successCountTotal"] += doc.get("successCount", 0)
        report["failureCountTotal"] += doc.get("failureCount", 0)
        report["failedRows"] = report["failedRows"] + list(doc.get("failedRows") or [])
        submitted = doc.get("submittedTimestamp")
        if submitted and (report["submittedTimestamp"] is None or submitted < report["submittedTimestamp"]):
            report["submittedTimestamp"] = submitted
    return report


def build_multi_batch_report(docs: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    grouped: dict[str, list[dict[str, Any]]] = {}
    for doc in docs:
        grouped.setdefault(doc["batchID"], []).append(doc)
    return [build_single_batch_report(batch_id, batch_docs) for batch_id, batch_docs in grouped.items()]


class ReportService:
    """Read side for submission statistics and batch reports."""

    def __init__(self, database: DatabaseManager) -> None:
        self._database = database

    async def get_report(self, entity: str, start: str, end: str, shift: Any = 0, tx_id: str = "") -> dict[str, Any]:
        shift = shift or 0
        message = validate_report_dates(start, end, shift)
        if message:
            raise ValidationError(message)
        range_start, range_end = report_query_range(start, end, float(shift))
        logger.debug("[%s] Querying stats for %s between %s and %s", tx_id, entity, range_start, range_end)
        try:
            async with self._database.session_scope() as session:
                records = await StatsRepository(session).query_range(entity, range_start, range_end)
                report = build_report(records, float(shift))
        except SQLAlchemyError as e:
            msg = f"Error occurred querying stats for {entity}: {e}"
            logger.error("[%s] %s", tx_id, msg)
            raise PersistenceError(msg) from e
        logger.info("[%s] Successfully retrieved report", tx_id)
        return report

    async def _query_batches(
        self,
        entity: str,
        report_type: str,
        batch_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        bookmark: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        try:
            async with self._database.session_scope() as session:
                page = await BatchReportRepository(session).query(
                    entity, report_type, batch_id=batch_id, start=start, end=end, limit=limit, bookmark=bookmark
                )
                docs = [batch_report_to_dict(record) for record in page.docs]
        except SQLAlchemyError as e:
            msg = f"Error occurred querying batch reports for {entity}: {e}"
            logger.error(msg)
            raise PersistenceError(msg) from e
        return docs, page.bookmark

    async def get_batch_report(
        self,
        entity: str,
        batch_id: str,
        report_type: str = DocType.TESTRESULT_BATCH_REPORT,
        limit: int | None = None,
        bookmark: str | None = None,
    ) -> dict[str, Any]:
        docs, next_bookmark = await self._query_batches(
            entity, report_type, batch_id=batch_id, limit=limit, bookmark=bookmark
        )
        return {"payload": build_single_batch_report(batch_id, docs), "bookmark": next_bookmark}

    async def get_all_batches_report(
        self,
        entity: str,
        report_type: str = DocType.TESTRESULT_BATCH_REPORT,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        bookmark: str | None = None,
    ) -> dict[str, Any]:
        docs, next_bookmark = await self._query_batches(
            entity, report_type, start=start, end=end, limit=limit, bookmark=bookmark
        )
        return {"payload": build_multi_batch_report(docs), "bookmark": next_bookmark}

    async def list_batch_ids(self, entity: str, report_type: str = DocType.TESTRESULT_BATCH_REPORT) -> list[str]:
        async with self._database.session_scope() as session:
            return await BatchReportRepository(session).list_batch_ids(entity, report_type)
