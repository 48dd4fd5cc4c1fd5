from datetime import datetime, timezone

import pytest

from intake_common.errors import ValidationError
from intake_common.infrastructure import BatchReportRepository, StatsRepository
from intake_services.batch import DocType
from intake_services.reports import (
    ReportService,
    build_multi_batch_report,
    build_report,
    build_single_batch_report,
    report_query_range,
    validate_report_dates,
)

JAN_1 = datetime(2024, 1, 1, 10, tzinfo=timezone.utc)
JAN_2 = datetime(2024, 1, 2, 1, tzinfo=timezone.utc)

STAT_DOCS = [
    {"credType": "TestResult", "submissionId": "s1", "submissionTimestamp": JAN_1},
    {"credType": "TestResult", "submissionId": "s1", "submissionTimestamp": JAN_1},
    {"credType": "Vaccination", "submissionId": "s2", "submissionTimestamp": JAN_2},
]


def test_validate_report_dates():
    assert validate_report_dates("2024-01-01", "2024-01-02", 0) == ""
    assert validate_report_dates("2024-1-1", "2024-01-02", 0) == (
        "Dates in query must be valid and in the form of YYYY-MM-DD"
    )
    assert validate_report_dates("2024-02-30", "2024-03-01", 0) == (
        "Dates in query must be valid and in the form of YYYY-MM-DD"
    )
    assert validate_report_dates("2024-01-03", "2024-01-02", 0) == "Start date cannot be later than end date"
    assert validate_report_dates("2024-01-01", "2024-01-02", "east") == "Offset must be a number"


def test_report_query_range_applies_offset():
    start, end = report_query_range("2024-01-01", "2024-01-02", 60)

    assert start == datetime(2024, 1, 1, 1, tzinfo=timezone.utc)
    assert end == datetime(2024, 1, 3, 0, 59, 59, 999999, tzinfo=timezone.utc)


def test_build_report_counts_per_day():
    report = build_report(STAT_DOCS)

    assert report["types"] == ["totalSubmissions", "totalCredentials", "testresultCredentials", "vaccinationCredentials"]
    assert report["data"] == {
        "2024-01-01": {
            "totalSubmissions": 1,
            "totalCredentials": 2,
            "testresultCredentials": 2,
            "vaccinationCredentials": 0,
        },
        "2024-01-02": {
            "totalSubmissions": 1,
            "totalCredentials": 1,
            "testresultCredentials": 0,
            "vaccinationCredentials": 1,
        },
    }
    assert report["averages"] == {
        "totalSubmissions": 1.0,
        "totalCredentials": 1.5,
        "testresultCredentials": 1.0,
        "vaccinationCredentials": 0.5,
    }


def test_build_report_shifts_days_to_client_time():
    report = build_report(STAT_DOCS, shift=120)

    assert list(report["data"]) == ["2024-01-01"]
    assert report["data"]["2024-01-01"]["totalSubmissions"] == 2
    assert build_report([]) == {
        "types": ["totalSubmissions", "totalCredentials"],
        "data": {},
        "averages": {"totalSubmissions": 0, "totalCredentials": 0},
    }


def test_single_and_multi_batch_reports():
    docs = [
        {
            "batchID": "b1",
            "fileName": "a.csv",
            "rowCount": 2,
            "successCount": 1,
            "failureCount": 1,
            "failedRows": [{"id": "p1"}],
            "batchFailureMessages": [],
            "submittedTimestamp": "2024-01-01T10:00:00+00:00",
        },
        {
            "batchID": "b1",
            "fileName": "a.csv",
            "rowCount": 3,
            "successCount": 3,
            "failureCount": 0,
            "failedRows": [],
            "submittedTimestamp": "2024-01-01T09:00:00+00:00",
        },
        {"batchID": "b2", "fileName": "b.csv", "rowCount": 1, "successCount": 1, "failureCount": 0},
    ]

    merged = build_single_batch_report("b1", docs[:2])
    assert merged == {
        "batchID": "b1",
        "submittedTimestamp": "2024-01-01T09:00:00+00:00",
        "fileName": "a.csv",
        "rowCount": 5,
        "successCountTotal": 4,
        "failureCountTotal": 1,
        "failedRows": [{"id": "p1"}],
        "batchFailureMessages": [],
    }

    multi = build_multi_batch_report(docs)
    assert [r["batchID"] for r in multi] == ["b1", "b2"]
    assert multi[1]["submittedTimestamp"] is None


async def _seed(database):
    async with database.session_scope() as session:
        await StatsRepository(session).bulk_insert(
            "lab", [{**doc, "holderId": "h", "credId": f"c{i}"} for i, doc in enumerate(STAT_DOCS)]
        )
        reports = BatchReportRepository(session)
        for batch_id, rows in (("b1", 2), ("b1", 3), ("b2", 1)):
            await reports.create(
                "lab",
                {
                    "type": DocType.TESTRESULT_BATCH_REPORT,
                    "batchID": batch_id,
                    "fileName": f"{batch_id}.csv",
                    "rowCount": rows,
                    "successCount": rows,
                    "failureCount": 0,
                    "submittedTimestamp": JAN_1,
                },
            )


@pytest.mark.asyncio
async def test_report_service_stats(database):
    await _seed(database)
    service = ReportService(database)

    report = await service.get_report("lab", "2024-01-01", "2024-01-01")
    assert list(report["data"]) == ["2024-01-01"]
    assert report["data"]["2024-01-01"]["totalCredentials"] == 2

    with pytest.raises(ValidationError, match="Start date cannot be later than end date"):
        await service.get_report("lab", "2024-01-02", "2024-01-01")


@pytest.mark.asyncio
async def test_report_service_batches(database):
    await _seed(database)
    service = ReportService(database)

    single = await service.get_batch_report("lab", "b1")
    assert single["payload"]["rowCount"] == 5
    assert single["payload"]["submittedTimestamp"] == "2024-01-01T10:00:00+00:00"

    first = await service.get_all_batches_report("lab", limit=2)
    assert [r["batchID"] for r in first["payload"]] == ["b1"]
    assert first["payload"][0]["successCountTotal"] == 5

    second = await service.get_all_batches_report("lab", limit=2, bookmark=first["bookmark"])
    assert [r["batchID"] for r in second["payload"]] == ["b2"]

    assert await service.list_batch_ids("lab") == ["b1", "b2"]
    assert await service.list_batch_ids("lab", DocType.PREREG_BATCH_REPORT) == []
