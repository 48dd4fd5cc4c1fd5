"""Database repositories used by intake services."""

from __future__ import annotations

import base64
import binascii
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generic, Optional, TypeVar

from sqlalchemy import Select, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import flag_modified

from intake_common.errors import NotFoundError, ValidationError

from .models import (
    BatchQueueRecord,
    BatchReportRecord,
    CredentialStatRecord,
    HolderCosInfoRecord,
    HolderProfileRecord,
    MapperRecord,
    OrganizationRecord,
)

R = TypeVar("R")


@dataclass(slots=True)
class Page(Generic[R]):
    """One page of a bookmark-paginated query."""

    docs: list[R] = field(default_factory=list)
    bookmark: str | None = None


def encode_bookmark(last_id: int) -> str:
    return base64.urlsafe_b64encode(str(last_id).encode("ascii")).decode("ascii")


def decode_bookmark(bookmark: str) -> int:
    try:
        return int(base64.urlsafe_b64decode(bookmark.encode("ascii")).decode("ascii"))
    except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
        msg = "Invalid pagination bookmark"
        raise ValidationError(msg) from exc


async def _paginate(
    session: AsyncSession, stmt: Select[tuple[Any]], model: Any, limit: int | None, bookmark: str | None
) -> Page[Any]:
    if bookmark:
        stmt = stmt.where(model.id > decode_bookmark(bookmark))
    stmt = stmt.order_by(model.id)
    if limit is not None and limit > 0:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    docs = list(result.scalars().all())
    next_bookmark = encode_bookmark(docs[-1].id) if docs else bookmark
    return Page(docs=docs, bookmark=next_bookmark)


class OrganizationRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, entity: str) -> Optional[OrganizationRecord]:
        stmt = select(OrganizationRecord).where(OrganizationRecord.entity == entity.lower())
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def upsert(
        self, entity: str, config: dict[str, Any], entity_type: str | None = None
    ) -> OrganizationRecord:
        record = await self.get(entity)
        if record is None:
            record = OrganizationRecord(entity=entity.lower(), entity_type=entity_type, config=config, version=1)
            self._session.add(record)
        else:
            record.config = config
            record.entity_type = entity_type or record.entity_type
            record.version += 1
            flag_modified(record, "config")
        return record

    async def list_all(self) -> list[OrganizationRecord]:
        result = await self._session.execute(select(OrganizationRecord).order_by(OrganizationRecord.entity))
        return list(result.scalars().all())


class HolderProfileRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, organization: str, holder_id: str) -> Optional[HolderProfileRecord]:
        stmt = select(HolderProfileRecord).where(
            HolderProfileRecord.organization == organization,
            HolderProfileRecord.holder_id == holder_id,
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def upsert(
        self,
        organization: str,
        holder_id: str,
        symmetric_key: dict[str, Any],
        upload_token: str | None = None,
        upload_link_id: str | None = None,
        download_token: str | None = None,
        download_link_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> HolderProfileRecord:
        record = await self.get(organization, holder_id)
        if record is None:
            record = HolderProfileRecord(organization=organization, holder_id=holder_id, symmetric_key=symmetric_key)
            self._session.add(record)
        record.symmetric_key = symmetric_key
        record.upload_token = upload_token
        record.upload_link_id = upload_link_id
        record.download_token = download_token
        record.download_link_id = download_link_id
        if details is not None:
            record.details = details
        return record


class MapperRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, mapper_name: str) -> Optional[MapperRecord]:
        stmt = select(MapperRecord).where(MapperRecord.mapper_name == mapper_name)
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def list_all(self) -> list[MapperRecord]:
        result = await self._session.execute(select(MapperRecord).order_by(MapperRecord.mapper_name))
        return list(result.scalars().all())

    async def create(self, mapper_name: str, document: dict[str, Any]) -> MapperRecord:
        if await self.get(mapper_name) is not None:
            msg = f"Mapper {mapper_name} already exists"
            raise ValidationError(msg)
        record = MapperRecord(mapper_name=mapper_name, document=document, version=1)
        self._session.add(record)
        return record

    async def update(self, mapper_name: str, document: dict[str, Any]) -> MapperRecord:
        record = await self.get(mapper_name)
        if record is None:
            msg = f"Mapper {mapper_name} not found"
            raise NotFoundError(msg)
        record.document = document
        record.version += 1
        flag_modified(record, "document")
        return record

    async def delete(self, mapper_name: str) -> bool:
        result = await self._session.execute(delete(MapperRecord).where(MapperRecord.mapper_name == mapper_name))
        return bool(result.rowcount)


class StatsRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def bulk_insert(self, organization: str, stat_docs: Iterable[dict[str, Any]]) -> int:
        records = [
            CredentialStatRecord(
                organization=organization,
                holder_id=doc.get("holderId"),
                cred_id=None if doc.get("credId") is None else str(doc.get("credId")),
                schema_id=doc.get("schemaId"),
                cred_type=doc.get("credType"),
                submission_id=doc["submissionId"],
                submission_timestamp=doc["submissionTimestamp"],
            )
            for doc in stat_docs
        ]
        self._session.add_all(records)
        return len(records)

    async def query_range(self, organization: str, start: datetime, end: datetime) -> list[CredentialStatRecord]:
        stmt = (
            select(CredentialStatRecord)
            .where(
                CredentialStatRecord.organization == organization,
                CredentialStatRecord.submission_timestamp >= start,
                CredentialStatRecord.submission_timestamp <= end,
            )
            .order_by(CredentialStatRecord.submission_timestamp, CredentialStatRecord.submission_id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class BatchQueueRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def bulk_insert(
        self, organization: str, batch_id: str, doc_type: str, rows: Iterable[tuple[int, dict[str, Any]]]
    ) -> list[BatchQueueRecord]:
        records = [
            BatchQueueRecord(
                organization=organization,
                batch_id=batch_id,
                doc_type=doc_type,
                row_id=row_id,
                payload=payload,
            )
            for row_id, payload in rows
        ]
        self._session.add_all(records)
        return records

    async def query_batch_items(self, organization: str, batch_id: str, doc_type: str) -> list[BatchQueueRecord]:
        stmt = (
            select(BatchQueueRecord)
            .where(
                BatchQueueRecord.organization == organization,
                BatchQueueRecord.batch_id == batch_id,
                BatchQueueRecord.doc_type == doc_type,
            )
            .order_by(BatchQueueRecord.row_id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count(self, organization: str, batch_id: str) -> int:
        stmt = select(func.count(BatchQueueRecord.id)).where(
            BatchQueueRecord.organization == organization, BatchQueueRecord.batch_id == batch_id
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def delete(self, record_id: int) -> bool:
        result = await self._session.execute(delete(BatchQueueRecord).where(BatchQueueRecord.id == record_id))
        return bool(result.rowcount)

    async def annotate_error(self, record_id: int, message: str) -> None:
        stmt = (
            update(BatchQueueRecord)
            .where(BatchQueueRecord.id == record_id)
            .values(error_message=message[:1024])
        )
        await self._session.execute(stmt)


class BatchReportRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, organization: str, report: dict[str, Any]) -> BatchReportRecord:
        record = BatchReportRecord(
            organization=organization,
            report_type=report["type"],
            batch_id=report["batchID"],
            file_name=report.get("fileName"),
            row_count=report.get("rowCount", 0),
            success_count=report.get("successCount", 0),
            failure_count=report.get("failureCount", 0),
            failed_rows=report.get("failedRows", []),
            batch_failure_messages=report.get("batchFailureMessages", []),
            submitted_timestamp=report["submittedTimestamp"],
        )
        self._session.add(record)
        return record

    async def query(
        self,
        organization: str,
        report_type: str,
        batch_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        bookmark: str | None = None,
    ) -> Page[BatchReportRecord]:
        stmt = select(BatchReportRecord).where(
            BatchReportRecord.organization == organization,
            BatchReportRecord.report_type == report_type,
        )
        if batch_id is not None:
            stmt = stmt.where(BatchReportRecord.batch_id == batch_id)
        if start is not None:
            stmt = stmt.where(BatchReportRecord.submitted_timestamp >= start)
        if end is not None:
            stmt = stmt.where(BatchReportRecord.submitted_timestamp < end)
        return await _paginate(self._session, stmt, BatchReportRecord, limit, bookmark)

    async def list_batch_ids(self, organization: str, report_type: str) -> list[str]:
        stmt = (
            select(BatchReportRecord.batch_id)
            .where(
                BatchReportRecord.organization == organization,
                BatchReportRecord.report_type == report_type,
            )
            .distinct()
            .order_by(BatchReportRecord.batch_id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class CosInfoRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def save(self, organization: str, document_id: str, holder_id: str) -> HolderCosInfoRecord:
        record = HolderCosInfoRecord(
            organization=organization,
            document_id=document_id,
            holder_id=holder_id,
            created_timestamp=int(datetime.now(timezone.utc).timestamp()),
        )
        self._session.add(record)
        return record

    async def get(self, document_id: str) -> Optional[HolderCosInfoRecord]:
        stmt = select(HolderCosInfoRecord).where(HolderCosInfoRecord.document_id == document_id)
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def query_by_holder(
        self, organization: str, holder_id: str, start: int, end: int
    ) -> list[HolderCosInfoRecord]:
        """Markers of ``holder_id`` created between unix seconds ``start`` and ``end`` inclusive."""
        stmt = (
            select(HolderCosInfoRecord)
            .where(
                HolderCosInfoRecord.organization == organization,
                HolderCosInfoRecord.holder_id == holder_id,
                HolderCosInfoRecord.created_timestamp >= start,
                HolderCosInfoRecord.created_timestamp <= end,
            )
            .order_by(HolderCosInfoRecord.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
