"""SQLAlchemy models backing the intake document collections.

Per-organization collections share one table each and are scoped by the
``organization`` column.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class OrganizationRecord(Base):
    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    entity: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class HolderProfileRecord(Base):
    __tablename__ = "holder_profiles"
    __table_args__ = (UniqueConstraint("organization", "holder_id", name="uq_profile_holder"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    organization: Mapped[str] = mapped_column(String(128), nullable=False)
    holder_id: Mapped[str] = mapped_column(Text, nullable=False)
    symmetric_key: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    upload_token: Mapped[str | None] = mapped_column(String(256), nullable=True)
    upload_link_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    download_token: Mapped[str | None] = mapped_column(String(256), nullable=True)
    download_link_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class MapperRecord(Base):
    __tablename__ = "mappers"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    mapper_name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    version: Mapped[int] = mapped_column(nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class CredentialStatRecord(Base):
    __tablename__ = "credential_stats"
    __table_args__ = (Index("ix_stats_org_submitted", "organization", "submission_timestamp"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    organization: Mapped[str] = mapped_column(String(128), nullable=False)
    holder_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    cred_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    schema_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    cred_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    submission_id: Mapped[str] = mapped_column(String(128), nullable=False)
    submission_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class BatchQueueRecord(Base):
    __tablename__ = "batch_queue"
    __table_args__ = (Index("ix_batch_queue_lookup", "organization", "batch_id", "doc_type", "row_id"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    organization: Mapped[str] = mapped_column(String(128), nullable=False)
    batch_id: Mapped[str] = mapped_column(String(128), nullable=False)
    doc_type: Mapped[str] = mapped_column(String(64), nullable=False)
    row_id: Mapped[int] = mapped_column(Integer, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    error_message: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class BatchReportRecord(Base):
    __tablename__ = "batch_reports"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    organization: Mapped[str] = mapped_column(String(128), nullable=False)
    report_type: Mapped[str] = mapped_column(String(64), nullable=False)
    batch_id: Mapped[str] = mapped_column(String(128), nullable=False)
    file_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    row_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_rows: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    batch_failure_messages: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    submitted_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class HolderCosInfoRecord(Base):
    __tablename__ = "holder_cos_info"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    organization: Mapped[str] = mapped_column(String(128), nullable=False)
    document_id: Mapped[str] = mapped_column(String(256), unique=True, nullable=False)
    holder_id: Mapped[str] = mapped_column(Text, nullable=False)
    created_timestamp: Mapped[int] = mapped_column(Integer, nullable=False)
