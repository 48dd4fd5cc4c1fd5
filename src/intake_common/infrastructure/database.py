"""Async SQLAlchemy engine and session handling for the intake store.

Organizations, mappers, batch queues, reports and submission statistics all
live in the same database. PostgreSQL (asyncpg) is used in deployments and an
in-memory SQLite database (aiosqlite) in tests and local runs.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from .models import Base

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DatabaseConfig:
    url: str
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> DatabaseConfig:
        """Accept either a full ``url`` or discrete PostgreSQL connection fields."""
        url = raw.get("url")
        if not url:
            url = URL.create(
                "postgresql+asyncpg",
                username=raw.get("user", "intake"),
                password=raw.get("password", "intake"),
                host=raw.get("host", "localhost"),
                port=int(raw.get("port", 5432)),
                database=raw.get("name", "intake"),
            ).render_as_string(hide_password=False)
        pool = raw.get("pool", {})
        return cls(
            url=url,
            echo=bool(raw.get("echo", False)),
            pool_size=int(pool.get("size", raw.get("pool_size", 10))),
            max_overflow=int(pool.get("max_overflow", raw.get("max_overflow", 20))),
            pool_timeout=int(pool.get("timeout", raw.get("pool_timeout", 30))),
        )

    @property
    def is_sqlite(self) -> bool:
        return make_url(self.url).get_backend_name() == "sqlite"

    def engine_options(self) -> dict[str, Any]:
        if self.is_sqlite:
            # in-memory databases only exist for the lifetime of one connection
            return {
                "echo": self.echo,
                "poolclass": StaticPool,
                "connect_args": {"check_same_thread": False},
            }
        return {
            "echo": self.echo,
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
            "pool_pre_ping": True,
        }


class DatabaseManager:
    """Owns the engine and hands out transactional sessions to repositories."""

    def __init__(self, config: DatabaseConfig) -> None:
        self._config = config
        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self._config.url, **self._config.engine_options())
            logger.debug("Created database engine for %s", make_url(self._config.url).render_as_string())
        return self._engine

    def _sessionmaker(self) -> async_sessionmaker[AsyncSession]:
        if self._sessions is None:
            self._sessions = async_sessionmaker(self.engine, expire_on_commit=False, autoflush=False)
        return self._sessions

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Intake tables ready: %s", ", ".join(sorted(Base.metadata.tables)))

    async def dispose(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessions = None

    @asynccontextmanager
    async def session_scope(self) -> AsyncIterator[AsyncSession]:
        """Yield a session that commits on success and rolls back on any error."""
        async with self._sessionmaker()() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
