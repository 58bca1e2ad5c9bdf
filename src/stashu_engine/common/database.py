"""Async database manager for Stashu-Engine (single SQLite store)."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from stashu_engine.common.config import StashuSettings, get_settings
from stashu_engine.common.models import Base

# Import all model modules so Base.metadata is complete for create_all().
import stashu_engine.stashes.models  # noqa: F401
import stashu_engine.payments.models  # noqa: F401
import stashu_engine.ecash.models  # noqa: F401
import stashu_engine.settlement.models  # noqa: F401

SQLITE_BUSY_TIMEOUT_MS = 5000


def _configure_sqlite(dbapi_connection, connection_record) -> None:
    # WAL lets readers proceed while the single writer commits.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class DatabaseManager:
    """Manages a single async database engine."""

    def __init__(self, settings: StashuSettings | None = None):
        self._settings = settings or get_settings()
        self.engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    async def init(self) -> None:
        url = self._settings.db_url
        self.engine = create_async_engine(url, echo=False)
        if url.startswith("sqlite"):
            event.listen(self.engine.sync_engine, "connect", _configure_sqlite)
        self._session_factory = async_sessionmaker(
            self.engine, expire_on_commit=False
        )

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        if self._session_factory is None:
            raise RuntimeError("DatabaseManager not initialized — call init() first")
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        if self.engine is None:
            raise RuntimeError("DatabaseManager not initialized — call init() first")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self._session_factory = None
