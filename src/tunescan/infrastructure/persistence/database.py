"""Async engine and session factory shared by the queue, the tracker and the batch writers."""

import logging
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tunescan.config import DatabaseSettings

logger = logging.getLogger(__name__)

# Several worker processes lease from one SQLite file; writers queue up instead of failing
_SQLITE_BUSY_TIMEOUT_SECONDS = 30
_SQLITE_PRAGMAS = (
    "PRAGMA foreign_keys=ON",
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
)


class Database:
    """Owns the async engine of one worker process."""

    def __init__(self, settings: DatabaseSettings) -> None:
        """Build the engine and session factory from DATABASE_* settings."""
        self.settings = settings

        engine_kwargs: dict[str, Any] = {
            "echo": settings.echo,
            "pool_pre_ping": settings.pool_pre_ping,
        }

        # Pool sizing only means something for PostgreSQL; aiosqlite opens one connection per session
        if "postgresql" in settings.url:
            engine_kwargs.update(
                {
                    "pool_size": settings.pool_size,
                    "max_overflow": settings.max_overflow,
                    "pool_timeout": settings.pool_timeout,
                    "pool_recycle": settings.pool_recycle,
                }
            )
        elif settings.is_sqlite:
            engine_kwargs.update(
                {
                    "connect_args": {
                        "check_same_thread": False,
                        "timeout": _SQLITE_BUSY_TIMEOUT_SECONDS,
                    }
                }
            )

        self._engine = create_async_engine(settings.url, **engine_kwargs)

        if settings.is_sqlite:
            self._configure_sqlite()

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    def _configure_sqlite(self) -> None:
        """Enable foreign keys and WAL for SQLite connections.

        SQLite has foreign keys disabled by default (scan_runs/scan_files cascade on
        job deletion). WAL lets the status readers run while a scan is flushing.
        """

        @event.listens_for(self._engine.sync_engine, "connect")
        def _apply_pragmas(dbapi_conn: Any, _connection_record: Any) -> None:
            cursor = dbapi_conn.cursor()
            try:
                for pragma in _SQLITE_PRAGMAS:
                    cursor.execute(pragma)
            finally:
                cursor.close()

        logger.debug(f"SQLite pragmas enabled for {self.settings.url}")

    @property
    def engine(self) -> Any:
        """Underlying async engine."""
        return self._engine

    def get_session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Get the session factory handed to queue, tracker and writers."""
        return self._session_factory

    async def close(self) -> None:
        """Dispose the engine (end of process or test)."""
        await self._engine.dispose()

    async def create_tables(self) -> None:
        """Create all tables (tests and first-run without alembic)."""
        from tunescan.infrastructure.persistence.models import Base

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_tables(self) -> None:
        """Drop every tunescan table. Test teardown only."""
        from tunescan.infrastructure.persistence.models import Base

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
