# Hey future me - this is where walker output becomes durable!
#
# The walker can find 200k files. Holding them all in memory, or writing them one INSERT at
# a time, both kill us. So: buffer up to batch_size entries, then ONE upsert per batch.
#
# IDEMPOTENCY: every flush is INSERT ... ON CONFLICT (scan_id, path) DO UPDATE. If a worker
# crashes after flushing batch 7, the lease expires, another worker re-walks the tree and
# re-flushes batches 1..7 - no duplicates, latest size/mtime wins.
#
# MEMORY: batch_size is clamped to MAX_DB_BATCH_SIZE no matter what the caller asks for.
# A big MAX_DB_BATCH_SIZE is still fine for the database: each batch is split into
# statements that stay under the bound-parameter limit, committed together.
#
# FAIRNESS: after each flush we await asyncio.sleep(0) so other jobs on the same event loop
# (heartbeats!) get a turn between batches.
"""Batched, idempotent persistence of discovered scan files."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tunescan.config import JobSettings
from tunescan.domain.entities import WalkEntry
from tunescan.domain.exceptions import UnsupportedDatabaseError
from tunescan.infrastructure.persistence.models import ScanFileModel, utc_now
from tunescan.infrastructure.persistence.retry import with_db_retry

logger = logging.getLogger(__name__)

# SQLite's default SQLITE_MAX_VARIABLE_NUMBER, also under asyncpg's 32767
MAX_BOUND_PARAMETERS = 32766


@dataclass(frozen=True)
class BatchWriterStats:
    """Cumulative flush statistics."""

    persisted: int = 0
    batches_flushed: int = 0


class ScanBatchWriter:
    """Buffers walk entries and flushes them as upserts into scan_files."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        scan_id: str,
        settings: JobSettings,
        batch_size: int | None = None,
    ) -> None:
        """Initialize the writer.

        Args:
            session_factory: Factory for creating DB sessions
            scan_id: Scan run the files belong to
            settings: Job limits (max_db_batch_size is the hard ceiling)
            batch_size: Requested batch size (clamped to max_db_batch_size)
        """
        self._session_factory = session_factory
        self._scan_id = scan_id
        requested = batch_size or settings.max_db_batch_size
        self._batch_size = max(1, min(requested, settings.max_db_batch_size))
        self._buffer: list[WalkEntry] = []
        self._persisted = 0
        self._batches_flushed = 0

    @property
    def scan_id(self) -> str:
        """Scan run this writer persists into."""
        return self._scan_id

    @property
    def batch_size(self) -> int:
        """Effective (clamped) batch size."""
        return self._batch_size

    @property
    def size(self) -> int:
        """Number of buffered, not yet persisted entries."""
        return len(self._buffer)

    @property
    def stats(self) -> BatchWriterStats:
        """Cumulative persisted rows and flushed batches."""
        return BatchWriterStats(
            persisted=self._persisted, batches_flushed=self._batches_flushed
        )

    def add(self, entry: WalkEntry) -> None:
        """Buffer an entry (no I/O)."""
        self._buffer.append(entry)

    async def flush(self) -> int:
        """Persist up to one batch of buffered entries.

        Returns:
            Number of entries written by this flush (0 when the buffer was empty)
        """
        if not self._buffer:
            return 0

        batch = self._buffer[: self._batch_size]
        await self._upsert(batch)
        # Only drop from the buffer once the write committed - a failed flush keeps the batch
        del self._buffer[: len(batch)]

        self._persisted += len(batch)
        self._batches_flushed += 1
        logger.debug(
            f"Flushed {len(batch)} files for scan {self._scan_id} "
            f"(batch {self._batches_flushed}, {self._persisted} total)"
        )

        # Cooperative yield point between batches
        await asyncio.sleep(0)
        return len(batch)

    async def flush_all(self) -> int:
        """Flush until the buffer is empty.

        Returns:
            Number of entries written
        """
        written = 0
        while self._buffer:
            written += await self.flush()
        return written

    @with_db_retry(max_attempts=3)
    async def _upsert(self, batch: list[WalkEntry]) -> None:
        """Insert-or-update one batch keyed by (scan_id, path)."""
        now = utc_now()
        # PostgreSQL refuses to upsert the same key twice in one statement - last entry wins
        latest = {entry.path: entry for entry in batch}
        rows: list[dict[str, Any]] = [
            {
                "scan_file_id": str(uuid.uuid4()),
                "scan_id": self._scan_id,
                "path": entry.path,
                "size_bytes": entry.size_bytes,
                "mtime_ms": entry.mtime_ms,
                "extension": entry.extension,
                "created_at": now,
                "updated_at": now,
            }
            for entry in latest.values()
        ]

        async with self._session_factory() as session:
            dialect = session.get_bind().dialect.name
            if dialect == "postgresql":
                insert_stmt: Any = postgresql.insert(ScanFileModel)
            elif dialect == "sqlite":
                insert_stmt = sqlite.insert(ScanFileModel)
            else:
                raise UnsupportedDatabaseError(dialect)

            # One transaction per batch, but split so no statement binds too many parameters
            rows_per_statement = max(1, MAX_BOUND_PARAMETERS // len(rows[0]))
            for start in range(0, len(rows), rows_per_statement):
                chunk_stmt = insert_stmt.values(rows[start : start + rows_per_statement])
                stmt = chunk_stmt.on_conflict_do_update(
                    index_elements=[ScanFileModel.scan_id, ScanFileModel.path],
                    set_={
                        "size_bytes": chunk_stmt.excluded.size_bytes,
                        "mtime_ms": chunk_stmt.excluded.mtime_ms,
                        "extension": chunk_stmt.excluded.extension,
                        "updated_at": chunk_stmt.excluded.updated_at,
                    },
                )
                await session.execute(stmt)
            await session.commit()
