"""Tests for ScanBatchWriter batching and idempotent upserts."""

from types import SimpleNamespace

import pytest
from sqlalchemy import select

from tunescan.config import SCAN_DIRECTORY_JOB_TYPE, JobSettings
from tunescan.domain.entities import WalkEntry
from tunescan.domain.exceptions import UnsupportedDatabaseError
from tunescan.infrastructure.persistence.models import ScanFileModel
from tunescan.infrastructure.persistence.scan_batch_writer import ScanBatchWriter


def _entry(name: str, size: int = 1, mtime_ms: int = 1000) -> WalkEntry:
    return WalkEntry(path=f"/music/{name}", size_bytes=size, mtime_ms=mtime_ms, extension=".mp3")


@pytest.fixture
async def scan_id(queue, tracker, scan_payload) -> str:
    """A scan run row the scan_files foreign key can point at."""
    enqueued = await queue.enqueue(SCAN_DIRECTORY_JOB_TYPE, scan_payload("/music"))
    await tracker.create("scan-1", enqueued.job_id, "user-1", "/music")
    return "scan-1"


class MySQLSession:
    """Session stand-in bound to a dialect without an upsert statement."""

    async def __aenter__(self) -> "MySQLSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    def get_bind(self):
        return SimpleNamespace(dialect=SimpleNamespace(name="mysql"))


async def _rows(session_factory, scan_id: str) -> dict[str, ScanFileModel]:
    async with session_factory() as session:
        result = await session.scalars(
            select(ScanFileModel).where(ScanFileModel.scan_id == scan_id)
        )
        return {row.path: row for row in result}


class TestBatching:
    """Test buffer and batch size behaviour."""

    def test_batch_size_is_clamped(self, session_factory) -> None:
        settings = JobSettings(_env_file=None, max_db_batch_size=50)

        assert ScanBatchWriter(session_factory, "s", settings, batch_size=10_000).batch_size == 50
        assert ScanBatchWriter(session_factory, "s", settings, batch_size=10).batch_size == 10
        assert ScanBatchWriter(session_factory, "s", settings).batch_size == 50

    @pytest.mark.asyncio
    async def test_flush_writes_one_batch(self, session_factory, scan_id) -> None:
        settings = JobSettings(_env_file=None, max_db_batch_size=2)
        writer = ScanBatchWriter(session_factory, scan_id, settings)
        for name in ("a.mp3", "b.mp3", "c.mp3"):
            writer.add(_entry(name))

        assert await writer.flush() == 2
        assert writer.size == 1
        assert writer.stats.persisted == 2
        assert writer.stats.batches_flushed == 1

        assert await writer.flush_all() == 1
        assert writer.size == 0
        assert writer.stats.batches_flushed == 2
        assert len(await _rows(session_factory, scan_id)) == 3

    @pytest.mark.asyncio
    async def test_empty_flush_is_a_noop(self, session_factory, scan_id, job_settings) -> None:
        writer = ScanBatchWriter(session_factory, scan_id, job_settings)

        assert await writer.flush() == 0
        assert await writer.flush_all() == 0
        assert writer.stats.batches_flushed == 0


class TestIdempotency:
    """Test that re-flushing the same paths never duplicates rows."""

    @pytest.mark.asyncio
    async def test_reflush_updates_in_place(self, session_factory, scan_id, job_settings) -> None:
        first = ScanBatchWriter(session_factory, scan_id, job_settings)
        first.add(_entry("a.mp3", size=1))
        first.add(_entry("b.mp3", size=2))
        await first.flush_all()

        # A second attempt re-walks the tree after a crash
        second = ScanBatchWriter(session_factory, scan_id, job_settings)
        second.add(_entry("a.mp3", size=10, mtime_ms=2000))
        second.add(_entry("b.mp3", size=2))
        await second.flush_all()

        rows = await _rows(session_factory, scan_id)
        assert set(rows) == {"/music/a.mp3", "/music/b.mp3"}
        assert rows["/music/a.mp3"].size_bytes == 10
        assert rows["/music/a.mp3"].mtime_ms == 2000

    @pytest.mark.asyncio
    async def test_duplicate_path_in_one_batch(
        self, session_factory, scan_id, job_settings
    ) -> None:
        writer = ScanBatchWriter(session_factory, scan_id, job_settings)
        writer.add(_entry("a.mp3", size=1))
        writer.add(_entry("a.mp3", size=5))

        await writer.flush()

        rows = await _rows(session_factory, scan_id)
        assert len(rows) == 1
        assert rows["/music/a.mp3"].size_bytes == 5


class TestLargeBatches:
    """Test batches that exceed the bound-parameter limit of one statement."""

    @pytest.mark.asyncio
    async def test_huge_batch_is_written_in_one_flush(self, session_factory, scan_id) -> None:
        """5000 rows x 8 columns is more parameters than SQLite binds per statement."""
        settings = JobSettings(_env_file=None, max_db_batch_size=5000)
        writer = ScanBatchWriter(session_factory, scan_id, settings)
        for i in range(5000):
            writer.add(_entry(f"{i:05d}.mp3"))

        assert await writer.flush() == 5000
        assert writer.stats.batches_flushed == 1
        assert len(await _rows(session_factory, scan_id)) == 5000


class TestUnsupportedDatabase:
    """Test databases without an upsert statement."""

    @pytest.mark.asyncio
    async def test_unknown_dialect_raises_domain_error(self, job_settings) -> None:
        writer = ScanBatchWriter(MySQLSession, "scan-1", job_settings)
        writer.add(_entry("a.mp3"))

        with pytest.raises(UnsupportedDatabaseError, match="mysql"):
            await writer.flush()

        # Nothing was written, so nothing leaves the buffer
        assert writer.size == 1
