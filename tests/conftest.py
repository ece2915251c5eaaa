"""Shared fixtures: a throwaway SQLite database, job settings and a controllable clock."""

from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tunescan.application.services.library_scan_service import LibraryScanService
from tunescan.application.services.scan_run_tracker import ScanRunTracker
from tunescan.application.workers.persistent_job_queue import PersistentJobQueue
from tunescan.config import DatabaseSettings, JobSettings
from tunescan.infrastructure.persistence import Database


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
async def database(tmp_path: Path) -> AsyncIterator[Database]:
    """File-backed SQLite database with all tables created."""
    db = Database(DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'tunescan.db'}"))
    await db.create_tables()
    yield db
    await db.drop_tables()
    await db.close()


@pytest.fixture
def session_factory(database: Database) -> async_sessionmaker[AsyncSession]:
    return database.get_session_factory()


@pytest.fixture
def job_settings() -> JobSettings:
    """Defaults with a fast poll interval so worker tests don't idle."""
    return JobSettings(
        _env_file=None,
        job_poll_interval_seconds=0.01,
        max_db_batch_size=500,
        per_type_concurrency={},
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue(
    session_factory: async_sessionmaker[AsyncSession],
    job_settings: JobSettings,
    clock: FakeClock,
) -> PersistentJobQueue:
    return PersistentJobQueue(session_factory, job_settings, clock=clock)


@pytest.fixture
def tracker(session_factory: async_sessionmaker[AsyncSession]) -> ScanRunTracker:
    return ScanRunTracker(session_factory)


@pytest.fixture
def scan_service(queue: PersistentJobQueue, tracker: ScanRunTracker) -> LibraryScanService:
    return LibraryScanService(queue, tracker)


@pytest.fixture
def scan_payload() -> Callable[..., dict[str, Any]]:
    """Build a camelCase scan.directory payload for ``root``."""

    def _build(root: str | Path, **overrides: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "scanId": "scan-1",
            "userId": "user-1",
            "rootPath": str(root),
            "allowedRoots": [str(root)],
        }
        payload.update(overrides)
        return payload

    return _build


@pytest.fixture
def music_tree(tmp_path: Path) -> Path:
    """A small library: three audio files, one non-audio file, one ignorable directory.

    music/
      a.mp3
      cover.jpg
      Artist/
        Album/
          01.flac
          02.OGG
      .trash/
        junk.mp3
    """
    root = tmp_path / "music"
    album = root / "Artist" / "Album"
    album.mkdir(parents=True)
    (root / ".trash").mkdir()
    (root / "a.mp3").write_bytes(b"a" * 10)
    (root / "cover.jpg").write_bytes(b"jpg")
    (album / "01.flac").write_bytes(b"f" * 20)
    (album / "02.OGG").write_bytes(b"o" * 30)
    (root / ".trash" / "junk.mp3").write_bytes(b"j")
    return root
