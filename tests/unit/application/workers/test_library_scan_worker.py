"""Tests for the scan.directory handler run through a real JobWorker."""

import sys
from collections.abc import Callable
from pathlib import Path

import pytest
from sqlalchemy import func, select

from tunescan.application.services.library_scan_service import LibraryScanService
from tunescan.application.services.scan_run_tracker import ScanRunTracker
from tunescan.application.workers.job_types import JobType, parse_payload
from tunescan.application.workers.job_worker import JobContext, JobWorker
from tunescan.application.workers.library_scan_worker import LibraryScanWorker
from tunescan.application.workers.persistent_job_queue import PersistentJobQueue
from tunescan.config import JobSettings
from tunescan.domain.entities import JobState, ScanCounters, ScanState
from tunescan.domain.exceptions import LeaseLostError
from tunescan.infrastructure.persistence.models import ScanFileModel


class JumpingClock:
    """Monotonic clock that jumps far ahead after the first reading."""

    def __init__(self, jump: float) -> None:
        self._readings = 0
        self._jump = jump

    def __call__(self) -> float:
        self._readings += 1
        return 0.0 if self._readings == 1 else self._jump


class CancellingTracker(ScanRunTracker):
    """Requests cancellation of the scan's job right after the first progress update."""

    def __init__(self, session_factory, queue: PersistentJobQueue) -> None:
        super().__init__(session_factory)
        self._queue = queue

    async def update_progress(self, scan_id: str, counters: ScanCounters) -> bool:
        applied = await super().update_progress(scan_id, counters)
        run = await self.get(scan_id)
        await self._queue.request_cancel(run.job_id)
        return applied


class Harness:
    """Queue, worker and scan service sharing one set of settings."""

    def __init__(
        self,
        session_factory,
        settings: JobSettings,
        clock,
        scan_clock: Callable[[], float] | None = None,
        cancel_after_first_batch: bool = False,
    ) -> None:
        self.session_factory = session_factory
        self.queue = PersistentJobQueue(session_factory, settings, clock=clock)
        self.tracker = (
            CancellingTracker(session_factory, self.queue)
            if cancel_after_first_batch
            else ScanRunTracker(session_factory)
        )
        self.service = LibraryScanService(self.queue, self.tracker)
        self.worker = JobWorker(self.queue, settings, worker_id="scan-worker")
        extra = {"clock": scan_clock} if scan_clock else {}
        self.scan_worker = LibraryScanWorker(
            self.worker, session_factory, settings, tracker=self.tracker, **extra
        )
        self.scan_worker.register()

    async def scan_file_count(self, scan_id: str) -> int:
        async with self.session_factory() as session:
            return await session.scalar(
                select(func.count())
                .select_from(ScanFileModel)
                .where(ScanFileModel.scan_id == scan_id)
            )


@pytest.fixture
def make_harness(session_factory, clock) -> Callable[..., Harness]:
    def _make(**overrides) -> Harness:
        scan_clock = overrides.pop("scan_clock", None)
        cancel = overrides.pop("cancel_after_first_batch", False)
        settings = JobSettings(_env_file=None, job_poll_interval_seconds=0.01, **overrides)
        return Harness(
            session_factory,
            settings,
            clock,
            scan_clock=scan_clock,
            cancel_after_first_batch=cancel,
        )

    return _make


class TestSuccessfulScan:
    """Test a scan that runs to completion."""

    @pytest.mark.asyncio
    async def test_scan_persists_audio_files(self, make_harness, music_tree) -> None:
        harness = make_harness()
        started = await harness.service.start_scan(
            "user-1", str(music_tree), options={"ignoreDirectories": [".trash"]}
        )

        state = await harness.worker.process_single_job()

        assert state == JobState.SUCCEEDED
        assert await harness.scan_file_count(started.scan_id) == 3

        job = await harness.queue.get_job(started.job_id)
        assert job.result == {"discovered": 3, "persisted": 3, "batches_flushed": 1, "errors": 0}
        assert job.progress == job.result

        run = await harness.tracker.get(started.scan_id)
        assert run.state == ScanState.SUCCEEDED
        assert run.counters.files_persisted == 3
        assert run.finished_at is not None

    @pytest.mark.asyncio
    async def test_progress_is_reported_per_batch(self, make_harness, music_tree) -> None:
        harness = make_harness(max_db_batch_size=2)
        started = await harness.service.start_scan("user-1", str(music_tree))

        assert await harness.worker.process_single_job() == JobState.SUCCEEDED

        job = await harness.queue.get_job(started.job_id)
        assert job.result["discovered"] == 4
        assert job.result["persisted"] == 4
        assert job.result["batches_flushed"] == 2

    @pytest.mark.asyncio
    async def test_expired_lease_is_reclaimed(self, make_harness, music_tree, clock) -> None:
        """A crashed worker's job is picked up again once its lease expires."""
        harness = make_harness()
        started = await harness.service.start_scan("user-1", str(music_tree))
        crashed = await harness.queue.lease("crashed-worker", ["scan.directory"])
        assert crashed is not None
        clock.advance(harness.queue.settings.job_lease_duration_seconds + 1)

        assert await harness.worker.process_single_job() == JobState.SUCCEEDED

        job = await harness.queue.get_job(started.job_id)
        assert job.attempts == 2
        assert await harness.scan_file_count(started.scan_id) == 4
        # The crashed worker can no longer finish the job
        assert not await harness.queue.mark_succeeded(
            started.job_id, {}, lease_owner="crashed-worker"
        )


class TestFailedScan:
    """Test scans that fail or get retried."""

    @pytest.mark.asyncio
    async def test_root_outside_allowed_roots_never_walks(
        self, make_harness, music_tree, tmp_path
    ) -> None:
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "secret.mp3").write_bytes(b"x")
        harness = make_harness()
        started = await harness.service.start_scan(
            "user-1", str(outside), allowed_roots=[str(music_tree)]
        )

        state = await harness.worker.process_single_job()

        assert state == JobState.FAILED
        assert await harness.scan_file_count(started.scan_id) == 0
        job = await harness.queue.get_job(started.job_id)
        assert job.attempts == 1
        assert job.last_error.startswith("PathEscapeError")

        run = await harness.tracker.get(started.scan_id)
        assert run.state == ScanState.FAILED
        assert run.counters.last_error.startswith("PathEscapeError")
        assert run.started_at is None

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="symlinks need privileges on Windows")
    async def test_symlink_escape_is_rejected(
        self, make_harness, music_tree, tmp_path
    ) -> None:
        outside = tmp_path / "elsewhere"
        outside.mkdir()
        link = music_tree / "escape"
        link.symlink_to(outside, target_is_directory=True)
        harness = make_harness()
        await harness.service.start_scan(
            "user-1", str(link), allowed_roots=[str(music_tree)]
        )

        assert await harness.worker.process_single_job() == JobState.FAILED

    @pytest.mark.asyncio
    async def test_missing_root_is_retried(self, make_harness, tmp_path: Path) -> None:
        missing = tmp_path / "gone"
        harness = make_harness()
        started = await harness.service.start_scan(
            "user-1", str(missing), allowed_roots=[str(tmp_path)]
        )

        assert await harness.worker.process_single_job() == JobState.QUEUED

        run = await harness.tracker.get(started.scan_id)
        assert run.state == ScanState.QUEUED
        assert run.counters.last_error.startswith("ScanRootUnreadableError")

    @pytest.mark.asyncio
    async def test_runtime_budget_exceeded(self, make_harness, music_tree) -> None:
        harness = make_harness(
            max_job_runtime_seconds=60, scan_clock=JumpingClock(jump=61.0)
        )
        started = await harness.service.start_scan("user-1", str(music_tree))

        assert await harness.worker.process_single_job() == JobState.QUEUED

        job = await harness.queue.get_job(started.job_id)
        assert job.last_error.startswith("ScanTimeoutError: Scan job exceeded max runtime")
        assert job.run_after == harness.queue.now() + harness.queue.backoff_seconds(1)

    @pytest.mark.asyncio
    async def test_job_without_scan_run_fails_without_retry(
        self, make_harness, music_tree, scan_payload
    ) -> None:
        """A scan job nobody created a run for fails once and writes no files."""
        harness = make_harness()
        enqueued = await harness.queue.enqueue(
            JobType.SCAN_DIRECTORY, scan_payload(music_tree, scanId="orphan-scan")
        )

        assert await harness.worker.process_single_job() == JobState.FAILED

        job = await harness.queue.get_job(enqueued.job_id)
        assert job.attempts == 1
        assert job.last_error.startswith("ScanRunNotFoundError")
        assert await harness.scan_file_count("orphan-scan") == 0


class TestCancelledScan:
    """Test cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_before_lease(self, make_harness, music_tree) -> None:
        harness = make_harness()
        started = await harness.service.start_scan("user-1", str(music_tree))
        await harness.service.cancel_scan("user-1", started.scan_id)

        state = await harness.worker.process_single_job()

        assert state == JobState.CANCELLED
        assert await harness.scan_file_count(started.scan_id) == 0
        job = await harness.queue.get_job(started.job_id)
        assert job.result["cancelled"] is True
        assert job.result["persisted"] == 0

        run = await harness.tracker.get(started.scan_id)
        assert run.state == ScanState.CANCELLED
        assert run.cancelled_at is not None

    @pytest.mark.asyncio
    async def test_cancel_mid_scan_keeps_flushed_batches(
        self, make_harness, music_tree
    ) -> None:
        harness = make_harness(max_db_batch_size=1, cancel_after_first_batch=True)
        started = await harness.service.start_scan("user-1", str(music_tree))

        state = await harness.worker.process_single_job()

        assert state == JobState.CANCELLED
        assert await harness.scan_file_count(started.scan_id) == 1
        job = await harness.queue.get_job(started.job_id)
        assert job.result == {
            "cancelled": True,
            "discovered": 1,
            "persisted": 1,
            "batches_flushed": 1,
            "errors": 0,
        }

        run = await harness.tracker.get(started.scan_id)
        assert run.state == ScanState.CANCELLED
        assert run.counters.files_persisted == 1


class TestLeaseLoss:
    """Test a handler whose lease was taken over by another worker."""

    @pytest.mark.asyncio
    async def test_handler_stops_when_lease_is_lost(self, make_harness, music_tree) -> None:
        harness = make_harness()
        started = await harness.service.start_scan("user-1", str(music_tree))
        leased = await harness.queue.lease("scan-worker", ["scan.directory"])
        context = JobContext(
            leased, parse_payload(leased.job_type, leased.payload), harness.queue
        )
        context.lease_lost = True

        with pytest.raises(LeaseLostError):
            await harness.scan_worker.handle_scan_job(context)

        assert await harness.scan_file_count(started.scan_id) == 0
        run = await harness.tracker.get(started.scan_id)
        assert run.state == ScanState.RUNNING
