# Hey future me - this worker handles SCAN_DIRECTORY jobs leased by the JobWorker!
# It resolves and checks the scan root, walks it, and streams audio files into scan_files
# through a ScanBatchWriter. The ScanRun row mirrors every step so users can watch progress.
#
# CANCELLATION is cooperative: we check context.cancelled for every discovered file (cheap,
# in-memory) and refresh the flag from the DB after every flushed batch. The heartbeat
# refreshes it too, so a cancel is seen within one batch or one heartbeat, whichever is first.
#
# RETRIES: timeouts and unreadable roots raise JobExecutionError subclasses → retried with
# backoff. A path outside the allowed roots raises PathEscapeError → failed, no retry, and
# the walker is never even constructed. Same for a job whose ScanRun row is missing.
#
# LEASE LOSS: once the heartbeat finds another worker owns the job we stop walking
# (LeaseLostError). The new owner rescans from scratch, the upserts keep that idempotent.
"""Library scan worker for background directory scans."""

import asyncio
import logging
import time
from collections.abc import Callable
from contextlib import aclosing
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tunescan.application.services.directory_walker import DirectoryWalker
from tunescan.application.services.path_safety import resolve_scan_root
from tunescan.application.services.scan_run_tracker import ScanRunTracker
from tunescan.application.workers.job_types import JobType, ScanDirectoryPayload
from tunescan.application.workers.job_worker import JobContext, JobWorker
from tunescan.application.workers.persistent_job_queue import format_job_error
from tunescan.config import JobSettings
from tunescan.domain.entities import JobState, LeasedJob, ScanCounters, WalkError
from tunescan.domain.exceptions import (
    LeaseLostError,
    ScanRunNotFoundError,
    ScanTimeoutError,
)
from tunescan.infrastructure.persistence.scan_batch_writer import ScanBatchWriter

logger = logging.getLogger(__name__)


class LibraryScanWorker:
    """Worker for processing scan.directory jobs.

    This worker:
    1. Receives SCAN_DIRECTORY jobs from the JobWorker
    2. Resolves the root with realpath and rejects anything outside allowed_roots
    3. Walks the tree, flushing batches of files and reporting progress per batch
    4. Finalizes the ScanRun (succeeded / cancelled); failures are synced by on_finished

    Call register() after init!
    """

    def __init__(
        self,
        job_worker: JobWorker,
        session_factory: async_sessionmaker[AsyncSession],
        settings: JobSettings,
        tracker: ScanRunTracker | None = None,
        fs_semaphore: asyncio.Semaphore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize worker.

        Args:
            job_worker: Job worker to register with
            session_factory: Factory for creating DB sessions
            settings: Job limits (batch size, runtime budget, scan bounds)
            tracker: Scan run tracker (default: one on session_factory)
            fs_semaphore: Gate shared by all scans of this process (MAX_FS_CONCURRENCY)
            clock: Monotonic clock for the runtime budget
        """
        self._job_worker = job_worker
        self._session_factory = session_factory
        self._settings = settings
        self._tracker = tracker or ScanRunTracker(session_factory)
        self._fs_semaphore = fs_semaphore or asyncio.Semaphore(settings.max_fs_concurrency)
        self._clock = clock

    def register(self) -> None:
        """Register handlers with the job worker.

        Call this BEFORE the worker starts polling!
        """
        self._job_worker.register_handler(
            JobType.SCAN_DIRECTORY,
            self.handle_scan_job,
            on_finished=self.on_job_finished,
        )

    async def handle_scan_job(self, context: JobContext) -> dict[str, Any]:
        """Handle a scan.directory job.

        Args:
            context: Leased job with its typed payload and cancellation flag

        Returns:
            Scan counters (plus cancelled=True when stopped early)
        """
        payload: ScanDirectoryPayload = context.payload  # type: ignore[assignment]
        scan_id = payload.scan_id

        # A job enqueued without its run has nowhere to write files, retrying won't help
        if await self._tracker.get(scan_id) is None:
            raise ScanRunNotFoundError(scan_id)

        # Raises PathEscapeError before anything touches the tree
        root = await asyncio.to_thread(
            resolve_scan_root, payload.root_path, payload.allowed_roots
        )

        logger.info(
            f"Starting scan {scan_id} of {root} "
            f"(attempt {context.job.attempts}/{context.job.max_attempts})"
        )
        await self._tracker.mark_running(scan_id)

        counters = ScanCounters()

        def on_walk_error(error: WalkError) -> None:
            counters.errors += 1
            counters.last_error = str(error)

        writer = ScanBatchWriter(self._session_factory, scan_id, self._settings)
        walker = DirectoryWalker(
            payload.options,
            self._settings,
            on_error=on_walk_error,
            fs_semaphore=self._fs_semaphore,
        )
        budget = float(self._settings.max_job_runtime_seconds)
        started = self._clock()

        async with aclosing(walker.walk(root)) as entries:
            async for entry in entries:
                elapsed = self._clock() - started
                if elapsed > budget:
                    raise ScanTimeoutError(elapsed, budget)

                if context.lease_lost:
                    raise LeaseLostError(context.job_id)

                if context.cancelled:
                    return await self._finish_cancelled(scan_id, writer, counters)

                counters.files_discovered += 1
                writer.add(entry)

                if writer.size >= writer.batch_size:
                    await writer.flush()
                    self._sync_writer_stats(counters, writer)
                    await context.report_progress(counters.to_dict())
                    await self._tracker.update_progress(scan_id, counters)
                    await context.refresh_cancelled()

        if context.lease_lost:
            raise LeaseLostError(context.job_id)

        await writer.flush_all()
        self._sync_writer_stats(counters, writer)

        if await context.refresh_cancelled():
            return await self._finish_cancelled(scan_id, writer, counters)

        await self._tracker.mark_succeeded(scan_id, counters)
        result = counters.to_dict()
        await context.report_progress(result)
        return result

    async def _finish_cancelled(
        self,
        scan_id: str,
        writer: ScanBatchWriter,
        counters: ScanCounters,
    ) -> dict[str, Any]:
        # Whatever was discovered so far is kept
        await writer.flush_all()
        self._sync_writer_stats(counters, writer)
        await self._tracker.mark_cancelled(scan_id, counters)
        return {"cancelled": True, **counters.to_dict()}

    @staticmethod
    def _sync_writer_stats(counters: ScanCounters, writer: ScanBatchWriter) -> None:
        stats = writer.stats
        counters.files_persisted = stats.persisted
        counters.batches_flushed = stats.batches_flushed

    async def on_job_finished(
        self,
        job: LeasedJob,
        state: JobState,
        error: BaseException | None,
    ) -> None:
        """Mirror failed / re-queued / cancelled job outcomes onto the ScanRun.

        Succeeded runs are finalized by the handler itself.
        """
        if state == JobState.SUCCEEDED:
            return
        await self._tracker.sync_from_job(
            job.job_id,
            state,
            format_job_error(error) if error is not None else None,
        )
