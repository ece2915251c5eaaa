"""Job Worker - polls the persistent queue and runs handlers under leases.

Hey future me - this is the EXECUTION side of PersistentJobQueue!

LOOP (one cycle):
1. Too many jobs in flight (>= QUEUE_MAX_INFLIGHT)? → sleep and try again
2. For every registered job type the InflightLimiter still has room for:
   lease() one job → limiter.start() → spawn a task running execute()
3. Nothing scheduled this cycle? → sleep JOB_POLL_INTERVAL_SECONDS

PER JOB (execute):
- Re-validate the stored payload (bad payload = non-retryable failure, no handler call)
- Heartbeat task extends the lease every lease/3 seconds and refreshes the cancel flag
- Handler returns normally       → mark_succeeded (or mark_cancelled if cancel was seen)
- Handler raises NonRetryableJob → mark_failed(retryable=False)
- Handler raises anything else   → mark_failed, retry policy decides (re-queue or failed)
- on_finished hook runs after every terminal write that actually applied

Terminal writes carry our lease_owner. If the lease expired and another worker reclaimed
the job, our write is ignored - THEIR result wins. That's the at-least-once contract.
"""

import asyncio
import logging
import os
import socket
import time
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from pydantic import BaseModel

from tunescan.application.workers.inflight_limiter import InflightLimiter
from tunescan.application.workers.job_types import parse_payload
from tunescan.application.workers.persistent_job_queue import PersistentJobQueue
from tunescan.config import JobSettings
from tunescan.domain.entities import JobState, LeasedJob
from tunescan.domain.exceptions import JobPayloadValidationError, NonRetryableJobError
from tunescan.infrastructure.observability import (
    job_log_context,
    log_operation,
    log_worker_health,
)

logger = logging.getLogger(__name__)


class JobContext:
    """What a handler gets: the leased job, its typed payload and a cancellation signal.

    Hey future me - cancellation is COOPERATIVE. Nobody kills the handler task; the handler
    checks ``context.cancelled`` at safe points and stops on its own. The flag starts set if
    the job was cancelled while still queued, and is refreshed from the DB on every heartbeat
    and whenever the handler calls refresh_cancelled().
    """

    def __init__(
        self,
        job: LeasedJob,
        payload: BaseModel,
        queue: PersistentJobQueue,
    ) -> None:
        self.job = job
        self.payload = payload
        self._queue = queue
        self.cancel_event = asyncio.Event()
        self.lease_lost = False
        if job.cancel_requested:
            self.cancel_event.set()

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def cancelled(self) -> bool:
        """Whether cancellation was requested for this job."""
        return self.cancel_event.is_set()

    async def refresh_cancelled(self) -> bool:
        """Re-read the cancel flag from the database."""
        if not self.cancel_event.is_set() and await self._queue.is_cancel_requested(
            self.job.job_id
        ):
            logger.info(f"Job {self.job.job_id} observed cancellation request")
            self.cancel_event.set()
        return self.cancel_event.is_set()

    async def report_progress(self, progress: dict[str, Any]) -> None:
        """Store a progress snapshot on the job record."""
        await self._queue.mark_progress(self.job.job_id, progress)


JobHandler = Callable[[JobContext], Awaitable[dict[str, Any] | None]]
FinishedHook = Callable[
    [LeasedJob, JobState, BaseException | None], Awaitable[None]
]


@dataclass(frozen=True)
class _Registration:
    handler: JobHandler
    on_finished: FinishedHook | None = None


def default_worker_id() -> str:
    """Worker identity used as lease_owner: host, pid and a random suffix."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class JobWorker:
    """Polls the persistent queue and executes leased jobs concurrently.

    Lifecycle:
    - Created in main.py, handlers registered by the job-specific workers' register()
    - Runs via start() until stop() is called
    - shutdown() stops polling and waits (bounded) for in-flight jobs
    """

    def __init__(
        self,
        queue: PersistentJobQueue,
        settings: JobSettings,
        worker_id: str | None = None,
    ) -> None:
        """Initialize the job worker.

        Args:
            queue: Persistent job queue to lease from
            settings: Concurrency limits, lease duration and poll interval
            worker_id: Lease owner identity (default: host:pid:random)
        """
        self._queue = queue
        self._settings = settings
        self._worker_id = worker_id or default_worker_id()
        self._handlers: dict[str, _Registration] = {}
        self._limiter = InflightLimiter(max_concurrent_jobs=settings.max_concurrent_jobs)
        self._tasks: set[asyncio.Task[Any]] = set()
        self._running = False
        self._stop_event = asyncio.Event()
        self._started_at: float | None = None
        self._stats = {
            "cycles_completed": 0,
            "jobs_leased": 0,
            "jobs_succeeded": 0,
            "jobs_failed": 0,
            "jobs_retried": 0,
            "jobs_cancelled": 0,
            "errors_total": 0,
        }

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def limiter(self) -> InflightLimiter:
        return self._limiter

    @property
    def is_running(self) -> bool:
        return self._running

    def register_handler(
        self,
        job_type: str,
        handler: JobHandler,
        on_finished: FinishedHook | None = None,
    ) -> None:
        """Register the handler for a job type.

        Call before start(): the limiter is rebuilt with the new type's ceiling.

        Args:
            job_type: Job type the handler runs
            handler: Coroutine function receiving a JobContext, returning the job result
            on_finished: Called with (job, state, error) after each applied terminal write
        """
        job_type = str(getattr(job_type, "value", job_type))
        self._handlers[job_type] = _Registration(handler, on_finished)
        self._limiter = InflightLimiter(
            max_concurrent_jobs=self._settings.max_concurrent_jobs,
            per_type_concurrency={
                registered: self._settings.concurrency_for(registered)
                for registered in self._handlers
            },
        )
        logger.info(
            f"Registered handler for {job_type} "
            f"(concurrency={self._settings.concurrency_for(job_type)})"
        )

    async def start(self) -> None:
        """Run the poll loop until stop() is called."""
        self._running = True
        self._stop_event.clear()
        self._started_at = time.monotonic()
        logger.info(
            f"JobWorker {self._worker_id} started "
            f"(types={sorted(self._handlers)}, max_concurrent={self._settings.max_concurrent_jobs}, "
            f"max_inflight={self._settings.queue_max_inflight}, "
            f"poll_interval={self._settings.job_poll_interval_seconds}s)"
        )

        while self._running:
            scheduled = 0
            try:
                scheduled = await self.poll_once()
            except Exception as e:
                # Log but don't crash - we'll try again next cycle
                self._stats["errors_total"] += 1
                logger.exception(f"JobWorker poll error: {e}")

            self._stats["cycles_completed"] += 1
            if scheduled == 0:
                await self._idle(self._settings.job_poll_interval_seconds)

        logger.info(f"JobWorker {self._worker_id} stopped polling")

    def stop(self) -> None:
        """Signal the worker to stop polling. Running jobs keep going."""
        self._running = False
        self._stop_event.set()
        logger.info("JobWorker stopping...")

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Stop polling and wait for in-flight jobs.

        Jobs still running after ``timeout`` are cancelled. Their leases simply expire and
        another worker picks them up.
        """
        self.stop()
        if not self._tasks:
            return

        pending = set(self._tasks)
        logger.info(f"Waiting up to {timeout}s for {len(pending)} in-flight jobs")
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(
                f"Cancelled {len(still_running)} jobs on shutdown; leases will expire"
            )
            await asyncio.gather(*still_running, return_exceptions=True)

    async def _idle(self, seconds: float) -> None:
        """Sleep, waking early when stop() is called."""
        with suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)

    async def poll_once(self) -> int:
        """Run one scheduling cycle.

        Returns:
            Number of jobs leased and spawned this cycle
        """
        if self._limiter.count() >= self._settings.queue_max_inflight:
            logger.debug(
                f"In-flight ceiling reached ({self._limiter.count()}/"
                f"{self._settings.queue_max_inflight})"
            )
            return 0

        scheduled = 0
        for job_type in self._handlers:
            while (
                self._limiter.can_run(job_type)
                and self._limiter.count() < self._settings.queue_max_inflight
            ):
                leased = await self._queue.lease(self._worker_id, [job_type])
                if leased is None:
                    break
                # Count it BEFORE the task exists so the next lease sees the slot taken
                self._limiter.start(job_type)
                self._stats["jobs_leased"] += 1
                task = asyncio.create_task(
                    self._run_leased(leased), name=f"job-{leased.job_id}"
                )
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                scheduled += 1
        return scheduled

    async def _run_leased(self, leased: LeasedJob) -> None:
        try:
            await self.execute(leased)
        except Exception as e:
            self._stats["errors_total"] += 1
            logger.exception(f"Unhandled error finishing job {leased.job_id}: {e}")
        finally:
            self._limiter.finish(leased.job_type)

    async def process_single_job(self) -> JobState | None:
        """Lease and run at most one job inline (tests, one-shot CLI runs).

        Returns:
            The job's resulting state, or None if nothing was leasable
        """
        leased = await self._queue.lease(self._worker_id, list(self._handlers))
        if leased is None:
            return None
        self._limiter.start(leased.job_type)
        try:
            return await self.execute(leased)
        finally:
            self._limiter.finish(leased.job_type)

    async def execute(self, leased: LeasedJob) -> JobState | None:
        """Run one leased job and record its outcome.

        Returns:
            The state written, or None when the write lost a lease race
        """
        with job_log_context(leased.job_id, leased.job_type, self._worker_id):
            registration = self._handlers.get(leased.job_type)
            if registration is None:
                return await self._record_failure(
                    leased,
                    None,
                    NonRetryableJobError(f"No handler registered for {leased.job_type}"),
                    retryable=False,
                )

            try:
                payload = parse_payload(leased.job_type, leased.payload)
            except JobPayloadValidationError as e:
                return await self._record_failure(leased, registration, e, retryable=False)

            context = JobContext(leased, payload, self._queue)
            heartbeat = asyncio.create_task(
                self._heartbeat(context), name=f"heartbeat-{leased.job_id}"
            )
            result: dict[str, Any] | None = None
            error: Exception | None = None
            try:
                async with log_operation(
                    logger,
                    f"job.{leased.job_type}",
                    attempt=leased.attempts,
                    max_attempts=leased.max_attempts,
                ):
                    result = await registration.handler(context)
            except Exception as e:
                error = e
            finally:
                heartbeat.cancel()
                with suppress(asyncio.CancelledError):
                    await heartbeat

            if error is not None:
                return await self._record_failure(
                    leased,
                    registration,
                    error,
                    retryable=not isinstance(error, NonRetryableJobError),
                )

            if context.cancelled:
                applied = await self._queue.mark_cancelled(
                    leased.job_id, result, lease_owner=leased.lease_owner
                )
                state = JobState.CANCELLED
                stat = "jobs_cancelled"
            else:
                applied = await self._queue.mark_succeeded(
                    leased.job_id, result, lease_owner=leased.lease_owner
                )
                state = JobState.SUCCEEDED
                stat = "jobs_succeeded"

            if not applied:
                return None
            self._stats[stat] += 1
            await self._notify(registration, leased, state, None)
            return state

    async def _record_failure(
        self,
        leased: LeasedJob,
        registration: _Registration | None,
        error: BaseException,
        retryable: bool,
    ) -> JobState | None:
        state = await self._queue.mark_failed(
            leased.job_id,
            error,
            attempts=leased.attempts,
            max_attempts=leased.max_attempts,
            lease_owner=leased.lease_owner,
            retryable=retryable,
        )
        if state == JobState.QUEUED:
            self._stats["jobs_retried"] += 1
        elif state == JobState.FAILED:
            self._stats["jobs_failed"] += 1

        if state is not None and registration is not None:
            await self._notify(registration, leased, state, error)
        return state

    async def _notify(
        self,
        registration: _Registration,
        leased: LeasedJob,
        state: JobState,
        error: BaseException | None,
    ) -> None:
        if registration.on_finished is None:
            return
        try:
            await registration.on_finished(leased, state, error)
        except Exception as e:
            self._stats["errors_total"] += 1
            logger.exception(f"on_finished hook failed for job {leased.job_id}: {e}")

    async def _heartbeat(self, context: JobContext) -> None:
        """Extend the lease every lease/3 seconds while the handler runs."""
        interval = self._settings.heartbeat_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                held = await self._queue.heartbeat(context.job_id, self._worker_id)
                if not held:
                    # Another worker owns the job now. Handlers stop at their next check
                    # and our final write is ignored
                    context.lease_lost = True
                    return
                await context.refresh_cancelled()
            except Exception as e:
                logger.warning(f"Heartbeat for job {context.job_id} failed: {e}")

    def get_stats(self) -> dict[str, Any]:
        """Get worker statistics.

        Returns:
            Dictionary with counters, in-flight numbers and configuration
        """
        return {
            **self._stats,
            "worker_id": self._worker_id,
            "running": self._running,
            "inflight": self._limiter.count(),
            "inflight_by_type": {
                job_type: self._limiter.count_for(job_type) for job_type in self._handlers
            },
            "registered_types": sorted(self._handlers),
        }

    def log_health(self) -> None:
        """Emit one health line with the current counters."""
        uptime = time.monotonic() - self._started_at if self._started_at else 0.0
        log_worker_health(
            logger,
            "job_worker",
            cycles_completed=self._stats["cycles_completed"],
            errors_total=self._stats["errors_total"],
            uptime_seconds=uptime,
            extra_stats={
                "inflight": self._limiter.count(),
                "jobs_leased": self._stats["jobs_leased"],
            },
        )
