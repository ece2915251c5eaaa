"""Persistent Job Queue - lease-based job queue stored in the database.

Hey future me - this is the CONTROL PLANE of all background work!

PROBLEM:
Scans take minutes. They must not block request handling, must survive container restarts
and must not run twice at the same time when two worker processes poll the same database.

SOLUTION:
The job_queue table is the queue. No in-memory copy, no distributed lock service:

1. enqueue() validates the payload and INSERTs a 'queued' row (or says "queue_full")
2. lease() claims the oldest leasable row with ONE conditional UPDATE ... RETURNING
3. heartbeat() keeps pushing leased_until forward while the handler works
4. mark_succeeded/mark_failed/mark_cancelled finish the job (failed → backoff re-queue)

LEASES (crash recovery):
```
queued ──lease()──► running ──mark_*()──► succeeded | failed | cancelled
  ▲                    │
  └──mark_failed()─────┘  (attempts < max_attempts, run_after = now + backoff)

running + leased_until <= now  ==  abandoned  ==  leasable again by ANY worker
```
A worker that dies mid-job simply stops heartbeating. After the lease runs out, the next
lease() picks the job up again (attempts+1). That's at-least-once delivery - handlers must
persist idempotently (ScanBatchWriter upserts).

USAGE:
```python
queue = PersistentJobQueue(session_factory=db.get_session_factory(), settings=settings.jobs)
result = await queue.enqueue("scan.directory", payload)
if not result.queued:
    ...  # backpressure: result.reason == "queue_full"
```
"""

import json
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Sequence
from datetime import timedelta
from typing import Any

from sqlalchemy import and_, delete, func, insert, literal, or_, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from tunescan.application.workers.job_types import dump_payload, parse_payload
from tunescan.config import JobSettings
from tunescan.domain.entities import (
    TERMINAL_JOB_STATES,
    CancelRequest,
    EnqueueResult,
    Job,
    JobQueueStats,
    JobState,
    LeasedJob,
)
from tunescan.infrastructure.persistence.models import (
    JobQueueModel,
    ensure_utc_aware,
    utc_now,
)

logger = logging.getLogger(__name__)

QUEUE_FULL_REASON = "queue_full"

_TERMINAL_VALUES = [state.value for state in TERMINAL_JOB_STATES]

# Writes rows that belong to a new job (e.g. its scan run) in the enqueue transaction
EnqueueHook = Callable[[AsyncSession, str], Awaitable[None]]


def format_job_error(error: BaseException | str) -> str:
    """Render an error as "<ExceptionName>: <message>" for last_error."""
    if isinstance(error, str):
        return error
    return f"{type(error).__name__}: {error}"


class PersistentJobQueue:
    """Database-backed, lease-based job queue.

    Every state change is a single conditional UPDATE whose WHERE clause matches the expected
    prior state (and lease owner). If the row moved on in the meantime - another worker
    reclaimed an expired lease, an operator cancelled - the UPDATE touches zero rows and the
    caller treats it as a lost race, not as an error.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: JobSettings,
        clock: Callable[[], float] | None = None,
    ) -> None:
        """Initialize persistent job queue.

        Args:
            session_factory: Factory for creating DB sessions
            settings: Job limits (queue length, lease duration, backoff cap, ...)
            clock: Epoch-seconds clock, injectable for lease/backoff tests
        """
        self._session_factory = session_factory
        self._settings = settings
        self._clock = clock or time.time

    @property
    def settings(self) -> JobSettings:
        """Job limits this queue enforces."""
        return self._settings

    def now(self) -> int:
        """Current time in whole epoch seconds."""
        return int(self._clock())

    def _leasable(self, now: int, model: Any = JobQueueModel) -> Any:
        """SQL predicate: row can be leased at ``now``."""
        return or_(
            and_(
                model.state == JobState.QUEUED.value,
                model.run_after <= now,
            ),
            and_(
                model.state == JobState.RUNNING.value,
                model.leased_until <= now,
            ),
        )

    async def enqueue(
        self,
        job_type: str,
        payload: Any,
        max_attempts: int | None = None,
        run_after: int | None = None,
        before_commit: EnqueueHook | None = None,
    ) -> EnqueueResult:
        """Validate and persist a new job.

        Hey future me - a full queue is NOT an exception! It's the backpressure signal,
        callers must check result.queued and handle reason == "queue_full".

        Args:
            job_type: Job type discriminator (e.g. "scan.directory")
            payload: Payload validated against the job type's schema
            max_attempts: Retry ceiling (default: JOB_DEFAULT_MAX_ATTEMPTS)
            run_after: Epoch seconds before which the job is not leasable (default: now)
            before_commit: Called with (session, job_id) after the job row is written and
                before commit. If it raises, nothing is persisted

        Returns:
            EnqueueResult with the new job id, or queued=False/reason="queue_full"

        Raises:
            JobPayloadValidationError: Payload does not match the schema
        """
        job_type = str(getattr(job_type, "value", job_type))
        validated = parse_payload(job_type, payload)

        job_id = str(uuid.uuid4())
        now = utc_now()
        row: dict[str, Any] = {
            "job_id": job_id,
            "job_type": job_type,
            "payload": json.dumps(dump_payload(validated)),
            "state": JobState.QUEUED.value,
            "attempts": 0,
            "max_attempts": max_attempts or self._settings.job_default_max_attempts,
            "run_after": run_after if run_after is not None else self.now(),
            "cancel_requested": False,
            "created_at": now,
            "updated_at": now,
        }

        async with self._session_factory() as session:
            if session.get_bind().dialect.name == "postgresql":
                # Serializes concurrent enqueues; SQLite gets this from its single writer lock
                await session.execute(
                    text("LOCK TABLE job_queue IN SHARE ROW EXCLUSIVE MODE")
                )

            result = await session.execute(self._insert_if_room(row))
            if (result.rowcount or 0) == 0:
                await session.rollback()
                logger.warning(
                    f"Queue full (max {self._settings.queue_max_length} queued), "
                    f"rejecting {job_type} job"
                )
                return EnqueueResult(queued=False, reason=QUEUE_FULL_REASON)

            if before_commit is not None:
                await before_commit(session, job_id)
            await session.commit()

        logger.debug(f"Enqueued job {job_id} ({job_type})")
        return EnqueueResult(queued=True, job_id=job_id)

    def _insert_if_room(self, row: dict[str, Any]) -> Any:
        """INSERT ... SELECT that writes ``row`` only while the queue has room.

        The length check and the write are one statement, so concurrent enqueues can't
        all pass the check and overfill the queue.
        """
        counted = aliased(JobQueueModel)
        queued_count = (
            select(func.count())
            .select_from(counted)
            .where(counted.state == JobState.QUEUED.value)
            .scalar_subquery()
        )
        columns = JobQueueModel.__table__.c
        candidate = select(
            *[literal(value, columns[name].type).label(name) for name, value in row.items()]
        ).where(queued_count < self._settings.queue_max_length)
        return insert(JobQueueModel).from_select(list(row), candidate)

    async def lease(
        self, lease_owner: str, accepted_types: Sequence[str]
    ) -> LeasedJob | None:
        """Atomically claim the oldest leasable job of the accepted types.

        Hey future me - this is THE correctness-critical statement of the whole subsystem!
        Selection and claim happen in ONE UPDATE:

            UPDATE job_queue SET state='running', lease_owner=?, leased_until=?, attempts=attempts+1
            WHERE job_id = (SELECT job_id ... leasable ... ORDER BY run_after, created_at LIMIT 1)
              AND <leasable>
            RETURNING ...

        The outer WHERE re-checks leasability at write time, so if two workers race for the
        same row, the second UPDATE matches nothing and returns None. Never split this into
        SELECT-then-UPDATE without the re-check!

        Args:
            lease_owner: Opaque worker identity
            accepted_types: Job types this caller can run

        Returns:
            LeasedJob, or None when nothing is leasable right now
        """
        types = [str(getattr(t, "value", t)) for t in accepted_types]
        if not types:
            return None

        now = self.now()
        leased_until = now + self._settings.job_lease_duration_seconds

        # Aliased so the subquery is NOT correlated to the outer UPDATE
        pick = aliased(JobQueueModel)
        candidate = (
            select(pick.job_id)
            .where(pick.job_type.in_(types), self._leasable(now, pick))
            .order_by(pick.run_after, pick.created_at)
            .limit(1)
            .scalar_subquery()
        )
        stmt = (
            update(JobQueueModel)
            .where(JobQueueModel.job_id == candidate, self._leasable(now))
            .values(
                state=JobState.RUNNING.value,
                lease_owner=lease_owner,
                leased_until=leased_until,
                attempts=JobQueueModel.attempts + 1,
                updated_at=utc_now(),
            )
            .returning(
                JobQueueModel.job_id,
                JobQueueModel.job_type,
                JobQueueModel.payload,
                JobQueueModel.attempts,
                JobQueueModel.max_attempts,
                JobQueueModel.cancel_requested,
            )
            .execution_options(synchronize_session=False)
        )

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            row = result.first()
            await session.commit()

        if row is None:
            return None

        logger.info(
            f"Leased job {row.job_id} ({row.job_type}) for {lease_owner} "
            f"(attempt {row.attempts}/{row.max_attempts})"
        )
        return LeasedJob(
            job_id=row.job_id,
            job_type=row.job_type,
            payload=json.loads(row.payload),
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            lease_owner=lease_owner,
            leased_until=leased_until,
            cancel_requested=bool(row.cancel_requested),
        )

    async def heartbeat(self, job_id: str, lease_owner: str) -> bool:
        """Extend a held lease.

        No-op when the caller no longer owns the lease (it expired and someone else
        reclaimed it, or the job finished). attempts is NEVER touched here.

        Returns:
            True if the lease is still held and was extended
        """
        stmt = (
            update(JobQueueModel)
            .where(
                JobQueueModel.job_id == job_id,
                JobQueueModel.lease_owner == lease_owner,
                JobQueueModel.state == JobState.RUNNING.value,
            )
            .values(
                leased_until=self.now() + self._settings.job_lease_duration_seconds,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        held = (result.rowcount or 0) > 0
        if not held:
            logger.warning(f"Heartbeat for job {job_id} ignored: lease no longer held by {lease_owner}")
        return held

    async def mark_progress(self, job_id: str, progress: dict[str, Any]) -> None:
        """Store a handler-defined progress snapshot."""
        stmt = (
            update(JobQueueModel)
            .where(JobQueueModel.job_id == job_id)
            .values(progress=json.dumps(progress), updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def _finish(
        self,
        job_id: str,
        state: JobState,
        lease_owner: str | None,
        **values: Any,
    ) -> bool:
        """Terminal transition guarded against lease-loss races."""
        conditions = [JobQueueModel.job_id == job_id]
        if lease_owner is not None:
            conditions += [
                JobQueueModel.state == JobState.RUNNING.value,
                JobQueueModel.lease_owner == lease_owner,
            ]
        else:
            conditions.append(JobQueueModel.state.notin_(_TERMINAL_VALUES))

        stmt = (
            update(JobQueueModel)
            .where(*conditions)
            .values(
                state=state.value,
                leased_until=None,
                lease_owner=None,
                updated_at=utc_now(),
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        applied = (result.rowcount or 0) > 0
        if not applied:
            # Someone else reclaimed or finished the job - their write wins
            logger.debug(f"Ignoring {state.value} transition for job {job_id}: lease lost")
        return applied

    async def mark_succeeded(
        self,
        job_id: str,
        result: dict[str, Any] | None,
        lease_owner: str | None = None,
    ) -> bool:
        """Mark a job succeeded and clear its lease.

        Returns:
            False if the write lost a lease race and was ignored
        """
        applied = await self._finish(
            job_id,
            JobState.SUCCEEDED,
            lease_owner,
            result=json.dumps(result) if result is not None else None,
        )
        if applied:
            logger.info(f"Job {job_id} succeeded")
        return applied

    async def mark_cancelled(
        self,
        job_id: str,
        result: dict[str, Any] | None = None,
        lease_owner: str | None = None,
    ) -> bool:
        """Mark a job cancelled and clear its lease.

        Returns:
            False if the write lost a lease race and was ignored
        """
        applied = await self._finish(
            job_id,
            JobState.CANCELLED,
            lease_owner,
            result=json.dumps(result or {}),
        )
        if applied:
            logger.info(f"Job {job_id} cancelled")
        return applied

    def backoff_seconds(self, attempts: int) -> int:
        """Retry delay after ``attempts`` failed attempts: min(2**attempts, cap)."""
        cap = self._settings.job_retry_backoff_cap_seconds
        # Avoid computing huge powers for runaway attempt counts
        if attempts >= cap.bit_length():
            return cap
        return min(2**attempts, cap)

    async def mark_failed(
        self,
        job_id: str,
        error: BaseException | str,
        attempts: int,
        max_attempts: int,
        lease_owner: str | None = None,
        retryable: bool = True,
    ) -> JobState | None:
        """Record a failed attempt: re-queue with backoff or fail permanently.

        Backoff: run_after = now + min(2**attempts, JOB_RETRY_BACKOFF_CAP_SECONDS).
        1 failed attempt → 2s, 2 → 4s, 3 → 8s ... capped (default 60s).

        Args:
            job_id: Job ID
            error: The exception (or message) that ended the attempt
            attempts: Attempts made so far (LeasedJob.attempts)
            max_attempts: Retry ceiling (LeasedJob.max_attempts)
            lease_owner: Guard the write with the caller's lease
            retryable: False forces a terminal failure (e.g. path escape)

        Returns:
            JobState.QUEUED (retry scheduled), JobState.FAILED, or None if the write
            lost a lease race
        """
        last_error = format_job_error(error)
        will_retry = retryable and attempts < max_attempts
        now = self.now()

        if will_retry:
            delay = self.backoff_seconds(attempts)
            applied = await self._finish(
                job_id,
                JobState.QUEUED,
                lease_owner,
                run_after=now + delay,
                last_error=last_error,
            )
            if applied:
                logger.info(
                    f"Job {job_id} failed (attempt {attempts}/{max_attempts}), "
                    f"retry in {delay}s: {last_error}"
                )
                return JobState.QUEUED
            return None

        applied = await self._finish(
            job_id,
            JobState.FAILED,
            lease_owner,
            run_after=now,
            last_error=last_error,
        )
        if applied:
            logger.warning(
                f"Job {job_id} failed permanently after {attempts} attempts: {last_error}"
            )
            return JobState.FAILED
        return None

    async def request_cancel(self, job_id: str) -> CancelRequest | None:
        """Ask a queued or running job to stop.

        Cooperative and advisory: this only sets cancel_requested. A running handler sees
        it at its next check; a queued job is cancelled by the worker right after lease.

        Returns:
            CancelRequest with the job's current state, or None if the job is missing or
            already terminal
        """
        stmt = (
            update(JobQueueModel)
            .where(
                JobQueueModel.job_id == job_id,
                JobQueueModel.state.in_(
                    [JobState.QUEUED.value, JobState.RUNNING.value]
                ),
            )
            .values(cancel_requested=True, updated_at=utc_now())
            .returning(JobQueueModel.job_id, JobQueueModel.state)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            row = result.first()
            await session.commit()

        if row is None:
            logger.debug(f"Cancel request for job {job_id} ignored (missing or finished)")
            return None

        logger.info(f"Cancellation requested for job {job_id} ({row.state})")
        return CancelRequest(job_id=row.job_id, state=JobState(row.state))

    async def is_cancel_requested(self, job_id: str) -> bool:
        """Check the advisory cancellation flag."""
        async with self._session_factory() as session:
            flag = await session.scalar(
                select(JobQueueModel.cancel_requested).where(
                    JobQueueModel.job_id == job_id
                )
            )
        return bool(flag)

    async def get_job(self, job_id: str) -> Job | None:
        """Load a snapshot of a job record."""
        async with self._session_factory() as session:
            model = await session.get(JobQueueModel, job_id)
            if model is None:
                return None
            return self._model_to_job(model)

    async def get_stats(self) -> JobQueueStats:
        """Count jobs per state."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(JobQueueModel.state, func.count()).group_by(JobQueueModel.state)
            )
            counts = {state: count for state, count in result.all()}

        return JobQueueStats(
            total_jobs=sum(counts.values()),
            queued_jobs=counts.get(JobState.QUEUED.value, 0),
            running_jobs=counts.get(JobState.RUNNING.value, 0),
            succeeded_jobs=counts.get(JobState.SUCCEEDED.value, 0),
            failed_jobs=counts.get(JobState.FAILED.value, 0),
            cancelled_jobs=counts.get(JobState.CANCELLED.value, 0),
        )

    async def cleanup_old_jobs(self, days: int = 7) -> int:
        """Delete terminal jobs last touched more than ``days`` ago.

        Hey future me - call this periodically to prevent DB bloat! scan_runs and
        scan_files rows of deleted jobs go with them (ON DELETE CASCADE).

        Returns:
            Number of jobs deleted
        """
        threshold = utc_now() - timedelta(days=days)

        async with self._session_factory() as session:
            result = await session.execute(
                delete(JobQueueModel)
                .where(
                    JobQueueModel.state.in_(_TERMINAL_VALUES),
                    JobQueueModel.updated_at < threshold,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        deleted = result.rowcount or 0
        if deleted > 0:
            logger.info(f"Cleaned up {deleted} finished jobs older than {days} days")
        return deleted

    def _model_to_job(self, model: JobQueueModel) -> Job:
        """Convert DB model to Job dataclass."""
        return Job(
            job_id=model.job_id,
            job_type=model.job_type,
            payload=json.loads(model.payload),
            state=JobState(model.state),
            attempts=model.attempts,
            max_attempts=model.max_attempts,
            run_after=model.run_after,
            leased_until=model.leased_until,
            lease_owner=model.lease_owner,
            cancel_requested=bool(model.cancel_requested),
            progress=json.loads(model.progress) if model.progress else None,
            result=json.loads(model.result) if model.result else None,
            last_error=model.last_error,
            created_at=ensure_utc_aware(model.created_at) if model.created_at else None,
            updated_at=ensure_utc_aware(model.updated_at) if model.updated_at else None,
        )


def create_persistent_job_queue(
    session_factory: async_sessionmaker[AsyncSession],
    settings: JobSettings,
) -> PersistentJobQueue:
    """Create a PersistentJobQueue with the given configuration.

    Args:
        session_factory: Factory for creating DB sessions
        settings: Job limits

    Returns:
        Configured PersistentJobQueue instance
    """
    return PersistentJobQueue(session_factory=session_factory, settings=settings)
