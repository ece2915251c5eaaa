"""Scan run bookkeeping - the user-facing mirror of a scan.directory job.

Hey future me - a ScanRun row is what users look at, the job_queue row is what workers look
at. They move in lockstep but are written by different parties:

- The scan handler writes running / progress / succeeded / cancelled
- The worker's on_finished hook writes failed, queued (retry scheduled) and cancelled

Both may try to finalize the same run (handler marks cancelled, then the hook reports the
cancelled job). Every terminal write therefore carries WHERE state NOT IN (terminal states),
so a run is finalized exactly once and the first writer wins.
"""

import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tunescan.domain.entities import (
    TERMINAL_SCAN_STATES,
    JobState,
    ScanCounters,
    ScanRun,
    ScanState,
)
from tunescan.infrastructure.persistence.models import (
    ScanRunModel,
    ensure_utc_aware,
    utc_now,
)

logger = logging.getLogger(__name__)

_TERMINAL_VALUES = [state.value for state in TERMINAL_SCAN_STATES]

_JOB_TO_SCAN_STATE = {
    JobState.QUEUED: ScanState.QUEUED,
    JobState.RUNNING: ScanState.RUNNING,
    JobState.SUCCEEDED: ScanState.SUCCEEDED,
    JobState.FAILED: ScanState.FAILED,
    JobState.CANCELLED: ScanState.CANCELLED,
}


def _counter_values(counters: ScanCounters) -> dict[str, object]:
    return {
        "files_discovered": counters.files_discovered,
        "files_persisted": counters.files_persisted,
        "batches_flushed": counters.batches_flushed,
        "errors": counters.errors,
        "last_error": counters.last_error,
    }


class ScanRunTracker:
    """Reads and writes scan_runs rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(
        self, scan_id: str, job_id: str, user_id: str, root_path: str
    ) -> ScanRun:
        """Insert a new run in state 'queued'."""
        async with self._session_factory() as session:
            model = await self.add_queued(session, scan_id, job_id, user_id, root_path)
            await session.commit()
            return self._model_to_run(model)

    async def add_queued(
        self,
        session: AsyncSession,
        scan_id: str,
        job_id: str,
        user_id: str,
        root_path: str,
    ) -> ScanRunModel:
        """Stage a 'queued' run in the caller's session without committing.

        Hey future me - start_scan passes this as the queue's before_commit hook, so the
        job row and its run land in the same transaction. A job without a run can't exist.
        """
        model = ScanRunModel(
            scan_id=scan_id,
            job_id=job_id,
            user_id=user_id,
            root_path=root_path,
            state=ScanState.QUEUED.value,
        )
        session.add(model)
        await session.flush()
        return model

    async def get(self, scan_id: str) -> ScanRun | None:
        async with self._session_factory() as session:
            model = await session.get(ScanRunModel, scan_id)
            return self._model_to_run(model) if model else None

    async def get_for_user(self, user_id: str, scan_id: str) -> ScanRun | None:
        """Load a run only if it belongs to ``user_id``."""
        async with self._session_factory() as session:
            model = await session.scalar(
                select(ScanRunModel).where(
                    ScanRunModel.scan_id == scan_id,
                    ScanRunModel.user_id == user_id,
                )
            )
            return self._model_to_run(model) if model else None

    async def get_by_job_id(self, job_id: str) -> ScanRun | None:
        async with self._session_factory() as session:
            model = await session.scalar(
                select(ScanRunModel).where(ScanRunModel.job_id == job_id).limit(1)
            )
            return self._model_to_run(model) if model else None

    async def _update_open_run(self, scan_id: str, **values: object) -> bool:
        """UPDATE a run that is not finalized yet. Returns whether a row changed."""
        stmt = (
            update(ScanRunModel)
            .where(
                ScanRunModel.scan_id == scan_id,
                ScanRunModel.state.notin_(_TERMINAL_VALUES),
            )
            .values(updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return (result.rowcount or 0) > 0

    async def mark_running(self, scan_id: str) -> bool:
        return await self._update_open_run(
            scan_id, state=ScanState.RUNNING.value, started_at=utc_now()
        )

    async def update_progress(self, scan_id: str, counters: ScanCounters) -> bool:
        """Store intermediate counters (after each flushed batch)."""
        return await self._update_open_run(scan_id, **_counter_values(counters))

    async def mark_succeeded(self, scan_id: str, counters: ScanCounters) -> bool:
        applied = await self._update_open_run(
            scan_id,
            state=ScanState.SUCCEEDED.value,
            finished_at=utc_now(),
            **_counter_values(counters),
        )
        if applied:
            logger.info(
                f"Scan {scan_id} succeeded: {counters.files_discovered} discovered, "
                f"{counters.files_persisted} persisted, {counters.errors} errors"
            )
        return applied

    async def mark_cancelled(self, scan_id: str, counters: ScanCounters) -> bool:
        now = utc_now()
        applied = await self._update_open_run(
            scan_id,
            state=ScanState.CANCELLED.value,
            cancelled_at=now,
            finished_at=now,
            **_counter_values(counters),
        )
        if applied:
            logger.info(
                f"Scan {scan_id} cancelled after {counters.files_discovered} files"
            )
        return applied

    async def sync_from_job(
        self, job_id: str, state: JobState, error: str | None = None
    ) -> bool:
        """Mirror a job outcome onto its scan run.

        Args:
            job_id: Finished (or re-queued) job
            state: The job state that was just written
            error: The job's last_error, if any

        Returns:
            True if the run changed, False if it was already finalized or doesn't exist
        """
        run = await self.get_by_job_id(job_id)
        if run is None:
            logger.debug(f"No scan run for job {job_id}, nothing to sync")
            return False

        scan_state = _JOB_TO_SCAN_STATE[state]
        values: dict[str, object] = {"state": scan_state.value}
        if error is not None:
            values["last_error"] = error
        if scan_state.is_terminal:
            values["finished_at"] = utc_now()
        if scan_state == ScanState.CANCELLED:
            values["cancelled_at"] = values["finished_at"]

        applied = await self._update_open_run(run.scan_id, **values)
        if applied:
            logger.info(f"Scan {run.scan_id} synced from job {job_id}: {scan_state.value}")
        return applied

    def _model_to_run(self, model: ScanRunModel) -> ScanRun:
        return ScanRun(
            scan_id=model.scan_id,
            job_id=model.job_id,
            user_id=model.user_id,
            root_path=model.root_path,
            state=ScanState(model.state),
            counters=ScanCounters(
                files_discovered=model.files_discovered,
                files_persisted=model.files_persisted,
                batches_flushed=model.batches_flushed,
                errors=model.errors,
                last_error=model.last_error,
            ),
            started_at=ensure_utc_aware(model.started_at) if model.started_at else None,
            finished_at=ensure_utc_aware(model.finished_at) if model.finished_at else None,
            cancelled_at=ensure_utc_aware(model.cancelled_at) if model.cancelled_at else None,
        )
