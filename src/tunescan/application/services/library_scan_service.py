"""Library scan service - the user-facing scan contract.

Hey future me - this is what an HTTP route (or CLI) calls. It never touches the filesystem:
start_scan() only validates and enqueues, the actual walk happens later in a worker process.

- start_scan: enqueue a scan.directory job and its ScanRun in one transaction (queue full → ScanQueueFullError)
- cancel_scan: set the job's cancel flag; the running handler stops at its next check
- get_scan_status: ScanRun counters + latest job progress

All three are scoped to a user: another user's scan_id behaves exactly like a missing one.
"""

import logging
import uuid
from collections.abc import Sequence
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from tunescan.application.services.scan_run_tracker import ScanRunTracker
from tunescan.application.workers.job_types import JobType, ScanDirectoryPayload, ScanOptions
from tunescan.application.workers.persistent_job_queue import PersistentJobQueue
from tunescan.domain.entities import ScanCancelResponse, ScanStartResult, ScanStatus
from tunescan.domain.exceptions import EntityNotFoundException, ScanQueueFullError

logger = logging.getLogger(__name__)

NOT_CANCELLABLE_REASON = "not_cancellable"


class LibraryScanService:
    """Starts, cancels and reports directory scans."""

    def __init__(self, queue: PersistentJobQueue, tracker: ScanRunTracker) -> None:
        self._queue = queue
        self._tracker = tracker

    async def start_scan(
        self,
        user_id: str,
        root_path: str,
        options: ScanOptions | dict[str, Any] | None = None,
        allowed_roots: Sequence[str] | None = None,
    ) -> ScanStartResult:
        """Enqueue a scan of ``root_path``.

        Args:
            user_id: Owner of the scan
            root_path: Directory to scan
            options: Traversal options (camelCase dict or ScanOptions)
            allowed_roots: Directories the scan may touch (default: just root_path)

        Returns:
            Identifiers of the new scan

        Raises:
            JobPayloadValidationError: Invalid root path or options
            ScanQueueFullError: Queue is at capacity, retry later
        """
        scan_id = str(uuid.uuid4())
        payload: dict[str, Any] = {
            "scanId": scan_id,
            "userId": user_id,
            "rootPath": root_path,
            "allowedRoots": list(allowed_roots) if allowed_roots else [root_path],
        }
        if options is not None:
            payload["options"] = options

        async def add_run(session: AsyncSession, job_id: str) -> None:
            await self._tracker.add_queued(session, scan_id, job_id, user_id, root_path)

        result = await self._queue.enqueue(
            JobType.SCAN_DIRECTORY, payload, before_commit=add_run
        )
        if not result.queued or result.job_id is None:
            raise ScanQueueFullError()

        logger.info(f"Scan {scan_id} queued for {root_path} (job {result.job_id})")
        return ScanStartResult(scan_id=scan_id, job_id=result.job_id, root_path=root_path)

    async def cancel_scan(self, user_id: str, scan_id: str) -> ScanCancelResponse:
        """Request cancellation of a scan.

        Raises:
            EntityNotFoundException: No such scan for this user
        """
        run = await self._tracker.get_for_user(user_id, scan_id)
        if run is None:
            raise EntityNotFoundException("ScanRun", scan_id)

        request = await self._queue.request_cancel(run.job_id)
        if request is None:
            return ScanCancelResponse(
                scan_id=scan_id, cancelled=False, reason=NOT_CANCELLABLE_REASON
            )
        return ScanCancelResponse(scan_id=scan_id, cancelled=True)

    async def get_scan_status(self, user_id: str, scan_id: str) -> ScanStatus:
        """Current state, counters and latest progress of a scan.

        Raises:
            EntityNotFoundException: No such scan for this user
        """
        run = await self._tracker.get_for_user(user_id, scan_id)
        if run is None:
            raise EntityNotFoundException("ScanRun", scan_id)

        job = await self._queue.get_job(run.job_id)
        return ScanStatus(
            scan_id=run.scan_id,
            state=run.state,
            progress=job.progress if job else None,
            counts=run.counters.to_dict(),
            errors=[run.counters.last_error] if run.counters.last_error else [],
        )
