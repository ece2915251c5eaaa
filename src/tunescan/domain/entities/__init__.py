"""Domain entities for the job queue and the directory scanner."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobState(str, Enum):
    """Lifecycle state of a queued job."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transitions can happen."""
        return self in TERMINAL_JOB_STATES


TERMINAL_JOB_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED})


class ScanState(str, Enum):
    """Lifecycle state of a scan run (mirrors the job lifecycle)."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Whether the scan run was finalized."""
        return self in TERMINAL_SCAN_STATES


TERMINAL_SCAN_STATES = frozenset(
    {ScanState.SUCCEEDED, ScanState.FAILED, ScanState.CANCELLED}
)


# Hey future me, Job is a read-only SNAPSHOT of a job_queue row. Workers never hold the row
# itself - every mutation goes through PersistentJobQueue's conditional UPDATEs. Timestamps
# run_after/leased_until are epoch SECONDS (ints) because lease math is plain arithmetic.
@dataclass(frozen=True)
class Job:
    """Snapshot of a persisted job record."""

    job_id: str
    job_type: str
    payload: dict[str, Any]
    state: JobState
    attempts: int
    max_attempts: int
    run_after: int
    leased_until: int | None = None
    lease_owner: str | None = None
    cancel_requested: bool = False
    progress: dict[str, Any] | None = None
    result: dict[str, Any] | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_leasable(self, now: int) -> bool:
        """Check whether a worker could lease this job at ``now``."""
        if self.state == JobState.QUEUED:
            return self.run_after <= now
        if self.state == JobState.RUNNING:
            return self.leased_until is not None and self.leased_until <= now
        return False


@dataclass(frozen=True)
class LeasedJob:
    """A transient claim on a job handed to a worker by lease()."""

    job_id: str
    job_type: str
    payload: dict[str, Any]
    attempts: int
    max_attempts: int
    lease_owner: str
    leased_until: int
    cancel_requested: bool = False


@dataclass(frozen=True)
class EnqueueResult:
    """Outcome of an enqueue call.

    queued=False with reason="queue_full" is backpressure, not an error.
    """

    queued: bool
    job_id: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class CancelRequest:
    """Result of a cancel request for a queued or running job."""

    job_id: str
    state: JobState


@dataclass
class JobQueueStats:
    """Job counts per state."""

    total_jobs: int = 0
    queued_jobs: int = 0
    running_jobs: int = 0
    succeeded_jobs: int = 0
    failed_jobs: int = 0
    cancelled_jobs: int = 0


@dataclass(frozen=True)
class WalkEntry:
    """A discovered audio file."""

    path: str
    size_bytes: int | None
    mtime_ms: int | None
    extension: str | None


@dataclass(frozen=True)
class WalkError:
    """A non-fatal traversal error (permission denied, file vanished, ...)."""

    path: str
    code: str
    message: str = ""

    def __str__(self) -> str:
        return f"{self.code}:{self.path}"


@dataclass
class ScanCounters:
    """Aggregate progress of a scan run."""

    files_discovered: int = 0
    files_persisted: int = 0
    batches_flushed: int = 0
    errors: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for job progress/result payloads."""
        return {
            "discovered": self.files_discovered,
            "persisted": self.files_persisted,
            "batches_flushed": self.batches_flushed,
            "errors": self.errors,
        }


@dataclass
class ScanRun:
    """One logical invocation of the directory scanner (1:1 with a scan.directory job)."""

    scan_id: str
    job_id: str
    user_id: str
    root_path: str
    state: ScanState = ScanState.QUEUED
    counters: ScanCounters = field(default_factory=ScanCounters)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    cancelled_at: datetime | None = None


@dataclass(frozen=True)
class ScanStartResult:
    """Identifiers returned when a scan is accepted."""

    scan_id: str
    job_id: str
    root_path: str


@dataclass(frozen=True)
class ScanCancelResponse:
    """Response to a user cancel request."""

    scan_id: str
    cancelled: bool
    reason: str | None = None


@dataclass(frozen=True)
class ScanStatus:
    """User-facing scan status with counts and the latest job progress."""

    scan_id: str
    state: ScanState
    progress: dict[str, Any] | None
    counts: dict[str, int]
    errors: list[str]


__all__ = [
    "TERMINAL_JOB_STATES",
    "TERMINAL_SCAN_STATES",
    "CancelRequest",
    "EnqueueResult",
    "Job",
    "JobQueueStats",
    "JobState",
    "LeasedJob",
    "ScanCancelResponse",
    "ScanCounters",
    "ScanRun",
    "ScanStartResult",
    "ScanState",
    "ScanStatus",
    "WalkEntry",
    "WalkError",
]
