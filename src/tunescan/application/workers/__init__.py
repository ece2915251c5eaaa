"""Worker system - Background job processing.

LibraryScanWorker is imported from its own module: it depends on the scan services, which
themselves import the payload schemas from this package.
"""

from tunescan.application.workers.inflight_limiter import InflightLimiter
from tunescan.application.workers.job_types import (
    JOB_PAYLOAD_SCHEMAS,
    JobType,
    ScanDirectoryPayload,
    ScanOptions,
    dump_payload,
    parse_payload,
)
from tunescan.application.workers.persistent_job_queue import (
    PersistentJobQueue,
    create_persistent_job_queue,
    format_job_error,
)
from tunescan.application.workers.job_worker import JobContext, JobWorker

__all__ = [
    "JOB_PAYLOAD_SCHEMAS",
    "InflightLimiter",
    "JobContext",
    "JobType",
    "JobWorker",
    "PersistentJobQueue",
    "ScanDirectoryPayload",
    "ScanOptions",
    "create_persistent_job_queue",
    "dump_payload",
    "format_job_error",
    "parse_payload",
]
