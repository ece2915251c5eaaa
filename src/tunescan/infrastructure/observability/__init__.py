"""Observability infrastructure for structured logging."""

from tunescan.infrastructure.observability.logger_template import (
    log_operation,
    log_worker_health,
)
from tunescan.infrastructure.observability.logging import (
    JobLogContext,
    configure_logging,
    get_job_context,
    job_log_context,
)

__all__ = [
    "JobLogContext",
    "configure_logging",
    "get_job_context",
    "job_log_context",
    "log_operation",
    "log_worker_health",
]
