"""Structured logging configuration with JSON formatting and job context."""

import contextvars
import logging
import sys
import traceback
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from pythonjsonlogger import jsonlogger


# Hey future me, the job context follows a job through EVERY log line its handler emits - the
# walker, the batch writer and the tracker don't need to know which job they serve, the filter
# below stamps job_id/job_type/worker_id on the record. contextvars are asyncio-safe: each
# job runs in its own task, so concurrent jobs on one event loop never see each other's ids.
@dataclass(frozen=True)
class JobLogContext:
    """Identifiers attached to log records while a job executes."""

    job_id: str = ""
    job_type: str = ""
    worker_id: str = ""


_job_context_var: contextvars.ContextVar[JobLogContext] = contextvars.ContextVar(
    "job_log_context", default=JobLogContext()
)


def get_job_context() -> JobLogContext:
    """Get the job context of the current task (empty outside of jobs)."""
    return _job_context_var.get()


@contextmanager
def job_log_context(job_id: str, job_type: str, worker_id: str) -> Iterator[JobLogContext]:
    """Bind job identifiers to all log records emitted inside the block."""
    context = JobLogContext(job_id=job_id, job_type=job_type, worker_id=worker_id)
    token = _job_context_var.set(context)
    try:
        yield context
    finally:
        _job_context_var.reset(token)


class JobContextFilter(logging.Filter):
    """Add job context fields to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Copy the current job context onto the record. Never blocks a record."""
        context = _job_context_var.get()
        record.job_id = context.job_id
        record.job_type = context.job_type
        record.worker_id = context.worker_id
        return True


class CompactExceptionFormatter(logging.Formatter):
    """Formatter that shows compact exception chains.

    Hey future me - each exception in the chain gets one ╰─► header line followed by
    OUR frames only (site-packages and stdlib are dropped):

    ERROR │ job_worker:210 │ Job 1234 attempt 1/3 failed
    ╰─► PermissionError: [Errno 13] Permission denied: '/music'
        File "directory_walker.py", line 120, in _list_root
          return await self._list_directory(path)
    ╰─► ScanRootUnreadableError: Cannot open scan root /music: ...
    """

    def format(self, record: logging.LogRecord) -> str:
        """Prefix the message with the job id when one is bound."""
        formatted = super().format(record)
        job_id = getattr(record, "job_id", "")
        if job_id:
            return f"{formatted} │ job={job_id}"
        return formatted

    def formatException(self, ei: Any) -> str:
        """Format exception chain root cause first."""
        _, exc_value, _ = ei
        if exc_value is None:
            return ""

        exceptions: list[BaseException] = []
        current: BaseException | None = exc_value
        while current is not None and current not in exceptions:
            exceptions.append(current)
            current = current.__cause__ or current.__context__
        exceptions.reverse()

        lines: list[str] = []
        for exc in exceptions:
            lines.append(f"╰─► {exc.__class__.__name__}: {exc}")
            if not exc.__traceback__:
                continue
            for frame in traceback.extract_tb(exc.__traceback__):
                if "tunescan" not in frame.filename or "/site-packages/" in frame.filename:
                    continue
                lines.append(
                    f'    File "{Path(frame.filename).name}", line {frame.lineno}, in {frame.name}'
                )
                if frame.line:
                    lines.append(f"      {frame.line.strip()}")

        return "\n".join(lines)


class CustomJsonFormatter(jsonlogger.JsonFormatter):  # type: ignore[name-defined,misc]
    """Custom JSON formatter with job context fields."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        """Add source location, level and the bound job identifiers."""
        super().add_fields(log_record, record, message_dict)

        log_record.update(
            timestamp=self.formatTime(record, self.datefmt),
            level=record.levelname,
            logger=record.name,
            module=record.module,
            function=record.funcName,
            line=record.lineno,
        )

        for key, value in asdict(JobLogContext()).items():
            value = getattr(record, key, value)
            if value:
                log_record[key] = value

        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)


# Listen future me, this is THE logging setup function - call it ONCE at startup (main.py)!
# It replaces the root logger handlers, so calling it again (tests) is harmless.
def configure_logging(
    log_level: str = "INFO",
    json_format: bool = False,
    app_name: str = "tunescan",
) -> None:
    """Configure structured logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format for logs (recommended for production)
        app_name: Application name to include in logs
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(JobContextFilter())

    if json_format:
        formatter: logging.Formatter = CustomJsonFormatter(
            "%(timestamp)s %(level)s %(name)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    else:
        formatter = CompactExceptionFormatter(
            fmt="%(asctime)s │ %(levelname)-7s │ %(name)s:%(lineno)d │ %(message)s",
            datefmt="%H:%M:%S",
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    # SQL echo and aiosqlite chatter drown out the scanner otherwise
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured",
        extra={
            "app_name": app_name,
            "log_level": log_level,
            "json_format": json_format,
        },
    )
