"""Shared logger helpers.

Hey future me - use these instead of hand-rolled start/stop logging so every job and worker
reports timing and health in the SAME shape.

USAGE:
    async with log_operation(logger, "scan.directory", scan_id="abc"):
        await run_scan()

    log_worker_health(logger, "job_worker", cycles_completed=10, errors_total=0, uptime_seconds=60)
"""

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any


# Yo, this context manager logs {operation}.started / .completed / .failed with duration_ms.
# On exception it logs with exc_info and RE-RAISES - it never swallows anything, the caller
# (the worker loop) still routes the error to the retry policy.
@asynccontextmanager
async def log_operation(
    logger: logging.Logger,
    operation: str,
    **context: Any,
) -> AsyncIterator[None]:
    """Log operation start/end with automatic timing.

    Args:
        logger: Logger instance
        operation: Operation name (e.g., "scan.directory")
        **context: Extra fields included in every log line
    """
    start = time.monotonic()
    logger.info(f"{operation}.started", extra=context)

    try:
        yield
    except Exception as e:
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.error(
            f"{operation}.failed",
            extra={
                **context,
                "duration_ms": duration_ms,
                "error": str(e),
                "error_type": type(e).__name__,
            },
            exc_info=True,
        )
        raise

    duration_ms = int((time.monotonic() - start) * 1000)
    logger.info(
        f"{operation}.completed",
        extra={**context, "duration_ms": duration_ms},
    )


def log_worker_health(
    logger: logging.Logger,
    worker_name: str,
    cycles_completed: int,
    errors_total: int,
    uptime_seconds: float,
    extra_stats: dict[str, Any] | None = None,
) -> None:
    """Log worker health status in a consistent format.

    Args:
        logger: Logger instance
        worker_name: Worker identifier
        cycles_completed: Poll cycles since start
        errors_total: Errors since start
        uptime_seconds: Seconds since the worker started
        extra_stats: Additional fields (inflight counts, leased jobs, ...)
    """
    log_data = {
        "worker": worker_name,
        "cycles_completed": cycles_completed,
        "errors_total": errors_total,
        "uptime_seconds": int(uptime_seconds),
    }
    if extra_stats:
        log_data.update(extra_stats)

    logger.info("worker.health", extra=log_data)
