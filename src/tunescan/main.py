"""Worker process entry point (console script ``tunescan-worker``).

Hey future me - one process = one JobWorker. Run as many processes as you like against the
same database; leases keep them from running the same job twice.

SIGINT/SIGTERM stop polling, in-flight jobs get --shutdown-timeout seconds to finish.
Anything still running after that is cancelled and its lease simply expires.
"""

import argparse
import asyncio
import logging
import signal
from collections.abc import Sequence
from contextlib import suppress

from tunescan import __version__
from tunescan.application.workers.job_worker import JobWorker
from tunescan.application.workers.library_scan_worker import LibraryScanWorker
from tunescan.application.workers.persistent_job_queue import create_persistent_job_queue
from tunescan.config import DatabaseSettings, Settings, get_settings
from tunescan.infrastructure.observability import configure_logging
from tunescan.infrastructure.persistence import Database

logger = logging.getLogger(__name__)


def _ensure_sqlite_directory(settings: DatabaseSettings) -> None:
    """Create the SQLite parent directory before the engine tries to open the file."""
    db_path = settings.get_sqlite_path()
    if db_path is None:
        return
    if db_path.parent and str(db_path.parent) != ".":
        db_path.parent.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Ensured SQLite parent directory exists: {db_path.parent}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tunescan-worker",
        description="Run the background job worker (directory scans).",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables before starting (development; use alembic in production)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Lease and run at most one job, then exit",
    )
    parser.add_argument(
        "--cleanup-days",
        type=int,
        default=None,
        help="Delete finished jobs older than N days before starting",
    )
    parser.add_argument(
        "--shutdown-timeout",
        type=float,
        default=30.0,
        help="Seconds to wait for in-flight jobs on shutdown (default: 30)",
    )
    parser.add_argument("--log-level", default=None, help="Override TUNESCAN_LOG_LEVEL")
    return parser


async def run_worker(settings: Settings, args: argparse.Namespace) -> int:
    """Wire up database, queue and worker, then run until signalled."""
    _ensure_sqlite_directory(settings.database)
    db = Database(settings.database)
    logger.info(f"Database initialized: {settings.database.url}")

    try:
        if args.create_tables:
            await db.create_tables()
            logger.info("Database tables created")

        session_factory = db.get_session_factory()
        queue = create_persistent_job_queue(session_factory, settings.jobs)

        if args.cleanup_days is not None:
            await queue.cleanup_old_jobs(days=args.cleanup_days)

        worker = JobWorker(queue, settings.jobs)
        LibraryScanWorker(worker, session_factory, settings.jobs).register()

        if args.once:
            state = await worker.process_single_job()
            logger.info(f"Single run finished: {state.value if state else 'no job leasable'}")
            return 0

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            # Not available on Windows event loops; Ctrl+C still raises KeyboardInterrupt there
            with suppress(NotImplementedError):
                loop.add_signal_handler(sig, worker.stop)

        try:
            await worker.start()
        finally:
            await worker.shutdown(timeout=args.shutdown_timeout)
            worker.log_health()
        return 0
    finally:
        await db.close()


def main(argv: Sequence[str] | None = None) -> int:
    """Console script entry point."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(
        log_level=args.log_level or settings.log_level,
        json_format=settings.log_json,
        app_name=settings.app_name,
    )

    try:
        return asyncio.run(run_worker(settings, args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
