"""SQLAlchemy ORM models for tunescan."""

import time
import uuid
from datetime import UTC, datetime

import sqlalchemy as sa
from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Hey future me, utc_now() ensures ALL timestamps are UTC! Never use datetime.now() without
# timezone - naive datetimes break comparisons the moment two hosts disagree on local time.
def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


def epoch_now() -> int:
    """Get current time as whole epoch seconds."""
    return int(time.time())


# Hey future me - SQLite doesn't preserve timezone info! Datetimes come back "naive". Use this
# before comparing anything read from the DB with datetime.now(UTC).
def ensure_utc_aware(dt: datetime) -> datetime:
    """Ensure datetime is UTC-aware, assuming naive datetimes are UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# =============================================================================
# JOB QUEUE - durable, lease-based background jobs
# =============================================================================
# Hey future me - this table IS the queue. There is no in-memory copy anywhere!
#
# LEASING: a worker claims a job with ONE conditional UPDATE that flips state to 'running',
# sets lease_owner + leased_until and bumps attempts. A job is leasable when
#   state='queued'  AND run_after    <= now   (fresh or backing off)
#   state='running' AND leased_until <= now   (worker died, lease expired)
# Heartbeats push leased_until forward; they never touch attempts.
#
# run_after/leased_until are epoch SECONDS (Integer), not DateTime - lease math is plain
# integer comparison, identical on SQLite and PostgreSQL.
# =============================================================================
class JobQueueModel(Base):
    """Persistent job record."""

    __tablename__ = "job_queue"

    job_id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    # Discriminator, e.g. "scan.directory"
    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    # Validated, normalized payload as JSON
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    # queued, running, succeeded, failed, cancelled
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="queued")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    run_after: Mapped[int] = mapped_column(Integer, nullable=False, default=epoch_now)
    leased_until: Mapped[int | None] = mapped_column(Integer, nullable=True)
    lease_owner: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # Advisory flag - running handlers poll it
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    progress: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        # "Oldest leasable job of type X"
        Index("ix_job_queue_type_state_run_after", "job_type", "state", "run_after"),
        Index("ix_job_queue_state_run_after", "state", "run_after"),
        Index("ix_job_queue_lease_owner", "lease_owner"),
    )


# =============================================================================
# SCAN RUNS - one row per scan.directory job
# =============================================================================
# Created by the enqueue contract (state='queued'), driven by LibraryScanWorker and
# finalized EXACTLY ONCE: every terminal UPDATE is guarded by "state NOT IN terminal".
# =============================================================================
class ScanRunModel(Base):
    """Progress and state of one directory scan."""

    __tablename__ = "scan_runs"

    scan_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    job_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("job_queue.job_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    root_path: Mapped[str] = mapped_column(Text, nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="queued")
    files_discovered: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    files_persisted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    batches_flushed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (Index("ix_scan_runs_user_state", "user_id", "state"),)


# =============================================================================
# SCAN FILES - discovered audio files per scan run
# =============================================================================
# Hey future me - (scan_id, path) is UNIQUE and every write is an UPSERT. A worker that crashed
# mid-scan leaves half-flushed batches behind; the next lease holder re-walks and re-flushes
# them without creating duplicates. Never delete rows here - pruning is someone else's job.
# =============================================================================
class ScanFileModel(Base):
    """A file discovered by a scan run."""

    __tablename__ = "scan_files"

    scan_file_id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    scan_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("scan_runs.scan_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    path: Mapped[str] = mapped_column(Text, nullable=False)
    size_bytes: Mapped[int | None] = mapped_column(sa.BigInteger, nullable=True)
    mtime_ms: Mapped[int | None] = mapped_column(sa.BigInteger, nullable=True)
    extension: Mapped[str | None] = mapped_column(String(16), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("scan_id", "path", name="uq_scan_files_scan_id_path"),
    )
