"""Infrastructure persistence layer."""

from .database import Database
from .models import (
    Base,
    JobQueueModel,
    ScanFileModel,
    ScanRunModel,
    ensure_utc_aware,
    epoch_now,
    utc_now,
)
from .retry import is_lock_error, with_db_retry
from .scan_batch_writer import BatchWriterStats, ScanBatchWriter

__all__ = [
    "Base",
    "BatchWriterStats",
    "Database",
    "JobQueueModel",
    "ScanBatchWriter",
    "ScanFileModel",
    "ScanRunModel",
    "ensure_utc_aware",
    "epoch_now",
    "is_lock_error",
    "utc_now",
    "with_db_retry",
]
