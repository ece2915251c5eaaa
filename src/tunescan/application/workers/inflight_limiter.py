"""In-process concurrency limiter for the job worker.

Hey future me - this is PER PROCESS bookkeeping only! Two worker processes each get their
own limits; cluster-wide exclusivity comes from the database leases, not from here.
"""

from collections import Counter
from collections.abc import Mapping


class InflightLimiter:
    """Tracks running jobs, globally and per job type."""

    def __init__(
        self,
        max_concurrent_jobs: int,
        per_type_concurrency: Mapping[str, int] | None = None,
        default_type_concurrency: int = 1,
    ) -> None:
        self._max_concurrent_jobs = max_concurrent_jobs
        self._per_type = dict(per_type_concurrency or {})
        self._default_type_concurrency = default_type_concurrency
        self._active = 0
        self._active_by_type: Counter[str] = Counter()

    def limit_for(self, job_type: str) -> int:
        """Concurrency ceiling for one job type."""
        return self._per_type.get(job_type, self._default_type_concurrency)

    def can_run(self, job_type: str) -> bool:
        """Whether one more job of ``job_type`` fits under both ceilings."""
        if self._active >= self._max_concurrent_jobs:
            return False
        return self._active_by_type[job_type] < self.limit_for(job_type)

    def start(self, job_type: str) -> None:
        self._active += 1
        self._active_by_type[job_type] += 1

    def finish(self, job_type: str) -> None:
        # Never go negative, even on a double finish
        self._active = max(0, self._active - 1)
        remaining = self._active_by_type[job_type] - 1
        if remaining > 0:
            self._active_by_type[job_type] = remaining
        else:
            self._active_by_type.pop(job_type, None)

    def count(self) -> int:
        """Jobs currently running in this process."""
        return self._active

    def count_for(self, job_type: str) -> int:
        return self._active_by_type[job_type]
