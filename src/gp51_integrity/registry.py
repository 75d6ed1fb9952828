"""In-memory registry of reconciliation jobs with time-based eviction."""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime, timedelta

from gp51_integrity.models import ReconciliationJob

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = ("pending", "running")


class JobRegistry:
    """Thread-safe map of job id to job.

    Finished jobs are dropped ``retention_hours`` after completion. Jobs that
    are still pending or running are never evicted.
    """

    def __init__(self, retention_hours: float = 24) -> None:
        self.retention = timedelta(hours=retention_hours)
        self._jobs: dict[str, ReconciliationJob] = {}
        self._lock = threading.Lock()

    def add(self, job: ReconciliationJob) -> ReconciliationJob:
        with self._lock:
            self._jobs[job.id] = job
        self.evict_expired()
        return job

    def get(self, job_id: str) -> ReconciliationJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self) -> list[ReconciliationJob]:
        with self._lock:
            return list(self._jobs.values())

    def active_jobs(self) -> list[ReconciliationJob]:
        with self._lock:
            return [j for j in self._jobs.values() if j.status in _ACTIVE_STATUSES]

    def evict_expired(self, now: datetime | None = None) -> int:
        """Remove finished jobs older than the retention window. Returns how many went."""
        cutoff = (now or datetime.now(UTC)) - self.retention
        with self._lock:
            expired = [
                job_id for job_id, job in self._jobs.items()
                if job.status not in _ACTIVE_STATUSES
                and job.completed_at is not None
                and job.completed_at < cutoff
            ]
            for job_id in expired:
                del self._jobs[job_id]
        if expired:
            logger.debug("Evicted %d expired reconciliation jobs", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
