"""Concurrency-safe job registry with active and completed buckets."""

import logging
import threading
from typing import Dict, List, Optional

from .errors import JobConflictError
from .jobs import Job

logger = logging.getLogger(__name__)


class JobRegistry:
    """Map from job key to job state.

    Active jobs are in flight; completed jobs stay queryable after they
    reach a terminal status. At most one non-terminal job exists per key.

    Args:
        lock: Lock guarding both buckets (injected so tests and multiple
            orchestrators never share state by accident)
    """

    def __init__(self, lock: Optional[threading.Lock] = None):
        self._lock = lock or threading.Lock()
        self._active: Dict[str, Job] = {}
        self._completed: Dict[str, Job] = {}

    def get(self, job_key: str) -> Optional[Job]:
        """Active job for the key, else the completed one, else None."""
        with self._lock:
            return self._active.get(job_key) or self._completed.get(job_key)

    def set_active(self, job: Job) -> None:
        """Register a new active job.

        Raises:
            JobConflictError: If a non-terminal job is already active for the key
        """
        with self._lock:
            existing = self._active.get(job.key)
            if existing is not None and not existing.is_terminal:
                raise JobConflictError(job.key)
            self._active[job.key] = job
            self._completed.pop(job.key, None)

    def replace_active(self, job: Job) -> Optional[Job]:
        """Install ``job`` as the active job, returning the one it superseded."""
        with self._lock:
            previous = self._active.get(job.key)
            self._active[job.key] = job
            self._completed.pop(job.key, None)
        if previous is not None and previous is not job:
            logger.info("Job %s superseded for %s", previous.job_id, job.key)
        return previous

    def move_to_completed(self, job: Job) -> bool:
        """Move a terminal job out of the active bucket.

        Returns:
            True the first time for a job that is still the active one;
            False if it already moved, was cleared or was superseded
        """
        with self._lock:
            if self._active.get(job.key) is not job:
                return False
            del self._active[job.key]
            self._completed[job.key] = job
        logger.debug("Job %s for %s moved to completed (%s)", job.job_id, job.key, job.status.value)
        return True

    def clear(self, job_key: str) -> bool:
        """Remove the key from both buckets. Returns whether anything was removed."""
        with self._lock:
            removed_active = self._active.pop(job_key, None)
            removed_completed = self._completed.pop(job_key, None)
        return removed_active is not None or removed_completed is not None

    def is_active(self, job_key: str) -> bool:
        with self._lock:
            job = self._active.get(job_key)
            return job is not None and not job.is_terminal

    def active_jobs(self) -> List[Job]:
        with self._lock:
            return list(self._active.values())

    def completed_jobs(self) -> List[Job]:
        with self._lock:
            return list(self._completed.values())
