"""Job submission: queue first, in-process fallback.

``JobDispatcher.submit`` is the single entry point. It registers a
placeholder job, then walks an ordered list of strategies and stops at the
first one that accepts. Only one strategy ever owns a given job.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import List, Optional

from .errors import JobConflictError, QueueError
from .jobs import Job, ProcessingRequest, SourceMedia
from .models import QueueConfig
from .queue import HttpQueue, JobDescriptor, QueueBackend, SQLiteQueue

logger = logging.getLogger(__name__)


class SubmitResult:
    """Outcome of a submission."""

    def __init__(self, accepted: bool, job_key: str, using_queue: bool = False,
                 message: str = "", job_id: Optional[str] = None):
        self.accepted = accepted
        self.job_key = job_key
        self.using_queue = using_queue
        self.message = message
        self.job_id = job_id

    def to_dict(self) -> dict:
        return {
            "accepted": self.accepted,
            "jobKey": self.job_key,
            "usingQueue": self.using_queue,
            "message": self.message,
        }

    def __repr__(self):
        return (f"SubmitResult(accepted={self.accepted}, job_key={self.job_key!r}, "
                f"using_queue={self.using_queue})")


class DispatchStrategy(ABC):
    """One way of getting a registered job executed."""

    name = "strategy"
    uses_queue = False

    @abstractmethod
    def dispatch(self, job: Job) -> bool:
        """Hand off ``job``. Returns False (or raises QueueError) if unavailable."""


class QueueStrategy(DispatchStrategy):
    """Submit the job descriptor to an external queue."""

    name = "queue"
    uses_queue = True

    def __init__(self, queue: QueueBackend):
        self.queue = queue

    def dispatch(self, job: Job) -> bool:
        result = self.queue.enqueue(JobDescriptor.from_job(job))
        if not result.accepted:
            raise QueueError(result.reason or "Queue refused the job")
        return True


class LocalStrategy(DispatchStrategy):
    """Run the job on a daemon thread in this process."""

    name = "local"

    def __init__(self, orchestrator):
        self.orchestrator = orchestrator

    def dispatch(self, job: Job) -> bool:
        thread = threading.Thread(
            target=self.orchestrator.process, args=(job,),
            name=f"job-{job.job_id[:8]}", daemon=True,
        )
        thread.start()
        return True


class JobDispatcher:
    """Accepts submissions and routes each to exactly one strategy."""

    def __init__(self, orchestrator, queue: Optional[QueueBackend] = None,
                 strategies: Optional[List[DispatchStrategy]] = None):
        self.orchestrator = orchestrator
        self.queue = queue
        if strategies is None:
            strategies = []
            if queue is not None:
                strategies.append(QueueStrategy(queue))
            strategies.append(LocalStrategy(orchestrator))
        self.strategies = strategies

    def submit(self, source: SourceMedia, request: ProcessingRequest) -> SubmitResult:
        """Register a placeholder job and hand it to the first willing strategy.

        A job already active for the same source is left alone and the new
        submission is rejected.
        """
        job = self.orchestrator.new_job(source, request)
        try:
            self.orchestrator.register(job)
        except JobConflictError as e:
            logger.info("Rejected submission for %s: %s", source.key, e)
            return SubmitResult(accepted=False, job_key=source.key, message=str(e))

        reasons = []
        for strategy in self.strategies:
            job.using_queue = strategy.uses_queue
            try:
                strategy.dispatch(job)
            except QueueError as e:
                logger.warning("Queue unavailable for %s, falling back: %s", job.key, e)
                reasons.append(f"{strategy.name}: {e}")
                continue
            except Exception as e:
                logger.exception("%s dispatch failed for %s", strategy.name, job.key)
                reasons.append(f"{strategy.name}: {e}")
                continue
            logger.info("Job %s for %s dispatched via %s", job.job_id, job.key, strategy.name)
            message = "Job queued" if strategy.uses_queue else "Job started locally"
            return SubmitResult(accepted=True, job_key=job.key, using_queue=strategy.uses_queue,
                                message=message, job_id=job.job_id)

        job.using_queue = False
        message = "Dispatch failed: " + "; ".join(reasons) if reasons else "No dispatch strategy available"
        self.orchestrator.finalize_unstarted(job, message)
        return SubmitResult(accepted=False, job_key=job.key, message=message, job_id=job.job_id)


def build_queue(config: QueueConfig) -> Optional[QueueBackend]:
    """Queue backend for ``config.backend``, or None when queueing is off."""
    if config.backend == "http":
        return HttpQueue(config)
    if config.backend == "sqlite":
        return SQLiteQueue(config.db_path)
    return None
