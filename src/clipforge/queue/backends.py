"""Abstract queue interfaces.

``QueueBackend`` is the submit-only surface the dispatcher needs.
``ConsumableQueue`` adds the worker side for backends this process can
also drain.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from .models import EnqueueResult, JobDescriptor, QueueItem


class QueueBackend(ABC):
    """Preferred dispatch path: hand a job to an asynchronous worker system."""

    @abstractmethod
    def enqueue(self, descriptor: JobDescriptor) -> EnqueueResult:
        """Submit a job descriptor.

        Implementations report refusal and transport failure through
        ``EnqueueResult(accepted=False, reason=...)`` instead of raising.
        """

    @abstractmethod
    def status(self) -> Dict[str, Any]:
        """Health summary: ``{"healthy", "configured", "message"}``."""


class ConsumableQueue(QueueBackend):
    """Queue that workers in this deployment can consume."""

    @abstractmethod
    def dequeue(self, worker_id: str) -> Optional[QueueItem]:
        """Atomically claim the oldest pending item and mark it running."""

    @abstractmethod
    def ack_success(self, job_id: str, result: Dict[str, Any]) -> None:
        """Mark a running item succeeded."""

    @abstractmethod
    def ack_fail(self, job_id: str, error: str) -> None:
        """Mark a running item failed (terminal; retries are not this layer's concern)."""

    @abstractmethod
    def update_heartbeat(self, job_id: str) -> None:
        """Refresh the heartbeat of a running item."""

    @abstractmethod
    def reset_stale_running(self, timeout_s: int) -> int:
        """Return running items with no recent heartbeat to pending; returns the count."""

    @abstractmethod
    def counts(self) -> Dict[str, int]:
        """Item counts per status plus ``total``."""
