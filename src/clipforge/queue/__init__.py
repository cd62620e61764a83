"""Queue dispatch backends and the in-process worker."""

from .backends import ConsumableQueue, QueueBackend
from .http_backend import HttpQueue
from .models import EnqueueResult, JobDescriptor, QueueItem, QueueItemStatus
from .sqlite_backend import SQLiteQueue
from .worker import QueueWorker

__all__ = [
    "QueueBackend",
    "ConsumableQueue",
    "HttpQueue",
    "SQLiteQueue",
    "QueueWorker",
    "EnqueueResult",
    "JobDescriptor",
    "QueueItem",
    "QueueItemStatus",
]
