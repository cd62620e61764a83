"""Pydantic models for queue messages and queue item state."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..jobs import Job, ProcessingRequest, SourceMedia


class QueueItemStatus(str, Enum):
    """Queue item states.

    State transitions:
        pending → running     (worker dequeues)
        running → succeeded   (job completed)
        running → failed      (job failed or was cancelled)
        running → pending     (crash recovery)
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class JobDescriptor(BaseModel):
    """Everything a worker needs to run a job independently.

    The worker re-plans from source and request, so the descriptor carries
    inputs only, never derived operations or deadlines.
    """

    job_id: str = Field(..., description="Job identifier shared with the submitter")
    job_key: str = Field(..., description="Source identifier")
    source: SourceMedia
    request: ProcessingRequest
    submitted_at: datetime = Field(default_factory=datetime.now)

    class Config:
        """Pydantic configuration."""

        use_enum_values = True

    @classmethod
    def from_job(cls, job: Job) -> "JobDescriptor":
        return cls(job_id=job.job_id, job_key=job.key, source=job.source, request=job.request)


class EnqueueResult(BaseModel):
    """Outcome of handing a descriptor to a queue."""

    accepted: bool
    reason: Optional[str] = Field(default=None, description="Why the queue refused, if it did")
    message_id: Optional[str] = None


class QueueItem(BaseModel):
    """A descriptor plus its processing state in a consumable queue."""

    descriptor: JobDescriptor
    status: QueueItemStatus = QueueItemStatus.PENDING
    attempt_count: int = Field(default=0, ge=0)
    worker_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None
    last_error: Optional[str] = None
    result: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        """Pydantic configuration."""

        use_enum_values = True

    @property
    def job_id(self) -> str:
        return self.descriptor.job_id
