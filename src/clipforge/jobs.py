"""Domain models for jobs, operations and progress snapshots.

A Job is one source plus one request. The planner turns the request into an
ordered list of Operations; the engine drives their status. Enum-valued
fields keep their Enum type in memory and serialize to strings via
``model_dump(mode="json")``.
"""

import time
import uuid
from datetime import datetime
from enum import Enum
from typing import ClassVar, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator


class OperationKind(str, Enum):
    """Derivative kinds, in the order the planner emits them."""

    SUBCLIP = "subclip"
    LOOP_GIF = "loop-gif"
    STILL_FRAME = "still-frame"
    VERTICAL_LOOP = "vertical-loop"


class OperationStatus(str, Enum):
    """pending → processing → {completed | failed}, no retries."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(str, Enum):
    """queued → processing → {completed | failed}."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class QualityTier(str, Enum):
    """Encoding quality, lowest to highest."""

    COMPRESSED = "compressed"
    BALANCED = "balanced"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return list(QualityTier).index(self)


ASPECT_RATIOS = ("16:9", "9:16")


class SourceMedia(BaseModel):
    """Reference to the source video and the metadata used for naming."""

    key: str = Field(..., min_length=1, description="Source identifier; one active job per key")
    ref: str = Field(..., min_length=1, description="Local path or durable storage key")
    original_name: str = Field(default="", description="Filename as uploaded")
    title: Optional[str] = Field(default=None, description="Track or video title")
    artist: Optional[str] = Field(default=None, description="Attribution shown before the title")
    duration_s: Optional[float] = Field(default=None, ge=0.0, description="Source length if known")
    size_bytes: int = Field(default=0, ge=0, description="Source file size")
    owner: Optional[str] = Field(default=None, description="Owning user, used for storage namespacing")


class ProcessingRequest(BaseModel):
    """Declarative description of the derivatives to produce."""

    time_ranges: str = Field(default="", description="Free text, one or more start-end ranges")
    subclips: bool = Field(default=True, description="Cut a subclip per range per aspect ratio")
    aspect_ratios: List[str] = Field(default_factory=list, description="Subset of 16:9 and 9:16")
    loop_gifs: bool = False
    still_frames: bool = False
    vertical_loops: bool = False
    quality: QualityTier = QualityTier.BALANCED
    fade_in: bool = False
    fade_out: bool = False
    fade_audio: bool = False
    fade_duration_s: float = Field(default=0.5, gt=0.0, le=5.0)

    @field_validator("aspect_ratios")
    @classmethod
    def known_aspect_ratios(cls, v: List[str]) -> List[str]:
        """Validate aspect ratios and drop duplicates while keeping order."""
        unknown = [r for r in v if r not in ASPECT_RATIOS]
        if unknown:
            raise ValueError(f"unsupported aspect ratios: {unknown}")
        return list(dict.fromkeys(v))

    @property
    def has_fades(self) -> bool:
        return self.fade_in or self.fade_out


class SubclipParams(BaseModel):
    """Parameters for cutting one time range in one aspect ratio."""

    start_s: float = Field(ge=0.0)
    end_s: float = Field(gt=0.0)
    aspect_ratio: str = "16:9"
    quality: QualityTier = QualityTier.BALANCED
    fade_in: bool = False
    fade_out: bool = False
    fade_audio: bool = False
    fade_duration_s: float = 0.5

    class Config:
        frozen = True

    @field_validator("end_s")
    @classmethod
    def end_after_start(cls, v: float, info) -> float:
        """Validate that end time is after start time."""
        if "start_s" in info.data and v <= info.data["start_s"]:
            raise ValueError(f"end ({v}) must be > start ({info.data['start_s']})")
        return v

    @property
    def duration_s(self) -> float:
        return self.end_s - self.start_s


class SeriesParams(BaseModel):
    """Parameters for one item of a fixed-count derivative set."""

    index_in_set: int = Field(ge=0, description="0-based position within its kind")
    total_in_set: int = Field(gt=0)
    target_duration_s: float = Field(gt=0.0)
    source_duration_s: float = Field(gt=0.0, description="Known or assumed source length")
    offset_s: float = Field(default=0.0, ge=0.0, description="Where in the source this item starts")

    class Config:
        frozen = True


class Operation(BaseModel):
    """One indivisible transcoding step producing a single output file.

    Only ``status`` and ``progress`` may change after construction.
    """

    MUTABLE_FIELDS: ClassVar[frozenset] = frozenset({"status", "progress"})

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    kind: OperationKind
    index: int = Field(ge=1, description="1-based index within its kind")
    input_ref: str
    output_path: str
    params: Union[SubclipParams, SeriesParams]
    expected_duration_s: float = Field(ge=0.0)
    status: OperationStatus = OperationStatus.PENDING
    progress: float = Field(default=0.0, ge=0.0, le=100.0)

    def __setattr__(self, name, value):
        if name not in self.MUTABLE_FIELDS:
            raise AttributeError(f"Operation.{name} is immutable")
        super().__setattr__(name, value)

    @property
    def label(self) -> str:
        """Human-readable label used as the current-operation string."""
        if self.kind == OperationKind.SUBCLIP:
            return f"{self.kind.value} {self.index:02d} ({self.params.aspect_ratio})"
        return f"{self.kind.value} {self.index:02d}"


class Deadline(BaseModel):
    """Computed time budget for a job, fixed once execution starts."""

    total_seconds: float = Field(gt=0.0)
    ceiling_seconds: float = Field(gt=0.0)
    stage_budgets: Dict[str, float] = Field(default_factory=dict)
    created_monotonic: float = Field(default_factory=time.monotonic)
    created_at: datetime = Field(default_factory=datetime.now)
    complexity: Dict[str, Union[int, float, str, bool]] = Field(default_factory=dict)

    class Config:
        frozen = True

    def elapsed(self) -> float:
        return time.monotonic() - self.created_monotonic

    def remaining(self) -> float:
        """Seconds left before the deadline; never negative."""
        return max(0.0, self.total_seconds - self.elapsed())

    def exceeded(self) -> bool:
        return self.remaining() <= 0.0

    def has_time_for(self, stage: str, estimate_s: float) -> bool:
        """Whether ``estimate_s`` fits in both the stage budget and the time left."""
        budget = self.stage_budgets.get(stage, self.total_seconds)
        return estimate_s <= min(budget, self.remaining())


class Job(BaseModel):
    """The unit of work for one source and one request."""

    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    key: str = Field(..., description="Source identifier")
    source: SourceMedia
    request: ProcessingRequest = Field(default_factory=ProcessingRequest)
    owner: Optional[str] = None
    base_name: str = ""
    operations: List[Operation] = Field(default_factory=list)
    status: JobStatus = JobStatus.QUEUED
    progress: float = Field(default=0.0, ge=0.0, le=100.0)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    current_operation: Optional[str] = None
    errors: List[str] = Field(default_factory=list)
    deadline: Optional[Deadline] = None
    archive_location: Optional[str] = None
    download_url: Optional[str] = None
    work_dir: Optional[str] = None
    local_input_path: Optional[str] = None
    using_queue: bool = False
    cleaned_up: bool = False

    @property
    def total_operations(self) -> int:
        return len(self.operations)

    @property
    def completed_operations(self) -> int:
        return sum(1 for op in self.operations if op.status == OperationStatus.COMPLETED)

    @property
    def failed_operations(self) -> int:
        return sum(1 for op in self.operations if op.status == OperationStatus.FAILED)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def fail(self, message: str) -> None:
        """Record a job-level error and mark the job failed."""
        self.errors.append(message)
        self.status = JobStatus.FAILED

    def to_status(self) -> dict:
        """JSON-safe status snapshot for observers."""
        return {
            "jobId": self.job_id,
            "key": self.key,
            "status": self.status.value,
            "progress": round(self.progress, 1),
            "totalOperations": self.total_operations,
            "completedOperations": self.completed_operations,
            "failedOperations": self.failed_operations,
            "currentOperation": self.current_operation,
            "errors": list(self.errors),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "deadlineSeconds": self.deadline.total_seconds if self.deadline else None,
            "archiveLocation": self.archive_location,
            "downloadUrl": self.download_url,
            "usingQueue": self.using_queue,
            "operations": [
                {
                    "id": op.id,
                    "kind": op.kind.value,
                    "label": op.label,
                    "status": op.status.value,
                    "progress": round(op.progress, 1),
                }
                for op in self.operations
            ],
        }


class ProgressEvent(BaseModel):
    """Immutable progress snapshot pushed to observers."""

    job_key: str
    job_id: Optional[str] = Field(default=None, description="Submission that produced the event")
    percentage: float = Field(ge=0.0, le=100.0)
    current_operation: Optional[str] = None
    operation_progress: float = Field(default=0.0, ge=0.0, le=100.0)
    eta_s: Optional[float] = Field(default=None, ge=0.0, description="Estimated seconds remaining")
    throughput: Optional[float] = Field(
        default=None, ge=0.0, description="Transcoder speed multiplier (1.0 = realtime)"
    )
    status: JobStatus = JobStatus.PROCESSING
    completed_operations: int = 0
    total_operations: int = 0
    timestamp: datetime = Field(default_factory=datetime.now)

    class Config:
        frozen = True

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal
