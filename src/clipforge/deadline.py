"""Adaptive job deadlines and the cancellation token that enforces them.

The budget is built in minutes from a fixed base, scaled by size and
duration steps, plus increments for each source of extra work, then
clamped to a ceiling that grows with file size. Every table in
``DeadlineConfig`` is validated as non-decreasing, so a heavier workload
never gets a smaller budget.
"""

import logging
import threading
from enum import Enum
from typing import List, Optional, Sequence

from pydantic import BaseModel, Field

from .jobs import Deadline, Operation, OperationKind, ProcessingRequest, QualityTier, SourceMedia
from .models import DeadlineConfig

logger = logging.getLogger(__name__)

GB = 1024 ** 3


class Complexity(BaseModel):
    """Workload features the deadline is derived from."""

    size_bytes: int = Field(default=0, ge=0)
    duration_s: float = Field(default=0.0, ge=0.0)
    subclip_count: int = Field(default=0, ge=0)
    loop_gif_count: int = Field(default=0, ge=0)
    still_frame_count: int = Field(default=0, ge=0)
    vertical_loop_count: int = Field(default=0, ge=0)
    range_count: int = Field(default=0, ge=0, description="Valid time ranges")
    aspect_count: int = Field(default=1, ge=0, description="Aspect ratios requested for subclips")
    quality: QualityTier = QualityTier.BALANCED
    fades: bool = False

    @property
    def size_gb(self) -> float:
        return self.size_bytes / GB

    @property
    def duration_min(self) -> float:
        return self.duration_s / 60.0

    @property
    def kind_count(self) -> int:
        counts = (self.subclip_count, self.loop_gif_count, self.still_frame_count, self.vertical_loop_count)
        return sum(1 for c in counts if c > 0)

    @classmethod
    def from_plan(
        cls, source: SourceMedia, request: ProcessingRequest, operations: Sequence[Operation]
    ) -> "Complexity":
        """Derive complexity from a planned job."""

        def count(kind: OperationKind) -> int:
            return sum(1 for op in operations if op.kind == kind)

        subclips = [op for op in operations if op.kind == OperationKind.SUBCLIP]
        aspects = {op.params.aspect_ratio for op in subclips}
        ranges = {op.index for op in subclips}
        return cls(
            size_bytes=source.size_bytes,
            duration_s=source.duration_s or 0.0,
            subclip_count=len(subclips),
            loop_gif_count=count(OperationKind.LOOP_GIF),
            still_frame_count=count(OperationKind.STILL_FRAME),
            vertical_loop_count=count(OperationKind.VERTICAL_LOOP),
            range_count=len(ranges),
            aspect_count=len(aspects) if aspects else len(request.aspect_ratios or ["16:9"]),
            quality=request.quality,
            fades=bool(subclips) and request.has_fades,
        )


def step_value(steps: List[List[float]], x: float, default: float) -> float:
    """Value of the last step whose threshold ``x`` strictly exceeds."""
    value = default
    for threshold, step in steps:
        if x > threshold:
            value = max(value, step)
    return value


class DeadlineCalculator:
    """Pure mapping from Complexity to Deadline."""

    def __init__(self, config: DeadlineConfig = None):
        self.config = config or DeadlineConfig()

    def budget_minutes(self, complexity: Complexity) -> float:
        """Unclamped budget in minutes."""
        cfg = self.config
        minutes = cfg.base_minutes
        minutes *= step_value(cfg.size_steps_gb, complexity.size_gb, 1.0)
        minutes *= step_value(cfg.duration_steps_min, complexity.duration_min, 1.0)

        kinds = min(complexity.kind_count, len(cfg.kind_count_minutes) - 1)
        minutes += cfg.kind_count_minutes[kinds]
        minutes += cfg.per_extra_range_minutes * max(0, complexity.range_count - 1)

        if complexity.aspect_count >= 2:
            minutes += cfg.dual_aspect_minutes
        if complexity.vertical_loop_count > 0:
            minutes += cfg.vertical_loop_minutes
            minutes += cfg.vertical_loop_per_item_minutes * complexity.vertical_loop_count

        minutes += float(cfg.quality_minutes[complexity.quality.value])
        if complexity.fades:
            minutes += cfg.fade_minutes

        if complexity.kind_count >= 4 and complexity.range_count >= 3 and complexity.aspect_count >= 2:
            minutes += cfg.max_complexity_minutes
        return minutes

    def ceiling_minutes(self, complexity: Complexity) -> float:
        return step_value(self.config.ceiling_steps_gb, complexity.size_gb, self.config.ceiling_minutes)

    def compute(self, complexity: Complexity) -> Deadline:
        """Compute the job deadline; call once, right before execution."""
        ceiling = self.ceiling_minutes(complexity)
        minutes = min(self.budget_minutes(complexity), ceiling)
        total_s = minutes * 60.0
        stages = self.config.stages
        return Deadline(
            total_seconds=total_s,
            ceiling_seconds=ceiling * 60.0,
            stage_budgets={
                "materialize": stages.materialize_min_s,
                "transcode": total_s * stages.transcode,
                "package": total_s * stages.package,
                "cleanup": total_s * stages.cleanup,
            },
            complexity=complexity.model_dump(mode="json"),
        )


def describe_deadline(job_key: str, deadline: Deadline) -> str:
    """One-line structured summary for logs."""
    c = deadline.complexity
    return (
        f"job={job_key} deadline_min={deadline.total_seconds / 60:.1f} "
        f"ceiling_min={deadline.ceiling_seconds / 60:.0f} "
        f"size_gb={c.get('size_bytes', 0) / GB:.2f} duration_s={c.get('duration_s', 0):.0f} "
        f"subclips={c.get('subclip_count', 0)} gifs={c.get('loop_gif_count', 0)} "
        f"stills={c.get('still_frame_count', 0)} vertical_loops={c.get('vertical_loop_count', 0)} "
        f"quality={c.get('quality')}"
    )


class CancelReason(str, Enum):
    DEADLINE = "deadline"
    USER = "user"
    STALLED = "stalled"


class CancellationToken:
    """Cancellation signal shared by the engine and the transcoder.

    ``start`` arms a timer that expires the token when the deadline passes;
    ``cancel`` fires it early on user request or when the job stalls. The
    first reason wins.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[CancelReason] = None
        self._timer: Optional[threading.Timer] = None

    def start(self, seconds: float) -> None:
        """Arm the deadline timer."""
        self.dispose()
        self._timer = threading.Timer(max(0.0, seconds), self.expire)
        self._timer.daemon = True
        self._timer.start()

    def cancel(self, reason: CancelReason = CancelReason.USER) -> bool:
        """Fire the token. Returns False if it had already fired."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
        return True

    def expire(self) -> bool:
        return self.cancel(CancelReason.DEADLINE)

    def dispose(self) -> None:
        """Stop the deadline timer without firing the token."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[CancelReason]:
        return self._reason
