"""Pydantic models for configuration validation."""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class WorkspaceConfig(BaseModel):
    """Local scratch space for per-job working directories."""

    root: str = Field(default="work", description="Directory holding one working dir per job")


class KindCounts(BaseModel):
    """Item counts for a fixed-count derivative kind."""

    full: int = Field(ge=0, description="Count for sources at or above the short-source threshold")
    reduced: int = Field(ge=0, description="Count for sources below the short-source threshold")

    @field_validator("reduced")
    @classmethod
    def reduced_not_above_full(cls, v: int, info) -> int:
        """Validate that the reduced count never exceeds the full count."""
        if "full" in info.data and v > info.data["full"]:
            raise ValueError(f"reduced ({v}) must be <= full ({info.data['full']})")
        return v


class PlannerConfig(BaseModel):
    """Operation planning policy."""

    short_source_threshold_s: float = Field(
        default=40.0, gt=0.0, description="Sources shorter than this get reduced derivative counts"
    )
    loop_gif_counts: KindCounts = Field(default_factory=lambda: KindCounts(full=10, reduced=5))
    still_frame_counts: KindCounts = Field(default_factory=lambda: KindCounts(full=10, reduced=5))
    vertical_loop_counts: KindCounts = Field(default_factory=lambda: KindCounts(full=5, reduced=2))
    loop_gif_duration_s: float = Field(default=6.0, gt=0.0, description="Length of each GIF window")
    vertical_loop_duration_s: float = Field(
        default=8.0, gt=0.0, description="Length of each boomerang loop (forward + reverse)"
    )
    still_frame_duration_s: float = Field(
        default=1.0, gt=0.0, description="Nominal duration estimate for a still extract"
    )
    default_aspect_ratios: List[Literal["16:9", "9:16"]] = Field(
        default_factory=lambda: ["16:9"], description="Aspect ratios used when a request names none"
    )
    unknown_duration_floor_s: float = Field(
        default=60.0, gt=0.0, description="Assumed duration floor when the source length is unknown"
    )


class StageAllocation(BaseModel):
    """Share of the total deadline reserved per stage."""

    transcode: float = Field(default=0.85, ge=0.0, le=1.0)
    package: float = Field(default=0.10, ge=0.0, le=1.0)
    cleanup: float = Field(default=0.05, ge=0.0, le=1.0)
    materialize_min_s: float = Field(
        default=60.0, ge=0.0, description="Fixed minimum reserved for fetching the source"
    )


class DeadlineConfig(BaseModel):
    """Constants for the adaptive job deadline.

    Step lists are ``[threshold, value]`` pairs and must be non-decreasing in
    both columns so the budget never shrinks for a heavier workload.
    """

    base_minutes: float = Field(default=15.0, gt=0.0, description="Fixed base budget")
    size_steps_gb: List[List[float]] = Field(
        default_factory=lambda: [[1, 1.5], [2, 2.0], [5, 3.0], [8, 4.0]],
        description="[size threshold in GB, multiplier] steps",
    )
    duration_steps_min: List[List[float]] = Field(
        default_factory=lambda: [[10, 1.5], [30, 2.0], [60, 3.0]],
        description="[duration threshold in minutes, multiplier] steps",
    )
    kind_count_minutes: List[float] = Field(
        default_factory=lambda: [0, 0, 3, 5, 8],
        description="Increment indexed by number of distinct kinds requested",
    )
    per_extra_range_minutes: float = Field(default=2.0, ge=0.0)
    dual_aspect_minutes: float = Field(default=4.0, ge=0.0)
    vertical_loop_minutes: float = Field(
        default=6.0, ge=0.0, description="Flat increment when vertical loops are requested"
    )
    vertical_loop_per_item_minutes: float = Field(default=2.0, ge=0.0)
    quality_minutes: dict = Field(
        default_factory=lambda: {"compressed": 0.0, "balanced": 0.0, "high": 2.0},
        description="Increment per quality tier",
    )
    fade_minutes: float = Field(default=1.0, ge=0.0)
    max_complexity_minutes: float = Field(
        default=10.0, ge=0.0, description="Bonus for every kind + 3 ranges + both aspects"
    )
    ceiling_minutes: float = Field(default=70.0, gt=0.0, description="Ceiling for small files")
    ceiling_steps_gb: List[List[float]] = Field(
        default_factory=lambda: [[5, 75.0], [8, 80.0]],
        description="[size threshold in GB, ceiling minutes] steps",
    )
    stages: StageAllocation = Field(default_factory=StageAllocation)

    @field_validator("size_steps_gb", "duration_steps_min", "ceiling_steps_gb")
    @classmethod
    def steps_non_decreasing(cls, v: List[List[float]]) -> List[List[float]]:
        """Validate step tables are sorted and their values never drop."""
        for pair in v:
            if len(pair) != 2:
                raise ValueError(f"step must be [threshold, value], got {pair}")
        for prev, cur in zip(v, v[1:]):
            if cur[0] < prev[0] or cur[1] < prev[1]:
                raise ValueError(f"steps must be non-decreasing: {prev} then {cur}")
        return v

    @field_validator("kind_count_minutes")
    @classmethod
    def kind_increments_non_decreasing(cls, v: List[float]) -> List[float]:
        """Validate that combining more kinds never costs less time."""
        if len(v) < 5:
            raise ValueError("kind_count_minutes needs an entry for 0..4 kinds")
        for prev, cur in zip(v, v[1:]):
            if cur < prev:
                raise ValueError("kind_count_minutes must be non-decreasing")
        return v

    @field_validator("quality_minutes")
    @classmethod
    def quality_non_decreasing(cls, v: dict) -> dict:
        """Validate that a higher quality tier never gets a smaller increment."""
        order = ["compressed", "balanced", "high"]
        missing = [tier for tier in order if tier not in v]
        if missing:
            raise ValueError(f"quality_minutes missing tiers: {missing}")
        values = [float(v[tier]) for tier in order]
        if values != sorted(values):
            raise ValueError("quality_minutes must be non-decreasing compressed -> high")
        return v


class TranscoderConfig(BaseModel):
    """FFmpeg invocation settings."""

    global_timeout_s: int = Field(
        default=1800, gt=0, description="Upper bound for any single FFmpeg invocation"
    )
    no_progress_timeout_s: int = Field(
        default=120, gt=0, description="Abort if FFmpeg reports no progress for this long"
    )
    kill_grace_period_s: int = Field(default=5, gt=0, description="SIGTERM to SIGKILL grace")
    save_artifacts_on_failure: bool = Field(
        default=False, description="Write FFmpeg logs and a replay script on failure"
    )
    artifacts_dir: Optional[str] = Field(
        default=None, description="Where failure artifacts go (None = system temp)"
    )
    ffmpeg_loglevel: str = Field(default="error", description="FFmpeg -loglevel")
    progress_interval_s: float = Field(
        default=1.0, ge=0.0, description="Minimum seconds between progress callbacks"
    )
    audio_bitrate: str = Field(default="128k", description="AAC bitrate for subclips")


class StorageConfig(BaseModel):
    """Durable storage for sources and packaged archives."""

    backend: Literal["local", "s3"] = Field(default="local")
    local_root: str = Field(default="storage", description="Root for the local backend")
    bucket: Optional[str] = Field(default=None, description="Bucket for the s3 backend")
    endpoint_url: Optional[str] = Field(
        default=None, description="S3-compatible endpoint (e.g. Cloudflare R2)"
    )
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    region: str = Field(default="auto")
    signed_url_expiry_s: int = Field(
        default=7 * 24 * 3600, gt=0, description="Lifetime of archive download links"
    )


class QueueConfig(BaseModel):
    """External queue used as the preferred dispatch path."""

    backend: Literal["none", "http", "sqlite"] = Field(default="none")
    db_path: str = Field(default="queue.db", description="SQLite queue database")
    account_id: Optional[str] = None
    api_token: Optional[str] = None
    queue_name: Optional[str] = None
    api_base: str = Field(default="https://api.cloudflare.com/client/v4")
    request_timeout_s: float = Field(default=10.0, gt=0.0)
    poll_interval_s: float = Field(default=2.0, gt=0.0, description="Worker idle sleep")
    heartbeat_interval_s: int = Field(default=60, gt=0)
    stale_timeout_s: int = Field(
        default=7200, gt=0, description="Reset running items without a heartbeat after this"
    )


class ProgressConfig(BaseModel):
    """Progress fan-out settings."""

    subscriber_buffer: int = Field(
        default=256, gt=0, description="Events buffered per subscriber before dropping oldest"
    )
    max_jump: float = Field(
        default=25.0, gt=0.0, le=100.0, description="Largest single increase shown to observers"
    )
    eta_smoothing: float = Field(
        default=0.3, gt=0.0, le=1.0, description="Weight of the newest ETA sample"
    )
    stall_timeout_s: float = Field(
        default=0.0, ge=0.0,
        description="Fail processing jobs that publish nothing for this long (0 disables)",
    )
    stall_check_interval_s: float = Field(default=30.0, gt=0.0, description="Seconds between stall sweeps")


class ClipforgeConfig(BaseModel):
    """Complete application configuration with validation."""

    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    planner: PlannerConfig = Field(default_factory=PlannerConfig)
    deadline: DeadlineConfig = Field(default_factory=DeadlineConfig)
    transcoder: TranscoderConfig = Field(default_factory=TranscoderConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    progress: ProgressConfig = Field(default_factory=ProgressConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "ClipforgeConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "ClipforgeConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("work_root") is not None:
            config_dict["workspace"]["root"] = cli_args["work_root"]
        if cli_args.get("storage_backend") is not None:
            config_dict["storage"]["backend"] = cli_args["storage_backend"]
        if cli_args.get("storage_root") is not None:
            config_dict["storage"]["local_root"] = cli_args["storage_root"]
        if cli_args.get("queue_backend") is not None:
            config_dict["queue"]["backend"] = cli_args["queue_backend"]
        if cli_args.get("db") is not None:
            config_dict["queue"]["db_path"] = cli_args["db"]
        if cli_args.get("save_artifacts") is not None:
            config_dict["transcoder"]["save_artifacts_on_failure"] = cli_args["save_artifacts"]

        return ClipforgeConfig.from_dict(config_dict)
