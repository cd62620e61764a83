"""Operation planning: request text and flags to an ordered list of operations.

Planning is pure. The same source, request and working directory always
produce the same operations in the same order, with the same ids and
output paths.
"""

import logging
import math
import re
from pathlib import Path
from typing import List, NamedTuple, Optional

from .jobs import (
    ASPECT_RATIOS,
    Operation,
    OperationKind,
    ProcessingRequest,
    SeriesParams,
    SourceMedia,
    SubclipParams,
)
from .models import KindCounts, PlannerConfig

logger = logging.getLogger(__name__)

RANGE_SPLIT_RE = re.compile(r"[-–,\s]+")
TIMESTAMP_RE = re.compile(r"^(?:(\d+):)?(\d+):(\d{1,2}(?:\.\d+)?)$")
UPLOAD_PREFIX_RE = re.compile(r"^\d+-[a-z0-9]+-(.+)$", re.IGNORECASE)
UNSAFE_CHARS_RE = re.compile(r'[\\/:*?"<>|\x00-\x1f]')

# Per-kind layout: (working subdirectory, file label, extension, archive folder suffix)
KIND_LAYOUT = {
    OperationKind.LOOP_GIF: ("gifs", "gif", ".gif", "GIFs"),
    OperationKind.STILL_FRAME: ("stills", "still", ".jpg", "Stills"),
    OperationKind.VERTICAL_LOOP: ("vertical-loops", "loop", ".mp4", "Vertical Loops"),
}


class TimeRange(NamedTuple):
    start_s: float
    end_s: float

    @property
    def duration_s(self) -> float:
        return self.end_s - self.start_s


def parse_timestamp(text: str) -> Optional[float]:
    """Parse ``M:SS``, ``MM:SS`` or ``H:MM:SS`` (fractional seconds allowed).

    Returns:
        Offset in seconds, or None if the text is not a valid timestamp.
    """
    match = TIMESTAMP_RE.match(text.strip())
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    minutes_i = int(minutes)
    seconds_f = float(seconds)
    if seconds_f >= 60:
        return None
    if hours is not None:
        if minutes_i >= 60:
            return None
        return int(hours) * 3600 + minutes_i * 60 + seconds_f
    return minutes_i * 60 + seconds_f


def parse_time_ranges(text: str, source_duration_s: Optional[float] = None) -> List[TimeRange]:
    """Parse free-text time ranges, silently skipping malformed ones.

    Each line holds one or more ``start-end`` pairs separated by dashes, en
    dashes, commas or whitespace. A range is skipped when either side is not
    a timestamp, when it does not end after it starts, or when it starts at
    or past a known source duration. Ends past the source are clamped.

    Args:
        text: User-entered ranges
        source_duration_s: Source length used for bounds checks, if known

    Returns:
        Valid ranges in input order
    """
    ranges: List[TimeRange] = []
    for line_no, raw_line in enumerate((text or "").splitlines(), start=1):
        line = raw_line.strip()
        if not line:
            continue
        parts = [p for p in RANGE_SPLIT_RE.split(line) if p]
        if len(parts) % 2:
            logger.debug("Ignoring unpaired timestamp on line %d: %r", line_no, parts[-1])
        for start_text, end_text in zip(parts[0::2], parts[1::2]):
            start = parse_timestamp(start_text)
            end = parse_timestamp(end_text)
            if start is None or end is None:
                logger.debug("Skipping malformed range on line %d: %r", line_no, line)
                continue
            if source_duration_s:
                if start >= source_duration_s:
                    logger.debug("Skipping range past end of source: %s-%s", start_text, end_text)
                    continue
                end = min(end, source_duration_s)
            if end <= start:
                logger.debug("Skipping empty range on line %d: %r", line_no, line)
                continue
            ranges.append(TimeRange(start, end))
    return ranges


def clean_base_name(source: SourceMedia) -> str:
    """Human-readable base name for every output and the archive.

    Preference: ``"artist - title"``, then title, then the original filename
    without its extension and without a machine-generated upload prefix.
    """
    title = (source.title or "").strip()
    artist = (source.artist or "").strip()
    if title and artist:
        name = f"{artist} - {title}"
    elif title:
        name = title
    else:
        stem = Path(source.original_name or source.key).stem
        match = UPLOAD_PREFIX_RE.match(stem)
        name = match.group(1) if match else stem

    name = UNSAFE_CHARS_RE.sub("", name)
    name = re.sub(r"\s+", " ", name).strip(" .")
    return name or "export"


def aspect_slug(aspect_ratio: str) -> str:
    return aspect_ratio.replace(":", "x")


def work_subdir(kind: OperationKind, aspect_ratio: Optional[str] = None) -> str:
    """Kind subdirectory inside a job's working directory."""
    if kind == OperationKind.SUBCLIP:
        return f"clips ({aspect_slug(aspect_ratio or '16:9')})"
    return KIND_LAYOUT[kind][0]


def archive_folder(base_name: str, kind: OperationKind, aspect_ratio: Optional[str] = None) -> str:
    """Named archive folder that a kind subdirectory folds into."""
    if kind == OperationKind.SUBCLIP:
        return f"{base_name} - Clips ({aspect_slug(aspect_ratio or '16:9')})"
    return f"{base_name} - {KIND_LAYOUT[kind][3]}"


def output_filename(base_name: str, kind: OperationKind, index: int) -> str:
    if kind == OperationKind.SUBCLIP:
        return f"{base_name}-clip-{index:02d}.mp4"
    _, label, ext, _ = KIND_LAYOUT[kind]
    return f"{base_name}-{label}-{index:02d}{ext}"


def archive_name(base_name: str) -> str:
    return f"{base_name} - Exports.zip"


def series_offset(kind: OperationKind, index: int, total: int, source_duration_s: float,
                  target_duration_s: float) -> float:
    """Start offset of the ``index``-th item (0-based) of a fixed-count set.

    Stills sit at evenly spaced interior points; windowed kinds start at
    evenly spaced points, pulled back so the window fits in the source.
    """
    if kind == OperationKind.STILL_FRAME:
        return float(math.floor((index + 1) * source_duration_s / (total + 1)))
    start = float(math.floor(index * source_duration_s / total))
    latest = max(0.0, source_duration_s - target_duration_s)
    return min(start, math.floor(latest))


class OperationPlanner:
    """Expands a processing request into concrete operations."""

    def __init__(self, config: PlannerConfig = None):
        self.config = config or PlannerConfig()

    def series_count(self, kind: OperationKind, source_duration_s: Optional[float]) -> int:
        """Item count for a fixed-count kind, reduced for short sources."""
        counts: KindCounts = {
            OperationKind.LOOP_GIF: self.config.loop_gif_counts,
            OperationKind.STILL_FRAME: self.config.still_frame_counts,
            OperationKind.VERTICAL_LOOP: self.config.vertical_loop_counts,
        }[kind]
        if source_duration_s is not None and source_duration_s < self.config.short_source_threshold_s:
            return counts.reduced
        return counts.full

    def plan(
        self,
        source: SourceMedia,
        request: ProcessingRequest,
        work_dir: str,
        base_name: Optional[str] = None,
    ) -> List[Operation]:
        """Build the ordered operation list for one job.

        Args:
            source: Source media reference and metadata
            request: Requested derivatives
            work_dir: The job's working directory
            base_name: Override for the naming base (defaults to clean_base_name)

        Returns:
            Subclips (range-major, then aspect ratio), then loop GIFs, stills
            and vertical loops, each kind indexed from 1.
        """
        base = base_name or clean_base_name(source)
        root = Path(work_dir)
        operations: List[Operation] = []

        if request.subclips:
            aspects = request.aspect_ratios or list(self.config.default_aspect_ratios)
            aspects = [a for a in ASPECT_RATIOS if a in aspects]
            ranges = parse_time_ranges(request.time_ranges, source.duration_s)
            for i, time_range in enumerate(ranges, start=1):
                for aspect in aspects:
                    output = root / work_subdir(OperationKind.SUBCLIP, aspect) / output_filename(
                        base, OperationKind.SUBCLIP, i
                    )
                    operations.append(
                        Operation(
                            id=f"subclip-{aspect_slug(aspect)}-{i:02d}",
                            kind=OperationKind.SUBCLIP,
                            index=i,
                            input_ref=source.ref,
                            output_path=str(output),
                            params=SubclipParams(
                                start_s=time_range.start_s,
                                end_s=time_range.end_s,
                                aspect_ratio=aspect,
                                quality=request.quality,
                                fade_in=request.fade_in,
                                fade_out=request.fade_out,
                                fade_audio=request.fade_audio,
                                fade_duration_s=min(request.fade_duration_s, time_range.duration_s / 2),
                            ),
                            expected_duration_s=time_range.duration_s,
                        )
                    )

        series = [
            (request.loop_gifs, OperationKind.LOOP_GIF, self.config.loop_gif_duration_s),
            (request.still_frames, OperationKind.STILL_FRAME, self.config.still_frame_duration_s),
            (request.vertical_loops, OperationKind.VERTICAL_LOOP, self.config.vertical_loop_duration_s),
        ]
        for requested, kind, target in series:
            if requested:
                operations.extend(self._plan_series(source, kind, target, base, root))

        return operations

    def _plan_series(self, source: SourceMedia, kind: OperationKind, target_duration_s: float,
                     base: str, root: Path) -> List[Operation]:
        total = self.series_count(kind, source.duration_s)
        if total == 0:
            return []
        duration = source.duration_s or max(total * 10.0, self.config.unknown_duration_floor_s)
        ops = []
        for i in range(total):
            index = i + 1
            offset = series_offset(kind, i, total, duration, target_duration_s)
            ops.append(
                Operation(
                    id=f"{kind.value}-{index:02d}",
                    kind=kind,
                    index=index,
                    input_ref=source.ref,
                    output_path=str(root / work_subdir(kind) / output_filename(base, kind, index)),
                    params=SeriesParams(
                        index_in_set=i,
                        total_in_set=total,
                        target_duration_s=target_duration_s,
                        source_duration_s=duration,
                        offset_s=offset,
                    ),
                    expected_duration_s=target_duration_s,
                )
            )
        return ops
