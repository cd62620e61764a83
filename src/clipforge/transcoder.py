"""Narrow per-kind transcoder interface and its FFmpeg implementation.

The engine only sees ``Transcoder.run_operation``; everything about how a
derivative is visually produced lives behind it.
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Union

from .ffmpeg_runner import FfmpegProgress, FfmpegResult, FfmpegRunner
from .jobs import OperationKind, QualityTier, SeriesParams, SubclipParams
from .models import TranscoderConfig

logger = logging.getLogger(__name__)

# Quality tier -> (x264 CRF, preset)
QUALITY_SETTINGS = {
    QualityTier.HIGH: (18, "fast"),
    QualityTier.BALANCED: (20, "medium"),
    QualityTier.COMPRESSED: (23, "fast"),
}

LANDSCAPE_FILTER = (
    "scale=1280:720:force_original_aspect_ratio=decrease,"
    "pad=1280:720:(ow-iw)/2:(oh-ih)/2:black"
)
PORTRAIT_FILTER = "scale=1080:1920:force_original_aspect_ratio=increase,crop=1080:1920"
GIF_FILTER = "fps=10,scale=480:-1:flags=lanczos"


@dataclass
class TranscodeProgress:
    """Progress callback payload."""
    percentage: float
    throughput: Optional[float] = None   # Speed multiplier reported by the transcoder
    eta_s: Optional[float] = None


@dataclass
class TranscodeResult:
    """Outcome of a single transcoder invocation."""
    success: bool
    error: Optional[str] = None
    error_type: Optional[str] = None
    duration_s: float = 0.0


ProgressCallback = Callable[[TranscodeProgress], None]
AbortCheck = Callable[[], bool]


class Transcoder(ABC):
    """External transcoder seen by the execution engine."""

    @abstractmethod
    def run_operation(
        self,
        kind: OperationKind,
        input_path: str,
        output_path: str,
        params: Union[SubclipParams, SeriesParams],
        on_progress: Optional[ProgressCallback] = None,
        timeout_s: Optional[float] = None,
        should_abort: Optional[AbortCheck] = None,
    ) -> TranscodeResult:
        """Produce one derivative file.

        Args:
            kind: Derivative kind
            input_path: Local source file
            output_path: File to write
            params: Kind-specific parameters
            on_progress: Receives periodic progress updates
            timeout_s: Wall-clock limit for this invocation
            should_abort: Polled while running; True stops the invocation

        Returns:
            TranscodeResult; implementations report failure rather than raise
        """


def _fmt(seconds: float) -> str:
    return f"{seconds:.3f}".rstrip("0").rstrip(".")


class FfmpegTranscoder(Transcoder):
    """Transcoder backed by the bundled FFmpeg binary."""

    def __init__(
        self,
        config: TranscoderConfig = None,
        runner_factory: Optional[Callable[..., FfmpegRunner]] = None,
    ):
        self.config = config or TranscoderConfig()
        self._runner_factory = runner_factory or (
            lambda **kwargs: FfmpegRunner.from_config(self.config, **kwargs)
        )

    # --- command builders ---

    def subclip_command(self, exe: str, input_path: str, output_path: str,
                        params: SubclipParams, progress_args: List[str]) -> List[str]:
        duration = params.duration_s
        crf, preset = QUALITY_SETTINGS[QualityTier(params.quality)]
        video_filters = [PORTRAIT_FILTER if params.aspect_ratio == "9:16" else LANDSCAPE_FILTER]
        audio_filters = []
        fade = params.fade_duration_s
        if params.fade_in:
            video_filters.append(f"fade=t=in:st=0:d={_fmt(fade)}")
            if params.fade_audio:
                audio_filters.append(f"afade=t=in:st=0:d={_fmt(fade)}:curve=exp")
        if params.fade_out:
            fade_start = max(0.0, duration - fade)
            video_filters.append(f"fade=t=out:st={_fmt(fade_start)}:d={_fmt(fade)}")
            if params.fade_audio:
                audio_filters.append(f"afade=t=out:st={_fmt(fade_start)}:d={_fmt(fade)}:curve=exp")

        cmd = [
            exe, "-y",
            "-ss", _fmt(params.start_s),
            "-i", input_path,
            "-t", _fmt(duration),
            "-vf", ",".join(video_filters),
        ]
        if audio_filters:
            cmd += ["-af", ",".join(audio_filters)]
        cmd += [
            "-c:v", "libx264",
            "-preset", preset,
            "-crf", str(crf),
            "-pix_fmt", "yuv420p",
            "-r", "30",
            "-c:a", "aac",
            "-b:a", self.config.audio_bitrate,
            "-movflags", "+faststart",
            *progress_args,
            output_path,
        ]
        return cmd

    def loop_gif_command(self, exe: str, input_path: str, output_path: str,
                         params: SeriesParams, progress_args: List[str]) -> List[str]:
        return [
            exe, "-y",
            "-ss", _fmt(params.offset_s),
            "-t", _fmt(params.target_duration_s),
            "-i", input_path,
            "-vf", GIF_FILTER,
            "-loop", "0",
            *progress_args,
            output_path,
        ]

    def still_frame_command(self, exe: str, input_path: str, output_path: str,
                            params: SeriesParams, progress_args: List[str]) -> List[str]:
        return [
            exe, "-y",
            "-ss", _fmt(params.offset_s),
            "-i", input_path,
            "-vframes", "1",
            "-vf", LANDSCAPE_FILTER,
            "-q:v", "2",
            *progress_args,
            output_path,
        ]

    def vertical_loop_commands(self, exe: str, input_path: str, output_path: str,
                               params: SeriesParams, progress_args: List[str]) -> List[List[str]]:
        """Forward and reverse passes; the two halves are then stream-concatenated."""
        forward, backward = self._loop_halves(output_path)
        half = params.target_duration_s / 2
        encode = ["-c:v", "libx264", "-preset", "medium", "-crf", "23", "-pix_fmt", "yuv420p"]
        return [
            [
                exe, "-y",
                "-ss", _fmt(params.offset_s),
                "-t", _fmt(half),
                "-i", input_path,
                "-vf", PORTRAIT_FILTER,
                *encode,
                "-r", "23.976",
                "-an",
                *progress_args,
                forward,
            ],
            [
                exe, "-y",
                "-i", forward,
                "-vf", "reverse",
                *encode,
                "-an",
                *progress_args,
                backward,
            ],
        ]

    @staticmethod
    def _loop_halves(output_path: str):
        out = Path(output_path)
        return (
            str(out.with_name(f"{out.stem}.forward{out.suffix}")),
            str(out.with_name(f"{out.stem}.reverse{out.suffix}")),
        )

    # --- execution ---

    def run_operation(self, kind, input_path, output_path, params, on_progress=None,
                      timeout_s=None, should_abort=None) -> TranscodeResult:
        kind = OperationKind(kind)
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)

        if kind == OperationKind.VERTICAL_LOOP:
            return self._run_vertical_loop(input_path, output_path, params, on_progress,
                                           timeout_s, should_abort)

        builder, expected = {
            OperationKind.SUBCLIP: (self.subclip_command, getattr(params, "duration_s", 0.0)),
            OperationKind.LOOP_GIF: (self.loop_gif_command, getattr(params, "target_duration_s", 0.0)),
            OperationKind.STILL_FRAME: (self.still_frame_command, 0.0),
        }[kind]
        runner = self._runner(on_progress, 0.0, 100.0)
        cmd = builder(runner.ffmpeg_exe(), input_path, output_path, params, runner.progress_args())
        result = runner.run(cmd, expected_duration=expected, timeout_s=timeout_s,
                            should_abort=should_abort)
        return self._to_result(result, output_path)

    def _run_vertical_loop(self, input_path, output_path, params, on_progress,
                           timeout_s, should_abort) -> TranscodeResult:
        deadline_total = timeout_s
        elapsed = 0.0
        forward, backward = self._loop_halves(output_path)
        half = params.target_duration_s / 2
        try:
            stages = [(0.0, 50.0), (50.0, 75.0)]
            probe = self._runner(None, 0.0, 0.0)
            commands = self.vertical_loop_commands(
                probe.ffmpeg_exe(), input_path, output_path, params, probe.progress_args()
            )
            for cmd, (lo, hi) in zip(commands, stages):
                remaining = None if deadline_total is None else max(0.0, deadline_total - elapsed)
                result = self._runner(on_progress, lo, hi).run(
                    cmd, expected_duration=half, timeout_s=remaining, should_abort=should_abort
                )
                elapsed += result.duration_s
                if not result.success:
                    return self._to_result(result, output_path)

            remaining = None if deadline_total is None else max(0.0, deadline_total - elapsed)
            concat = self._runner(on_progress, 75.0, 100.0)
            result = concat.concat_videos([forward, backward], output_path, timeout_s=remaining,
                                          should_abort=should_abort)
            outcome = self._to_result(result, output_path)
            outcome.duration_s += elapsed
            return outcome
        finally:
            for path in (forward, backward):
                Path(path).unlink(missing_ok=True)

    def _runner(self, on_progress: Optional[ProgressCallback], lo: float, hi: float) -> FfmpegRunner:
        """Fresh runner whose progress is mapped into the [lo, hi] band."""
        if on_progress is None:
            return self._runner_factory()

        def forward(progress: FfmpegProgress) -> None:
            pct = lo + (hi - lo) * progress.percentage / 100.0
            eta = None
            if progress.speed > 0 and progress.total_duration_s > 0:
                eta = max(0.0, progress.total_duration_s - progress.current_time_s) / progress.speed
            on_progress(TranscodeProgress(
                percentage=pct,
                throughput=progress.speed or None,
                eta_s=eta if eta is None or math.isfinite(eta) else None,
            ))

        return self._runner_factory(progress_callback=forward)

    @staticmethod
    def _to_result(result: FfmpegResult, output_path: str) -> TranscodeResult:
        if result.success and not Path(output_path).exists():
            return TranscodeResult(success=False, error="ffmpeg produced no output file",
                                   error_type="permanent", duration_s=result.duration_s)
        if result.success:
            return TranscodeResult(success=True, duration_s=result.duration_s)
        return TranscodeResult(
            success=False,
            error=result.error_summary,
            error_type=result.error_type.value if result.error_type else None,
            duration_s=result.duration_s,
        )
