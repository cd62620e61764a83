"""FFmpeg runner with process isolation, timeout enforcement, and progress monitoring.

This module runs FFmpeg as a child process and guarantees it never outlives
the call: global timeouts, stall detection and external abort requests all
end in a process-tree kill.

Key Features:
- Process isolation with subprocess.Popen
- Dual timeout enforcement (global + no-progress)
- Cooperative abort via a caller-supplied predicate
- Real-time progress parsing from ``-progress pipe:2`` output
- Process tree cleanup via psutil
- Error classification and optional failure artifacts
"""

import logging
import os
import re
import subprocess
import tempfile
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

import imageio_ffmpeg
import psutil

logger = logging.getLogger(__name__)

OUT_TIME_RE = re.compile(r"out_time=(-?\d+):(\d+):(\d+)(?:\.(\d+))?")
DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d+):(\d+(?:\.\d+)?)")
STDERR_TAIL_LINES = 400


class FfmpegErrorType(Enum):
    """FFmpeg error classification."""
    PERMANENT = "permanent"     # File not found, invalid format, codec error
    TRANSIENT = "transient"     # I/O stall, resource contention
    TIMEOUT = "timeout"         # Global or no-progress timeout
    PROCESS_KILLED = "killed"   # Aborted by the caller


@dataclass
class FfmpegProgress:
    """Real-time FFmpeg progress metrics."""
    current_time_s: float = 0.0      # Current output position in seconds
    total_duration_s: float = 0.0    # Expected output duration (if known)
    fps: float = 0.0
    bitrate_kbps: float = 0.0
    speed: float = 0.0               # Processing speed multiplier (e.g., 2.5x)
    frame: int = 0
    last_update: float = 0.0         # Monotonic time of last out_time update

    @property
    def percentage(self) -> float:
        if self.total_duration_s <= 0:
            return 0.0
        return min(100.0, max(0.0, self.current_time_s / self.total_duration_s * 100.0))


@dataclass
class FfmpegResult:
    """Result of FFmpeg execution."""
    success: bool
    returncode: int
    stderr: str
    duration_s: float
    error_type: Optional[FfmpegErrorType] = None
    final_progress: Optional[FfmpegProgress] = None
    artifacts_saved: List[Path] = field(default_factory=list)

    @property
    def error_summary(self) -> str:
        """Last meaningful stderr line, for error messages."""
        if self.error_type == FfmpegErrorType.TIMEOUT:
            return "timed out"
        if self.error_type == FfmpegErrorType.PROCESS_KILLED:
            return "aborted"
        lines = [
            line for line in self.stderr.splitlines()
            if line.strip() and "=" not in line.split(" ")[0]
        ]
        return lines[-1].strip() if lines else f"ffmpeg exited with code {self.returncode}"


class FfmpegRunner:
    """FFmpeg orchestration with timeout and zombie prevention.

    Example:
        >>> runner = FfmpegRunner(global_timeout_s=600, no_progress_timeout_s=60)
        >>> result = runner.run(
        ...     [runner.ffmpeg_exe(), "-y", "-i", "in.mp4", "out.gif"],
        ...     expected_duration=6.0,
        ... )
        >>> result.success
        True
    """

    def __init__(
        self,
        global_timeout_s: int = 1800,
        no_progress_timeout_s: int = 120,
        kill_grace_period_s: int = 5,
        save_artifacts_on_failure: bool = False,
        ffmpeg_loglevel: str = "error",
        artifacts_dir: Optional[str] = None,
        progress_interval_s: float = 1.0,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
        poll_interval_s: float = 0.25,
    ):
        """Initialize FFmpeg runner.

        Args:
            global_timeout_s: Maximum duration for any FFmpeg invocation
            no_progress_timeout_s: Abort if no progress update in N seconds
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            save_artifacts_on_failure: Save logs and a replay script on failure
            ffmpeg_loglevel: FFmpeg log level (error, warning, info, verbose)
            artifacts_dir: Directory for failure artifacts (None = system temp)
            progress_interval_s: Minimum seconds between progress callbacks
            progress_callback: Optional callback for progress updates
            poll_interval_s: How often the supervisor checks timeouts and aborts
        """
        self.global_timeout_s = global_timeout_s
        self.no_progress_timeout_s = no_progress_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.artifacts_dir = artifacts_dir
        self.progress_interval_s = progress_interval_s
        self.progress_callback = progress_callback
        self.poll_interval_s = poll_interval_s

        self._process: Optional[subprocess.Popen] = None
        self._progress = FfmpegProgress()
        self._stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)
        self._monitor_thread: Optional[threading.Thread] = None

    @classmethod
    def from_config(cls, config, **kwargs) -> "FfmpegRunner":
        """Build a runner from a TranscoderConfig."""
        return cls(
            global_timeout_s=config.global_timeout_s,
            no_progress_timeout_s=config.no_progress_timeout_s,
            kill_grace_period_s=config.kill_grace_period_s,
            save_artifacts_on_failure=config.save_artifacts_on_failure,
            ffmpeg_loglevel=config.ffmpeg_loglevel,
            artifacts_dir=config.artifacts_dir,
            progress_interval_s=config.progress_interval_s,
            **kwargs,
        )

    def progress_args(self) -> List[str]:
        """Arguments that make FFmpeg emit machine-readable progress on stderr."""
        return ["-progress", "pipe:2", "-nostats", "-loglevel", self.ffmpeg_loglevel]

    def concat_videos(
        self,
        input_files: List[str],
        output_path: str,
        timeout_s: Optional[float] = None,
        should_abort: Optional[Callable[[], bool]] = None,
    ) -> FfmpegResult:
        """Concatenate videos using the concat demuxer (stream copy).

        Raises:
            ValueError: If input_files is empty
        """
        if not input_files:
            raise ValueError("No input files provided for concatenation")

        list_path = Path(output_path).with_suffix(".concat.txt")
        try:
            with open(list_path, "w", encoding="utf-8") as f:
                for path in input_files:
                    escaped = str(Path(path).resolve()).replace("'", "'\\''")
                    f.write(f"file '{escaped}'\n")

            cmd = [
                self.ffmpeg_exe(), "-y",
                "-f", "concat",
                "-safe", "0",
                "-i", str(list_path),
                "-c", "copy",
                *self.progress_args(),
                output_path,
            ]
            return self.run(cmd, timeout_s=timeout_s, should_abort=should_abort)
        finally:
            if list_path.exists():
                list_path.unlink()

    def run(
        self,
        cmd: List[str],
        expected_duration: Optional[float] = None,
        timeout_s: Optional[float] = None,
        should_abort: Optional[Callable[[], bool]] = None,
    ) -> FfmpegResult:
        """Execute FFmpeg with timeout enforcement and progress monitoring.

        Args:
            cmd: FFmpeg command as list
            expected_duration: Expected output duration for percentage calculation
            timeout_s: Per-call global timeout; the configured one is an upper bound
            should_abort: Polled while FFmpeg runs; True kills the process tree

        Returns:
            FfmpegResult with execution details
        """
        start = time.monotonic()
        limit = self.global_timeout_s if timeout_s is None else min(timeout_s, self.global_timeout_s)
        self._progress = FfmpegProgress(total_duration_s=expected_duration or 0.0, last_update=start)
        self._stderr_tail = deque(maxlen=STDERR_TAIL_LINES)
        error_type: Optional[FfmpegErrorType] = None

        try:
            self._process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                bufsize=1,
            )
            self._monitor_thread = threading.Thread(
                target=self._monitor_progress, args=(self._process.stderr,), daemon=True
            )
            self._monitor_thread.start()

            while True:
                try:
                    self._process.wait(timeout=self.poll_interval_s)
                    break
                except subprocess.TimeoutExpired:
                    pass

                now = time.monotonic()
                if should_abort is not None and should_abort():
                    error_type = FfmpegErrorType.PROCESS_KILLED
                    logger.info("Aborting ffmpeg (pid %s) on request", self._process.pid)
                elif now - start > limit:
                    error_type = FfmpegErrorType.TIMEOUT
                    logger.warning("ffmpeg exceeded %.0fs global timeout", limit)
                elif now - self._progress.last_update > self.no_progress_timeout_s:
                    error_type = FfmpegErrorType.TIMEOUT
                    logger.warning("ffmpeg made no progress for %ss", self.no_progress_timeout_s)
                if error_type is not None:
                    self._kill_process_tree()
                    break

            if self._monitor_thread:
                self._monitor_thread.join(timeout=self.kill_grace_period_s)

            returncode = self._process.returncode if error_type is None else -1
            if returncode is None:
                returncode = -1
            stderr = "".join(self._stderr_tail)
            if error_type is None and returncode != 0:
                error_type = self._classify_error(stderr)

            artifacts: List[Path] = []
            if returncode != 0 and self.save_artifacts_on_failure:
                artifacts = self._save_failure_artifacts(cmd, stderr)

            return FfmpegResult(
                success=returncode == 0,
                returncode=returncode,
                stderr=stderr,
                duration_s=time.monotonic() - start,
                error_type=error_type,
                final_progress=self._progress,
                artifacts_saved=artifacts,
            )

        except BaseException:
            self._kill_process_tree()
            raise

        finally:
            self._process = None

    def _monitor_progress(self, stderr_stream) -> None:
        """Consume FFmpeg stderr, keeping a tail and parsing progress.

        FFmpeg progress format:
            frame=123
            fps=25.00
            bitrate=1234.5kbits/s
            out_time=00:00:05.123456
            speed=2.5x
            progress=continue
        """
        last_callback = 0.0

        try:
            for line in stderr_stream:
                self._stderr_tail.append(line)

                if line.startswith("out_time="):
                    match = OUT_TIME_RE.match(line)
                    if match:
                        h, m, s, frac = match.groups()
                        seconds = int(h) * 3600 + int(m) * 60 + int(s)
                        if frac:
                            seconds += float(f"0.{frac}")
                        self._progress.current_time_s = max(0.0, seconds)
                        self._progress.last_update = time.monotonic()
                elif line.startswith("frame="):
                    match = re.search(r"frame=\s*(\d+)", line)
                    if match:
                        self._progress.frame = int(match.group(1))
                        self._progress.last_update = time.monotonic()
                elif line.startswith("fps="):
                    match = re.search(r"fps=\s*([\d.]+)", line)
                    if match:
                        self._progress.fps = float(match.group(1))
                elif line.startswith("bitrate="):
                    match = re.search(r"bitrate=\s*([\d.]+)kbits/s", line)
                    if match:
                        self._progress.bitrate_kbps = float(match.group(1))
                elif line.startswith("speed="):
                    match = re.search(r"speed=\s*([\d.]+)x", line)
                    if match:
                        self._progress.speed = float(match.group(1))

                now = time.monotonic()
                if self.progress_callback and now - last_callback >= self.progress_interval_s:
                    last_callback = now
                    try:
                        self.progress_callback(self._progress)
                    except Exception:
                        logger.exception("Progress callback failed")
        except (OSError, ValueError) as e:
            # Stream closed underneath us after a kill
            logger.debug("Progress monitor stopped: %s", e)

    def _kill_process_tree(self) -> None:
        """Terminate FFmpeg and its children, escalating to SIGKILL after the grace period."""
        if not self._process or self._process.poll() is not None:
            return

        try:
            parent = psutil.Process(self._process.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            return

        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.kill_grace_period_s)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

        try:
            self._process.wait(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            logger.error("ffmpeg (pid %s) survived SIGKILL", self._process.pid)

    def _classify_error(self, stderr: str) -> FfmpegErrorType:
        """Classify an FFmpeg failure from its stderr."""
        stderr_lower = stderr.lower()

        permanent_patterns = [
            "no such file or directory",
            "invalid data found",
            "invalid argument",
            "permission denied",
            "unsupported codec",
            "invalid codec",
            "moov atom not found",
            "end of file",
            "corrupt",
            "does not contain any stream",
            "output file is empty",
        ]
        for pattern in permanent_patterns:
            if pattern in stderr_lower:
                return FfmpegErrorType.PERMANENT

        return FfmpegErrorType.TRANSIENT

    def _save_failure_artifacts(self, cmd: List[str], stderr: str) -> List[Path]:
        """Write ``ffmpeg_error_<ts>.log`` and a replayable ``ffmpeg_cmd_<ts>.sh``."""
        artifacts = []
        artifacts_dir = Path(self.artifacts_dir or tempfile.gettempdir())
        artifacts_dir.mkdir(parents=True, exist_ok=True)
        stamp = f"{int(time.time())}_{os.getpid()}"

        log_path = artifacts_dir / f"ffmpeg_error_{stamp}.log"
        try:
            with open(log_path, "w") as f:
                f.write("=" * 80 + "\n")
                f.write("FFmpeg Error Log\n")
                f.write(f"Timestamp: {time.ctime()}\n")
                f.write("=" * 80 + "\n\n")
                f.write("COMMAND:\n" + " ".join(cmd) + "\n\n")
                f.write("STDERR:\n" + (stderr or "(empty)\n"))
            artifacts.append(log_path)
        except OSError as e:
            logger.warning("Failed to save error log: %s", e)

        script_path = artifacts_dir / f"ffmpeg_cmd_{stamp}.sh"
        try:
            with open(script_path, "w") as f:
                f.write("#!/bin/bash\n")
                f.write("# Reproducible FFmpeg command\n\n")
                escaped = [
                    f"'{arg}'" if any(c in arg for c in " $`\"\\()") else arg
                    for arg in cmd
                ]
                f.write(" \\\n  ".join(escaped) + "\n")
            script_path.chmod(0o755)
            artifacts.append(script_path)
        except OSError as e:
            logger.warning("Failed to save command script: %s", e)

        return artifacts

    @staticmethod
    def ffmpeg_exe() -> str:
        """FFmpeg executable bundled by imageio-ffmpeg."""
        return imageio_ffmpeg.get_ffmpeg_exe()


def probe_duration(path: str, timeout_s: float = 30.0) -> Optional[float]:
    """Read a media file's duration from ``ffmpeg -i`` output.

    Returns:
        Duration in seconds, or None if FFmpeg could not report one.
    """
    try:
        proc = subprocess.run(
            [FfmpegRunner.ffmpeg_exe(), "-hide_banner", "-i", str(path)],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
            timeout=timeout_s,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning("Could not probe %s: %s", path, e)
        return None

    match = DURATION_RE.search(proc.stderr or "")
    if not match:
        return None
    h, m, s = match.groups()
    return int(h) * 3600 + int(m) * 60 + float(s)


def check_ffmpeg() -> bool:
    """Whether the bundled FFmpeg binary runs."""
    try:
        proc = subprocess.run(
            [FfmpegRunner.ffmpeg_exe(), "-version"],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            timeout=30,
        )
    except (OSError, RuntimeError, subprocess.TimeoutExpired):
        return False
    return proc.returncode == 0
