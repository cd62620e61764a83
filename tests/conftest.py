import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from clipforge.jobs import OperationKind, ProcessingRequest, SourceMedia
from clipforge.models import ClipforgeConfig
from clipforge.orchestrator import Orchestrator
from clipforge.registry import JobRegistry
from clipforge.storage import LocalStorage
from clipforge.transcoder import TranscodeProgress, TranscodeResult, Transcoder


class FakeTranscoder(Transcoder):
    """Writes a small file per operation instead of running FFmpeg.

    Args:
        fail_kinds: Kinds whose operations fail
        fail_paths: Output filenames (basename) that fail
        before_run: Called with (call index, output path) before each operation
        write_partial: Write a partial file before failing
    """

    def __init__(self, fail_kinds=(), fail_paths=(), before_run: Optional[Callable] = None,
                 write_partial: bool = False):
        self.fail_kinds = set(fail_kinds)
        self.fail_paths = set(fail_paths)
        self.before_run = before_run
        self.write_partial = write_partial
        self.calls: List[Dict] = []
        self.lock = threading.Lock()

    def run_operation(self, kind, input_path, output_path, params, on_progress=None,
                      timeout_s=None, should_abort=None) -> TranscodeResult:
        with self.lock:
            index = len(self.calls)
            self.calls.append({
                "kind": OperationKind(kind), "input": input_path, "output": output_path,
                "params": params, "timeout_s": timeout_s,
            })
        if self.before_run is not None:
            self.before_run(index, output_path)
        if should_abort is not None and should_abort():
            return TranscodeResult(success=False, error="aborted", error_type="killed")

        out = Path(output_path)
        out.parent.mkdir(parents=True, exist_ok=True)
        if OperationKind(kind) in self.fail_kinds or out.name in self.fail_paths:
            if self.write_partial:
                out.write_bytes(b"partial")
            return TranscodeResult(success=False, error="encoder exploded", error_type="permanent")

        if on_progress is not None:
            on_progress(TranscodeProgress(percentage=50.0, throughput=2.0, eta_s=1.0))
            on_progress(TranscodeProgress(percentage=100.0, throughput=2.0, eta_s=0.0))
        out.write_bytes(f"{kind} output".encode())
        return TranscodeResult(success=True, duration_s=0.01)


@pytest.fixture
def tmp_config(tmp_path):
    """Config rooted in a temporary directory."""
    return ClipforgeConfig.from_dict({
        "workspace": {"root": str(tmp_path / "work")},
        "storage": {"backend": "local", "local_root": str(tmp_path / "storage")},
        "queue": {"backend": "none", "db_path": str(tmp_path / "queue.db")},
    })


@pytest.fixture
def storage(tmp_config):
    return LocalStorage(tmp_config.storage.local_root)


@pytest.fixture
def fake_transcoder():
    return FakeTranscoder()


@pytest.fixture
def orchestrator(tmp_config, fake_transcoder, storage):
    return Orchestrator(
        tmp_config,
        transcoder=fake_transcoder,
        storage=storage,
        registry=JobRegistry(threading.Lock()),
    )


@pytest.fixture
def source_file(tmp_path):
    """A local source video (content is irrelevant to the fake transcoder)."""
    path = tmp_path / "media" / "1700000000-abc123-My Track.mp4"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"\x00" * 2048)
    return path


@pytest.fixture
def source(source_file):
    return SourceMedia(
        key="track-1",
        ref=str(source_file),
        original_name=source_file.name,
        title="Night Drive",
        artist="Neon",
        duration_s=120.0,
        size_bytes=2048,
        owner="user@example.com",
    )


@pytest.fixture
def request_two_ranges():
    return ProcessingRequest(time_ranges="0:05-0:15\n0:30-0:40", aspect_ratios=["16:9"])
