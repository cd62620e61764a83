"""Execution engine behaviour, driven through the orchestrator with a fake transcoder."""

import io
import threading
import zipfile
from pathlib import Path
from unittest.mock import MagicMock, patch

from clipforge.engine import CANCELLED_MESSAGE
from clipforge.jobs import (
    Deadline,
    JobStatus,
    OperationKind,
    OperationStatus,
    ProcessingRequest,
    SourceMedia,
)
from clipforge.orchestrator import Orchestrator
from clipforge.registry import JobRegistry

from conftest import FakeTranscoder


def make_orchestrator(config, storage, transcoder):
    return Orchestrator(config, transcoder=transcoder, storage=storage,
                        registry=JobRegistry(threading.Lock()))


def archive_names(storage, job):
    data = storage.path_for(job.archive_location).read_bytes()
    return zipfile.ZipFile(io.BytesIO(data)).namelist()


class TestSuccess:
    def test_all_operations_complete(self, orchestrator, fake_transcoder, storage, source,
                                     request_two_ranges):
        job = orchestrator.run_local(source, request_two_ranges)

        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100.0
        assert job.errors == []
        assert job.completed_operations == 2
        assert job.completed_at is not None
        assert job.current_operation is None
        assert len(archive_names(storage, job)) == 2
        assert [c["input"] for c in fake_transcoder.calls] == [source.ref, source.ref]
        assert all(c["timeout_s"] is not None and c["timeout_s"] <= job.deadline.total_seconds
                   for c in fake_transcoder.calls)

    def test_workspace_removed_and_job_moved(self, orchestrator, source, request_two_ranges):
        job = orchestrator.run_local(source, request_two_ranges)
        assert job.cleaned_up
        assert not Path(job.work_dir).exists()
        assert orchestrator.registry.completed_jobs() == [job]
        assert not orchestrator.registry.is_active(source.key)

    def test_operations_run_in_plan_order(self, orchestrator, fake_transcoder, source):
        request = ProcessingRequest(time_ranges="0:00-0:05", loop_gifs=True, still_frames=True)
        orchestrator.run_local(source, request)
        kinds = [c["kind"] for c in fake_transcoder.calls]
        assert kinds[0] == OperationKind.SUBCLIP
        assert kinds[1:11] == [OperationKind.LOOP_GIF] * 10
        assert kinds[11:] == [OperationKind.STILL_FRAME] * 10

    def test_no_operations(self, orchestrator, fake_transcoder, source):
        job = orchestrator.run_local(source, ProcessingRequest(subclips=False))
        assert job.status == JobStatus.COMPLETED
        assert job.archive_location is None
        assert fake_transcoder.calls == []


class TestFailures:
    def test_partial_failure_still_packages(self, tmp_config, storage, source):
        transcoder = FakeTranscoder(fail_kinds={OperationKind.LOOP_GIF})
        orchestrator = make_orchestrator(tmp_config, storage, transcoder)
        job = orchestrator.run_local(source, ProcessingRequest(time_ranges="0:00-0:05", loop_gifs=True))

        assert job.status == JobStatus.COMPLETED
        assert job.completed_operations == 1
        assert job.failed_operations == 10
        assert job.errors == ["loop-gif failed: encoder exploded"] * 10
        assert archive_names(storage, job) == [
            "Neon - Night Drive - Clips (16x9)/Neon - Night Drive-clip-01.mp4"
        ]

    def test_all_operations_failed(self, tmp_config, storage, source, request_two_ranges):
        orchestrator = make_orchestrator(tmp_config, storage,
                                         FakeTranscoder(fail_kinds={OperationKind.SUBCLIP}))
        job = orchestrator.run_local(source, request_two_ranges)

        assert job.status == JobStatus.FAILED
        assert job.errors[-1] == (
            "All operations failed: subclip failed: encoder exploded; subclip failed: encoder exploded"
        )
        assert job.archive_location is None
        assert not Path(job.work_dir).exists()

    def test_partial_output_removed_on_failure(self, tmp_config, storage, source):
        transcoder = FakeTranscoder(fail_paths={"Neon - Night Drive-clip-02.mp4"}, write_partial=True)
        orchestrator = make_orchestrator(tmp_config, storage, transcoder)
        orchestrator.engine.cleanup = MagicMock()

        job = orchestrator.run_local(source, ProcessingRequest(time_ranges="0:00-0:05, 0:10-0:15"))

        ok, failed = job.operations
        assert ok.status == OperationStatus.COMPLETED
        assert failed.status == OperationStatus.FAILED
        assert Path(ok.output_path).exists()
        assert not Path(failed.output_path).exists()

    def test_transcoder_exception_becomes_operation_error(self, tmp_config, storage, source):
        transcoder = FakeTranscoder(before_run=MagicMock(side_effect=[RuntimeError("segfault"), None]))
        orchestrator = make_orchestrator(tmp_config, storage, transcoder)
        job = orchestrator.run_local(source, ProcessingRequest(time_ranges="0:00-0:05, 0:10-0:15"))
        assert job.status == JobStatus.COMPLETED
        assert job.errors == ["subclip failed: segfault"]

    def test_missing_local_source(self, orchestrator, fake_transcoder, tmp_path, request_two_ranges):
        source = SourceMedia(key="gone", ref=str(tmp_path / "nope.mp4"), duration_s=60.0)
        job = orchestrator.run_local(source, request_two_ranges)
        assert job.status == JobStatus.FAILED
        assert job.errors == [f"Materialization failed: Source file not found: {source.ref}"]
        assert fake_transcoder.calls == []
        assert orchestrator.registry.completed_jobs() == [job]

    def test_planning_failure(self, orchestrator, source, request_two_ranges):
        orchestrator.planner.plan = MagicMock(side_effect=ValueError("bad plan"))
        job = orchestrator.run_local(source, request_two_ranges)
        assert job.status == JobStatus.FAILED
        assert job.errors == ["Planning failed: bad plan"]
        assert orchestrator.publisher.latest(source.key).status == JobStatus.FAILED


class TestMaterialization:
    def test_stored_source_copied_into_workspace(self, orchestrator, fake_transcoder, storage,
                                                 request_two_ranges):
        ref = storage.put("uploads/track.mov", b"video")
        source = SourceMedia(key="stored", ref=ref, original_name="track.mov", duration_s=60.0)

        job = orchestrator.run_local(source, request_two_ranges)

        expected = str(Path(job.work_dir) / "input" / "source.mov")
        assert job.status == JobStatus.COMPLETED
        assert job.local_input_path == expected
        assert {c["input"] for c in fake_transcoder.calls} == {expected}
        assert not Path(expected).exists()

    def test_stored_source_missing(self, orchestrator, request_two_ranges):
        source = SourceMedia(key="stored", ref="store://uploads/missing.mp4", duration_s=60.0)
        job = orchestrator.run_local(source, request_two_ranges)
        assert job.status == JobStatus.FAILED
        assert job.errors[0].startswith("Materialization failed:")


class TestCancellation:
    def test_deadline_expiry_keeps_finished_work(self, tmp_config, storage, source):
        holder = {}

        def expire_on_second(index, _path):
            if index == 1:
                next(iter(holder["orch"]._tokens.values())).expire()

        orchestrator = make_orchestrator(tmp_config, storage, FakeTranscoder(before_run=expire_on_second))
        holder["orch"] = orchestrator
        request = ProcessingRequest(time_ranges="0:00-0:05, 0:10-0:15, 0:20-0:25")

        job = orchestrator.run_local(source, request)

        statuses = [op.status for op in job.operations]
        assert statuses == [OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.PENDING]
        assert job.errors == ["Processing deadline exceeded (1 of 3 operations not attempted)"]
        assert job.status == JobStatus.COMPLETED
        assert job.archive_location is not None

    def test_deadline_passes_between_operations(self, tmp_config, storage, source):
        clock = {"now": 1000.0}
        fake_time = MagicMock()
        fake_time.monotonic.side_effect = lambda: clock["now"]

        def late_second(index, _path):
            if index == 1:
                clock["now"] += 61.0

        orchestrator = make_orchestrator(tmp_config, storage, FakeTranscoder(before_run=late_second))
        orchestrator.calculator.compute = MagicMock(return_value=Deadline(
            total_seconds=60.0, ceiling_seconds=60.0, created_monotonic=1000.0,
        ))
        request = ProcessingRequest(time_ranges="0:00-0:05, 0:10-0:15, 0:20-0:25, 0:30-0:35, 0:40-0:45")

        with patch("clipforge.jobs.time", fake_time):
            job = orchestrator.run_local(source, request)

        statuses = [op.status for op in job.operations]
        assert statuses == [OperationStatus.COMPLETED] * 2 + [OperationStatus.PENDING] * 3
        assert job.errors == ["Processing deadline exceeded (3 of 5 operations not attempted)"]
        assert job.status == JobStatus.COMPLETED
        assert len(archive_names(storage, job)) == 2

    def test_deadline_expiry_before_any_success(self, tmp_config, storage, source, request_two_ranges):
        holder = {}

        def expire_first(index, _path):
            if index == 0:
                next(iter(holder["orch"]._tokens.values())).expire()

        orchestrator = make_orchestrator(tmp_config, storage, FakeTranscoder(before_run=expire_first))
        holder["orch"] = orchestrator
        job = orchestrator.run_local(source, request_two_ranges)
        assert job.status == JobStatus.FAILED
        assert job.errors[0] == "Processing deadline exceeded (1 of 2 operations not attempted)"

    def test_user_cancel_during_operation(self, tmp_config, storage, source, request_two_ranges):
        holder = {}

        def cancel_first(index, _path):
            if index == 0:
                holder["cancelled"] = holder["orch"].cancel(source.key)

        transcoder = FakeTranscoder(before_run=cancel_first)
        orchestrator = make_orchestrator(tmp_config, storage, transcoder)
        holder["orch"] = orchestrator

        job = orchestrator.run_local(source, request_two_ranges)

        assert holder["cancelled"] is True
        assert job.status == JobStatus.FAILED
        assert job.errors == [CANCELLED_MESSAGE]
        assert len(transcoder.calls) == 1
        assert not Path(job.work_dir).exists()
        assert orchestrator.registry.completed_jobs() == [job]


class TestProgressEvents:
    def test_event_stream(self, orchestrator, source, request_two_ranges):
        job = orchestrator.new_job(source, request_two_ranges)
        orchestrator.register(job)
        sub = orchestrator.subscribe_progress(source.key)

        orchestrator.process(job)
        events = list(sub)

        assert events[0].status == JobStatus.QUEUED
        assert events[-1].status == JobStatus.COMPLETED
        assert events[-1].percentage == 100.0
        assert events[-1].completed_operations == 2
        percentages = [e.percentage for e in events]
        assert percentages == sorted(percentages)
        assert any(e.current_operation == "subclip 01 (16:9)" for e in events)
        assert any(e.throughput == 2.0 for e in events)

    def test_failed_job_ends_stream(self, tmp_config, storage, source, request_two_ranges):
        orchestrator = make_orchestrator(tmp_config, storage,
                                         FakeTranscoder(fail_kinds={OperationKind.SUBCLIP}))
        job = orchestrator.new_job(source, request_two_ranges)
        orchestrator.register(job)
        sub = orchestrator.subscribe_progress(source.key)
        orchestrator.process(job)
        events = list(sub)
        assert events[-1].status == JobStatus.FAILED
        assert events[-1].is_terminal
