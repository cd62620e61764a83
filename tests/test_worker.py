"""Tests for the queue worker and its heartbeat thread."""

import threading
import time
from unittest.mock import MagicMock

import pytest

from clipforge.dispatcher import JobDispatcher
from clipforge.jobs import JobStatus, OperationKind, ProcessingRequest
from clipforge.queue import JobDescriptor, QueueItemStatus, QueueWorker, SQLiteQueue
from clipforge.queue.worker import _start_heartbeat, _stop_heartbeat
from clipforge.registry import JobRegistry
from clipforge.orchestrator import Orchestrator

from conftest import FakeTranscoder


@pytest.fixture
def sqlite_queue(tmp_path):
    q = SQLiteQueue(str(tmp_path / "queue.db"))
    yield q
    q.close()


def enqueue(queue, orchestrator, source, request, job_id="job-0001"):
    job = orchestrator.new_job(source, request, job_id=job_id)
    queue.enqueue(JobDescriptor.from_job(job))
    return job


class TestRunOnce:
    def test_empty_queue(self, sqlite_queue, orchestrator):
        assert QueueWorker(sqlite_queue, orchestrator).run_once() is None

    def test_processes_and_acks_success(self, sqlite_queue, orchestrator, source,
                                        request_two_ranges):
        enqueue(sqlite_queue, orchestrator, source, request_two_ranges)
        worker = QueueWorker(sqlite_queue, orchestrator, worker_id="w1")

        job = worker.run_once()

        assert job.status == JobStatus.COMPLETED
        assert job.job_id == "job-0001"
        assert job.using_queue
        assert orchestrator.get_status(source.key) is job
        item = sqlite_queue.get_item("job-0001")
        assert item.status == QueueItemStatus.SUCCEEDED.value
        assert item.worker_id == "w1"
        assert item.result["completed_operations"] == 2
        assert item.result["archive_location"] == job.archive_location

    def test_failed_job_acked_as_failure(self, sqlite_queue, tmp_config, storage, source,
                                         request_two_ranges):
        orchestrator = Orchestrator(tmp_config, transcoder=FakeTranscoder(fail_kinds={OperationKind.SUBCLIP}),
                                    storage=storage, registry=JobRegistry(threading.Lock()))
        enqueue(sqlite_queue, orchestrator, source, request_two_ranges)

        job = QueueWorker(sqlite_queue, orchestrator).run_once()

        assert job.status == JobStatus.FAILED
        status = sqlite_queue.get_status("job-0001")
        assert status["status"] == QueueItemStatus.FAILED.value
        assert "All operations failed" in status["last_error"]

    def test_reuses_submitters_placeholder(self, sqlite_queue, orchestrator, source,
                                           request_two_ranges):
        result = JobDispatcher(orchestrator, queue=sqlite_queue).submit(source, request_two_ranges)
        placeholder = orchestrator.get_status(source.key)
        assert placeholder.status == JobStatus.QUEUED

        job = QueueWorker(sqlite_queue, orchestrator).run_once()

        assert job is placeholder
        assert job.job_id == result.job_id
        assert job.status == JobStatus.COMPLETED

    def test_skips_cancelled_placeholder(self, sqlite_queue, orchestrator, fake_transcoder, source,
                                         request_two_ranges):
        JobDispatcher(orchestrator, queue=sqlite_queue).submit(source, request_two_ranges)
        assert orchestrator.cancel(source.key)

        assert QueueWorker(sqlite_queue, orchestrator).run_once() is None

        assert fake_transcoder.calls == []
        job_id = orchestrator.get_status(source.key).job_id
        assert sqlite_queue.get_status(job_id)["status"] == QueueItemStatus.FAILED.value

    def test_conflicting_active_job_skipped(self, sqlite_queue, orchestrator, source,
                                            request_two_ranges):
        orchestrator.register(orchestrator.new_job(source, request_two_ranges))
        enqueue(sqlite_queue, orchestrator, source, request_two_ranges, job_id="other-job")

        assert QueueWorker(sqlite_queue, orchestrator).run_once() is None
        assert sqlite_queue.get_status("other-job")["status"] == QueueItemStatus.FAILED.value

    def test_unexpected_crash_acks_failure(self, sqlite_queue, source, request_two_ranges):
        orchestrator = MagicMock()
        orchestrator.get_status.return_value = None
        orchestrator.process.side_effect = RuntimeError("oom")
        queue_job = MagicMock(job_id="job-0001")
        orchestrator.new_job.return_value = queue_job
        sqlite_queue.enqueue(JobDescriptor(job_id="job-0001", job_key=source.key, source=source,
                                           request=request_two_ranges))

        assert QueueWorker(sqlite_queue, orchestrator).run_once() is None
        assert sqlite_queue.get_status("job-0001")["last_error"] == "Worker error: oom"


class TestRunForever:
    def test_max_jobs(self, sqlite_queue, orchestrator, source, request_two_ranges):
        other = source.model_copy(update={"key": "track-2"})
        enqueue(sqlite_queue, orchestrator, source, request_two_ranges, job_id="a")
        enqueue(sqlite_queue, orchestrator, other, request_two_ranges, job_id="b")

        processed = QueueWorker(sqlite_queue, orchestrator, poll_interval_s=0.01).run_forever(max_jobs=5)

        assert processed == 2
        assert sqlite_queue.counts()["succeeded"] == 2

    def test_stop_event(self, sqlite_queue, orchestrator):
        stop = threading.Event()
        stop.set()
        assert QueueWorker(sqlite_queue, orchestrator).run_forever(stop_event=stop) == 0

    def test_resets_stale_items_first(self, sqlite_queue, orchestrator, source, request_two_ranges):
        enqueue(sqlite_queue, orchestrator, source, request_two_ranges)
        sqlite_queue.dequeue("crashed-worker")
        sqlite_queue.db.execute(
            "UPDATE queue_items SET last_heartbeat = '2020-01-01T00:00:00' WHERE job_id = ?",
            ["job-0001"],
        )

        worker = QueueWorker(sqlite_queue, orchestrator, stale_timeout_s=60, poll_interval_s=0.01)
        assert worker.run_forever(max_jobs=1) == 1
        assert sqlite_queue.get_item("job-0001").attempt_count == 2


class TestHeartbeat:
    def test_heartbeat_thread_updates_and_stops(self, tmp_path):
        queue = MagicMock(spec=["update_heartbeat"])
        heartbeat = _start_heartbeat(queue, "job-1", interval_s=0.05)
        deadline = time.monotonic() + 5
        while not queue.update_heartbeat.called and time.monotonic() < deadline:
            time.sleep(0.01)
        _stop_heartbeat(heartbeat)

        queue.update_heartbeat.assert_called_with("job-1")
        thread, _ = heartbeat
        assert not thread.is_alive()

    def test_heartbeat_errors_logged_not_raised(self):
        queue = MagicMock(spec=["update_heartbeat"])
        queue.update_heartbeat.side_effect = RuntimeError("db gone")
        heartbeat = _start_heartbeat(queue, "job-1", interval_s=0.05)
        time.sleep(0.1)
        _stop_heartbeat(heartbeat)
        assert not heartbeat[0].is_alive()

    def test_sqlite_heartbeat_uses_own_connection(self, sqlite_queue, orchestrator, source,
                                                  request_two_ranges):
        enqueue(sqlite_queue, orchestrator, source, request_two_ranges)
        item = sqlite_queue.dequeue("w")
        sqlite_queue.db.execute("UPDATE queue_items SET last_heartbeat = NULL WHERE job_id = ?",
                                [item.job_id])
        sqlite_queue.db.conn.commit()

        heartbeat = _start_heartbeat(sqlite_queue, item.job_id, interval_s=0.05)
        deadline = time.monotonic() + 5
        while sqlite_queue.get_status(item.job_id)["last_heartbeat"] is None and time.monotonic() < deadline:
            time.sleep(0.02)
        _stop_heartbeat(heartbeat)

        assert sqlite_queue.get_status(item.job_id)["last_heartbeat"] is not None
