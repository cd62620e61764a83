"""Queue consumer that runs dequeued jobs through an Orchestrator.

This module provides the in-process worker used by ``clipforge worker``:
- Atomic dequeue from a ConsumableQueue
- Re-planning from the job descriptor (source + request)
- Heartbeat threads for long-running jobs
- Stale-item reset at startup for crash recovery
- Success/failure acknowledgment from the job's terminal status
"""

import logging
import os
import socket
import threading
import time
from typing import Optional

from ..errors import JobConflictError
from ..jobs import Job, JobStatus
from .backends import ConsumableQueue
from .models import QueueItem

logger = logging.getLogger(__name__)


class QueueWorker:
    """Drains a ConsumableQueue one job at a time."""

    def __init__(
        self,
        queue: ConsumableQueue,
        orchestrator,
        worker_id: Optional[str] = None,
        heartbeat_interval_s: float = 60,
        poll_interval_s: float = 2,
        stale_timeout_s: int = 7200,
    ):
        self.queue = queue
        self.orchestrator = orchestrator
        self.worker_id = worker_id or f"worker-{socket.gethostname()}-{os.getpid()}"
        self.heartbeat_interval_s = heartbeat_interval_s
        self.poll_interval_s = poll_interval_s
        self.stale_timeout_s = stale_timeout_s

    def run_once(self) -> Optional[Job]:
        """Claim and process a single item.

        Returns:
            The finished job, or None if the queue was empty or the item was skipped
        """
        item = self.queue.dequeue(self.worker_id)
        if item is None:
            return None

        logger.info("%s claimed %s (%s), attempt %d",
                    self.worker_id, item.job_id, item.descriptor.job_key, item.attempt_count)
        job = self._job_for(item)
        if job is None:
            return None

        heartbeat = _start_heartbeat(self.queue, item.job_id, self.heartbeat_interval_s)
        try:
            job = self.orchestrator.process(job)
        except Exception as e:
            # process() is documented not to raise; ack anyway so the item is not stuck
            logger.exception("Worker crashed on %s", item.job_id)
            self.queue.ack_fail(item.job_id, f"Worker error: {e}")
            return None
        finally:
            _stop_heartbeat(heartbeat)

        if job.status == JobStatus.COMPLETED:
            self.queue.ack_success(item.job_id, {
                "archive_location": job.archive_location,
                "download_url": job.download_url,
                "completed_operations": job.completed_operations,
                "total_operations": job.total_operations,
                "errors": list(job.errors),
            })
        else:
            self.queue.ack_fail(item.job_id, "; ".join(job.errors) or "Job failed")
        return job

    def _job_for(self, item: QueueItem) -> Optional[Job]:
        """The job to run for an item: the submitter's placeholder if this
        process registered it, otherwise a freshly registered one."""
        descriptor = item.descriptor
        existing = self.orchestrator.get_status(descriptor.job_key)
        if existing is not None and existing.job_id == descriptor.job_id:
            if existing.is_terminal:
                logger.info("Skipping %s: job already %s", descriptor.job_id, existing.status.value)
                self.queue.ack_fail(item.job_id, "; ".join(existing.errors) or "Job no longer active")
                return None
            return existing

        job = self.orchestrator.new_job(descriptor.source, descriptor.request, job_id=descriptor.job_id)
        job.using_queue = True
        try:
            self.orchestrator.register(job)
        except JobConflictError as e:
            logger.warning("Skipping %s: %s", descriptor.job_id, e)
            self.queue.ack_fail(item.job_id, str(e))
            return None
        return job

    def run_forever(self, max_jobs: Optional[int] = None,
                    stop_event: Optional[threading.Event] = None) -> int:
        """Process items until ``max_jobs`` are handled or ``stop_event`` is set.

        With ``max_jobs`` set, an empty queue also ends the loop.

        Returns:
            Number of jobs processed
        """
        stop_event = stop_event or threading.Event()
        reset = self.queue.reset_stale_running(self.stale_timeout_s)
        if reset:
            logger.info("Reset %d stale items before starting", reset)

        processed = 0
        while not stop_event.is_set():
            if max_jobs is not None and processed >= max_jobs:
                break
            job = self.run_once()
            if job is not None:
                processed += 1
                continue
            if max_jobs is not None and self.queue.counts().get("pending", 0) == 0:
                break
            stop_event.wait(self.poll_interval_s)
        logger.info("%s stopping after %d jobs", self.worker_id, processed)
        return processed


def _start_heartbeat(queue: ConsumableQueue, job_id: str, interval_s: float = 60):
    """Start background thread to update the item's heartbeat.

    Returns:
        Tuple of (thread, stop_event) for cleanup

    Thread is daemon so it won't block process exit. A SQLite-backed queue
    gets its own connection inside the thread.
    """
    stop_event = threading.Event()

    def heartbeat_loop():
        beat_queue = queue
        db_path = getattr(queue, "db_path", None)
        if db_path is not None:
            from .sqlite_backend import SQLiteQueue
            beat_queue = SQLiteQueue(str(db_path))

        while not stop_event.is_set():
            try:
                beat_queue.update_heartbeat(job_id)
            except Exception as e:
                logger.warning("Heartbeat failed for %s: %s", job_id, e)

            # Sleep in small increments to allow fast shutdown
            waited = 0.0
            while waited < interval_s and not stop_event.is_set():
                time.sleep(min(1.0, interval_s - waited))
                waited += 1.0

        if beat_queue is not queue:
            beat_queue.close()

    thread = threading.Thread(target=heartbeat_loop, daemon=True)
    thread.start()
    return (thread, stop_event)


def _stop_heartbeat(heartbeat_data) -> None:
    """Signal the heartbeat thread and wait up to 5s for it."""
    thread, stop_event = heartbeat_data
    stop_event.set()
    thread.join(timeout=5)
