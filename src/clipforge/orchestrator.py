"""Wiring of planner, deadline, engine and the status query surface.

One Orchestrator owns one registry and one publisher. Both the local
fallback path and an in-process queue worker go through ``process`` so
observers see the same states and events whichever path served them.
"""

import logging
import re
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from .cleanup import CleanupManager
from .deadline import CancellationToken, CancelReason, Complexity, DeadlineCalculator
from .engine import CANCELLED_MESSAGE, ExecutionEngine
from .jobs import Job, JobStatus, ProcessingRequest, ProgressEvent, SourceMedia
from .models import ClipforgeConfig
from .packager import ResultPackager
from .planner import OperationPlanner, clean_base_name
from .progress import ProgressPublisher, Subscription
from .registry import JobRegistry
from .storage import DurableStorage, build_storage
from .transcoder import FfmpegTranscoder, Transcoder

logger = logging.getLogger(__name__)


def _dir_safe(key: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", key).strip("_")[:64] or "job"


class Orchestrator:
    """Builds, runs and reports on jobs."""

    def __init__(
        self,
        config: ClipforgeConfig = None,
        transcoder: Optional[Transcoder] = None,
        storage: Optional[DurableStorage] = None,
        registry: Optional[JobRegistry] = None,
        publisher: Optional[ProgressPublisher] = None,
    ):
        self.config = config or ClipforgeConfig()
        self.registry = registry or JobRegistry(threading.Lock())
        self.publisher = publisher or ProgressPublisher(
            max_jump=self.config.progress.max_jump,
            subscriber_buffer=self.config.progress.subscriber_buffer,
        )
        self.storage = storage or build_storage(self.config.storage)
        self.transcoder = transcoder or FfmpegTranscoder(self.config.transcoder)
        self.planner = OperationPlanner(self.config.planner)
        self.calculator = DeadlineCalculator(self.config.deadline)
        self.workspace = Path(self.config.workspace.root)
        self.engine = ExecutionEngine(
            transcoder=self.transcoder,
            storage=self.storage,
            packager=ResultPackager(self.storage, self.config.storage.signed_url_expiry_s),
            cleanup=CleanupManager(str(self.workspace)),
            registry=self.registry,
            publisher=self.publisher,
            eta_smoothing=self.config.progress.eta_smoothing,
        )
        self._tokens: Dict[str, CancellationToken] = {}
        self._tokens_lock = threading.Lock()

    # --- job lifecycle ---

    def new_job(self, source: SourceMedia, request: ProcessingRequest,
                job_id: Optional[str] = None) -> Job:
        """Placeholder job, not yet planned or registered."""
        job = Job(key=source.key, source=source, request=request, owner=source.owner,
                  base_name=clean_base_name(source))
        if job_id:
            job.job_id = job_id
        job.work_dir = str(self.workspace / f"{_dir_safe(source.key)}-{job.job_id[:8]}")
        return job

    def register(self, job: Job, replace: bool = False) -> None:
        """Make ``job`` the active job for its key and announce it as queued.

        Raises:
            JobConflictError: If another job is active for the key and ``replace`` is False
        """
        if replace:
            self.registry.replace_active(job)
        else:
            self.registry.set_active(job)
        with self._tokens_lock:
            self._tokens[job.job_id] = CancellationToken()
        self.publisher.reset(job.key, job.job_id)
        self.publisher.publish(ProgressEvent(
            job_key=job.key, job_id=job.job_id, percentage=0.0, status=JobStatus.QUEUED,
        ))

    def prepare(self, job: Job) -> None:
        """Plan operations, then compute the deadline from the plan."""
        job.operations = self.planner.plan(job.source, job.request, job.work_dir, job.base_name)
        complexity = Complexity.from_plan(job.source, job.request, job.operations)
        job.deadline = self.calculator.compute(complexity)
        logger.info("Planned %d operations for %s", job.total_operations, job.key)

    def process(self, job: Job) -> Job:
        """Plan, execute, package and clean up a registered job. Never raises."""
        with self._tokens_lock:
            token = self._tokens.setdefault(job.job_id, CancellationToken())
        try:
            if job.is_terminal:
                logger.info("Job %s for %s already finished; skipping", job.job_id, job.key)
            elif token.is_cancelled and token.reason == CancelReason.USER:
                job.fail(CANCELLED_MESSAGE)
            else:
                try:
                    self.prepare(job)
                except Exception as e:
                    logger.exception("Planning failed for %s", job.key)
                    job.fail(f"Planning failed: {e}")
            return self.engine.run(job, token)
        finally:
            with self._tokens_lock:
                self._tokens.pop(job.job_id, None)

    def run_local(self, source: SourceMedia, request: ProcessingRequest) -> Job:
        """Register and run a job synchronously on the calling thread."""
        job = self.new_job(source, request)
        self.register(job)
        return self.process(job)

    # --- status query surface ---

    def get_status(self, job_key: str) -> Optional[Job]:
        return self.registry.get(job_key)

    def subscribe_progress(self, job_key: str) -> Subscription:
        return self.publisher.subscribe(job_key)

    def cancel(self, job_key: str) -> bool:
        """Cancel the active job for a key.

        A running job stops its transcoder and fails with a cancellation
        error; a job still waiting in a queue is finalized immediately.
        """
        job = self.registry.get(job_key)
        if job is None or job.is_terminal:
            return False
        with self._tokens_lock:
            token = self._tokens.get(job.job_id)
        fired = token.cancel(CancelReason.USER) if token is not None else False
        if job.status == JobStatus.QUEUED and job.using_queue:
            self.finalize_unstarted(job, CANCELLED_MESSAGE)
            return True
        if fired:
            logger.info("Cancellation requested for %s", job_key)
        return fired

    def clear(self, job_key: str) -> None:
        """Forget a key in both buckets, stopping its job if one is running."""
        job = self.registry.get(job_key)
        if job is not None and not job.is_terminal:
            with self._tokens_lock:
                token = self._tokens.get(job.job_id)
            if token is not None:
                token.cancel(CancelReason.USER)
        self.registry.clear(job_key)
        self.publisher.close(job_key)
        self.publisher.reset(job_key)

    def fail_stalled(self, idle_s: float, now: Optional[datetime] = None) -> List[str]:
        """Stop processing jobs that have published nothing for ``idle_s`` seconds.

        The job's token fires with the stall reason; the engine then fails
        the job and runs cleanup as for any other cancellation. Returns the
        keys that were stopped.
        """
        now = now or datetime.now()
        stalled = []
        for job in self.registry.active_jobs():
            if job.status != JobStatus.PROCESSING:
                continue
            latest = self.publisher.latest(job.key)
            last_seen = latest.timestamp if latest is not None else job.started_at
            if last_seen is None or (now - last_seen).total_seconds() < idle_s:
                continue
            with self._tokens_lock:
                token = self._tokens.get(job.job_id)
            if token is not None and token.cancel(CancelReason.STALLED):
                logger.warning("Job %s for %s stalled; no progress since %s",
                               job.job_id, job.key, last_seen.isoformat())
                stalled.append(job.key)
        return stalled

    def finalize_unstarted(self, job: Job, message: str) -> None:
        """Terminal bookkeeping for a job that never reached the engine."""
        job.fail(message)
        with self._tokens_lock:
            self._tokens.pop(job.job_id, None)
        self.registry.move_to_completed(job)
        self.publisher.publish(ProgressEvent(
            job_key=job.key, job_id=job.job_id, percentage=job.progress, status=job.status,
            total_operations=job.total_operations,
        ))
