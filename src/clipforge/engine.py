"""Sequential execution of a job's operations.

``ExecutionEngine.run`` is the boundary where every failure becomes job
state. One transcoder invocation runs at a time per job. Failed operations
lose their partial output and are recorded, and the loop moves on. The
deadline, user cancellation and the stall sweep arrive through a
CancellationToken that is checked before each operation and polled by the
running transcoder.
Cleanup, the move to the completed bucket and the final progress event
always happen, in that order.
"""

import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

from .cleanup import CleanupManager
from .deadline import CancellationToken, CancelReason, describe_deadline
from .errors import MaterializationError
from .jobs import Job, JobStatus, Operation, OperationStatus, ProgressEvent
from .packager import ResultPackager
from .progress import ProgressPublisher, aggregate_percentage, blend_estimate
from .registry import JobRegistry
from .storage import DurableStorage
from .transcoder import TranscodeProgress, TranscodeResult, Transcoder

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Processing cancelled by user"
STALLED_MESSAGE = "Processing stalled: no progress reported"

# Cancellations that fail the job outright instead of packaging partial work
ABORT_MESSAGES = {
    CancelReason.USER: CANCELLED_MESSAGE,
    CancelReason.STALLED: STALLED_MESSAGE,
}


class ExecutionEngine:
    """Runs one job at a time per call; many calls may run on separate threads."""

    def __init__(
        self,
        transcoder: Transcoder,
        storage: DurableStorage,
        packager: ResultPackager,
        cleanup: CleanupManager,
        registry: JobRegistry,
        publisher: ProgressPublisher,
        eta_smoothing: float = 0.3,
    ):
        self.transcoder = transcoder
        self.storage = storage
        self.packager = packager
        self.cleanup = cleanup
        self.registry = registry
        self.publisher = publisher
        self.eta_smoothing = eta_smoothing

    def run(self, job: Job, token: Optional[CancellationToken] = None) -> Job:
        """Execute, package and clean up a planned job. Never raises."""
        token = token or CancellationToken()
        try:
            self._execute(job, token)
        except Exception as e:
            logger.exception("Unexpected error while running %s", job.key)
            job.fail(f"Processing failed: {e}")
        finally:
            token.dispose()
            self.cleanup.cleanup(job)
            if not job.is_terminal:
                job.fail("Processing ended without a result")
            job.current_operation = None
            job.completed_at = datetime.now()
            self.registry.move_to_completed(job)
            self._publish(job, finished=job.total_operations)
            logger.info(
                "Job %s for %s finished: %s (%d/%d operations, %d errors)",
                job.job_id, job.key, job.status.value,
                job.completed_operations, job.total_operations, len(job.errors),
            )
        return job

    def _execute(self, job: Job, token: CancellationToken) -> None:
        if job.is_terminal:
            # Failed during planning; only the cleanup and bookkeeping remain
            return
        job.status = JobStatus.PROCESSING
        job.started_at = job.started_at or datetime.now()
        if job.deadline is not None:
            token.start(job.deadline.remaining())
            logger.info("Deadline: %s", describe_deadline(job.key, job.deadline))
        self._publish(job, finished=0)

        if not job.operations:
            logger.info("No operations planned for %s; nothing to do", job.key)
            job.status = JobStatus.COMPLETED
            return

        if token.reason in ABORT_MESSAGES:
            job.fail(ABORT_MESSAGES[token.reason])
            return

        try:
            input_path = self._prepare_input(job)
        except MaterializationError as e:
            logger.error("Materialization failed for %s: %s", job.key, e)
            job.fail(f"Materialization failed: {e}")
            return

        attempted = 0
        for finished, op in enumerate(job.operations):
            if not token.is_cancelled and job.deadline is not None and job.deadline.exceeded():
                token.expire()
            if token.is_cancelled:
                break
            attempted += 1
            self._run_operation(job, op, input_path, token, finished)
            self._publish(job, finished=finished + 1)

        if token.reason in ABORT_MESSAGES:
            job.fail(ABORT_MESSAGES[token.reason])
            return
        if token.is_cancelled:
            skipped = job.total_operations - attempted
            message = (
                f"Processing deadline exceeded ({skipped} of {job.total_operations} "
                f"operations not attempted)"
            )
            logger.warning("%s for %s", message, job.key)
            job.errors.append(message)

        if job.completed_operations == 0:
            op_errors = [e for e in job.errors if not e.startswith("Processing deadline")]
            if attempted > 0 and op_errors:
                job.fail("All operations failed: " + "; ".join(op_errors))
            else:
                job.status = JobStatus.FAILED
            return

        job.current_operation = "packaging"
        self._publish(job, finished=job.total_operations, current_progress=0.0)
        self.packager.package(job)

    def _prepare_input(self, job: Job) -> str:
        """Local path every operation reads; materializes a stored source once."""
        work_dir = Path(job.work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)
        ref = job.operations[0].input_ref
        if not self.storage.is_remote(ref):
            if not Path(ref).is_file():
                raise MaterializationError(f"Source file not found: {ref}")
            return ref

        if job.deadline is not None and not job.deadline.has_time_for(
            "materialize", job.deadline.stage_budgets.get("materialize", 0.0)
        ):
            logger.warning("Materializing %s with less time left than its stage minimum", job.key)
        suffix = Path(job.source.original_name or ref).suffix or ".mp4"
        local = work_dir / "input" / f"source{suffix}"
        job.local_input_path = str(local)
        start = time.monotonic()
        self.storage.materialize(ref, str(local))
        logger.info("Materialized %s for %s in %.1fs", ref, job.key, time.monotonic() - start)
        return str(local)

    def _run_operation(self, job: Job, op: Operation, input_path: str,
                       token: CancellationToken, finished: int) -> None:
        op.status = OperationStatus.PROCESSING
        op.progress = 0.0
        job.current_operation = op.label
        self._publish(job, finished=finished)

        eta = {"value": None}
        remaining_expected = sum(
            o.expected_duration_s for o in job.operations[finished + 1:]
        )

        def on_progress(update: TranscodeProgress) -> None:
            op.progress = min(max(update.percentage, 0.0), 100.0)
            if update.eta_s is not None:
                rate = update.throughput or 1.0
                sample = update.eta_s + remaining_expected / rate
                eta["value"] = blend_estimate(eta["value"], sample, self.eta_smoothing)
            self._publish(job, finished=finished, current_progress=op.progress,
                          eta_s=eta["value"], throughput=update.throughput)

        timeout_s = job.deadline.remaining() if job.deadline is not None else None
        try:
            result = self.transcoder.run_operation(
                op.kind, input_path, op.output_path, op.params,
                on_progress=on_progress,
                timeout_s=timeout_s,
                should_abort=lambda: token.is_cancelled,
            )
        except Exception as e:
            logger.exception("Transcoder raised for %s", op.label)
            result = TranscodeResult(success=False, error=str(e))

        if result.success:
            op.status = OperationStatus.COMPLETED
            op.progress = 100.0
            logger.info("%s completed for %s in %.1fs", op.label, job.key, result.duration_s)
            return

        op.status = OperationStatus.FAILED
        partial = Path(op.output_path)
        if partial.exists():
            try:
                partial.unlink()
            except OSError as e:
                logger.warning("Could not remove partial output %s: %s", partial, e)
        if token.is_cancelled:
            logger.info("%s aborted for %s (%s)", op.label, job.key, token.reason.value)
            return
        message = f"{op.kind.value} failed: {result.error or 'unknown error'}"
        logger.warning("%s for %s (%s)", message, job.key, op.label)
        job.errors.append(message)

    def _publish(self, job: Job, finished: int, current_progress: float = 0.0,
                 eta_s: Optional[float] = None, throughput: Optional[float] = None) -> None:
        if self.registry.get(job.key) is not job:
            # Cleared or superseded; the key's stream belongs to someone else now
            return
        if job.status == JobStatus.COMPLETED:
            percentage = 100.0
        elif job.status == JobStatus.FAILED:
            percentage = job.progress
        else:
            percentage = aggregate_percentage(finished, job.total_operations, current_progress)
            if job.total_operations == 0:
                percentage = 0.0
        current = next(
            (op for op in job.operations if op.status == OperationStatus.PROCESSING), None
        )
        event = ProgressEvent(
            job_key=job.key,
            job_id=job.job_id,
            percentage=percentage,
            current_operation=job.current_operation,
            operation_progress=current.progress if current else 0.0,
            eta_s=eta_s,
            throughput=throughput,
            status=job.status,
            completed_operations=job.completed_operations,
            total_operations=job.total_operations,
        )
        delivered = self.publisher.publish(event)
        job.progress = delivered.percentage
