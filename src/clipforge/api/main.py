from __future__ import annotations

import asyncio
import logging
import queue as queue_mod
import threading
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from clipforge.config import resolve_config
from clipforge.dispatcher import JobDispatcher, build_queue
from clipforge.jobs import ProcessingRequest, SourceMedia
from clipforge.orchestrator import Orchestrator
from clipforge.queue import ConsumableQueue, QueueWorker

logger = logging.getLogger(__name__)

# Seconds between disconnect checks while an SSE stream waits for events
EVENT_POLL_S = 1.0


# --- Pydantic Models for Requests ---
class JobCreate(BaseModel):
    source: SourceMedia
    request: ProcessingRequest = ProcessingRequest()


def _sweep_stalled(orchestrator: Orchestrator, idle_s: float, interval_s: float,
                   stop_event: threading.Event) -> None:
    while not stop_event.wait(interval_s):
        for key in orchestrator.fail_stalled(idle_s):
            logger.warning("Stopped stalled job for %s", key)


def build_dispatcher(config=None) -> JobDispatcher:
    """Orchestrator plus dispatcher from resolved configuration."""
    config = config or resolve_config()
    orchestrator = Orchestrator(config)
    return JobDispatcher(orchestrator, queue=build_queue(config.queue))


def create_app(dispatcher: Optional[JobDispatcher] = None, run_worker: bool = True) -> FastAPI:
    """Build the API around ``dispatcher``.

    Without one, a dispatcher is built from configuration on first use. When
    the queue is one this process can consume, the lifespan runs a
    QueueWorker on a daemon thread so queued jobs report through the same
    registry and publisher the endpoints read.
    """
    state = {"dispatcher": dispatcher}
    state_lock = threading.Lock()

    def get_dispatcher() -> JobDispatcher:
        with state_lock:
            if state["dispatcher"] is None:
                state["dispatcher"] = build_dispatcher()
            return state["dispatcher"]

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stop_event = threading.Event()
        worker_thread = None
        dispatcher = get_dispatcher()
        if run_worker and isinstance(dispatcher.queue, ConsumableQueue):
            queue_config = dispatcher.orchestrator.config.queue
            worker = QueueWorker(
                dispatcher.queue, dispatcher.orchestrator,
                heartbeat_interval_s=queue_config.heartbeat_interval_s,
                poll_interval_s=queue_config.poll_interval_s,
                stale_timeout_s=queue_config.stale_timeout_s,
            )
            worker_thread = threading.Thread(
                target=worker.run_forever, kwargs={"stop_event": stop_event},
                name="queue-worker", daemon=True,
            )
            worker_thread.start()
            logger.info("Started in-process queue worker %s", worker.worker_id)
        sweeper_thread = None
        progress_config = dispatcher.orchestrator.config.progress
        if progress_config.stall_timeout_s > 0:
            sweeper_thread = threading.Thread(
                target=_sweep_stalled,
                args=(dispatcher.orchestrator, progress_config.stall_timeout_s,
                      progress_config.stall_check_interval_s, stop_event),
                name="stall-sweeper", daemon=True,
            )
            sweeper_thread.start()
        yield
        stop_event.set()
        for thread in (worker_thread, sweeper_thread):
            if thread is not None:
                thread.join(timeout=5)

    app = FastAPI(title="clipforge", lifespan=lifespan)
    app.state.get_dispatcher = get_dispatcher

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # For dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    @app.get("/queue/status")
    async def queue_status():
        dispatcher = get_dispatcher()
        if dispatcher.queue is None:
            return {"healthy": False, "configured": False, "message": "Queue not configured"}
        return dispatcher.queue.status()

    @app.post("/jobs", status_code=202)
    async def submit_job(data: JobCreate):
        """Submit a job.

        A job already active for the source gives 409; a job no strategy
        could take gives 503.
        """
        dispatcher = get_dispatcher()
        result = await asyncio.to_thread(dispatcher.submit, data.source, data.request)
        if not result.accepted and result.job_id is None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"code": "JOB_ACTIVE", "message": result.message, "jobKey": result.job_key},
            )
        if not result.accepted:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={"code": "DISPATCH_FAILED", "message": result.message, "jobKey": result.job_key},
            )
        return result.to_dict()

    @app.get("/jobs/{job_key:path}/events")
    async def job_events(job_key: str, request: Request):
        if get_dispatcher().orchestrator.get_status(job_key) is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return StreamingResponse(event_generator(job_key, request), media_type="text/event-stream")

    @app.post("/jobs/{job_key:path}/cancel")
    async def cancel_job(job_key: str):
        return {"cancelled": get_dispatcher().orchestrator.cancel(job_key)}

    @app.get("/jobs/{job_key:path}")
    async def get_job(job_key: str):
        job = get_dispatcher().orchestrator.get_status(job_key)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return job.to_status()

    @app.delete("/jobs/{job_key:path}")
    async def clear_job(job_key: str):
        get_dispatcher().orchestrator.clear(job_key)
        return {"status": "cleared", "jobKey": job_key}

    async def event_generator(job_key: str, request: Request) -> AsyncGenerator[str, None]:
        """
        SSE generator that yields progress events until the job finishes.
        """
        subscription = get_dispatcher().orchestrator.subscribe_progress(job_key)
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.to_thread(subscription.get, EVENT_POLL_S)
                except queue_mod.Empty:
                    continue
                if event is None:
                    break
                yield f"data: {event.model_dump_json()}\n\n"
                if event.is_terminal:
                    break
        finally:
            subscription.close()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
