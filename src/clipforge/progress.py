"""Progress smoothing and fan-out to observers.

The smoothing helpers are pure functions so the display rules can be
tested without a transcoder. ``ProgressPublisher`` owns one bounded queue
per subscriber; publishing never blocks the engine, and a full queue
drops its oldest event.
"""

import logging
import queue
import threading
from typing import Dict, Iterator, List, Optional

from .jobs import ProgressEvent

logger = logging.getLogger(__name__)

_CLOSED = object()


def smooth_progress(previous: float, reported: float, max_jump: float = 25.0) -> float:
    """Next displayed percentage given the last displayed and newly reported values.

    The result never decreases, never exceeds 100, and rises by at most
    ``max_jump`` per step unless the report is a completion (100).
    """
    previous = min(max(previous, 0.0), 100.0)
    reported = min(max(reported, 0.0), 100.0)
    if reported <= previous:
        return previous
    if reported >= 100.0:
        return 100.0
    return min(reported, previous + max_jump)


def blend_estimate(previous: Optional[float], sample: Optional[float], weight: float = 0.3) -> Optional[float]:
    """Exponentially blend a new ETA sample into the running estimate."""
    if sample is None:
        return previous
    if previous is None:
        return max(0.0, sample)
    return max(0.0, previous * (1.0 - weight) + sample * weight)


def aggregate_percentage(finished: int, total: int, current_progress: float = 0.0) -> float:
    """Job-level percentage from finished operations plus the running one.

    Args:
        finished: Operations that reached a terminal status
        total: Planned operations
        current_progress: Progress (0-100) of the operation in flight
    """
    if total <= 0:
        return 100.0
    current = min(max(current_progress, 0.0), 100.0) / 100.0
    return min(100.0, (min(finished, total) + current) / total * 100.0)


class Subscription:
    """One observer's view of a job's progress stream."""

    def __init__(self, publisher: "ProgressPublisher", job_key: str, buffer: int):
        self.job_key = job_key
        self.closed = False
        self._publisher = publisher
        self._queue: "queue.Queue" = queue.Queue(maxsize=buffer)

    def _offer(self, item) -> None:
        """Non-blocking put; evicts the oldest event when full."""
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Next event, or None once the stream has ended.

        Raises:
            queue.Empty: If no event arrives within ``timeout``
        """
        if self.closed:
            return None
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            self.closed = True
            return None
        return item

    def close(self) -> None:
        self._publisher.unsubscribe(self)
        self.closed = True

    def __iter__(self) -> Iterator[ProgressEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event


class ProgressPublisher:
    """Fan-out channel for per-job progress events.

    Percentages are clamped per job so every subscriber sees a
    non-decreasing sequence; terminal events end all open subscriptions.
    Once ``reset`` has named the current job for a key, events carrying
    any other job id are dropped.
    """

    def __init__(self, max_jump: float = 25.0, subscriber_buffer: int = 256):
        self.max_jump = max_jump
        self.subscriber_buffer = subscriber_buffer
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._latest: Dict[str, ProgressEvent] = {}
        self._current: Dict[str, Optional[str]] = {}

    def subscribe(self, job_key: str) -> Subscription:
        """Open a stream, primed with the latest snapshot if there is one."""
        sub = Subscription(self, job_key, self.subscriber_buffer)
        with self._lock:
            latest = self._latest.get(job_key)
            if latest is not None:
                sub._offer(latest)
            if latest is not None and latest.is_terminal:
                sub._offer(_CLOSED)
            else:
                self._subscribers.setdefault(job_key, []).append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.job_key, [])
            if sub in subs:
                subs.remove(sub)

    def publish(self, event: ProgressEvent) -> ProgressEvent:
        """Clamp and deliver an event; returns the event as delivered.

        A superseded job's event is returned unchanged and reaches nobody.
        """
        with self._lock:
            if not self._is_current(event):
                logger.debug("Dropping event from superseded job %s for %s",
                             event.job_id, event.job_key)
                return event
            previous = self._latest.get(event.job_key)
            if previous is not None and previous.is_terminal:
                logger.debug("Dropping event for finished job %s", event.job_key)
                return previous
            last_pct = previous.percentage if previous else 0.0
            if event.is_terminal:
                pct = max(last_pct, min(event.percentage, 100.0))
            else:
                pct = smooth_progress(last_pct, event.percentage, self.max_jump)
            if pct != event.percentage:
                event = event.model_copy(update={"percentage": pct})
            self._latest[event.job_key] = event

            subs = list(self._subscribers.get(event.job_key, []))
            for sub in subs:
                sub._offer(event)
            if event.is_terminal:
                for sub in subs:
                    sub._offer(_CLOSED)
                self._subscribers.pop(event.job_key, None)
        return event

    def latest(self, job_key: str) -> Optional[ProgressEvent]:
        with self._lock:
            return self._latest.get(job_key)

    def _is_current(self, event: ProgressEvent) -> bool:
        if event.job_id is None or event.job_key not in self._current:
            return True
        return self._current[event.job_key] == event.job_id

    def reset(self, job_key: str, job_id: Optional[str] = None) -> None:
        """Forget a key's history so a new job for it starts from 0.

        ``job_id`` becomes the only job whose events are accepted for the
        key; None (after a clear) accepts no identified job until the next
        reset.
        """
        with self._lock:
            self._latest.pop(job_key, None)
            self._current[job_key] = job_id

    def close(self, job_key: str) -> None:
        """End every open subscription for a job without a terminal event."""
        with self._lock:
            for sub in self._subscribers.pop(job_key, []):
                sub._offer(_CLOSED)
