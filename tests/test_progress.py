"""Unit tests for progress smoothing and the publisher fan-out."""

import queue
import threading

import pytest

from clipforge.jobs import JobStatus, ProgressEvent
from clipforge.progress import (
    ProgressPublisher,
    aggregate_percentage,
    blend_estimate,
    smooth_progress,
)


def event(pct, status=JobStatus.PROCESSING, key="k"):
    return ProgressEvent(job_key=key, percentage=pct, status=status)


class TestSmoothing:
    def test_never_decreases(self):
        assert smooth_progress(40.0, 30.0) == 40.0

    def test_jump_capped(self):
        assert smooth_progress(10.0, 80.0, max_jump=25.0) == 35.0

    def test_completion_jump_allowed(self):
        assert smooth_progress(10.0, 100.0, max_jump=25.0) == 100.0

    def test_capped_at_100(self):
        assert smooth_progress(99.0, 150.0) == 100.0

    def test_blend_estimate(self):
        assert blend_estimate(None, 10.0) == 10.0
        assert blend_estimate(10.0, None) == 10.0
        assert blend_estimate(10.0, 20.0, weight=0.5) == pytest.approx(15.0)

    def test_aggregate(self):
        assert aggregate_percentage(0, 4) == 0.0
        assert aggregate_percentage(1, 4, 50.0) == pytest.approx(37.5)
        assert aggregate_percentage(4, 4) == 100.0
        assert aggregate_percentage(0, 0) == 100.0


class TestPublisher:
    def test_subscriber_sees_monotonic_sequence(self):
        publisher = ProgressPublisher(max_jump=100.0)
        sub = publisher.subscribe("k")
        for pct in [10.0, 30.0, 20.0, 50.0]:
            publisher.publish(event(pct))
        seen = [sub.get(timeout=1).percentage for _ in range(4)]
        assert seen == [10.0, 30.0, 30.0, 50.0]

    def test_publish_returns_clamped_event(self):
        publisher = ProgressPublisher(max_jump=25.0)
        delivered = publisher.publish(event(90.0))
        assert delivered.percentage == 25.0
        assert publisher.latest("k").percentage == 25.0

    def test_subscribe_primed_with_latest(self):
        publisher = ProgressPublisher()
        publisher.publish(event(20.0))
        sub = publisher.subscribe("k")
        assert sub.get(timeout=1).percentage == 20.0

    def test_terminal_event_closes_subscriptions(self):
        publisher = ProgressPublisher()
        sub = publisher.subscribe("k")
        publisher.publish(event(50.0, JobStatus.COMPLETED))
        events = list(sub)
        assert [e.status for e in events] == [JobStatus.COMPLETED]
        assert sub.closed

    def test_events_after_terminal_dropped(self):
        publisher = ProgressPublisher()
        publisher.publish(event(40.0, JobStatus.FAILED))
        delivered = publisher.publish(event(60.0))
        assert delivered.status == JobStatus.FAILED
        assert publisher.latest("k").percentage == 40.0

    def test_late_subscriber_to_finished_job(self):
        publisher = ProgressPublisher()
        publisher.publish(event(100.0, JobStatus.COMPLETED))
        sub = publisher.subscribe("k")
        assert [e.percentage for e in sub] == [100.0]

    def test_reset_starts_over(self):
        publisher = ProgressPublisher()
        publisher.publish(event(100.0, JobStatus.COMPLETED))
        publisher.reset("k")
        assert publisher.publish(event(5.0)).percentage == 5.0

    def test_superseded_job_events_dropped(self):
        publisher = ProgressPublisher()
        publisher.reset("k", "new")
        sub = publisher.subscribe("k")
        stale = ProgressEvent(job_key="k", job_id="old", percentage=50.0, status=JobStatus.FAILED)

        publisher.publish(stale)
        publisher.publish(ProgressEvent(job_key="k", job_id="new", percentage=10.0))

        assert sub.get(timeout=1).job_id == "new"
        assert publisher.latest("k").status == JobStatus.PROCESSING

    def test_cleared_key_accepts_no_identified_job(self):
        publisher = ProgressPublisher()
        publisher.reset("k", "a")
        publisher.reset("k")
        publisher.publish(ProgressEvent(job_key="k", job_id="a", percentage=10.0))
        assert publisher.latest("k") is None

    def test_keys_isolated(self):
        publisher = ProgressPublisher()
        sub_a = publisher.subscribe("a")
        publisher.publish(event(10.0, key="b"))
        with pytest.raises(queue.Empty):
            sub_a.get(timeout=0.05)

    def test_full_buffer_drops_oldest(self):
        publisher = ProgressPublisher(max_jump=100.0, subscriber_buffer=2)
        sub = publisher.subscribe("k")
        for pct in [10.0, 20.0, 30.0]:
            publisher.publish(event(pct))
        assert [sub.get(timeout=1).percentage for _ in range(2)] == [20.0, 30.0]

    def test_close_ends_stream_without_event(self):
        publisher = ProgressPublisher()
        sub = publisher.subscribe("k")
        publisher.close("k")
        assert sub.get(timeout=1) is None

    def test_unsubscribe(self):
        publisher = ProgressPublisher()
        sub = publisher.subscribe("k")
        sub.close()
        publisher.publish(event(10.0))
        assert sub.get(timeout=0.05) is None

    def test_concurrent_publishers_stay_monotonic(self):
        publisher = ProgressPublisher(max_jump=100.0, subscriber_buffer=10000)
        sub = publisher.subscribe("k")

        def run(offset):
            for i in range(100):
                publisher.publish(event(min(99.0, (i + offset) * 0.9)))

        threads = [threading.Thread(target=run, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        seen = []
        while True:
            try:
                seen.append(sub.get(timeout=0.05).percentage)
            except queue.Empty:
                break
        assert len(seen) == 400
        assert seen == sorted(seen)
