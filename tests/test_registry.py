import threading

import pytest

from clipforge.errors import JobConflictError
from clipforge.jobs import Job, JobStatus, SourceMedia
from clipforge.registry import JobRegistry


def make_job(key="k"):
    return Job(key=key, source=SourceMedia(key=key, ref="/s.mp4"))


@pytest.fixture
def registry():
    return JobRegistry(threading.Lock())


class TestRegistry:
    def test_get_unknown(self, registry):
        assert registry.get("missing") is None

    def test_active_then_completed(self, registry):
        job = make_job()
        registry.set_active(job)
        assert registry.get("k") is job
        assert registry.is_active("k")

        job.status = JobStatus.COMPLETED
        assert registry.move_to_completed(job) is True
        assert registry.get("k") is job
        assert registry.active_jobs() == []
        assert registry.completed_jobs() == [job]
        assert not registry.is_active("k")

    def test_move_happens_once(self, registry):
        job = make_job()
        registry.set_active(job)
        job.status = JobStatus.FAILED
        assert registry.move_to_completed(job)
        assert not registry.move_to_completed(job)

    def test_conflict_rejected(self, registry):
        registry.set_active(make_job())
        with pytest.raises(JobConflictError) as exc:
            registry.set_active(make_job())
        assert exc.value.job_key == "k"

    def test_new_job_after_terminal_allowed(self, registry):
        first = make_job()
        registry.set_active(first)
        first.status = JobStatus.COMPLETED
        registry.move_to_completed(first)

        second = make_job()
        registry.set_active(second)
        assert registry.get("k") is second
        assert registry.completed_jobs() == []

    def test_replace_active(self, registry):
        first = make_job()
        registry.set_active(first)
        second = make_job()
        assert registry.replace_active(second) is first
        assert registry.get("k") is second
        # the superseded job can no longer move itself into completed
        first.status = JobStatus.FAILED
        assert not registry.move_to_completed(first)

    def test_clear_removes_both_buckets(self, registry):
        job = make_job()
        registry.set_active(job)
        job.status = JobStatus.COMPLETED
        registry.move_to_completed(job)
        assert registry.clear("k") is True
        assert registry.get("k") is None
        assert registry.clear("k") is False

    def test_concurrent_submissions_single_winner(self, registry):
        winners = []
        errors = []
        barrier = threading.Barrier(8)

        def submit():
            job = make_job()
            barrier.wait()
            try:
                registry.set_active(job)
                winners.append(job)
            except JobConflictError as e:
                errors.append(e)

        threads = [threading.Thread(target=submit) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1
        assert len(errors) == 7
        assert registry.get("k") is winners[0]
