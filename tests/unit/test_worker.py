from datetime import timedelta

import pytest

from app.features.sync.domain import JobKind, JobStatus
from app.features.sync.services.job_queue import JobQueue
from app.features.sync.services.session_tracker import SyncSessionTracker
from app.jobs import worker


class StubContainer:
    def __init__(self, queue=None, tracker=None, token_manager=None):
        self.queue = queue
        self.tracker = tracker
        self.token_manager = token_manager


@pytest.mark.asyncio
async def test_run_worker_runs_job(monkeypatch):
    called = {"container": None}

    async def dummy_job(container):
        called["container"] = container
        return {"job_run": "dummy"}

    monkeypatch.setitem(worker.JOB_REGISTRY, "dummy", dummy_job)
    container = StubContainer()

    result = await worker.run_worker("dummy", container=container)

    assert called["container"] is container
    assert result == {"job_run": "dummy"}


@pytest.mark.asyncio
async def test_run_worker_unknown_job():
    with pytest.raises(ValueError):
        await worker.run_worker("missing", container=StubContainer())


def test_registry_names():
    assert set(worker.JOB_REGISTRY) == {"token_refresh", "session_cleanup", "stuck_job_recovery"}


@pytest.mark.asyncio
async def test_stuck_job_recovery_through_worker(job_repo, clock):
    queue = JobQueue(job_repo)
    job_id = await queue.enqueue(JobKind.NORMALIZE, {}, "user-123")
    await job_repo.claim_queued_jobs("user-123", 1)
    clock.advance(hours=1)

    result = await worker.run_worker("stuck_job_recovery", container=StubContainer(queue=queue))

    assert result["requeued"] == 1
    assert result["failed"] == 0
    assert job_repo.jobs[job_id].status is JobStatus.QUEUED


@pytest.mark.asyncio
async def test_session_cleanup_through_worker(session_repo, session_factory, clock):
    session_repo.add(session_factory(started_at=clock() - timedelta(days=30)))
    session_repo.add(session_factory(started_at=clock()))
    tracker = SyncSessionTracker(session_repo, clock=clock)

    result = await worker.run_worker("session_cleanup", container=StubContainer(tracker=tracker))

    assert result["deleted_sessions"] == 1
    assert len(session_repo.sessions) == 1
