"""Queue backend tests."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from poflow.contracts import Job
from poflow.queues.inmemory import InMemoryQueueBackend
from poflow.queues.redis import RedisQueueBackend


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2030, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def _job(stage: str = "extraction", workflow_id: str = "wf_1") -> Job:
    return Job(workflow_id=workflow_id, stage_name=stage)


@pytest.mark.asyncio
async def test_inmemory_fifo_and_counts():
    backend = InMemoryQueueBackend()
    first, second = _job(workflow_id="wf_1"), _job(workflow_id="wf_2")
    await backend.enqueue("extraction", first)
    await backend.enqueue("extraction", second)

    counts = await backend.counts("extraction")
    assert counts.waiting == 2

    fetched = await backend.fetch("extraction")
    assert fetched.job_id == first.job_id
    assert (await backend.counts("extraction")).active == 1

    await backend.complete("extraction", fetched)
    fetched = await backend.fetch("extraction")
    await backend.fail("extraction", fetched, "boom")

    counts = await backend.counts("extraction")
    assert counts.as_dict() == {
        "waiting": 0,
        "active": 0,
        "completed": 1,
        "failed": 1,
        "delayed": 0,
        "paused": False,
    }
    # other queues are independent
    assert (await backend.counts("sync")).completed == 0


@pytest.mark.asyncio
async def test_inmemory_delayed_jobs_wait_for_clock():
    clock = _Clock()
    backend = InMemoryQueueBackend(clock=clock)
    await backend.enqueue("sync", _job("sync"), delay=30)

    assert (await backend.counts("sync")).delayed == 1
    assert await backend.fetch("sync") is None

    clock.now += timedelta(seconds=31)
    job = await backend.fetch("sync")
    assert job is not None
    assert job.stage_name == "sync"


@pytest.mark.asyncio
async def test_inmemory_pause_resume_and_drain():
    backend = InMemoryQueueBackend()
    await backend.enqueue("persistence", _job("persistence"))
    await backend.pause("persistence")
    assert await backend.fetch("persistence") is None
    assert (await backend.counts("persistence")).paused

    await backend.resume("persistence")
    job = await backend.fetch("persistence")
    await backend.fail("persistence", job, "db down")

    drained = await backend.drain_failed("persistence")
    assert [f.error for f in drained] == ["db down"]
    assert drained[0].job.job_id == job.job_id
    assert await backend.drain_failed("persistence") == []


@pytest.mark.asyncio
async def test_process_settles_jobs_and_survives_handler_errors():
    backend = InMemoryQueueBackend()
    for wf in ("wf_ok", "wf_bad", "wf_ok2"):
        await backend.enqueue("normalization", _job("normalization", wf))

    handled = []

    async def handler(job: Job) -> None:
        handled.append(job.workflow_id)
        if job.workflow_id == "wf_bad":
            raise RuntimeError("handler exploded")

    await backend.process("normalization", 2, handler, lifespan=0.3, poll_interval=0.01)

    assert sorted(handled) == ["wf_bad", "wf_ok", "wf_ok2"]
    counts = await backend.counts("normalization")
    assert counts.completed == 2
    assert counts.failed == 1
    assert counts.active == 0


@pytest.mark.asyncio
async def test_process_respects_concurrency():
    backend = InMemoryQueueBackend()
    for i in range(6):
        await backend.enqueue("extraction", _job(workflow_id=f"wf_{i}"))

    running = 0
    peak = 0

    async def handler(job: Job) -> None:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.02)
        running -= 1

    await backend.process("extraction", 2, handler, lifespan=0.5, poll_interval=0.01)
    assert peak == 2
    assert (await backend.counts("extraction")).completed == 6


def test_job_next_attempt():
    job = _job()
    retry = job.next_attempt()
    assert retry.job_id != job.job_id
    assert retry.attempts_made == 1
    assert retry.workflow_id == job.workflow_id
    assert Job.from_json(retry.to_json()) == retry


@pytest.mark.asyncio
async def test_redis_backend():
    backend = RedisQueueBackend(key_prefix="poflow-test:queue")
    assert backend.host == "localhost"
    assert backend.port == 6379
    try:
        await backend.connect()
    except Exception:
        pytest.skip("Redis server not available")

    queue = f"extraction-{datetime.now().timestamp()}"
    try:
        job = _job()
        await backend.enqueue(queue, job)
        fetched = await backend.fetch(queue)
        assert fetched.job_id == job.job_id
        counts = await backend.counts(queue)
        assert (counts.waiting, counts.active) == (0, 1)

        await backend.enqueue(queue, _job())
        await backend.pause(queue)
        assert await backend.fetch(queue) is None
        await backend.resume(queue)
        second = await backend.fetch(queue)
        await backend.complete(queue, second)

        await backend.fail(queue, fetched, "boom")
        counts = await backend.counts(queue)
        assert counts.failed == 1
        drained = await backend.drain_failed(queue)
        assert drained[0].error == "boom"
    finally:
        await backend.disconnect()
