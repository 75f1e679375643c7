import asyncio
from collections import Counter
from uuid import uuid4

import pytest

from taskrelay.domain.errors import PermanentJobError, TransientJobError
from taskrelay.domain.payloads import JobPayload
from taskrelay.domain.states import JobStatus
from taskrelay.jobs.kick import kick_workers
from taskrelay.jobs.registry import HandlerRegistry
from taskrelay.jobs.worker import JobWorker
from taskrelay.settings import settings

class EchoPayload(JobPayload):
    value: int = 0

async def wait_until(predicate, timeout=5.0, interval=0.005):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)

def make_worker(store, registry, **kwargs) -> JobWorker:
    options = dict(batch_size=5, poll_interval=0.01, visibility_timeout=30, concurrency=1)
    options.update(kwargs)
    return JobWorker(store, registry, worker_id=f"test-{uuid4().hex[:6]}", **options)

def echo_registry(calls=None) -> HandlerRegistry:
    async def echo(payload: EchoPayload, ctx):
        if calls is not None:
            calls.append(ctx.job_id)
        await asyncio.sleep(0)
        return {"value": payload.value}

    registry = HandlerRegistry()
    registry.register("echo", EchoPayload, echo)
    return registry

async def stop_all(workers, tasks):
    for worker in workers:
        worker.stop()
    await asyncio.gather(*tasks)

async def test_successful_job_is_completed_with_result(job_store):
    job = await job_store.enqueue("echo", "owner-1", {"value": 7})
    worker = make_worker(job_store, echo_registry())

    assert await worker.run_once() == 1

    stored = job_store.jobs[job.id]
    assert stored.status == JobStatus.SUCCEEDED
    assert stored.result == {"value": 7}
    assert stored.lock_token is None
    assert stored.attempts == 0

async def test_unknown_job_type_fails_permanently(job_store):
    job = await job_store.enqueue("mystery", "owner-1", {}, max_attempts=3)
    worker = make_worker(job_store, echo_registry())

    await worker.run_once()

    stored = job_store.jobs[job.id]
    assert stored.status == JobStatus.FAILED
    assert stored.attempts == 3
    assert "UnknownJobTypeError" in stored.last_error

async def test_invalid_payload_fails_permanently(job_store):
    job = await job_store.enqueue("echo", "owner-1", {"value": "not-a-number"}, max_attempts=4)
    worker = make_worker(job_store, echo_registry())

    await worker.run_once()

    stored = job_store.jobs[job.id]
    assert stored.status == JobStatus.FAILED
    assert stored.attempts == 4
    assert "ValidationError" in stored.last_error

async def test_transient_failures_retry_until_attempts_are_exhausted(job_store):
    async def flaky(payload, ctx):
        raise TransientJobError("upstream unavailable")

    registry = HandlerRegistry()
    registry.register("flaky", EchoPayload, flaky)
    job = await job_store.enqueue("flaky", "owner-1", {}, max_attempts=3)
    worker = make_worker(job_store, registry)

    await worker.run_once()
    assert job_store.jobs[job.id].status == JobStatus.QUEUED
    assert job_store.jobs[job.id].attempts == 1

    await worker.run_once()
    assert job_store.jobs[job.id].status == JobStatus.QUEUED
    assert job_store.jobs[job.id].attempts == 2

    await worker.run_once()
    stored = job_store.jobs[job.id]
    assert stored.status == JobStatus.FAILED
    assert stored.attempts == stored.max_attempts == 3
    assert "upstream unavailable" in stored.last_error

    # Nothing left to claim
    assert await worker.run_once() == 0

async def test_permanent_error_skips_remaining_attempts(job_store):
    async def broken(payload, ctx):
        raise PermanentJobError("recording deleted")

    registry = HandlerRegistry()
    registry.register("broken", EchoPayload, broken)
    job = await job_store.enqueue("broken", "owner-1", {}, max_attempts=5)

    await make_worker(job_store, registry).run_once()

    stored = job_store.jobs[job.id]
    assert stored.status == JobStatus.FAILED
    assert stored.attempts == 5
    assert stored.claims == 1

async def test_result_is_discarded_when_lock_was_lost(job_store):
    async def slow(payload, ctx):
        # Another worker reclaimed the job while this handler ran
        job_store.jobs[ctx.job_id].lock_token = uuid4()
        return {"value": 1}

    registry = HandlerRegistry()
    registry.register("slow", EchoPayload, slow)
    job = await job_store.enqueue("slow", "owner-1", {})

    await make_worker(job_store, registry).run_once()

    stored = job_store.jobs[job.id]
    assert stored.status == JobStatus.RUNNING
    assert stored.result is None
    assert job_store.completions == []

async def test_concurrent_workers_never_run_a_job_twice(job_store):
    calls = []
    registry = echo_registry(calls)
    for i in range(60):
        await job_store.enqueue("echo", "owner-1", {"value": i})

    workers = [make_worker(job_store, registry, concurrency=3) for _ in range(4)]
    tasks = [asyncio.create_task(worker.run()) for worker in workers]
    await wait_until(lambda: len(job_store.by_status(JobStatus.SUCCEEDED)) == 60)
    await stop_all(workers, tasks)

    assert len(calls) == 60
    assert len(set(calls)) == 60
    assert all(job.claims == 1 for job in job_store.jobs.values())

async def test_crashed_worker_job_is_reclaimed_without_consuming_an_attempt(job_store):
    started = asyncio.Event()
    hang = asyncio.Event()
    calls = []

    async def handler(payload, ctx):
        calls.append(ctx.job_id)
        if len(calls) == 1:
            started.set()
            await hang.wait()
        return {"ok": True}

    registry = HandlerRegistry()
    registry.register("echo", EchoPayload, handler)
    job = await job_store.enqueue("echo", "owner-1", {})

    crashed = make_worker(job_store, registry, visibility_timeout=30)
    crashed_task = asyncio.create_task(crashed.run())
    await started.wait()
    crashed_task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await crashed_task

    survivor = make_worker(job_store, registry, visibility_timeout=30)
    assert await survivor.run_once() == 0  # lock still fresh

    job_store.advance(31)
    assert await survivor.run_once() == 1

    stored = job_store.jobs[job.id]
    assert stored.status == JobStatus.SUCCEEDED
    assert stored.attempts == 0
    assert stored.claims == 2

async def test_killing_a_worker_mid_run_loses_no_jobs(job_store):
    total = 300
    calls = []

    async def handler(payload, ctx):
        calls.append(ctx.job_id)
        await asyncio.sleep(0.001)
        return {"value": payload.value}

    registry = HandlerRegistry()
    registry.register("echo", EchoPayload, handler)
    for i in range(total):
        await job_store.enqueue("echo", "owner-1", {"value": i})

    workers = [make_worker(job_store, registry, batch_size=10, concurrency=5) for _ in range(3)]
    tasks = [asyncio.create_task(worker.run()) for worker in workers]

    await wait_until(lambda: len(job_store.completions) >= 50)
    tasks[0].cancel()
    with pytest.raises(asyncio.CancelledError):
        await tasks[0]

    # Stale locks of the killed worker become reclaimable
    job_store.advance(31)
    replacement = make_worker(job_store, registry, batch_size=10, concurrency=5)
    workers = workers[1:] + [replacement]
    tasks = tasks[1:] + [asyncio.create_task(replacement.run())]

    await wait_until(lambda: len(job_store.by_status(JobStatus.SUCCEEDED)) == total, timeout=20)
    await stop_all(workers, tasks)

    assert job_store.by_status(JobStatus.FAILED) == []
    assert all(job.attempts == 0 for job in job_store.jobs.values())
    completed = Counter(job_id for job_id, _ in job_store.completions)
    assert len(completed) == total
    assert set(completed.values()) == {1}
    assert len(calls) >= total

async def test_kick_wakes_an_idle_worker(job_store):
    worker = make_worker(job_store, echo_registry(), poll_interval=30)
    task = asyncio.create_task(worker.run())
    await wait_until(lambda: job_store.claim_calls >= 1)

    job = await job_store.enqueue("echo", "owner-1", {"value": 1})
    assert kick_workers() >= 1

    await wait_until(lambda: job_store.jobs[job.id].status == JobStatus.SUCCEEDED, timeout=2)
    await stop_all([worker], [task])

async def test_kick_can_be_disabled(monkeypatch, job_store):
    monkeypatch.setattr(settings, "JOB_WORKER_DISABLE_KICK", True)
    worker = make_worker(job_store, echo_registry(), poll_interval=30)
    task = asyncio.create_task(worker.run())
    await wait_until(lambda: job_store.claim_calls >= 1)

    assert kick_workers() == 0
    await stop_all([worker], [task])

async def test_store_errors_back_off_and_recover(job_store):
    job_store.claim_errors = 2
    job = await job_store.enqueue("echo", "owner-1", {"value": 3})
    worker = make_worker(job_store, echo_registry(), store_retry_max=0.05)
    task = asyncio.create_task(worker.run())

    await wait_until(lambda: job_store.jobs[job.id].status == JobStatus.SUCCEEDED)
    await stop_all([worker], [task])

    assert job_store.claim_calls >= 3

async def test_stop_lets_in_flight_job_finish(job_store):
    started = asyncio.Event()

    async def handler(payload, ctx):
        started.set()
        await asyncio.sleep(0.05)
        return {"done": True}

    registry = HandlerRegistry()
    registry.register("echo", EchoPayload, handler)
    job = await job_store.enqueue("echo", "owner-1", {})
    worker = make_worker(job_store, registry)
    task = asyncio.create_task(worker.run())

    await started.wait()
    worker.stop()
    await asyncio.wait_for(task, timeout=2)

    assert job_store.jobs[job.id].status == JobStatus.SUCCEEDED
    assert worker.running is False

async def test_heartbeat_keeps_long_running_job_locked(job_store):
    async def long_handler(payload, ctx):
        await asyncio.sleep(0.5)
        return {}

    registry = HandlerRegistry()
    registry.register("echo", EchoPayload, long_handler)
    job = await job_store.enqueue("echo", "owner-1", {})

    owner = make_worker(job_store, registry, visibility_timeout=0.3)
    running = asyncio.create_task(owner.run_once())
    await asyncio.sleep(0.4)

    rival = make_worker(job_store, registry, visibility_timeout=0.3)
    assert await rival.run_once() == 0

    await running
    assert job_store.jobs[job.id].status == JobStatus.SUCCEEDED
    assert job_store.jobs[job.id].claims == 1

def test_registry_rejects_duplicate_registration():
    registry = echo_registry()
    with pytest.raises(ValueError):
        registry.register("echo", EchoPayload, lambda payload, ctx: None)
