#!/usr/bin/env python3
import asyncio
import uuid

from sqlalchemy import select, func

from taskrelay.db.models import Job
from taskrelay.db.session import AsyncSessionLocal, init_models
from taskrelay.domain.payloads import WebhookIngestPayload
from taskrelay.domain.states import JobStatus, JobType
from taskrelay.jobs.registry import HandlerRegistry
from taskrelay.jobs.worker import JobWorker
from taskrelay.services.job_store import JobStore

JOB_COUNT = 300
runs: dict[str, int] = {}

async def slow_ingest(payload, ctx):
    await asyncio.sleep(0.02)
    runs[payload.recording_id] = runs.get(payload.recording_id, 0) + 1
    return {"recordingId": payload.recording_id}

def build_registry():
    registry = HandlerRegistry()
    registry.register(JobType.FATHOM_WEBHOOK_INGEST, WebhookIngestPayload, slow_ingest)
    return registry

async def status_counts(owner_id):
    async with AsyncSessionLocal() as session:
        rows = await session.execute(
            select(Job.status, func.count()).where(Job.owner_id == owner_id).group_by(Job.status)
        )
        return dict(rows.all())

async def verify_worker_recovery():
    await init_models()
    owner_id = f"owner-recovery-{uuid.uuid4()}"
    store = JobStore(AsyncSessionLocal)

    # 1. Enqueue jobs
    print(f"1. Enqueuing {JOB_COUNT} jobs...")
    for i in range(JOB_COUNT):
        await store.enqueue(
            JobType.FATHOM_WEBHOOK_INGEST, owner_id, {"recordingId": f"{owner_id}-{i}"}, max_attempts=3
        )

    # 2. Worker A gets killed mid-run
    print("2. Starting worker A and killing it after 1s...")
    worker_a = JobWorker(store, build_registry(), worker_id="worker-A", visibility_timeout=3, poll_interval=0.2)
    task_a = asyncio.create_task(worker_a.run())
    await asyncio.sleep(1)
    task_a.cancel()
    try:
        await task_a
    except asyncio.CancelledError:
        pass
    print(f"   After kill: {await status_counts(owner_id)}")

    # 3. Worker B reclaims stale locks once the visibility timeout passes
    print("3. Starting worker B...")
    worker_b = JobWorker(store, build_registry(), worker_id="worker-B", visibility_timeout=3, poll_interval=0.2)
    task_b = asyncio.create_task(worker_b.run())
    for _ in range(60):
        await asyncio.sleep(0.5)
        counts = await status_counts(owner_id)
        if counts.get(JobStatus.SUCCEEDED, 0) == JOB_COUNT:
            break
    worker_b.stop()
    await task_b

    counts = await status_counts(owner_id)
    print(f"   Final: {counts}")
    extra_runs = sum(count - 1 for count in runs.values() if count > 1)
    if counts.get(JobStatus.SUCCEEDED, 0) == JOB_COUNT:
        print(f"SUCCESS: All {JOB_COUNT} jobs succeeded ({extra_runs} re-runs after the kill).")
    else:
        print(f"FAILURE: Not every job succeeded: {counts}")

if __name__ == "__main__":
    asyncio.run(verify_worker_recovery())
