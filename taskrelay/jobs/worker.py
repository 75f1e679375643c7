import asyncio
import logging
import os
import socket
import time
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskrelay.domain.errors import classify_error
from taskrelay.domain.states import ErrorKind, JobStatus
from taskrelay.jobs.kick import register_wake_event, unregister_wake_event
from taskrelay.jobs.registry import HandlerRegistry, JobContext
from taskrelay.api.v1.metrics import JOB_OUTCOME_TOTAL, JOB_DURATION, JOB_STORE_ERRORS_TOTAL
from taskrelay.settings import settings

logger = logging.getLogger(__name__)

def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"

class JobWorker:
    """
    Polling job worker.

    Claims a batch, runs each job's handler (at most `concurrency` at a time),
    then reports the outcome with the lock token it was claimed with. An empty
    batch makes the loop sleep for the poll interval or until kicked. Handler
    exceptions never leave the loop; store errors back off and retry.
    """

    def __init__(
        self,
        store,
        registry: HandlerRegistry,
        worker_id: Optional[str] = None,
        batch_size: Optional[int] = None,
        poll_interval: Optional[float] = None,
        visibility_timeout: Optional[float] = None,
        concurrency: Optional[int] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        store_retry_max: Optional[float] = None,
    ):
        self.store = store
        self.registry = registry
        self.worker_id = worker_id or default_worker_id()
        self.batch_size = batch_size or settings.JOB_WORKER_BATCH_SIZE
        self.poll_interval = poll_interval if poll_interval is not None else settings.JOB_WORKER_POLL_INTERVAL_SECONDS
        self.visibility_timeout = visibility_timeout or settings.JOB_VISIBILITY_TIMEOUT_SECONDS
        self.concurrency = concurrency or settings.JOB_WORKER_CONCURRENCY
        self.session_factory = session_factory
        self.store_retry_max = store_retry_max or settings.JOB_WORKER_STORE_RETRY_MAX_SECONDS

        self.running = False
        self._wake = asyncio.Event()
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._store_failures = 0

    async def run(self):
        self.running = True
        register_wake_event(self._wake)
        logger.info(
            "Job worker %s started (batch=%s concurrency=%s poll=%ss visibility=%ss)",
            self.worker_id, self.batch_size, self.concurrency,
            self.poll_interval, self.visibility_timeout,
        )
        try:
            while self.running:
                self._wake.clear()
                try:
                    jobs = await self.store.claim_batch(self.batch_size, self.visibility_timeout)
                except Exception as e:
                    await self._backoff_after_store_error(e)
                    continue

                self._store_failures = 0
                if jobs:
                    await self._process_batch(jobs)
                    continue

                await self._sleep(self.poll_interval)
        finally:
            unregister_wake_event(self._wake)
            self.running = False
            logger.info("Job worker %s stopped", self.worker_id)

    def stop(self):
        """Stops claiming. Jobs already claimed run to completion before run() returns."""
        if self.running:
            logger.info("Job worker %s shutting down", self.worker_id)
        self.running = False
        self._wake.set()

    def kick(self):
        self._wake.set()

    async def run_once(self) -> int:
        """Claims and processes a single batch. Returns the number of jobs processed."""
        jobs = await self.store.claim_batch(self.batch_size, self.visibility_timeout)
        if jobs:
            await self._process_batch(jobs)
        return len(jobs)

    async def _sleep(self, seconds: float):
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _backoff_after_store_error(self, e: Exception):
        JOB_STORE_ERRORS_TOTAL.inc()
        self._store_failures += 1
        base = max(self.poll_interval, 0.1)
        delay = min(self.store_retry_max, base * (2 ** min(self._store_failures - 1, 10)))
        logger.error(
            "Job store error in worker %s (failure #%s), retrying in %.1fs: %s",
            self.worker_id, self._store_failures, delay, e,
            exc_info=True,
        )
        if self.running:
            await self._sleep(delay)

    async def _process_batch(self, jobs: list):
        await asyncio.gather(*(self._process_guarded(job) for job in jobs))

    async def _process_guarded(self, job):
        async with self._semaphore:
            try:
                await self.process_job(job)
            except Exception as e:
                # Only store failures while reporting end up here; the job is reclaimed later
                JOB_STORE_ERRORS_TOTAL.inc()
                logger.error(
                    "Could not record outcome of job %s (worker %s): %s",
                    job.id, self.worker_id, e,
                    exc_info=True,
                )

    async def process_job(self, job):
        log_ctx = f"job={job.id} type={job.type} correlation={job.correlation_id}"
        started = time.monotonic()
        heartbeat_task = asyncio.create_task(self._heartbeat_loop(job))
        try:
            try:
                registered = self.registry.resolve(job.type)
                payload = registered.payload_model.model_validate(job.payload or {})
                ctx = JobContext(
                    job_id=job.id,
                    job_type=job.type,
                    owner_id=job.owner_id,
                    correlation_id=job.correlation_id,
                    attempts=job.attempts,
                    session_factory=self.session_factory,
                    logger=logger,
                )
                result = await registered.handler(payload, ctx)
            except Exception as e:
                await self._record_failure(job, e, log_ctx)
            else:
                await self._record_success(job, result, log_ctx)
        finally:
            heartbeat_task.cancel()
            try:
                await heartbeat_task
            except asyncio.CancelledError:
                pass
            JOB_DURATION.labels(type=job.type).observe(time.monotonic() - started)

    async def _record_success(self, job, result: Optional[dict[str, Any]], log_ctx: str):
        completed = await self.store.complete(job.id, job.lock_token, result)
        if completed:
            JOB_OUTCOME_TOTAL.labels(type=job.type, outcome="succeeded").inc()
            logger.info("Job succeeded %s", log_ctx)
        else:
            JOB_OUTCOME_TOTAL.labels(type=job.type, outcome="lost_lock").inc()
            logger.warning("Job result discarded, lock lost %s", log_ctx)

    async def _record_failure(self, job, e: Exception, log_ctx: str):
        permanent = classify_error(e) == ErrorKind.PERMANENT
        error_msg = f"{type(e).__name__}: {e}"

        updated = await self.store.fail(job.id, job.lock_token, error_msg, permanent=permanent)
        if updated is None:
            JOB_OUTCOME_TOTAL.labels(type=job.type, outcome="lost_lock").inc()
            logger.warning("Job failure discarded, lock lost %s error=%s", log_ctx, error_msg)
        elif updated.status == JobStatus.QUEUED:
            JOB_OUTCOME_TOTAL.labels(type=job.type, outcome="retrying").inc()
            logger.warning(
                "Job failed, retry %s/%s at %s %s error=%s",
                updated.attempts, updated.max_attempts, updated.available_at, log_ctx, error_msg,
            )
        else:
            JOB_OUTCOME_TOTAL.labels(type=job.type, outcome="failed").inc()
            logger.error(
                "Job failed permanently=%s after %s/%s attempts %s error=%s",
                permanent, updated.attempts, updated.max_attempts, log_ctx, error_msg,
            )

    async def _heartbeat_loop(self, job):
        interval = max(self.visibility_timeout / 3, 0.05)
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = await self.store.heartbeat(job.id, job.lock_token)
            except Exception as e:
                logger.warning("Heartbeat failed for job %s: %s", job.id, e)
                continue
            if not renewed:
                logger.warning("Heartbeat rejected for job %s, lock no longer held", job.id)
                return
