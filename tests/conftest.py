import asyncio
import dataclasses
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

import pytest

from taskrelay.domain.models import Cursor
from taskrelay.domain.retry import calculate_next_run
from taskrelay.domain.states import JobStatus, DomainEventStatus
from taskrelay.settings import settings

TEST_HASH_SECRET = "test-ingestion-secret"

@pytest.fixture(autouse=True)
def ingestion_secret(monkeypatch):
    monkeypatch.setattr(settings, "INGESTION_HASH_SECRET", TEST_HASH_SECRET)
    return TEST_HASH_SECRET

@dataclasses.dataclass
class FakeJob:
    id: UUID
    type: str
    owner_id: str
    payload: dict[str, Any]
    correlation_id: Optional[str] = None
    status: str = JobStatus.QUEUED
    attempts: int = 0
    max_attempts: int = 2
    available_at: datetime = dataclasses.field(default_factory=lambda: datetime.now(timezone.utc))
    created_at: datetime = dataclasses.field(default_factory=lambda: datetime.now(timezone.utc))
    lock_token: Optional[UUID] = None
    locked_at: Optional[datetime] = None
    last_error: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    claims: int = 0

class InMemoryJobStore:
    """
    Same contract as JobStore, backed by a dict.

    Every method yields to the event loop before touching state, so concurrent
    workers interleave; each mutation itself runs without an await, which makes
    it atomic the way the conditional UPDATEs are in Postgres.
    """

    def __init__(self, retry_base_delay: int = 0):
        self.jobs: dict[UUID, FakeJob] = {}
        self.retry_base_delay = retry_base_delay
        self.clock_offset = timedelta(0)
        self.claim_errors = 0
        self.claim_calls = 0
        self.completions: list[tuple[UUID, UUID]] = []

    def now(self) -> datetime:
        return datetime.now(timezone.utc) + self.clock_offset

    def advance(self, seconds: float):
        self.clock_offset += timedelta(seconds=seconds)

    async def enqueue(self, job_type, owner_id, payload, max_attempts=None, correlation_id=None, available_at=None):
        await asyncio.sleep(0)
        if hasattr(payload, "model_dump"):
            payload = payload.model_dump(mode="json", by_alias=True)
        job = FakeJob(
            id=uuid4(),
            type=str(job_type),
            owner_id=owner_id,
            payload=dict(payload),
            correlation_id=correlation_id or str(uuid4()),
            max_attempts=max_attempts or settings.JOB_DEFAULT_MAX_ATTEMPTS,
            available_at=available_at or self.now(),
            created_at=self.now(),
        )
        self.jobs[job.id] = job
        return dataclasses.replace(job)

    def _claimable(self, job: FakeJob, now: datetime, visibility_timeout: float) -> bool:
        if job.status == JobStatus.QUEUED:
            return job.available_at <= now
        if job.status == JobStatus.RUNNING:
            return job.locked_at < now - timedelta(seconds=visibility_timeout)
        return False

    async def claim_batch(self, limit, visibility_timeout):
        await asyncio.sleep(0)
        self.claim_calls += 1
        if self.claim_errors:
            self.claim_errors -= 1
            raise ConnectionError("database unavailable")

        now = self.now()
        candidates = sorted(
            (job for job in self.jobs.values() if self._claimable(job, now, visibility_timeout)),
            key=lambda job: (job.available_at, job.created_at),
        )[:limit]
        claimed = []
        for job in candidates:
            job.status = JobStatus.RUNNING
            job.lock_token = uuid4()
            job.locked_at = now
            job.claims += 1
            claimed.append(dataclasses.replace(job))
        return claimed

    def _held(self, job_id, lock_token) -> Optional[FakeJob]:
        job = self.jobs.get(job_id)
        if job and job.status == JobStatus.RUNNING and job.lock_token == lock_token:
            return job
        return None

    async def complete(self, job_id, lock_token, result=None):
        await asyncio.sleep(0)
        job = self._held(job_id, lock_token)
        if job is None:
            return False
        job.status = JobStatus.SUCCEEDED
        job.result = result
        job.lock_token = None
        job.locked_at = None
        self.completions.append((job_id, lock_token))
        return True

    async def fail(self, job_id, lock_token, error, permanent=False):
        await asyncio.sleep(0)
        job = self._held(job_id, lock_token)
        if job is None:
            return None
        next_attempts = job.attempts + 1
        if not permanent and next_attempts < job.max_attempts:
            job.status = JobStatus.QUEUED
            job.attempts = next_attempts
            job.available_at = calculate_next_run(
                next_attempts,
                base_delay_seconds=self.retry_base_delay,
                jitter=False,
                now=self.now(),
            )
        else:
            job.status = JobStatus.FAILED
            job.attempts = job.max_attempts if permanent else next_attempts
        job.last_error = error
        job.lock_token = None
        job.locked_at = None
        return dataclasses.replace(job)

    async def heartbeat(self, job_id, lock_token):
        await asyncio.sleep(0)
        job = self._held(job_id, lock_token)
        if job is None:
            return False
        job.locked_at = self.now()
        return True

    async def get(self, job_id, owner_id=None):
        job = self.jobs.get(job_id)
        if job is None or (owner_id is not None and job.owner_id != owner_id):
            return None
        return dataclasses.replace(job)

    def by_status(self, status) -> list[FakeJob]:
        return [job for job in self.jobs.values() if job.status == status]

@pytest.fixture
def job_store():
    return InMemoryJobStore()

@dataclasses.dataclass
class FakeEvent:
    id: UUID
    type: str
    owner_id: str
    payload: dict[str, Any]
    created_at: datetime
    status: str = DomainEventStatus.HANDLED

class FakeEventFeed:
    """OutboxFeed stand-in: owner-scoped, handled-only, (created_at, id) ordered."""

    def __init__(self):
        self.events: list[FakeEvent] = []
        self.failures = 0
        self.fetches = 0

    def add(self, event_type, owner_id="owner-1", payload=None, created_at=None, event_id=None) -> FakeEvent:
        event = FakeEvent(
            id=event_id or uuid4(),
            type=event_type,
            owner_id=owner_id,
            payload=payload or {},
            created_at=created_at or datetime.now(timezone.utc),
        )
        self.events.append(event)
        return event

    async def resolve_cursor(self, owner_id, event_id):
        for event in self.events:
            if str(event.id) == event_id and event.owner_id == owner_id:
                return Cursor(created_at=event.created_at, event_id=event.id)
        return Cursor.now()

    async def fetch_after(self, owner_id, cursor, limit):
        await asyncio.sleep(0)
        self.fetches += 1
        if self.failures:
            self.failures -= 1
            raise ConnectionError("outbox unavailable")
        matching = [
            event for event in self.events
            if event.owner_id == owner_id
            and event.status == DomainEventStatus.HANDLED
            and cursor.is_before(event.created_at, event.id)
        ]
        matching.sort(key=lambda event: (event.created_at, event.id))
        return matching[:limit]

@pytest.fixture
def event_feed():
    return FakeEventFeed()

@pytest.fixture
def database_url():
    url = os.getenv("DATABASE_URL")
    if not url or "postgresql" not in url:
        pytest.skip("DATABASE_URL not pointing at PostgreSQL")
    if url.startswith("postgresql://"):
        url = "postgresql+asyncpg://" + url[len("postgresql://"):]
    return url
