from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskrelay.commands.claim_jobs import claim_jobs
from taskrelay.commands.complete_job import complete_job
from taskrelay.commands.enqueue_job import enqueue_job
from taskrelay.commands.fail_job import fail_job
from taskrelay.commands.heartbeat import heartbeat
from taskrelay.commands.queue_snapshot import get_job, queue_snapshot
from taskrelay.db.models import Job
from taskrelay.domain.models import QueueSnapshot
from taskrelay.domain.payloads import JobPayload

class JobStore:
    """
    Queue API for producers and workers.

    Each call runs in its own short transaction. Connectivity errors are not
    retried here; the worker loop owns retry-with-backoff for store failures.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def enqueue(
        self,
        job_type: str,
        owner_id: str,
        payload: dict[str, Any] | JobPayload,
        max_attempts: Optional[int] = None,
        correlation_id: Optional[str] = None,
        available_at: Optional[datetime] = None,
    ) -> Job:
        async with self.session_factory() as session:
            async with session.begin():
                return await enqueue_job(
                    session,
                    job_type,
                    owner_id,
                    payload,
                    max_attempts=max_attempts,
                    correlation_id=correlation_id,
                    available_at=available_at,
                )

    async def claim_batch(self, limit: int, visibility_timeout: float) -> list[Job]:
        async with self.session_factory() as session:
            async with session.begin():
                return await claim_jobs(session, limit, visibility_timeout)

    async def complete(
        self,
        job_id: UUID,
        lock_token: UUID,
        result: Optional[dict[str, Any]] = None,
    ) -> bool:
        async with self.session_factory() as session:
            async with session.begin():
                return await complete_job(session, job_id, lock_token, result)

    async def fail(
        self,
        job_id: UUID,
        lock_token: UUID,
        error: str,
        permanent: bool = False,
    ) -> Optional[Job]:
        async with self.session_factory() as session:
            async with session.begin():
                return await fail_job(session, job_id, lock_token, error, permanent=permanent)

    async def heartbeat(self, job_id: UUID, lock_token: UUID) -> bool:
        async with self.session_factory() as session:
            async with session.begin():
                return await heartbeat(session, job_id, lock_token)

    async def get(self, job_id: UUID, owner_id: Optional[str] = None) -> Optional[Job]:
        async with self.session_factory() as session:
            return await get_job(session, job_id, owner_id)

    async def snapshot(self, job_type: Optional[str] = None) -> QueueSnapshot:
        async with self.session_factory() as session:
            return await queue_snapshot(session, job_type)
