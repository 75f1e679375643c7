from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select, func, case, and_
from sqlalchemy.ext.asyncio import AsyncSession

from taskrelay.db.models import Job
from taskrelay.domain.models import QueueSnapshot
from taskrelay.domain.states import JobStatus

async def get_job(
    session: AsyncSession,
    job_id: UUID,
    owner_id: Optional[str] = None,
) -> Optional[Job]:
    stmt = select(Job).where(Job.id == job_id)
    if owner_id is not None:
        stmt = stmt.where(Job.owner_id == owner_id)
    return (await session.execute(stmt)).scalar_one_or_none()

async def queue_snapshot(session: AsyncSession, job_type: Optional[str] = None) -> QueueSnapshot:
    """Counts jobs per state in one scan (ready vs delayed split on available_at)."""
    now = datetime.now(timezone.utc)
    day_ago = now - timedelta(hours=24)

    def count_where(*conditions):
        return func.coalesce(func.sum(case((and_(*conditions), 1), else_=0)), 0)

    stmt = select(
        count_where(Job.status == JobStatus.QUEUED, Job.available_at <= now),
        count_where(Job.status == JobStatus.QUEUED, Job.available_at > now),
        count_where(Job.status == JobStatus.RUNNING),
        count_where(Job.status == JobStatus.SUCCEEDED),
        count_where(Job.status == JobStatus.FAILED, Job.updated_at >= day_ago),
    )
    if job_type:
        stmt = stmt.where(Job.type == job_type)

    ready, delayed, running, succeeded, failed = (await session.execute(stmt)).one()
    return QueueSnapshot(
        queued_ready=int(ready),
        queued_delayed=int(delayed),
        running=int(running),
        succeeded=int(succeeded),
        failed_last_24h=int(failed),
        checked_at=now,
    )
