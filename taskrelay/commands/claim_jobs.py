import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from taskrelay.db.models import Job
from taskrelay.domain.states import JobStatus
from taskrelay.api.v1.metrics import JOBS_CLAIMED_TOTAL, JOBS_RECLAIMED_TOTAL

logger = logging.getLogger(__name__)

def _claimable(now: datetime, visibility_timeout: float):
    stale_before = now - timedelta(seconds=visibility_timeout)
    return or_(
        and_(Job.status == JobStatus.QUEUED, Job.available_at <= now),
        # Lock holder presumed dead: reclaim without touching attempts
        and_(Job.status == JobStatus.RUNNING, Job.locked_at < stale_before),
    )

async def claim_jobs(
    session: AsyncSession,
    limit: int,
    visibility_timeout: float,
    now: Optional[datetime] = None,
) -> list[Job]:
    """
    Atomically claims up to `limit` jobs for the calling worker.

    Candidates are row-locked with SKIP LOCKED so concurrent claimers never
    see the same row; the UPDATE re-checks the claim predicate and gives each
    row its own lock_token. Must run inside a transaction, which the caller
    commits.
    """
    if limit <= 0:
        return []
    now = now or datetime.now(timezone.utc)
    claimable = _claimable(now, visibility_timeout)

    candidates_q = (
        select(Job.id, Job.status, Job.type)
        .where(claimable)
        .order_by(Job.available_at.asc(), Job.created_at.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    candidates = (await session.execute(candidates_q)).all()
    if not candidates:
        return []

    stmt = (
        update(Job)
        .where(Job.id.in_([row.id for row in candidates]), claimable)
        .values(
            status=JobStatus.RUNNING,
            lock_token=func.gen_random_uuid(),
            locked_at=now,
            started_at=now,
            updated_at=now,
        )
        .returning(Job)
        .execution_options(synchronize_session=False)
    )
    jobs = list((await session.execute(stmt)).scalars().all())
    jobs.sort(key=lambda job: (job.available_at, job.created_at))

    reclaimed = {row.id for row in candidates if row.status == JobStatus.RUNNING}
    for job in jobs:
        JOBS_CLAIMED_TOTAL.labels(type=job.type).inc()
        if job.id in reclaimed:
            JOBS_RECLAIMED_TOTAL.labels(type=job.type).inc()
            logger.warning(
                "Reclaimed job %s type=%s after stale lock (attempts=%s)",
                job.id, job.type, job.attempts,
            )

    await session.flush()
    return jobs
