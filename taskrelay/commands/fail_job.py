import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskrelay.db.models import Job
from taskrelay.domain.states import JobStatus
from taskrelay.domain.retry import calculate_next_run
from taskrelay.settings import settings

logger = logging.getLogger(__name__)

# Keeps last_error readable in listings
MAX_ERROR_LENGTH = 2000

async def fail_job(
    session: AsyncSession,
    job_id: UUID,
    lock_token: UUID,
    error: str,
    permanent: bool = False,
) -> Optional[Job]:
    """
    Records a handler failure for the current lock holder.

    Retryable failures go back to QUEUED with an exponential backoff on
    available_at while attempts remain; permanent failures and the last
    attempt go to FAILED. Returns the updated job, or None when the lock
    token no longer matches (another worker owns the job now).
    """
    now = datetime.now(timezone.utc)
    error = (error or "Unknown error")[:MAX_ERROR_LENGTH]

    stmt = select(Job).where(
        Job.id == job_id,
        Job.lock_token == lock_token,
        Job.status == JobStatus.RUNNING,
    ).with_for_update()
    job = (await session.execute(stmt)).scalar_one_or_none()

    if not job:
        logger.warning("Fail ignored for job %s: lock token no longer held", job_id)
        return None

    next_attempts = job.attempts + 1

    if not permanent and next_attempts < job.max_attempts:
        next_run = calculate_next_run(
            next_attempts,
            base_delay_seconds=settings.JOB_RETRY_BASE_DELAY_SECONDS,
            max_delay_seconds=settings.JOB_RETRY_MAX_DELAY_SECONDS,
            now=now,
        )
        values = dict(
            status=JobStatus.QUEUED,
            attempts=next_attempts,
            available_at=next_run,
        )
    else:
        values = dict(
            status=JobStatus.FAILED,
            # A permanent error exhausts the budget in one go
            attempts=job.max_attempts if permanent else next_attempts,
            finished_at=now,
        )

    # Row is locked FOR UPDATE, so plain attribute writes are race-free
    for key, value in values.items():
        setattr(job, key, value)
    job.last_error = error
    job.lock_token = None
    job.locked_at = None
    job.updated_at = now

    await session.flush()
    return job
