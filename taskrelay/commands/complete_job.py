import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from taskrelay.db.models import Job
from taskrelay.domain.states import JobStatus

logger = logging.getLogger(__name__)

async def complete_job(
    session: AsyncSession,
    job_id: UUID,
    lock_token: UUID,
    result_data: Optional[dict[str, Any]] = None,
) -> bool:
    """
    Marks a job as SUCCEEDED and releases its lock.

    Only the current lock holder may complete: if the token no longer matches
    (the job was reclaimed by another worker) nothing changes and False is
    returned, and the caller must discard its result.
    """
    now = datetime.now(timezone.utc)

    stmt = (
        update(Job)
        .where(
            Job.id == job_id,
            Job.lock_token == lock_token,
            Job.status == JobStatus.RUNNING,
        )
        .values(
            status=JobStatus.SUCCEEDED,
            result=result_data,
            lock_token=None,
            locked_at=None,
            last_error=None,
            finished_at=now,
            updated_at=now,
        )
        .returning(Job.id)
        .execution_options(synchronize_session=False)
    )
    completed = (await session.execute(stmt)).scalar_one_or_none()
    if completed is None:
        logger.warning("Complete ignored for job %s: lock token no longer held", job_id)
        return False

    await session.flush()
    return True
