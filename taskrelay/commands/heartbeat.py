from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from taskrelay.db.models import Job
from taskrelay.domain.states import JobStatus

async def heartbeat(
    session: AsyncSession,
    job_id: UUID,
    lock_token: UUID,
    now: Optional[datetime] = None,
) -> bool:
    """
    Renews the claim on a running job by moving locked_at forward.

    Returns False when the token no longer matches; the job was reclaimed or
    already finished and the caller should stop renewing.
    """
    now = now or datetime.now(timezone.utc)

    stmt = (
        update(Job)
        .where(
            Job.id == job_id,
            Job.lock_token == lock_token,
            Job.status == JobStatus.RUNNING,
        )
        .values(locked_at=now, updated_at=now)
        .returning(Job.id)
        .execution_options(synchronize_session=False)
    )
    renewed = (await session.execute(stmt)).scalar_one_or_none()
    await session.flush()
    return renewed is not None
