import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from taskrelay.db.models import Job
from taskrelay.domain.errors import UnknownJobTypeError
from taskrelay.domain.payloads import JobPayload, payload_model_for
from taskrelay.domain.states import JobStatus
from taskrelay.utils.correlation import ensure_correlation_id
from taskrelay.api.v1.metrics import JOBS_ENQUEUED_TOTAL
from taskrelay.settings import settings

logger = logging.getLogger(__name__)

async def enqueue_job(
    session: AsyncSession,
    job_type: str,
    owner_id: str,
    payload: dict[str, Any] | JobPayload,
    max_attempts: Optional[int] = None,
    correlation_id: Optional[str] = None,
    available_at: Optional[datetime] = None,
) -> Job:
    """
    Inserts a queued job. The payload is validated against the model
    registered for job_type, so a malformed job never reaches the table.
    """
    model = payload_model_for(job_type)
    if model is None:
        raise UnknownJobTypeError(job_type)
    if not isinstance(payload, model):
        payload = model.model_validate(payload)

    now = datetime.now(timezone.utc)
    job = Job(
        type=job_type,
        owner_id=owner_id,
        correlation_id=ensure_correlation_id(correlation_id),
        payload=payload.model_dump(mode="json", by_alias=True),
        status=JobStatus.QUEUED,
        attempts=0,
        max_attempts=max_attempts or settings.JOB_DEFAULT_MAX_ATTEMPTS,
        available_at=available_at or now,
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    await session.flush()

    JOBS_ENQUEUED_TOTAL.labels(type=job_type).inc()
    logger.info(
        "Enqueued job %s type=%s owner=%s correlation=%s",
        job.id, job.type, job.owner_id, job.correlation_id,
    )
    return job
