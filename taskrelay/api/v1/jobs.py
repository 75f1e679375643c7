from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Depends, status
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from taskrelay.api.deps import Store, CorrelationId
from taskrelay.auth.security import get_current_owner
from taskrelay.domain.errors import UnknownJobTypeError
from taskrelay.domain.states import JobStatus
from taskrelay.jobs.kick import kick_workers

router = APIRouter()

class JobCreate(BaseModel):
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    max_attempts: Optional[int] = Field(default=None, ge=1)

class JobResponse(BaseModel):
    id: UUID
    type: str
    owner_id: str
    correlation_id: Optional[str] = None
    status: JobStatus
    payload: dict[str, Any]
    result: Optional[dict[str, Any]] = None
    attempts: int
    max_attempts: int
    last_error: Optional[str] = None
    available_at: datetime
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)

@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def create_job(
    body: JobCreate,
    store: Store,
    correlation_id: CorrelationId,
    owner_id: str = Depends(get_current_owner),
):
    try:
        job = await store.enqueue(
            body.type,
            owner_id,
            body.payload,
            max_attempts=body.max_attempts,
            correlation_id=correlation_id,
        )
    except UnknownJobTypeError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False, include_input=False))

    kick_workers()
    return job

@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: UUID, store: Store, owner_id: str = Depends(get_current_owner)):
    job = await store.get(job_id, owner_id=owner_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job
