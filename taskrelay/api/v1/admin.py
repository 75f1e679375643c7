import secrets
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Depends, status
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError

from taskrelay.api.deps import DbSession, Store
from taskrelay.auth.security import get_current_owner
from taskrelay.db.models import WebhookEndpoint
from taskrelay.services.outbox import purge_expired_events

router = APIRouter()

class QueueSnapshotResponse(BaseModel):
    queued_ready: int
    queued_delayed: int
    running: int
    succeeded: int
    failed_last_24h: int
    backlog: int
    checked_at: datetime

@router.get("/queue", response_model=QueueSnapshotResponse)
async def queue_snapshot(store: Store, type: Optional[str] = None):
    snapshot = await store.snapshot(job_type=type)
    return QueueSnapshotResponse(
        queued_ready=snapshot.queued_ready,
        queued_delayed=snapshot.queued_delayed,
        running=snapshot.running,
        succeeded=snapshot.succeeded,
        failed_last_24h=snapshot.failed_last_24h,
        backlog=snapshot.backlog,
        checked_at=snapshot.checked_at,
    )

@router.post("/purge_expired_events")
async def trigger_purge_expired_events(session: DbSession):
    count = await purge_expired_events(session)
    await session.commit()
    return {"purged_count": count}

class WebhookEndpointCreate(BaseModel):
    provider: str = "fathom"
    secret: Optional[str] = None

class WebhookEndpointResponse(BaseModel):
    token: str
    owner_id: str
    provider: str
    has_secret: bool

@router.post("/webhook-endpoints", response_model=WebhookEndpointResponse, status_code=status.HTTP_201_CREATED)
async def create_webhook_endpoint(
    payload: WebhookEndpointCreate,
    session: DbSession,
    owner_id: str = Depends(get_current_owner),
):
    endpoint = WebhookEndpoint(
        token=secrets.token_urlsafe(24),
        owner_id=owner_id,
        provider=payload.provider,
        secret=payload.secret,
    )
    try:
        session.add(endpoint)
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise HTTPException(status_code=409, detail="Webhook endpoint already exists")

    return WebhookEndpointResponse(
        token=endpoint.token,
        owner_id=endpoint.owner_id,
        provider=endpoint.provider,
        has_secret=bool(endpoint.secret),
    )
