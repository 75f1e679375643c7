import json
import logging

from fastapi import APIRouter, HTTPException, Depends
from fastapi.responses import JSONResponse

from taskrelay.api.deps import Store, SessionFactory, CorrelationId
from taskrelay.auth.security import WebhookVerifier, VerifiedWebhook
from taskrelay.domain.errors import WebhookPayloadError
from taskrelay.domain.payloads import WebhookIngestPayload
from taskrelay.domain.states import JobType
from taskrelay.jobs.kick import kick_workers
from taskrelay.services.ingestion import (
    unwrap_payload,
    extract_event_type,
    extract_recording_id,
    is_meeting_content_event,
    ingest_meeting,
)
from taskrelay.api.v1.metrics import WEBHOOK_REQUESTS_TOTAL
from taskrelay.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter()

PROVIDER = "fathom"

def _count(outcome: str):
    WEBHOOK_REQUESTS_TOTAL.labels(provider=PROVIDER, outcome=outcome).inc()

@router.post("/fathom")
async def fathom_webhook(
    store: Store,
    session_factory: SessionFactory,
    correlation_id: CorrelationId,
    delivery: VerifiedWebhook = Depends(WebhookVerifier(PROVIDER)),
):
    try:
        payload = json.loads(delivery.body)
    except (ValueError, UnicodeDecodeError):
        _count("rejected")
        raise HTTPException(status_code=400, detail="Invalid JSON payload.")

    try:
        event_type = extract_event_type(payload)
    except WebhookPayloadError as e:
        _count("rejected")
        raise HTTPException(status_code=400, detail=str(e))
    if not is_meeting_content_event(event_type):
        _count("ignored")
        return {"status": "ignored", "eventType": event_type}

    data = unwrap_payload(payload)
    recording_id = extract_recording_id(data)
    if not recording_id:
        _count("rejected")
        raise HTTPException(status_code=400, detail="Missing recording ID.")

    if settings.WEBHOOK_INGEST_MODE == "sync":
        result = await ingest_meeting(
            delivery.owner_id,
            recording_id,
            data,
            correlation_id=correlation_id,
            source=PROVIDER,
            session_factory=session_factory,
        )
        _count(str(result.status))
        return {"status": str(result.status), "meetingId": str(result.meeting_id)}

    job = await store.enqueue(
        JobType.FATHOM_WEBHOOK_INGEST,
        delivery.owner_id,
        WebhookIngestPayload(recording_id=recording_id, data=data),
        correlation_id=correlation_id,
    )
    kick_workers()
    _count("accepted")
    logger.info(
        "Queued %s webhook recording=%s owner=%s job=%s",
        PROVIDER, recording_id, delivery.owner_id, job.id,
    )
    return JSONResponse(status_code=202, content={"status": "accepted", "jobId": str(job.id)})
