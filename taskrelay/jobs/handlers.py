from typing import Any, Optional

from taskrelay.db.session import AsyncSessionLocal
from taskrelay.domain.payloads import DomainEventDispatchPayload, WebhookIngestPayload
from taskrelay.domain.states import JobType
from taskrelay.jobs.registry import HandlerRegistry, JobContext
from taskrelay.services.ingestion import ingest_meeting
from taskrelay.services.outbox import dispatch_queued_event

async def handle_domain_event_dispatch(
    payload: DomainEventDispatchPayload,
    ctx: JobContext,
) -> Optional[dict[str, Any]]:
    session_factory = ctx.session_factory or AsyncSessionLocal
    async with session_factory() as session:
        async with session.begin():
            outcome = await dispatch_queued_event(session, payload.event_id, owner_id=ctx.owner_id)
    ctx.logger.info(
        "Dispatched domain event %s type=%s status=%s correlation=%s",
        payload.event_id, outcome.event_type, outcome.status, ctx.correlation_id,
    )
    return {"eventId": str(payload.event_id), "status": outcome.status, "result": outcome.result}

async def handle_fathom_webhook_ingest(
    payload: WebhookIngestPayload,
    ctx: JobContext,
) -> Optional[dict[str, Any]]:
    result = await ingest_meeting(
        ctx.owner_id,
        payload.recording_id,
        payload.data,
        correlation_id=ctx.correlation_id,
        source="fathom",
        session_factory=ctx.session_factory or AsyncSessionLocal,
    )
    return {"status": str(result.status), "meetingId": str(result.meeting_id)}

def build_default_registry() -> HandlerRegistry:
    registry = HandlerRegistry()
    registry.register(JobType.DOMAIN_EVENT_DISPATCH, DomainEventDispatchPayload, handle_domain_event_dispatch)
    registry.register(JobType.FATHOM_WEBHOOK_INGEST, WebhookIngestPayload, handle_fathom_webhook_ingest)
    return registry
