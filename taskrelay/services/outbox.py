"""
Domain event outbox: an append-only, per-owner ordered log of things that
happened, written after the business mutation that caused them committed.

Publishing is best effort. The event is written in its own transaction, so a
failure here is logged and raised to the caller but never rolls back the
caller's already-committed write.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID, uuid4

from sqlalchemy import select, update, delete, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskrelay.db.models import DomainEvent
from taskrelay.db.session import AsyncSessionLocal
from taskrelay.commands.enqueue_job import enqueue_job
from taskrelay.domain.errors import OutboxPublishError, EventNotFoundError
from taskrelay.domain.models import Cursor, DispatchResult
from taskrelay.domain.payloads import DomainEventDispatchPayload
from taskrelay.domain.states import DomainEventStatus, JobType
from taskrelay.jobs.kick import kick_workers
from taskrelay.utils.correlation import ensure_correlation_id
from taskrelay.api.v1.metrics import (
    DOMAIN_EVENTS_PUBLISHED_TOTAL,
    DOMAIN_EVENT_PUBLISH_FAILURES_TOTAL,
    DOMAIN_EVENTS_PURGED_TOTAL,
)
from taskrelay.settings import settings

logger = logging.getLogger(__name__)

Reaction = Callable[[AsyncSession, DomainEvent], Awaitable[Optional[dict[str, Any]]]]

class EventReactionRegistry:
    """
    Side effects run when a queued event is dispatched (async dispatch mode).

    Business modules register reactions per event type; with none registered
    dispatch is a trivial fan-out prep step that only marks the event handled.
    """

    def __init__(self):
        self._reactions: dict[str, list[Reaction]] = {}

    def register(self, event_type: str, reaction: Reaction) -> None:
        self._reactions.setdefault(event_type, []).append(reaction)

    def reactions_for(self, event_type: str) -> list[Reaction]:
        return list(self._reactions.get(event_type, ()))

event_reactions = EventReactionRegistry()

def build_event_expiry(now: datetime) -> datetime:
    return now + timedelta(days=settings.DOMAIN_EVENT_RETENTION_DAYS)

async def publish_event(
    event_type: str,
    owner_id: str,
    correlation_id: Optional[str],
    payload: dict[str, Any],
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    async_dispatch: Optional[bool] = None,
) -> DomainEvent:
    """
    Appends a domain event for owner_id.

    By default the event is inserted already HANDLED and is visible to realtime
    streams at once. With async dispatch the event is inserted QUEUED together
    with a domain-event-dispatch job (same transaction) and becomes visible
    once a worker has run its reactions.
    """
    if async_dispatch is None:
        async_dispatch = settings.DOMAIN_EVENT_ASYNC_DISPATCH
    now = datetime.now(timezone.utc)
    correlation_id = ensure_correlation_id(correlation_id)

    event = DomainEvent(
        id=uuid4(),
        type=event_type,
        owner_id=owner_id,
        correlation_id=correlation_id,
        payload=payload,
        status=DomainEventStatus.QUEUED if async_dispatch else DomainEventStatus.HANDLED,
        created_at=now,
        updated_at=now,
        handled_at=None if async_dispatch else now,
        expires_at=build_event_expiry(now),
    )

    try:
        async with session_factory() as session:
            async with session.begin():
                session.add(event)
                await session.flush()
                if async_dispatch:
                    await enqueue_job(
                        session,
                        JobType.DOMAIN_EVENT_DISPATCH,
                        owner_id,
                        DomainEventDispatchPayload(event_id=event.id),
                        correlation_id=correlation_id,
                    )
    except Exception as e:
        DOMAIN_EVENT_PUBLISH_FAILURES_TOTAL.labels(type=event_type).inc()
        logger.error(
            f"Failed to publish domain event type={event_type} owner={owner_id} "
            f"correlation={correlation_id}: {e}",
            exc_info=True,
        )
        raise OutboxPublishError(f"Could not publish {event_type} event") from e

    DOMAIN_EVENTS_PUBLISHED_TOTAL.labels(type=event_type).inc()
    if async_dispatch:
        kick_workers()
        logger.info(f"Domain event {event.id} type={event_type} queued for dispatch")
    else:
        logger.info(f"Domain event {event.id} type={event_type} published")
    return event

async def try_publish_event(
    event_type: str,
    owner_id: str,
    correlation_id: Optional[str],
    payload: dict[str, Any],
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
) -> Optional[DomainEvent]:
    """publish_event for callers whose own write already succeeded: logs and returns None on failure."""
    try:
        return await publish_event(event_type, owner_id, correlation_id, payload, session_factory)
    except OutboxPublishError:
        return None

async def dispatch_queued_event(
    session: AsyncSession,
    event_id: UUID,
    owner_id: Optional[str] = None,
    reactions: EventReactionRegistry = event_reactions,
) -> DispatchResult:
    """
    Runs the reactions of a QUEUED event and marks it HANDLED.

    The QUEUED/RUNNING -> RUNNING claim is a conditional update, so a redelivered
    dispatch job for an event that is already handled is a no-op. On reaction
    failure the event is marked FAILED and the error is re-raised for the job's
    retry logic.
    """
    scope = [DomainEvent.id == event_id]
    if owner_id is not None:
        scope.append(DomainEvent.owner_id == owner_id)

    existing = (await session.execute(select(DomainEvent).where(*scope))).scalar_one_or_none()
    if existing is None:
        raise EventNotFoundError(event_id)
    if existing.status == DomainEventStatus.HANDLED:
        return DispatchResult("already_handled", existing.type, existing.result or {})

    now = datetime.now(timezone.utc)
    claim = (
        update(DomainEvent)
        .where(
            *scope,
            DomainEvent.status.in_([
                DomainEventStatus.QUEUED,
                DomainEventStatus.RUNNING,
                DomainEventStatus.FAILED,
            ]),
        )
        .values(status=DomainEventStatus.RUNNING, updated_at=now)
        .returning(DomainEvent)
        .execution_options(synchronize_session=False, populate_existing=True)
    )
    event = (await session.execute(claim)).scalar_one_or_none()
    if event is None:
        await session.refresh(existing)
        return DispatchResult("already_handled", existing.type, existing.result or {})

    result: dict[str, Any] = {}
    try:
        for reaction in reactions.reactions_for(event.type):
            outcome = await reaction(session, event)
            if outcome:
                result.update(outcome)
    except Exception as e:
        done = datetime.now(timezone.utc)
        event.status = DomainEventStatus.FAILED
        event.error = f"{type(e).__name__}: {e}"
        event.updated_at = done
        event.expires_at = build_event_expiry(done)
        await session.flush()
        logger.error(f"Dispatch failed for domain event {event.id} type={event.type}: {e}")
        raise

    done = datetime.now(timezone.utc)
    event.status = DomainEventStatus.HANDLED
    event.result = result
    event.error = None
    event.handled_at = done
    event.updated_at = done
    event.expires_at = build_event_expiry(done)
    await session.flush()
    logger.info(f"Domain event {event.id} type={event.type} handled")
    return DispatchResult("handled", event.type, result)

async def find_event(session: AsyncSession, owner_id: str, event_id: UUID) -> Optional[DomainEvent]:
    stmt = select(DomainEvent).where(DomainEvent.id == event_id, DomainEvent.owner_id == owner_id)
    return (await session.execute(stmt)).scalar_one_or_none()

async def fetch_events_after(
    session: AsyncSession,
    owner_id: str,
    cursor: Cursor,
    limit: int,
) -> list[DomainEvent]:
    """HANDLED events of one owner strictly after cursor, ascending by (created_at, id)."""
    if cursor.event_id is None:
        after = DomainEvent.created_at > cursor.created_at
    else:
        after = or_(
            DomainEvent.created_at > cursor.created_at,
            and_(DomainEvent.created_at == cursor.created_at, DomainEvent.id > cursor.event_id),
        )
    stmt = (
        select(DomainEvent)
        .where(
            DomainEvent.owner_id == owner_id,
            DomainEvent.status == DomainEventStatus.HANDLED,
            after,
        )
        .order_by(DomainEvent.created_at.asc(), DomainEvent.id.asc())
        .limit(limit)
    )
    return list((await session.execute(stmt)).scalars().all())

async def purge_expired_events(session: AsyncSession, now: Optional[datetime] = None) -> int:
    now = now or datetime.now(timezone.utc)
    result = await session.execute(delete(DomainEvent).where(DomainEvent.expires_at < now))
    count = result.rowcount or 0
    if count:
        DOMAIN_EVENTS_PURGED_TOTAL.inc(count)
        logger.info(f"Purged {count} expired domain events")
    return count

class OutboxFeed:
    """Read-only view of the outbox used by realtime streams."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal):
        self.session_factory = session_factory

    async def resolve_cursor(self, owner_id: str, event_id: Optional[str]) -> Cursor:
        """Cursor at the given event for resume, or at 'now' when it is unknown."""
        if event_id:
            try:
                parsed = UUID(event_id.strip())
            except ValueError:
                parsed = None
            if parsed is not None:
                async with self.session_factory() as session:
                    event = await find_event(session, owner_id, parsed)
                if event is not None:
                    return Cursor(created_at=event.created_at, event_id=event.id)
        return Cursor.now()

    async def fetch_after(self, owner_id: str, cursor: Cursor, limit: int) -> list[DomainEvent]:
        async with self.session_factory() as session:
            return await fetch_events_after(session, owner_id, cursor, limit)
