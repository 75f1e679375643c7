from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskrelay.db.session import get_db_session, AsyncSessionLocal
from taskrelay.services.job_store import JobStore
from taskrelay.services.outbox import OutboxFeed
from taskrelay.utils.correlation import CORRELATION_HEADER, ensure_correlation_id

# Dependency for DB session
DbSession = Annotated[AsyncSession, Depends(get_db_session)]

def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return AsyncSessionLocal

SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]

def get_job_store(session_factory: SessionFactory) -> JobStore:
    return JobStore(session_factory)

def get_outbox_feed(session_factory: SessionFactory) -> OutboxFeed:
    return OutboxFeed(session_factory)

def get_correlation_id(request: Request) -> str:
    return ensure_correlation_id(request.headers.get(CORRELATION_HEADER))

Store = Annotated[JobStore, Depends(get_job_store)]
Feed = Annotated[OutboxFeed, Depends(get_outbox_feed)]
CorrelationId = Annotated[str, Depends(get_correlation_id)]
