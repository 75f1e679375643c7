from datetime import datetime
from typing import Optional, Any
from uuid import UUID, uuid4

from sqlalchemy import String, Integer, DateTime, Index, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID

from taskrelay.db.session import Base
from taskrelay.domain.states import JobStatus, DomainEventStatus

class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    type: Mapped[str] = mapped_column(String, nullable=False)
    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    correlation_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    status: Mapped[JobStatus] = mapped_column(String, default=JobStatus.QUEUED, nullable=False)

    # Retry logic
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=2, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Scheduling and claim
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    lock_token: Mapped[Optional[UUID]] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)
    result: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)

    __table_args__ = (
        # "claim" query: queued + available_at <= now
        Index("ix_jobs_claim", "status", "available_at", "created_at"),
        # stale lock reclaim: running + locked_at < now - visibility
        Index("ix_jobs_reclaim", "locked_at", postgresql_where=text("status = 'running'")),
        Index("ix_jobs_owner_created", "owner_id", "created_at"),
        Index("ix_jobs_type_status", "type", "status"),
        Index("ix_jobs_correlation", "correlation_id"),
    )

class DomainEvent(Base):
    __tablename__ = "domain_events"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    type: Mapped[str] = mapped_column(String, nullable=False)
    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    correlation_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)

    status: Mapped[DomainEventStatus] = mapped_column(String, default=DomainEventStatus.HANDLED, nullable=False)
    result: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    handled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        # Realtime cursor scan: owner + handled + (created_at, id) > cursor
        Index("ix_domain_events_cursor", "owner_id", "status", "created_at", "id"),
        Index("ix_domain_events_owner_type", "owner_id", "type", "created_at"),
        Index("ix_domain_events_expires_at", "expires_at"),
    )

class Meeting(Base):
    __tablename__ = "meetings"

    # Creation-only
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Ingestion key
    external_id: Mapped[str] = mapped_column(String, nullable=False)
    external_id_hash: Mapped[str] = mapped_column(String, nullable=False)
    ingest_source: Mapped[str] = mapped_column(String, nullable=False)

    # Mutable
    title: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    transcript: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    recording_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    share_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    start_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # SQL NULL rather than JSON null, so upserts can COALESCE it
    attendees: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(JSONB(none_as_null=True), nullable=True)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        # Converges concurrent ingestion of the same external id onto one row
        Index("ux_meetings_owner_external_hash", "owner_id", "external_id_hash", unique=True),
    )

class WebhookEndpoint(Base):
    __tablename__ = "webhook_endpoints"

    token: Mapped[str] = mapped_column(String, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String, nullable=False, default="fathom")
    secret: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=text("now()"))
