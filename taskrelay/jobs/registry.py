import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskrelay.domain.errors import UnknownJobTypeError
from taskrelay.domain.payloads import JobPayload

@dataclass
class JobContext:
    """What a handler knows about the job it is running."""
    job_id: UUID
    job_type: str
    owner_id: str
    correlation_id: Optional[str]
    attempts: int
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("taskrelay.jobs.handlers"))

Handler = Callable[[Any, JobContext], Awaitable[Optional[dict[str, Any]]]]

@dataclass
class RegisteredHandler:
    job_type: str
    payload_model: type[JobPayload]
    handler: Handler

class HandlerRegistry:
    def __init__(self):
        self._handlers: dict[str, RegisteredHandler] = {}

    def register(self, job_type: str, payload_model: type[JobPayload], handler: Handler) -> None:
        if job_type in self._handlers:
            raise ValueError(f"Handler already registered for job type {job_type}")
        self._handlers[job_type] = RegisteredHandler(str(job_type), payload_model, handler)

    def resolve(self, job_type: str) -> RegisteredHandler:
        try:
            return self._handlers[job_type]
        except KeyError:
            raise UnknownJobTypeError(job_type) from None

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers

    @property
    def job_types(self) -> list[str]:
        return sorted(self._handlers)
