import asyncio

import httpx
from pydantic import ValidationError
from sqlalchemy.exc import DataError, DBAPIError, OperationalError

from taskrelay.domain.states import ErrorKind

class TaskRelayError(Exception):
    """Base exception for the dispatch core."""
    pass

class ConfigurationError(TaskRelayError):
    pass

class JobError(TaskRelayError):
    pass

class UnknownJobTypeError(JobError):
    def __init__(self, job_type):
        super().__init__(f"Unsupported job type: {job_type}")
        self.job_type = job_type

class PermanentJobError(JobError):
    """Raised by handlers for failures that retrying cannot fix."""
    pass

class TransientJobError(JobError):
    """Raised by handlers for failures worth retrying (rate limits, outages)."""
    pass

class OutboxPublishError(TaskRelayError):
    pass

class EventNotFoundError(TaskRelayError):
    def __init__(self, event_id):
        super().__init__(f"Domain event {event_id} not found")

class WebhookError(TaskRelayError):
    pass

class WebhookSignatureError(WebhookError):
    pass

class WebhookPayloadError(WebhookError):
    pass

_PERMANENT_TYPES = (
    PermanentJobError,
    ConfigurationError,
    WebhookPayloadError,
    UnknownJobTypeError,
    EventNotFoundError,
    ValidationError,
    ValueError,
    TypeError,
    KeyError,
)

_TRANSIENT_TYPES = (
    TransientJobError,
    httpx.TransportError,
    asyncio.TimeoutError,
    ConnectionError,
    OSError,
    OperationalError,
    DBAPIError,
)

_RETRYABLE_HTTP_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})

def classify_error(exc: BaseException) -> ErrorKind:
    """
    Decides whether a handler failure should consume a retry.

    Unknown exception types are treated as transient; max_attempts bounds them.
    """
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code in _RETRYABLE_HTTP_STATUSES:
            return ErrorKind.TRANSIENT
        return ErrorKind.PERMANENT
    # Value rejected by the database, e.g. wrong column type
    if isinstance(exc, DataError):
        return ErrorKind.PERMANENT
    # Transient wins: TimeoutError is an OSError subclass, DBAPIError wraps driver errors
    if isinstance(exc, _TRANSIENT_TYPES):
        return ErrorKind.TRANSIENT
    if isinstance(exc, _PERMANENT_TYPES):
        return ErrorKind.PERMANENT
    return ErrorKind.TRANSIENT
