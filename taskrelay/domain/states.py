from enum import StrEnum

class JobStatus(StrEnum):
    QUEUED = "queued"         # Waiting for a worker (or for its retry backoff)
    RUNNING = "running"       # Claimed; lock_token held by one worker
    SUCCEEDED = "succeeded"
    FAILED = "failed"         # Attempts exhausted or permanent error

class JobType(StrEnum):
    DOMAIN_EVENT_DISPATCH = "domain-event-dispatch"
    FATHOM_WEBHOOK_INGEST = "fathom-webhook-ingest"

class DomainEventStatus(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    HANDLED = "handled"
    FAILED = "failed"

class DomainEventType(StrEnum):
    TASK_STATUS_CHANGED = "task.status.changed"
    MEETING_INGESTED = "meeting.ingested"
    BOARD_ITEM_UPDATED = "board.item.updated"

class IngestStatus(StrEnum):
    CREATED = "created"
    DUPLICATE = "duplicate"

class ErrorKind(StrEnum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
