from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from taskrelay.domain.states import IngestStatus

@dataclass(frozen=True)
class Cursor:
    """Position in one owner's outbox: the last (created_at, id) delivered or skipped."""
    created_at: datetime
    # None sorts before every id at the same timestamp ("start at now")
    event_id: Optional[UUID] = None

    def is_before(self, created_at: datetime, event_id: UUID) -> bool:
        if created_at != self.created_at:
            return self.created_at < created_at
        return self.event_id is None or self.event_id < event_id

    @classmethod
    def now(cls) -> "Cursor":
        return cls(created_at=datetime.now(timezone.utc))

@dataclass
class QueueSnapshot:
    queued_ready: int
    queued_delayed: int
    running: int
    succeeded: int
    failed_last_24h: int
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def backlog(self) -> int:
        return self.queued_ready + self.queued_delayed

@dataclass
class IngestResult:
    status: IngestStatus
    meeting_id: UUID
    external_id_hash: str

@dataclass
class DispatchResult:
    status: str  # "handled" | "already_handled"
    event_type: str
    result: dict[str, Any] = field(default_factory=dict)
