"""
Idempotent meeting ingestion.

Concurrent deliveries of the same external recording converge on one row
through an upsert keyed by (owner_id, HMAC(owner_id:external_id)). The raw
external id is never used as the lookup key.
"""

import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import func, literal_column
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskrelay.db.models import Meeting
from taskrelay.db.session import AsyncSessionLocal
from taskrelay.domain.errors import ConfigurationError, WebhookPayloadError
from taskrelay.domain.models import IngestResult
from taskrelay.domain.states import DomainEventType, IngestStatus
from taskrelay.services.outbox import try_publish_event
from taskrelay.settings import settings

logger = logging.getLogger(__name__)

MEETING_CONTENT_EVENTS = frozenset({
    "new-meeting-content-ready",
    "new_meeting_content_ready",
    "newMeeting",
    "new_meeting",
})

# Fields refreshed on every delivery; absent values keep what is stored
MUTABLE_FIELDS = (
    "title",
    "summary",
    "transcript",
    "recording_url",
    "share_url",
    "start_time",
    "end_time",
    "attendees",
)

def require_ingestion_secret() -> str:
    secret = settings.INGESTION_HASH_SECRET
    if not secret:
        raise ConfigurationError("INGESTION_HASH_SECRET must be set to hash external ids")
    return secret

def hash_external_id(owner_id: str, external_id: str, secret: Optional[str] = None) -> str:
    """Keyed HMAC-SHA256 over "owner_id:external_id", hex encoded."""
    key = (secret or require_ingestion_secret()).encode("utf-8")
    message = f"{owner_id}:{external_id}".encode("utf-8")
    return hmac.new(key, message, hashlib.sha256).hexdigest()

# --- payload normalisation ---

def unwrap_payload(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        return {}
    data = payload.get("data")
    return data if isinstance(data, dict) else payload

def extract_event_type(payload: Any) -> Optional[str]:
    """First non-empty of event / event_type / type. Raises WebhookPayloadError for non-string values."""
    if not isinstance(payload, dict):
        return None
    for key in ("event", "event_type", "type"):
        value = payload.get(key)
        if value is None or value == "":
            continue
        if not isinstance(value, str):
            raise WebhookPayloadError(f"Webhook {key} must be a string")
        if value.strip():
            return value.strip()
    return None

def is_meeting_content_event(event_type: Optional[str]) -> bool:
    # Deliveries without an event type are treated as meeting content
    return not event_type or event_type in MEETING_CONTENT_EVENTS

def _nested(data: dict[str, Any], *path: str) -> Any:
    value: Any = data
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value

def _pick_first(*values: Any) -> Any:
    for value in values:
        if isinstance(value, str):
            if value.strip():
                return value.strip()
        elif value is not None:
            return value
    return None

def _text(value: Any) -> Optional[str]:
    # Text columns take strings and plain numbers only
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value.strip() or None
    return None

def extract_recording_id(data: dict[str, Any]) -> Optional[str]:
    value = _pick_first(
        data.get("recording_id"),
        data.get("recordingId"),
        _nested(data, "recording", "id"),
        _nested(data, "recording", "recording_id"),
    )
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    return str(value)

def parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed

def format_transcript(segments: Any) -> Optional[str]:
    """Renders transcript segments as "timestamp - speaker: text" lines."""
    if not segments:
        return None
    if isinstance(segments, str):
        return segments
    if isinstance(segments, dict):
        for key in ("transcript", "transcript_segments", "segments", "items"):
            if isinstance(segments.get(key), list):
                return format_transcript(segments[key])
        return json.dumps(segments, indent=2)
    if not isinstance(segments, list):
        return None

    lines = []
    for segment in segments:
        if not isinstance(segment, dict):
            continue
        speaker = segment.get("speaker") or segment.get("speaker_name") or segment.get("name")
        if isinstance(speaker, dict):
            speaker = speaker.get("display_name") or speaker.get("name")
        text = segment.get("text") or segment.get("content") or ""
        timestamp = _pick_first(segment.get("timestamp"), segment.get("start_time"), segment.get("startTime"))
        prefix = " - ".join(str(part) for part in (timestamp, speaker) if part)
        line = f"{prefix}: {text}" if prefix else str(text)
        if line.strip():
            lines.append(line.strip())
    return "\n".join(lines) or None

def _summary_text(data: dict[str, Any]) -> Optional[str]:
    summary = _pick_first(
        _nested(data, "default_summary", "markdown_formatted"),
        _nested(data, "default_summary", "markdownFormatted"),
        data.get("summary"),
        _nested(data, "recording", "summary"),
    )
    if isinstance(summary, dict):
        summary = _pick_first(
            summary.get("markdown_formatted"),
            summary.get("markdownFormatted"),
            summary.get("text"),
            summary.get("summary"),
        )
    return summary if isinstance(summary, str) else None

def _attendees(data: dict[str, Any]) -> Optional[list[dict[str, Any]]]:
    raw = _pick_first(data.get("attendees"), data.get("calendar_invitees"), _nested(data, "recording", "attendees"))
    if not isinstance(raw, list):
        return None
    people = []
    for entry in raw:
        if isinstance(entry, str):
            people.append({"name": entry, "email": None})
        elif isinstance(entry, dict):
            name = entry.get("name") or entry.get("display_name")
            email = entry.get("email")
            if name or email:
                people.append({"name": name, "email": email})
    return people or None

def normalize_meeting_fields(data: dict[str, Any]) -> dict[str, Any]:
    """Maps a provider payload onto Meeting columns. Unknown values come back as None."""
    return {
        "title": _text(_pick_first(data.get("meeting_title"), data.get("title"), _nested(data, "recording", "title"))),
        "summary": _summary_text(data),
        "transcript": format_transcript(_pick_first(
            data.get("transcript"),
            data.get("transcript_segments"),
            _nested(data, "recording", "transcript"),
            _nested(data, "recording", "transcript_segments"),
        )),
        "recording_url": _text(_pick_first(data.get("url"), data.get("meeting_url"), _nested(data, "recording", "url"))),
        "share_url": _text(_pick_first(
            data.get("share_url"), data.get("meeting_share_url"), _nested(data, "recording", "share_url")
        )),
        "start_time": parse_timestamp(_pick_first(
            data.get("recording_start_time"),
            data.get("start_time"),
            data.get("started_at"),
            _nested(data, "recording", "start_time"),
            data.get("scheduled_start_time"),
        )),
        "end_time": parse_timestamp(_pick_first(
            data.get("recording_end_time"),
            data.get("end_time"),
            data.get("ended_at"),
            _nested(data, "recording", "end_time"),
            data.get("scheduled_end_time"),
        )),
        "attendees": _attendees(data),
    }

# --- upsert ---

async def upsert_meeting(
    session: AsyncSession,
    owner_id: str,
    external_id: str,
    data: dict[str, Any],
    source: str = "fathom",
    now: Optional[datetime] = None,
) -> IngestResult:
    """
    Inserts or refreshes the meeting for (owner_id, external_id) in one statement.

    Creation-only columns are written on insert only. Mutable columns take the
    incoming value when present and keep the stored one otherwise. Runs inside
    the caller's transaction.
    """
    if not external_id or not str(external_id).strip():
        raise WebhookPayloadError("Missing recording id")
    external_id = str(external_id).strip()
    now = now or datetime.now(timezone.utc)
    external_id_hash = hash_external_id(owner_id, external_id)
    fields = normalize_meeting_fields(data)

    stmt = insert(Meeting).values(
        owner_id=owner_id,
        external_id=external_id,
        external_id_hash=external_id_hash,
        ingest_source=source,
        created_at=now,
        last_activity_at=now,
        updated_at=now,
        **fields,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Meeting.owner_id, Meeting.external_id_hash],
        set_={
            **{name: func.coalesce(stmt.excluded[name], getattr(Meeting, name)) for name in MUTABLE_FIELDS},
            "last_activity_at": stmt.excluded.last_activity_at,
            "updated_at": stmt.excluded.updated_at,
        },
    ).returning(
        Meeting.id,
        # xmax is 0 only for a freshly inserted row version
        literal_column("(xmax = 0)").label("inserted"),
    )

    row = (await session.execute(stmt)).one()
    status = IngestStatus.CREATED if row.inserted else IngestStatus.DUPLICATE
    return IngestResult(status=status, meeting_id=row.id, external_id_hash=external_id_hash)

async def ingest_meeting(
    owner_id: str,
    external_id: str,
    data: dict[str, Any],
    correlation_id: Optional[str] = None,
    source: str = "fathom",
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
) -> IngestResult:
    """
    Upserts the meeting in its own transaction, then publishes meeting.ingested.

    A duplicate delivery is a success. The event is published for both
    outcomes; a failed publish is logged and does not undo the ingest.
    """
    async with session_factory() as session:
        async with session.begin():
            result = await upsert_meeting(session, owner_id, external_id, data, source=source)

    logger.info(
        "Meeting ingest %s meeting=%s owner=%s source=%s correlation=%s",
        result.status, result.meeting_id, owner_id, source, correlation_id,
    )

    await try_publish_event(
        DomainEventType.MEETING_INGESTED,
        owner_id,
        correlation_id,
        {
            "meetingId": str(result.meeting_id),
            "status": str(result.status),
            "source": source,
        },
        session_factory=session_factory,
    )
    return result
