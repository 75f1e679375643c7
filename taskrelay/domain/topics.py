"""Realtime topic allow-list and the mapping from domain events to topics."""

from typing import Any, Iterable, Optional

from taskrelay.domain.states import DomainEventType

REALTIME_TOPICS: tuple[str, ...] = ("tasks", "meetings", "board", "people")

_TOPIC_SET = frozenset(REALTIME_TOPICS)

class InvalidTopicError(ValueError):
    def __init__(self, topics: Iterable[str]):
        self.topics = sorted(topics)
        super().__init__(f"Unknown realtime topics: {', '.join(self.topics)}")

def parse_topic_list(value: Optional[str]) -> list[str]:
    """
    Parses a comma-separated topic filter.

    Entries are trimmed, lower-cased and de-duplicated in order of first
    appearance. Empty entries are ignored; anything outside REALTIME_TOPICS
    raises InvalidTopicError. An empty result means "all topics".
    """
    if not value:
        return []
    topics: list[str] = []
    unknown: set[str] = set()
    for raw in value.split(","):
        entry = raw.strip().lower()
        if not entry:
            continue
        if entry not in _TOPIC_SET:
            unknown.add(entry)
            continue
        if entry not in topics:
            topics.append(entry)
    if unknown:
        raise InvalidTopicError(unknown)
    return topics

def derive_topics(event_type: str, payload: Any) -> list[str]:
    if event_type == DomainEventType.MEETING_INGESTED:
        return ["meetings", "tasks", "board", "people"]
    if event_type == DomainEventType.TASK_STATUS_CHANGED:
        topics = ["tasks", "board"]
        source = payload.get("sourceSessionType") if isinstance(payload, dict) else None
        if source == "meeting":
            topics.append("meetings")
        return topics
    if event_type == DomainEventType.BOARD_ITEM_UPDATED:
        return ["board", "tasks"]
    return []

def matches_subscription(topics: Iterable[str], subscribed: frozenset[str]) -> bool:
    if not subscribed:
        return True
    return any(topic in subscribed for topic in topics)
