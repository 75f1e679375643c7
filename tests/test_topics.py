import pytest

from taskrelay.domain.topics import (
    InvalidTopicError,
    derive_topics,
    matches_subscription,
    parse_topic_list,
)

def test_topic_list_is_trimmed_lowercased_and_deduplicated():
    assert parse_topic_list(" Meetings, tasks ,MEETINGS,,board") == ["meetings", "tasks", "board"]

def test_missing_topic_list_means_everything():
    assert parse_topic_list(None) == []
    assert parse_topic_list("") == []
    assert parse_topic_list(" , ") == []

def test_unknown_topics_are_rejected():
    with pytest.raises(InvalidTopicError) as exc:
        parse_topic_list("tasks,weather,Stocks")
    assert exc.value.topics == ["stocks", "weather"]

@pytest.mark.parametrize(
    "event_type, payload, expected",
    [
        ("meeting.ingested", {}, ["meetings", "tasks", "board", "people"]),
        ("task.status.changed", {}, ["tasks", "board"]),
        ("task.status.changed", {"sourceSessionType": "meeting"}, ["tasks", "board", "meetings"]),
        ("task.status.changed", {"sourceSessionType": "chat"}, ["tasks", "board"]),
        ("task.status.changed", None, ["tasks", "board"]),
        ("board.item.updated", {}, ["board", "tasks"]),
        ("workspace.renamed", {}, []),
    ],
)
def test_derive_topics(event_type, payload, expected):
    assert derive_topics(event_type, payload) == expected

def test_subscription_matching():
    assert matches_subscription(["tasks"], frozenset())
    assert matches_subscription(["tasks", "board"], frozenset({"board"}))
    assert not matches_subscription(["tasks", "board"], frozenset({"meetings"}))
