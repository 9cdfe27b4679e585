from __future__ import annotations

from ntfy_mcp.models import JournalEntry, Message, cursor_for_message


def test_from_record_decodes_message_event() -> None:
    msg = Message.from_record(
        {
            "id": "msg-1",
            "time": 1700000000,
            "event": "message",
            "topic": "alerts",
            "title": "Hi",
            "message": "hello",
            "priority": 4,
            "tags": ["one", 2, "two"],
        }
    )
    assert msg is not None
    assert msg.id == "msg-1"
    assert msg.priority == 4
    assert msg.tags == ("one", "two")
    assert msg.to_dict()["tags"] == ["one", "two"]


def test_from_record_skips_non_message_events_and_non_objects() -> None:
    assert Message.from_record({"id": "k1", "event": "keepalive"}) is None
    assert Message.from_record({"id": "o1", "event": "open"}) is None
    assert Message.from_record(["not", "a", "dict"]) is None
    assert Message.from_record(None) is None


def test_from_record_drops_invalid_fields() -> None:
    msg = Message.from_record({"id": "", "time": "soon", "priority": 9, "tags": "x"})
    assert msg is not None
    assert msg.id is None
    assert msg.time is None
    assert msg.priority is None
    assert msg.tags is None

    assert Message.from_record({"priority": True}).priority is None


def test_cursor_prefers_id_then_time() -> None:
    assert cursor_for_message(Message(id="a", time=5)) == "a"
    assert cursor_for_message(Message(time=5)) == "5"
    assert cursor_for_message(Message()) is None
    assert cursor_for_message(None) is None
    assert Message(id="b").cursor == "b"


def test_journal_entry_uses_camel_case_keys() -> None:
    entry = JournalEntry.from_dict(
        {
            "id": "e1",
            "pid": "123",
            "cwd": "/tmp",
            "startedAt": "2024-01-01T00:00:00+00:00",
            "endedAt": None,
            "status": "running",
        }
    )
    assert entry is not None
    assert entry.pid == 123
    assert entry.is_open

    entry.ended_at = "2024-01-01T00:01:00+00:00"
    entry.status = "stopped"
    data = entry.to_dict()
    assert data["endedAt"] == "2024-01-01T00:01:00+00:00"
    assert data["startedAt"] == "2024-01-01T00:00:00+00:00"
    assert not entry.is_open


def test_journal_entry_rejects_non_objects() -> None:
    assert JournalEntry.from_dict("nope") is None
    assert JournalEntry.from_dict({"pid": "abc"}).pid is None
