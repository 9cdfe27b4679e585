from __future__ import annotations

import json
from pathlib import Path

from ntfy_mcp.cache import MessageCache
from ntfy_mcp.models import Message


def _msg(i: int, *, time: int | None = None) -> Message:
    return Message(id=f"m{i}", time=time if time is not None else 1000 + i, message=f"body {i}")


def test_add_is_newest_first_and_persists(tmp_path: Path) -> None:
    path = tmp_path / "messages.json"
    cache = MessageCache(path)

    assert cache.add(_msg(1)) == 1
    assert cache.add(_msg(2)) == 2

    assert [m.id for m in cache.messages] == ["m2", "m1"]
    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert [m["id"] for m in on_disk] == ["m2", "m1"]


def test_capacity_drops_oldest(tmp_path: Path) -> None:
    cache = MessageCache(tmp_path / "messages.json", capacity=3)
    for i in range(5):
        cache.add(_msg(i))

    assert len(cache) == 3
    assert [m.id for m in cache.messages] == ["m4", "m3", "m2"]
    assert cache.version == 5


def test_since_cursor_slices_before_match(tmp_path: Path) -> None:
    cache = MessageCache(tmp_path / "messages.json")
    for i in range(4):
        cache.add(_msg(i))

    assert [m["id"] for m in cache.since_cursor("m1")] == ["m3", "m2"]
    assert cache.since_cursor("m3") == []
    # Unknown or missing cursors return everything.
    assert len(cache.since_cursor("nope")) == 4
    assert len(cache.since_cursor(None)) == 4


def test_since_cursor_time_filter_excludes_untimed(tmp_path: Path) -> None:
    cache = MessageCache(tmp_path / "messages.json")
    cache.add(Message(id="old", time=100))
    cache.add(Message(id="untimed"))
    cache.add(Message(id="new", time=200))

    assert [m["id"] for m in cache.since_cursor(None, since_time=150)] == ["new"]
    assert [m["id"] for m in cache.since_cursor(None, since_time=100)] == ["new", "old"]


def test_load_restores_messages_and_cursor(tmp_path: Path) -> None:
    path = tmp_path / "messages.json"
    path.write_text(
        json.dumps(
            [
                {"id": "b", "time": 2, "message": "two"},
                "garbage",
                {"id": "a", "time": 1, "message": "one"},
            ]
        ),
        encoding="utf-8",
    )
    cache = MessageCache(path)

    assert cache.load() == "b"
    assert [m.id for m in cache.messages] == ["b", "a"]
    assert cache.version == 2


def test_load_caps_at_capacity(tmp_path: Path) -> None:
    path = tmp_path / "messages.json"
    path.write_text(json.dumps([{"id": f"m{i}"} for i in range(10)]), encoding="utf-8")
    cache = MessageCache(path, capacity=4)

    assert cache.load() == "m0"
    assert len(cache) == 4


def test_load_tolerates_missing_and_corrupt_files(tmp_path: Path) -> None:
    path = tmp_path / "messages.json"
    cache = MessageCache(path)
    assert cache.load() is None
    assert len(cache) == 0

    path.write_text("{not json", encoding="utf-8")
    assert cache.load() is None
    assert len(cache) == 0

    path.write_text(json.dumps({"id": "x"}), encoding="utf-8")
    assert cache.load() is None
    assert cache.version == 0


def test_clear_empties_file(tmp_path: Path) -> None:
    path = tmp_path / "messages.json"
    cache = MessageCache(path)
    cache.add(_msg(1))

    cache.clear()

    assert len(cache) == 0
    assert cache.version == 0
    assert json.loads(path.read_text(encoding="utf-8")) == []
