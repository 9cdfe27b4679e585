from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

JournalStatus = Literal["running", "stopped", "crashed", "terminated", "stale", "exited"]


def _opt_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _opt_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _opt_tags(value: Any) -> tuple[str, ...] | None:
    if not isinstance(value, list | tuple):
        return None
    return tuple(t for t in value if isinstance(t, str))


@dataclass(frozen=True, slots=True)
class Message:
    """One ntfy message event. Every field may be absent (None)."""

    id: str | None = None
    time: int | None = None
    title: str | None = None
    message: str | None = None
    priority: int | None = None
    tags: tuple[str, ...] | None = None
    topic: str | None = None

    @classmethod
    def from_record(cls, raw: Any) -> Message | None:
        """Decode a raw JSON record; returns None for non-objects and non-message events."""
        if not isinstance(raw, dict):
            return None
        event = raw.get("event")
        if event is not None and event != "message":
            return None
        priority = _opt_int(raw.get("priority"))
        if priority is not None and not 1 <= priority <= 5:
            priority = None
        return cls(
            id=_opt_str(raw.get("id")) or None,
            time=_opt_int(raw.get("time")),
            title=_opt_str(raw.get("title")),
            message=_opt_str(raw.get("message")),
            priority=priority,
            tags=_opt_tags(raw.get("tags")),
            topic=_opt_str(raw.get("topic")),
        )

    @property
    def cursor(self) -> str | None:
        return cursor_for_message(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "time": self.time,
            "title": self.title,
            "message": self.message,
            "priority": self.priority,
            "tags": list(self.tags) if self.tags is not None else None,
            "topic": self.topic,
        }


def cursor_for_message(message: Message | None) -> str | None:
    if message is None:
        return None
    if message.id:
        return message.id
    if message.time is not None:
        return str(message.time)
    return None


@dataclass(slots=True)
class JournalEntry:
    id: str
    pid: int | None
    cwd: str | None
    started_at: str | None
    ended_at: str | None
    status: str

    @classmethod
    def from_dict(cls, raw: Any) -> JournalEntry | None:
        if not isinstance(raw, dict):
            return None
        pid = raw.get("pid")
        if isinstance(pid, str) and pid.strip().isdigit():
            pid = int(pid)
        return cls(
            id=str(raw.get("id") or ""),
            pid=_opt_int(pid),
            cwd=_opt_str(raw.get("cwd")),
            started_at=_opt_str(raw.get("startedAt")),
            ended_at=_opt_str(raw.get("endedAt")),
            status=_opt_str(raw.get("status")) or "running",
        )

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pid": self.pid,
            "cwd": self.cwd,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "status": self.status,
        }
