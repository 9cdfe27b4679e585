from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from ntfy_mcp.config import CACHE_CAPACITY
from ntfy_mcp.models import Message, cursor_for_message

logger = logging.getLogger(__name__)


class MessageCache:
    """Newest-first buffer of recent messages, mirrored to a JSON file.

    `version` advances by one for every added message and is what waiters watch.
    Disk writes are best-effort: a failed write is logged and the in-memory
    state is kept as is.
    """

    def __init__(self, path: str | Path, *, capacity: int = CACHE_CAPACITY) -> None:
        self.path = Path(path)
        self.capacity = capacity
        self.messages: list[Message] = []
        self.version = 0

    def __len__(self) -> int:
        return len(self.messages)

    @property
    def newest(self) -> Message | None:
        return self.messages[0] if self.messages else None

    def load(self) -> str | None:
        """Replace the in-memory cache with the file contents.

        Returns the cursor of the newest cached message, if it has one.
        """
        self.messages = []
        self.version = 0
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("cache: failed to read %s: %s", self.path, e)
            return None
        if not raw.strip():
            return None
        try:
            parsed = json.loads(raw)
        except ValueError as e:
            logger.warning("cache: ignoring unreadable cache file %s: %s", self.path, e)
            return None
        if not isinstance(parsed, list):
            logger.warning("cache: ignoring non-array cache file %s", self.path)
            return None

        for item in parsed:
            msg = Message.from_record(item)
            if msg is None:
                continue
            self.messages.append(msg)
            if len(self.messages) >= self.capacity:
                break
        self.version = len(self.messages)
        cursor = cursor_for_message(self.newest)
        logger.debug("cache: loaded %d message(s), newest cursor=%s", len(self.messages), cursor)
        return cursor

    def persist(self) -> bool:
        payload = [m.to_dict() for m in self.messages]
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning("cache: write to %s failed: %s", self.path, e)
            return False
        return True

    def add(self, message: Message) -> int:
        self.messages.insert(0, message)
        del self.messages[self.capacity :]
        self.version += 1
        self.persist()
        return self.version

    def clear(self) -> None:
        self.messages = []
        self.version = 0
        self.persist()

    def since_cursor(
        self, cursor: str | None, since_time: int | float | None = None
    ) -> list[dict[str, Any]]:
        """Messages strictly newer than `cursor`, newest first.

        An unknown or missing cursor yields the whole cache.
        """
        selected = self.messages
        if cursor:
            for idx, msg in enumerate(self.messages):
                if cursor_for_message(msg) == cursor:
                    selected = self.messages[:idx]
                    break
        if since_time is not None:
            selected = [m for m in selected if m.time is not None and m.time >= since_time]
        return [m.to_dict() for m in selected]
