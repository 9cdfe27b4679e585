from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import AnyUrl

from ntfy_mcp.cache import MessageCache
from ntfy_mcp.common import now
from ntfy_mcp.config import Config, normalize_base_url
from ntfy_mcp.models import Message
from ntfy_mcp.waiters import WaiterRegistry

INBOX_URI = "ntfy://inbox"

logger = logging.getLogger(__name__)


@dataclass
class ServerState:
    """Process-wide mutable state of one server instance.

    Owned by the single event loop the MCP server runs on. Nothing here is
    locked: every mutation happens between awaits on that loop.
    """

    config: Config
    cache: MessageCache
    waiters: WaiterRegistry
    last_cursor: str | None = None
    backoff_until: float = 0.0
    last_hydrate_at: float = 0.0
    shutting_down: bool = False
    session: Any | None = None
    _background: set[asyncio.Task[None]] = field(default_factory=set)

    @classmethod
    def from_config(cls, config: Config) -> ServerState:
        cache = MessageCache(config.cache_path)
        return cls(
            config=config,
            cache=cache,
            waiters=WaiterRegistry(lambda: cache.version),
            last_cursor=config.since,
        )

    @property
    def version(self) -> int:
        return self.cache.version

    def hydrate_from_disk(self) -> None:
        """Load the cache file and resume from its newest message."""
        cursor = self.cache.load()
        self.last_cursor = cursor or self.config.since
        logger.info(
            "cache: hydrated %d message(s) from %s (cursor=%s)",
            len(self.cache),
            self.cache.path,
            self.last_cursor,
        )

    def handle_incoming(self, raw: Any) -> Message | None:
        message = Message.from_record(raw)
        if message is None:
            return None

        cursor = message.cursor
        if cursor is not None:
            self.last_cursor = cursor
        self.cache.add(message)
        logger.debug("incoming: id=%s time=%s version=%d", message.id, message.time, self.version)
        self.waiters.notify()

        if self.config.log_incoming:
            logger.info("incoming: %s", message.to_dict())
            self.send_client_log("info", {"message": "ntfy incoming", "payload": message.to_dict()})
        if self.session is not None:
            self._spawn(self._send_resource_updated())
        return message

    def messages_since_cursor(
        self, cursor: str | None, since_time: int | float | None = None
    ) -> list[dict[str, Any]]:
        return self.cache.since_cursor(cursor, since_time)

    def rate_limit_remaining(self) -> float:
        return max(0.0, self.backoff_until - now())

    def note_rate_limited(self) -> float:
        self.backoff_until = now() + self.config.hydrate_backoff_ms / 1000.0
        logger.warning("rate limited; hydration paused for %dms", self.config.hydrate_backoff_ms)
        return self.backoff_until

    def clear_backoff(self) -> None:
        self.backoff_until = 0.0

    def reset_for_topic(self, topic: str, base_url: str | None = None) -> None:
        self.config.topic = topic
        if base_url:
            self.config.base_url = normalize_base_url(base_url)
        self.cache.clear()
        self.last_cursor = self.config.since
        self.clear_backoff()
        self.last_hydrate_at = 0.0

    def send_client_log(self, level: str, data: Any) -> None:
        if self.session is None:
            return
        self._spawn(self._send_log(level, data))

    def _spawn(self, coro: Any) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _send_resource_updated(self) -> None:
        session = self.session
        if session is None:
            return
        try:
            await session.send_resource_updated(AnyUrl(INBOX_URI))
        except Exception as e:
            logger.debug("notify: resource update failed: %s", e)

    async def _send_log(self, level: str, data: Any) -> None:
        session = self.session
        if session is None:
            return
        try:
            await session.send_log_message(level=level, data=data, logger="ntfy-mcp")
        except Exception as e:
            logger.debug("notify: log message failed: %s", e)
