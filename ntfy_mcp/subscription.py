from __future__ import annotations

import asyncio
import logging
import re
import uuid
from collections.abc import Callable

import httpx

from ntfy_mcp.client import NtfyClient, NtfyError, RateLimitedError, TopicNotConfiguredError
from ntfy_mcp.common import now
from ntfy_mcp.state import ServerState

DURATION_CURSOR = re.compile(r"^\d+[smhd]$")
TIMESTAMP_CURSOR = re.compile(r"^\d+$")

logger = logging.getLogger(__name__)


class SubscriptionManager:
    """Owns the single streaming connection to the current topic.

    A subscription that ends on its own (server closed the stream, network
    error) is not restarted here; callers re-arm it with `ensure()`.
    """

    def __init__(
        self,
        state: ServerState,
        client: NtfyClient,
        *,
        on_fault: Callable[[BaseException], None] | None = None,
    ) -> None:
        self.state = state
        self.client = client
        self.on_fault = on_fault
        self._task: asyncio.Task[None] | None = None
        self._subscription_id: str | None = None
        self._target: tuple[str, str] | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def active(self) -> bool:
        return self._task is not None

    @property
    def subscription_id(self) -> str | None:
        return self._subscription_id

    def ensure(self) -> asyncio.Task[None] | None:
        config = self.state.config
        if not config.topic or self.state.shutting_down:
            return None
        target = (config.base_url, config.topic)
        if self._task is not None and self._target == target:
            logger.debug(
                "subscribe: already running topic=%s id=%s", config.topic, self._subscription_id
            )
            return self._task

        self.stop()
        sub_id = uuid.uuid4().hex
        self._subscription_id = sub_id
        self._target = target
        task = asyncio.get_running_loop().create_task(
            self._run(sub_id), name=f"ntfy-subscription-{sub_id[:8]}"
        )
        self._task = task
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.info("subscribe: started topic=%s id=%s", config.topic, sub_id)
        return task

    def stop(self) -> None:
        task = self._task
        if task is None:
            return
        logger.info("subscribe: stopping id=%s", self._subscription_id)
        self._task = None
        self._subscription_id = None
        self._target = None
        task.cancel()

    async def aclose(self) -> None:
        self.state.shutting_down = True
        self.stop()
        pending = [t for t in self._tasks if not t.done()]
        if pending:
            await asyncio.wait(pending)

    def switch_topic(self, topic: str, base_url: str | None = None) -> asyncio.Task[None] | None:
        if not topic:
            raise TopicNotConfiguredError("Topic is required")
        self.state.reset_for_topic(topic, base_url)
        self.stop()
        logger.info("topic: switched to %s at %s", topic, self.state.config.base_url)
        return self.ensure()

    def _is_current(self, sub_id: str) -> bool:
        return self._subscription_id == sub_id

    def _needs_starting_cursor(self) -> bool:
        cursor = self.state.last_cursor
        if not cursor or cursor == self.state.config.since or DURATION_CURSOR.match(cursor):
            return True
        return bool(TIMESTAMP_CURSOR.match(cursor)) and len(self.state.cache) == 0

    def _stream_since(self) -> str | None:
        """Only a message id resumes the stream.

        A bare timestamp would make the server resend messages already cached at
        that second, and durations or the configured default replay the backlog.
        """
        cursor = self.state.last_cursor
        if not cursor or cursor == self.state.config.since:
            return None
        if DURATION_CURSOR.match(cursor) or TIMESTAMP_CURSOR.match(cursor):
            return None
        return cursor

    async def _fetch_starting_cursor(self, topic: str, sub_id: str) -> None:
        """Adopt the newest message id so the stream does not replay the backlog."""
        state = self.state
        min_interval = state.config.hydrate_min_ms / 1000.0
        if min_interval > 0 and now() - state.last_hydrate_at < min_interval:
            logger.debug("subscribe: skipping latest-id fetch (hydrated recently)")
            return
        try:
            records = await self.client.fetch_latest(topic, since="1h", limit=1)
        except RateLimitedError:
            raise
        except (httpx.HTTPError, NtfyError) as e:
            logger.info("subscribe: latest-id fetch failed topic=%s: %s", topic, e)
            return
        finally:
            state.last_hydrate_at = now()

        for record in reversed(records):
            if isinstance(record, dict) and isinstance(record.get("id"), str) and record["id"]:
                if self._is_current(sub_id):
                    state.last_cursor = record["id"]
                    logger.info("subscribe: starting from latest id=%s", record["id"])
                return

    async def _run(self, sub_id: str) -> None:
        state = self.state
        topic = state.config.topic
        remaining = state.rate_limit_remaining()
        if remaining > 0:
            logger.warning("subscribe: %s", RateLimitedError(remaining))
            self._release(sub_id)
            return

        received = 0
        try:
            if self._needs_starting_cursor():
                await self._fetch_starting_cursor(topic, sub_id)
            since = self._stream_since()
            logger.info("subscribe: connecting topic=%s since=%s id=%s", topic, since, sub_id)
            async for record in self.client.stream(topic, since=since):
                if not self._is_current(sub_id):
                    break
                if state.handle_incoming(record) is not None:
                    received += 1
            state.clear_backoff()
            logger.info(
                "subscribe: connection closed topic=%s received=%d cursor=%s",
                topic,
                received,
                state.last_cursor,
            )
        except asyncio.CancelledError:
            logger.debug("subscribe: aborted id=%s received=%d", sub_id, received)
            raise
        except RateLimitedError as e:
            state.note_rate_limited()
            logger.warning("subscribe: %s", e)
            state.send_client_log("warning", {"message": "ntfy rate limited", "error": str(e)})
        except (httpx.HTTPError, NtfyError) as e:
            logger.warning("subscribe: stream failed topic=%s: %r", topic, e)
            state.send_client_log(
                "warning", {"message": "ntfy subscription failed", "error": str(e)}
            )
        finally:
            self._release(sub_id)

    def _release(self, sub_id: str) -> None:
        if self._is_current(sub_id):
            logger.debug("subscribe: cleanup id=%s", sub_id)
            self._task = None
            self._subscription_id = None
            self._target = None
        else:
            logger.debug(
                "subscribe: cleanup skipped id=%s current=%s", sub_id, self._subscription_id
            )

    def _on_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        logger.error("subscribe: task crashed", exc_info=exc)
        if self.on_fault is not None:
            self.on_fault(exc)
