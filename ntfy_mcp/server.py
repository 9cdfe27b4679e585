from __future__ import annotations

import asyncio
import json
import logging
import math
import signal
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Annotated, Any

import httpx
from mcp.server.fastmcp import FastMCP
from mcp.types import CallToolResult
from pydantic import Field

from ntfy_mcp.client import NtfyClient, NtfyError, PublishError, RateLimitedError
from ntfy_mcp.common import ErrorCode, now, tool_error, tool_ok
from ntfy_mcp.config import Config
from ntfy_mcp.models import JournalStatus
from ntfy_mcp.state import INBOX_URI, ServerState
from ntfy_mcp.subscription import SubscriptionManager
from ntfy_mcp.tool_schemas import PingOutput, SendOutput, SetTopicOutput, WaitAndReadOutput

# Keep one wait-and-read call under the ~60s request timeout of MCP clients.
MAX_WAIT_MS = 55000

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)

logger = logging.getLogger(__name__)


def _install_signal_handlers() -> list[signal.Signals]:
    if on_shutdown is None:
        return []
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in SHUTDOWN_SIGNALS:
        try:
            loop.add_signal_handler(sig, _on_signal, sig)
        except (NotImplementedError, RuntimeError, ValueError) as e:
            logger.debug("shutdown: cannot handle %s on this loop: %s", sig.name, e)
            continue
        installed.append(sig)
    return installed


def _on_signal(sig: signal.Signals) -> None:
    global _shutdown_task
    if _shutdown_task is not None:
        return
    logger.info("shutdown: received %s", sig.name)
    _shutdown_task = asyncio.get_running_loop().create_task(shutdown())


async def shutdown() -> None:
    """Tear down the subscription and HTTP client, then hand over to `on_shutdown`.

    The hook finalizes the process journal and exits; the stdio reader thread
    would otherwise keep the interpreter alive.
    """
    try:
        await manager.aclose()
        await client.aclose()
    except Exception:
        logger.exception("shutdown: teardown failed")
    if on_shutdown is not None:
        on_shutdown("stopped")


@asynccontextmanager
async def _lifespan(app: FastMCP) -> AsyncIterator[None]:
    signals = _install_signal_handlers()
    if state.config.topic:
        manager.ensure()
    else:
        logger.warning("startup: no topic configured; subscription not started")
    logger.info("lifespan: ready signals=%s", [s.name for s in signals])
    try:
        yield
    finally:
        loop = asyncio.get_running_loop()
        for sig in signals:
            loop.remove_signal_handler(sig)
        await manager.aclose()
        await client.aclose()


mcp = FastMCP(
    name="ntfy-mcp",
    instructions=(
        "Send and receive messages through an ntfy topic. The server keeps one streaming "
        "subscription to the configured topic and caches the 50 most recent messages. "
        "Use send-ntfy to publish (optional title, priority 1-5, tags, attach_url), then "
        "wait-and-read-inbox(delay_seconds=..., max_tries=...) to wait for a reply; check "
        "new_count > 0 before relying on a response. Use set-ntfy-topic to change topic "
        "without restarting. Read the ntfy://inbox resource for the cached messages. "
        "Configure the topic with NTFY_TOPIC (and NTFY_BASE_URL, NTFY_AUTH_TOKEN or "
        "NTFY_USERNAME/NTFY_PASSWORD for protected servers)."
    ),
    lifespan=_lifespan,
)

state: ServerState
client: NtfyClient
manager: SubscriptionManager
on_shutdown: Callable[[JournalStatus], None] | None = None
_shutdown_task: asyncio.Task[None] | None = None


def configure(
    config: Config,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    on_fault: Callable[[BaseException], None] | None = None,
    on_stop: Callable[[JournalStatus], None] | None = None,
) -> ServerState:
    """(Re)build the server state, HTTP client and subscription manager.

    `on_stop` receives the final journal status once a shutdown signal has
    been handled; signal handlers are only installed when it is given.
    """
    global state, client, manager, on_shutdown, _shutdown_task
    on_shutdown = on_stop
    _shutdown_task = None
    state = ServerState.from_config(config)
    client = NtfyClient(config, transport=transport)
    manager = SubscriptionManager(state, client, on_fault=on_fault)
    return state


configure(Config())


def _remember_session() -> None:
    # Background tasks need a session to push notifications; grab it from any request.
    try:
        session = mcp.get_context().session
    except (ValueError, LookupError):
        return
    state.session = session


def _topic_missing() -> CallToolResult:
    return tool_error(
        code=ErrorCode.TOPIC_NOT_CONFIGURED,
        message="Topic not configured. Set NTFY_TOPIC or call set-ntfy-topic first.",
    )


def _is_http_url(value: object) -> bool:
    if not isinstance(value, str):
        return False
    try:
        url = httpx.URL(value)
    except (httpx.InvalidURL, TypeError):
        return False
    return url.scheme in {"http", "https"} and bool(url.host)


@mcp.tool(description="Health check for the ntfy MCP server.")
def ping() -> Annotated[CallToolResult, PingOutput]:
    """Health check for the ntfy MCP server."""
    return tool_ok(
        text="pong",
        structured={
            "ok": True,
            "topic": state.config.topic or None,
            "subscribed": manager.active,
            "version": state.version,
        },
    )


@mcp.tool(
    name="send-ntfy",
    description=(
        "Publish a message to the configured ntfy topic. Supports optional title, priority "
        "(1-5), tags and attach_url. After sending, use wait-and-read-inbox to wait for replies."
    ),
)
async def send_ntfy(
    message: str,
    title: str | None = None,
    priority: int | None = None,
    tags: list[str] | None = None,
    attach_url: str | None = None,
    topic: Annotated[
        str | None,
        Field(description="Topic to publish to (defaults to the configured topic)."),
    ] = None,
) -> Annotated[CallToolResult, SendOutput]:
    """Publish one message to an ntfy topic."""
    _remember_session()
    target = topic or state.config.topic
    if not target:
        return _topic_missing()
    if not isinstance(message, str) or not message:
        return tool_error(
            code=ErrorCode.INVALID_ARGUMENT, message="message must be a non-empty string"
        )
    if priority is not None and (
        isinstance(priority, bool) or not isinstance(priority, int) or not 1 <= priority <= 5
    ):
        return tool_error(
            code=ErrorCode.INVALID_ARGUMENT, message="priority must be an int between 1 and 5"
        )
    if tags is not None and (
        not isinstance(tags, list) or not all(isinstance(t, str) for t in tags)
    ):
        return tool_error(code=ErrorCode.INVALID_ARGUMENT, message="tags must be a list of strings")
    if attach_url is not None and not _is_http_url(attach_url):
        return tool_error(
            code=ErrorCode.INVALID_ARGUMENT, message="attach_url must be an http(s) URL"
        )

    try:
        result = await client.publish(
            topic=target,
            message=message,
            title=title,
            priority=priority,
            tags=tags,
            attach=attach_url,
        )
    except PublishError as e:
        limited = e.status_code == 429
        return tool_error(
            code=ErrorCode.RATE_LIMITED if limited else ErrorCode.PUBLISH_FAILED,
            message=str(e),
            structured={"status_code": e.status_code},
        )
    except (httpx.HTTPError, NtfyError) as e:
        return tool_error(code=ErrorCode.NETWORK_ERROR, message=f"ntfy publish failed: {e}")

    msg_id = result.get("id")
    msg_time = result.get("time")
    text = f"Sent message to {target}" + (f" (title: {title})" if title else "")
    return tool_ok(
        text=text,
        structured={
            "topic": target,
            "id": msg_id if isinstance(msg_id, str) else None,
            "time": msg_time if isinstance(msg_time, int) else None,
            "status": f"Sent to {target}",
            "priority": priority,
        },
    )


@mcp.tool(
    name="set-ntfy-topic",
    description="Change the ntfy topic (and optionally server) for this session; no restart.",
)
async def set_ntfy_topic(
    topic: str, base_url: str | None = None
) -> Annotated[CallToolResult, SetTopicOutput]:
    """Switch topic. Clears the cache and restarts the subscription."""
    _remember_session()
    if not isinstance(topic, str) or not topic.strip():
        return tool_error(
            code=ErrorCode.INVALID_ARGUMENT, message="topic must be a non-empty string"
        )
    if base_url is not None and not _is_http_url(base_url):
        return tool_error(
            code=ErrorCode.INVALID_ARGUMENT, message="base_url must be an http(s) URL"
        )

    manager.switch_topic(topic.strip(), base_url)
    config = state.config
    return tool_ok(
        text=f"Switched ntfy topic to {config.topic} at {config.base_url}",
        structured={"topic": config.topic, "base_url": config.base_url},
    )


@mcp.tool(
    name="wait-and-read-inbox",
    description=(
        "Wait for new messages on the configured topic and return any that arrived. Uses the "
        "existing subscription (starting it if needed). Check new_count > 0 before proceeding "
        "with work that needs a reply. Total wait is capped at ~55s per call."
    ),
)
async def wait_and_read_inbox(
    delay_seconds: int = 20,
    max_tries: int = 1,
    since: Annotated[
        str | None, Field(description="Cursor (message id) to read after.")
    ] = None,
    since_time: Annotated[
        float | None, Field(description="Unix timestamp; keep messages with time >= since_time.")
    ] = None,
    since_now: Annotated[
        bool, Field(description="If true, keep only messages sent after this call started.")
    ] = True,
) -> Annotated[CallToolResult, WaitAndReadOutput]:
    """Block until the cache version advances (or the wait runs out), then read."""
    _remember_session()
    started_at = now()
    if not state.config.topic:
        return _topic_missing()
    if isinstance(delay_seconds, bool) or not isinstance(delay_seconds, int) or not (
        1 <= delay_seconds <= 600
    ):
        return tool_error(
            code=ErrorCode.INVALID_ARGUMENT, message="delay_seconds must be an int in 1..600"
        )
    if isinstance(max_tries, bool) or not isinstance(max_tries, int) or not 1 <= max_tries <= 10:
        return tool_error(
            code=ErrorCode.INVALID_ARGUMENT, message="max_tries must be an int in 1..10"
        )

    if since:
        state.last_cursor = since

    delay_ms = min(delay_seconds * 1000, MAX_WAIT_MS)
    effective_tries = max(1, min(max_tries, MAX_WAIT_MS // delay_ms))

    if not manager.active:
        manager.ensure()
        logger.debug("wait: started subscription id=%s", manager.subscription_id)

    baseline_version = state.version
    baseline_cursor = state.last_cursor
    attempts = 0
    for _ in range(effective_tries):
        attempts += 1
        if await state.waiters.wait_for_new(baseline_version, delay_ms / 1000.0):
            break

    if since_time is not None:
        messages = state.messages_since_cursor(baseline_cursor, since_time)
    elif since_now:
        messages = state.messages_since_cursor(baseline_cursor, math.floor(started_at))
    else:
        messages = state.messages_since_cursor(baseline_cursor)

    if messages:
        text = f"Found {len(messages)} new message(s) after {attempts} attempt(s)."
    else:
        waited = attempts * delay_ms // 1000
        text = f"No new messages after {attempts} attempt(s). Total wait ~{waited}s."
        remaining = state.rate_limit_remaining()
        if remaining > 0:
            text += f" Note: {RateLimitedError(remaining)}."
    return tool_ok(
        text=text,
        structured={
            "attempts": attempts,
            "new_count": len(messages),
            "last_cursor": state.last_cursor or None,
            "messages": messages,
        },
    )


@mcp.resource(
    INBOX_URI,
    name="inbox",
    title="ntfy inbox",
    description="Latest cached messages for the configured topic (JSON).",
    mime_type="application/json",
)
async def inbox() -> str:
    """Cached messages; re-arms the subscription if it is not running."""
    _remember_session()
    config = state.config
    payload: dict[str, Any]
    if not config.topic:
        payload = {
            "topic": None,
            "base_url": config.base_url,
            "messages": [],
            "error": "Topic not configured. Set one via set-ntfy-topic first.",
        }
    else:
        manager.ensure()
        payload = {
            "topic": config.topic,
            "base_url": config.base_url,
            "messages": [m.to_dict() for m in state.cache.messages],
        }
    return json.dumps(payload, indent=2)
