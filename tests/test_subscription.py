from __future__ import annotations

import asyncio
import json
from pathlib import Path

import httpx
import pytest

from ntfy_mcp.client import NtfyClient, TopicNotConfiguredError
from ntfy_mcp.config import Config
from ntfy_mcp.models import Message
from ntfy_mcp.state import ServerState
from ntfy_mcp.subscription import SubscriptionManager


def _line(**record) -> bytes:
    return json.dumps(record).encode("utf-8") + b"\n"


def _is_poll(request: httpx.Request) -> bool:
    return request.url.params.get("poll") == "1"


class Recorder:
    """MockTransport handler: answers polls with `latest` and streams with `stream_body`."""

    def __init__(self, *, latest: list[dict] | None = None, stream_body=None, status: int = 200):
        self.latest = latest or []
        self.stream_body = stream_body
        self.status = status
        self.polls: list[httpx.Request] = []
        self.streams: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if _is_poll(request):
            self.polls.append(request)
            text = "".join(json.dumps(r) + "\n" for r in self.latest)
            return httpx.Response(200, text=text)
        self.streams.append(request)
        if self.status != 200:
            return httpx.Response(self.status, text="error")
        body = self.stream_body() if callable(self.stream_body) else (self.stream_body or b"")
        return httpx.Response(200, content=body)


async def _blocking_body():
    yield _line(event="open", id="o1")
    await asyncio.Event().wait()


def _manager(tmp_path: Path, handler, *, on_fault=None, **kwargs) -> SubscriptionManager:
    kwargs.setdefault("topic", "alerts")
    kwargs.setdefault("base_url", "https://ntfy.example")
    config = Config(data_dir=str(tmp_path), **kwargs)
    state = ServerState.from_config(config)
    client = NtfyClient(config, transport=httpx.MockTransport(handler))
    return SubscriptionManager(state, client, on_fault=on_fault)


@pytest.mark.anyio
async def test_stream_delivers_messages_and_wakes_waiters(tmp_path):
    body = b"".join(
        [
            _line(event="open", id="o1"),
            _line(id="msg-1", time=123, event="message", message="hi", topic="alerts"),
        ]
    )
    handler = Recorder(latest=[{"id": "old-1", "event": "message"}], stream_body=body)
    manager = _manager(tmp_path, handler)
    state = manager.state

    waiter = asyncio.create_task(state.waiters.wait_for_new(0, timeout=5))
    await asyncio.sleep(0)

    task = manager.ensure()
    assert task is not None
    await task

    assert await waiter is True
    assert [m.id for m in state.cache.messages] == ["msg-1"]
    assert state.last_cursor == "msg-1"
    assert handler.streams[0].url.params["since"] == "old-1"
    saved = json.loads(state.cache.path.read_text(encoding="utf-8"))
    assert saved[0]["id"] == "msg-1"
    # Natural closure is not followed by a reconnect.
    assert not manager.active
    assert len(handler.streams) == 1
    await manager.client.aclose()


@pytest.mark.anyio
async def test_ensure_is_idempotent_and_switch_replaces(tmp_path):
    handler = Recorder(stream_body=_blocking_body)
    manager = _manager(tmp_path, handler)
    state = manager.state
    state.cache.add(Message(id="stale", time=1))

    first = manager.ensure()
    again = manager.ensure()
    assert first is again
    sub_id = manager.subscription_id
    await asyncio.sleep(0.05)
    assert len(handler.streams) == 1

    second = manager.switch_topic("other")
    assert second is not None and second is not first
    assert manager.subscription_id != sub_id
    assert state.config.topic == "other"
    assert len(state.cache) == 0
    assert state.last_cursor == state.config.since

    await asyncio.wait([first])
    assert first.cancelled()
    # The cancelled run must not clear the new subscription handle.
    assert manager.active
    assert manager.ensure() is second

    await asyncio.sleep(0.05)
    assert handler.streams[-1].url.path == "/other/json"

    await manager.aclose()
    assert second.done()
    assert not manager.active
    assert manager.ensure() is None
    await manager.client.aclose()


@pytest.mark.anyio
async def test_switch_topic_requires_topic(tmp_path):
    manager = _manager(tmp_path, Recorder())
    with pytest.raises(TopicNotConfiguredError):
        manager.switch_topic("")
    await manager.client.aclose()


@pytest.mark.anyio
async def test_ensure_without_topic_does_nothing(tmp_path):
    handler = Recorder()
    manager = _manager(tmp_path, handler, topic="")
    assert manager.ensure() is None
    assert not manager.active
    await manager.client.aclose()


@pytest.mark.anyio
async def test_rate_limit_pauses_new_subscriptions(tmp_path):
    handler = Recorder(status=429)
    manager = _manager(tmp_path, handler, hydrate_backoff_ms=5000)
    state = manager.state

    await manager.ensure()
    assert state.rate_limit_remaining() > 0
    assert not manager.active
    requests = len(handler.polls) + len(handler.streams)

    await manager.ensure()
    assert len(handler.polls) + len(handler.streams) == requests
    assert not manager.active
    await manager.client.aclose()


@pytest.mark.anyio
async def test_http_errors_end_the_run_without_fault(tmp_path):
    faults: list[BaseException] = []
    manager = _manager(tmp_path, Recorder(status=500), on_fault=faults.append)

    await manager.ensure()
    await asyncio.sleep(0)

    assert faults == []
    assert not manager.active
    await manager.client.aclose()


@pytest.mark.anyio
async def test_unexpected_errors_are_reported(tmp_path):
    faults: list[BaseException] = []

    def handler(request: httpx.Request) -> httpx.Response:
        raise KeyError("boom")

    manager = _manager(tmp_path, handler, on_fault=faults.append)
    task = manager.ensure()
    await asyncio.wait([task])
    await asyncio.sleep(0)

    assert len(faults) == 1
    assert isinstance(faults[0], KeyError)
    await manager.client.aclose()


@pytest.mark.anyio
async def test_starting_cursor_rules(tmp_path):
    manager = _manager(tmp_path, Recorder(), since="0s")
    state = manager.state

    for cursor in (None, "", "0s", "10m", "2h"):
        state.last_cursor = cursor
        assert manager._needs_starting_cursor()
        assert manager._stream_since() is None

    state.last_cursor = "1700000000"
    assert manager._needs_starting_cursor()
    assert manager._stream_since() is None
    state.cache.add(Message(id="x", time=1))
    assert not manager._needs_starting_cursor()

    state.last_cursor = "msg-1"
    assert not manager._needs_starting_cursor()
    assert manager._stream_since() == "msg-1"
    await manager.client.aclose()


@pytest.mark.anyio
async def test_hydrate_min_interval_skips_prefetch(tmp_path):
    handler = Recorder(latest=[{"id": "latest", "event": "message"}])
    manager = _manager(tmp_path, handler, hydrate_min_ms=60000)
    state = manager.state

    await manager.ensure()
    assert len(handler.polls) == 1
    assert state.last_cursor == "latest"

    state.last_cursor = state.config.since
    await manager.ensure()
    assert len(handler.polls) == 1
    assert len(handler.streams) == 2
    await manager.client.aclose()


@pytest.mark.anyio
async def test_timestamp_cursor_is_not_sent_to_the_stream(tmp_path):
    handler = Recorder(stream_body=_line(id="fresh", time=1700000001, event="message"))
    manager = _manager(tmp_path, handler)
    state = manager.state
    state.cache.add(Message(id="cached", time=1700000000))
    state.last_cursor = "1700000000"

    await manager.ensure()

    assert handler.polls == []
    assert "since" not in handler.streams[0].url.params
    assert [m.id for m in state.cache.messages] == ["fresh", "cached"]
    await manager.client.aclose()


@pytest.mark.anyio
async def test_id_cursor_resumes_the_stream(tmp_path):
    handler = Recorder()
    manager = _manager(tmp_path, handler)
    manager.state.last_cursor = "msg-7"

    await manager.ensure()

    assert handler.polls == []
    assert handler.streams[0].url.params["since"] == "msg-7"
    await manager.client.aclose()
