from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import quote

import httpx

from ntfy_mcp.config import Config

QUICK_FETCH_TIMEOUT_S = 5.0

logger = logging.getLogger(__name__)


class NtfyError(RuntimeError):
    pass


class TopicNotConfiguredError(NtfyError):
    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message or "Topic not configured. Set NTFY_TOPIC or call set-ntfy-topic first."
        )


class PublishError(NtfyError):
    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"ntfy publish failed ({status_code}): {body}")
        self.status_code = status_code
        self.body = body


class FetchError(NtfyError):
    def __init__(self, status_code: int, reason: str) -> None:
        super().__init__(f"Failed to fetch ntfy messages ({status_code}): {reason}")
        self.status_code = status_code


class RateLimitedError(NtfyError):
    def __init__(self, retry_after_s: float) -> None:
        super().__init__(f"Rate limited, retry after {max(1, round(retry_after_s))}s")
        self.retry_after_s = retry_after_s


class LineDecoder:
    """Incremental newline-delimited decoder.

    Bytes may split anywhere, including inside a UTF-8 sequence; the trailing
    partial line is kept until the next `feed()`.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return [line for line in lines if line.strip()]

    def flush(self) -> list[str]:
        rest = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return [rest] if rest.strip() else []


def parse_line(line: str) -> Any | None:
    try:
        return json.loads(line.strip())
    except ValueError as e:
        logger.debug("stream: dropping malformed line %r: %s", line[:200], e)
        return None


class NtfyClient:
    def __init__(
        self, config: Config, *, transport: httpx.AsyncBaseTransport | None = None
    ) -> None:
        self.config = config
        if transport is None and config.force_ipv4:
            transport = httpx.AsyncHTTPTransport(local_address="0.0.0.0")
        self._http = httpx.AsyncClient(transport=transport)

    @property
    def fetch_timeout_s(self) -> float:
        return self.config.fetch_timeout_ms / 1000.0

    def topic_url(self, topic: str) -> str:
        return f"{self.config.base_url}/{quote(topic, safe='')}"

    def json_url(self, topic: str) -> str:
        return f"{self.topic_url(topic)}/json"

    async def publish(
        self,
        *,
        topic: str,
        message: str,
        title: str | None = None,
        priority: int | None = None,
        tags: list[str] | None = None,
        attach: str | None = None,
    ) -> dict[str, Any]:
        if not topic:
            raise TopicNotConfiguredError()

        headers = {"Content-Type": "text/plain", **self.config.auth_headers()}
        if title:
            headers["Title"] = title
        if priority:
            headers["Priority"] = str(priority)
        if tags:
            headers["Tags"] = ",".join(tags)
        if attach:
            headers["Attach"] = attach

        response = await self._http.post(
            self.topic_url(topic),
            content=message.encode("utf-8"),
            headers=headers,
            timeout=self.fetch_timeout_s,
        )
        if response.is_error:
            raise PublishError(response.status_code, response.text)
        try:
            data = response.json()
        except ValueError:
            return {"status": "sent"}
        return data if isinstance(data, dict) else {"status": "sent"}

    async def fetch_latest(self, topic: str, *, since: str = "1h", limit: int = 1) -> list[Any]:
        """One-shot poll of cached messages; does not hold the connection open."""
        if not topic:
            raise TopicNotConfiguredError()
        response = await self._http.get(
            self.json_url(topic),
            params={"poll": "1", "since": since, "limit": str(limit)},
            headers=self.config.auth_headers(),
            timeout=QUICK_FETCH_TIMEOUT_S,
        )
        self._raise_for_status(response)
        records = []
        for line in response.text.split("\n"):
            if not line.strip():
                continue
            record = parse_line(line)
            if record is not None:
                records.append(record)
        return records

    async def stream(self, topic: str, *, since: str | None = None) -> AsyncIterator[Any]:
        """Yield decoded JSON records from a long-lived subscription.

        There is no read timeout: ntfy pushes events as they happen and the
        connection may stay idle indefinitely. The iterator ends when the server
        closes the stream.
        """
        if not topic:
            raise TopicNotConfiguredError()
        params = {"since": since} if since else None
        timeout = httpx.Timeout(self.fetch_timeout_s, read=None)
        async with self._http.stream(
            "GET",
            self.json_url(topic),
            params=params,
            headers=self.config.auth_headers(),
            timeout=timeout,
        ) as response:
            if response.is_error:
                await response.aread()
                self._raise_for_status(response)
            decoder = LineDecoder()
            async for chunk in response.aiter_bytes():
                for line in decoder.feed(chunk):
                    record = parse_line(line)
                    if record is not None:
                        yield record
            for line in decoder.flush():
                record = parse_line(line)
                if record is not None:
                    yield record

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code == 429:
            raise RateLimitedError(self.config.hydrate_backoff_ms / 1000.0)
        if response.is_error:
            raise FetchError(response.status_code, response.reason_phrase or response.text)

    async def aclose(self) -> None:
        await self._http.aclose()
