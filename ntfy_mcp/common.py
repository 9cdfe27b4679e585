from __future__ import annotations

import os
import time
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from mcp.types import CallToolResult, TextContent


class ErrorCode(StrEnum):
    TOPIC_NOT_CONFIGURED = "TOPIC_NOT_CONFIGURED"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    PUBLISH_FAILED = "PUBLISH_FAILED"
    RATE_LIMITED = "RATE_LIMITED"
    NETWORK_ERROR = "NETWORK_ERROR"


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def now() -> float:
    return time.time()


def iso_now() -> str:
    return datetime.now(UTC).isoformat()


def env_int(name: str, *, default: int, min_value: int | None = None) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as e:
            raise ValueError(f"{name} must be an int") from e
    if min_value is not None and value < min_value:
        raise ValueError(f"{name} must be >= {min_value}")
    return value


def env_str(name: str, *, default: str) -> str:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value


def env_bool(name: str, *, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean (true/false)")


def tool_ok(*, text: str, structured: dict[str, Any] | None = None) -> CallToolResult:
    payload: dict[str, Any] = {} if structured is None else dict(structured)
    return CallToolResult(
        content=[TextContent(type="text", text=text)],
        structuredContent=payload,
    )


def tool_error(
    *,
    code: ErrorCode,
    message: str,
    structured: dict[str, Any] | None = None,
) -> CallToolResult:
    payload: dict[str, Any] = {"error": {"code": str(code), "message": message}}
    if structured:
        payload.update(structured)
    return CallToolResult(
        content=[TextContent(type="text", text=message)],
        structuredContent=payload,
        isError=True,
    )
