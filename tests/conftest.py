from __future__ import annotations

import os

import pytest


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clean_env(monkeypatch):
    """Drop every ntfy-related variable so tests start from defaults."""
    for key in list(os.environ):
        if key.startswith(("NTFY_", "MCP_NTFY_")):
            monkeypatch.delenv(key, raising=False)
    return monkeypatch
