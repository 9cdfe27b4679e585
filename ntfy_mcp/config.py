from __future__ import annotations

import base64
from dataclasses import dataclass, field
from pathlib import Path

from ntfy_mcp.common import env_bool, env_int, env_str

DEFAULT_BASE_URL = "https://ntfy.sh"
DEFAULT_SINCE = "0s"
DEFAULT_FETCH_TIMEOUT_MS = 10000
DEFAULT_HYDRATE_MIN_MS = 0
DEFAULT_HYDRATE_BACKOFF_MS = 2000
CACHE_CAPACITY = 50


def _default_data_dir() -> str:
    return str(Path("~/.ntfy_mcp").expanduser())


def normalize_base_url(value: str) -> str:
    return value[:-1] if value.endswith("/") else value


def _first_env(*names: str, default: str) -> str:
    for name in names:
        value = env_str(name, default="")
        if value:
            return value
    return default


@dataclass(slots=True)
class Config:
    """Runtime configuration.

    `topic` and `base_url` are mutated in place when the topic is switched; every
    other field is fixed for the lifetime of the process.
    """

    base_url: str = DEFAULT_BASE_URL
    topic: str = ""
    auth_token: str = ""
    username: str = ""
    password: str = ""
    since: str = DEFAULT_SINCE
    fetch_timeout_ms: int = DEFAULT_FETCH_TIMEOUT_MS
    hydrate_min_ms: int = DEFAULT_HYDRATE_MIN_MS
    hydrate_backoff_ms: int = DEFAULT_HYDRATE_BACKOFF_MS
    log_incoming: bool = False
    clean_on_startup: bool = False
    kill_existing: bool = True
    force_ipv4: bool = True
    data_dir: str = field(default_factory=_default_data_dir)
    cache_file: str | None = None

    def __post_init__(self) -> None:
        self.base_url = normalize_base_url(self.base_url)
        self.data_dir = str(Path(self.data_dir).expanduser())

    @property
    def cache_path(self) -> Path:
        if self.cache_file:
            return Path(self.cache_file).expanduser().resolve()
        return Path(self.data_dir) / "messages.json"

    @property
    def lock_path(self) -> Path:
        return Path(self.data_dir) / "ntfy.lock"

    @property
    def journal_path(self) -> Path:
        return Path(self.data_dir) / "processes.json"

    @property
    def debug_log_path(self) -> Path:
        return Path(self.data_dir) / "debug.log"

    def auth_headers(self) -> dict[str, str]:
        if self.auth_token:
            return {"Authorization": f"Bearer {self.auth_token}"}
        if self.username and self.password:
            raw = f"{self.username}:{self.password}".encode()
            return {"Authorization": f"Basic {base64.b64encode(raw).decode('ascii')}"}
        return {}

    def redacted(self) -> dict[str, object]:
        return {
            "topic": self.topic or "(empty)",
            "base_url": self.base_url,
            "has_auth_token": bool(self.auth_token),
            "has_username": bool(self.username),
            "since": self.since,
            "fetch_timeout_ms": self.fetch_timeout_ms,
            "hydrate_min_ms": self.hydrate_min_ms,
            "hydrate_backoff_ms": self.hydrate_backoff_ms,
            "log_incoming": self.log_incoming,
            "clean_on_startup": self.clean_on_startup,
            "kill_existing": self.kill_existing,
            "data_dir": self.data_dir,
            "cache_path": str(self.cache_path),
        }


def load_config(**overrides: object) -> Config:
    """Build a Config from environment variables.

    Keyword overrides (typically CLI flags) win over the environment; `None`
    values are ignored so unset flags fall through.
    """
    config = Config(
        base_url=_first_env("NTFY_BASE_URL", "NTFY_SERVER", default=DEFAULT_BASE_URL),
        topic=_first_env("NTFY_TOPIC", "MCP_NTFY_TOPIC", default=""),
        auth_token=_first_env("NTFY_AUTH_TOKEN", "MCP_NTFY_AUTH_TOKEN", default=""),
        username=env_str("NTFY_USERNAME", default=""),
        password=env_str("NTFY_PASSWORD", default=""),
        since=env_str("NTFY_SINCE", default=DEFAULT_SINCE),
        fetch_timeout_ms=env_int(
            "NTFY_FETCH_TIMEOUT_MS", default=DEFAULT_FETCH_TIMEOUT_MS, min_value=1
        ),
        hydrate_min_ms=env_int("NTFY_HYDRATE_MIN_MS", default=DEFAULT_HYDRATE_MIN_MS, min_value=0),
        hydrate_backoff_ms=env_int(
            "NTFY_HYDRATE_BACKOFF_MS", default=DEFAULT_HYDRATE_BACKOFF_MS, min_value=0
        ),
        log_incoming=env_bool("NTFY_LOG_INCOMING", default=False),
        clean_on_startup=env_bool("NTFY_CLEAN_ON_STARTUP", default=False),
        kill_existing=env_bool("NTFY_KILL_EXISTING", default=True),
        force_ipv4=env_bool("NTFY_FORCE_IPV4", default=True),
        data_dir=env_str("NTFY_DATA_DIR", default=_default_data_dir()),
        cache_file=env_str("NTFY_CACHE_FILE", default="") or None,
    )
    for name, value in overrides.items():
        if value is None:
            continue
        if not hasattr(config, name):
            raise TypeError(f"Unknown config option: {name}")
        setattr(config, name, value)
    config.__post_init__()
    return config
