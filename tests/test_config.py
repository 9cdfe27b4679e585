from __future__ import annotations

import logging
from pathlib import Path

import pytest

from ntfy_mcp.config import Config, load_config
from ntfy_mcp.logs import clean_on_startup, configure_logging


def test_defaults(clean_env, tmp_path: Path) -> None:
    clean_env.setenv("NTFY_DATA_DIR", str(tmp_path))
    config = load_config()

    assert config.base_url == "https://ntfy.sh"
    assert config.topic == ""
    assert config.since == "0s"
    assert config.fetch_timeout_ms == 10000
    assert config.hydrate_backoff_ms == 2000
    assert config.clean_on_startup is False
    assert config.kill_existing is True
    assert config.cache_path == tmp_path / "messages.json"
    assert config.lock_path == tmp_path / "ntfy.lock"
    assert config.journal_path == tmp_path / "processes.json"
    assert config.debug_log_path == tmp_path / "debug.log"


def test_env_aliases_and_normalization(clean_env) -> None:
    clean_env.setenv("NTFY_SERVER", "https://ntfy.example/")
    clean_env.setenv("MCP_NTFY_TOPIC", "alerts")
    clean_env.setenv("MCP_NTFY_AUTH_TOKEN", "tok")
    clean_env.setenv("NTFY_LOG_INCOMING", "yes")
    clean_env.setenv("NTFY_HYDRATE_MIN_MS", "250")

    config = load_config()

    assert config.base_url == "https://ntfy.example"
    assert config.topic == "alerts"
    assert config.auth_token == "tok"
    assert config.log_incoming is True
    assert config.hydrate_min_ms == 250


def test_primary_names_win_over_aliases(clean_env) -> None:
    clean_env.setenv("NTFY_TOPIC", "primary")
    clean_env.setenv("MCP_NTFY_TOPIC", "alias")
    assert load_config().topic == "primary"


def test_overrides_win_and_none_is_ignored(clean_env) -> None:
    clean_env.setenv("NTFY_TOPIC", "from-env")
    config = load_config(topic="from-flag", base_url=None, since="10m")

    assert config.topic == "from-flag"
    assert config.base_url == "https://ntfy.sh"
    assert config.since == "10m"

    with pytest.raises(TypeError):
        load_config(colour="blue")


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("NTFY_FETCH_TIMEOUT_MS", "soon"),
        ("NTFY_FETCH_TIMEOUT_MS", "0"),
        ("NTFY_HYDRATE_BACKOFF_MS", "-1"),
        ("NTFY_KILL_EXISTING", "maybe"),
    ],
)
def test_invalid_env_values(clean_env, name: str, value: str) -> None:
    clean_env.setenv(name, value)
    with pytest.raises(ValueError):
        load_config()


def test_auth_headers() -> None:
    assert Config(auth_token="t").auth_headers() == {"Authorization": "Bearer t"}
    assert Config(username="u", password="p").auth_headers() == {"Authorization": "Basic dTpw"}
    assert Config(auth_token="t", username="u", password="p").auth_headers()[
        "Authorization"
    ].startswith("Bearer ")
    assert Config(username="u").auth_headers() == {}


def test_redacted_hides_secrets() -> None:
    redacted = Config(auth_token="secret", password="hunter2").redacted()
    assert "secret" not in str(redacted)
    assert "hunter2" not in str(redacted)
    assert redacted["has_auth_token"] is True


def test_cache_file_override(tmp_path: Path) -> None:
    config = Config(data_dir=str(tmp_path), cache_file=str(tmp_path / "elsewhere.json"))
    assert config.cache_path == (tmp_path / "elsewhere.json").resolve()


def test_clean_on_startup_resets_files(tmp_path: Path) -> None:
    config = Config(data_dir=str(tmp_path), clean_on_startup=True)
    config.debug_log_path.write_text("old log", encoding="utf-8")
    config.journal_path.write_text('[{"pid": 1}]', encoding="utf-8")
    config.cache_path.write_text('[{"id": "a"}]', encoding="utf-8")

    clean_on_startup(config)

    assert config.debug_log_path.read_text(encoding="utf-8") == ""
    assert config.journal_path.read_text(encoding="utf-8") == "[]"
    assert config.cache_path.read_text(encoding="utf-8") == "[]"


def test_clean_on_startup_disabled_keeps_files(tmp_path: Path) -> None:
    config = Config(data_dir=str(tmp_path))
    config.cache_path.write_text('[{"id": "a"}]', encoding="utf-8")

    clean_on_startup(config)

    assert config.cache_path.read_text(encoding="utf-8") == '[{"id": "a"}]'
    assert not config.journal_path.exists()


def test_configure_logging_writes_to_debug_log(tmp_path: Path) -> None:
    config = Config(data_dir=str(tmp_path / "data"))
    handler = configure_logging(config)
    try:
        logging.getLogger("ntfy_mcp.tests").info("hello from the tests")
        handler.flush()
        assert "hello from the tests" in config.debug_log_path.read_text(encoding="utf-8")
    finally:
        root = logging.getLogger("ntfy_mcp")
        root.removeHandler(handler)
        handler.close()
        root.propagate = True
