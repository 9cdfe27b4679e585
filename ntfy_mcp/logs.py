from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

from ntfy_mcp.config import Config
from ntfy_mcp.supervisor import ProcessJournal

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(config: Config, *, verbose: bool = False) -> logging.Handler:
    """Route the `ntfy_mcp` loggers to the debug log file.

    stdout carries the MCP protocol, so nothing is ever logged there; if the log
    file cannot be opened, records go to stderr instead.
    """
    path = config.debug_log_path
    handler: logging.Handler
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8")
    except OSError:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger("ntfy_mcp")
    for existing in list(root.handlers):
        root.removeHandler(existing)
        existing.close()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.propagate = False
    return handler


def log_startup_diagnostics(config: Config) -> None:
    env_keys = sorted(k for k in os.environ if k.startswith(("NTFY_", "MCP_NTFY_")))
    logger.info("env: ntfy variables present: %s", ", ".join(env_keys) or "(none)")
    logger.info("config: %s", config.redacted())
    if not config.topic:
        logger.warning("config: no topic configured; set NTFY_TOPIC or call set-ntfy-topic")


def truncate_file(path: Path, content: str = "") -> bool:
    if not path.exists():
        return False
    try:
        path.write_text(content, encoding="utf-8")
    except OSError as e:
        logger.warning("clean: failed to reset %s: %s", path, e)
        return False
    return True


def clean_on_startup(config: Config) -> None:
    """Reset the debug log, process journal and message cache."""
    if not config.clean_on_startup:
        logger.debug("clean: skipped (NTFY_CLEAN_ON_STARTUP=false)")
        return
    cleared = {
        "debug_log": truncate_file(config.debug_log_path),
        "journal": ProcessJournal(config.journal_path).reset(),
        "cache": truncate_file(config.cache_path, "[]"),
    }
    logger.info("clean: complete %s", cleared)
