from __future__ import annotations

import logging
import os
import signal
from typing import Any, NoReturn

import click

from ntfy_mcp.cli import cli as cli_group
from ntfy_mcp.config import load_config
from ntfy_mcp.logs import clean_on_startup, configure_logging, log_startup_diagnostics
from ntfy_mcp.models import JournalStatus
from ntfy_mcp.supervisor import LockHeldError, OrphanTerminationError, ProcessSupervisor

logger = logging.getLogger(__name__)


def _raise_interrupt(signum: int, frame: Any) -> None:
    raise KeyboardInterrupt


def run_server(overrides: dict[str, Any], *, verbose: bool = False) -> None:
    """Start the stdio MCP server under single-instance supervision."""
    try:
        config = load_config(**overrides)
    except ValueError as e:
        raise click.ClickException(str(e)) from None

    configure_logging(config, verbose=verbose)
    log_startup_diagnostics(config)

    supervisor = ProcessSupervisor(config)
    supervisor.kill_existing_instances()
    clean_on_startup(config)

    def _exit(status: JournalStatus, code: int) -> NoReturn:
        supervisor.finalize(status)
        logger.info("shutdown: exiting code=%d", code)
        logging.shutdown()
        os._exit(code)

    def _on_fault(exc: BaseException) -> None:
        logger.critical("fatal: unhandled error in background task: %r", exc)
        _exit("crashed", 1)

    def _on_stop(status: JournalStatus) -> None:
        _exit(status, 0)

    from ntfy_mcp import server

    state = server.configure(config, on_fault=_on_fault, on_stop=_on_stop)
    state.hydrate_from_disk()

    try:
        supervisor.start()
    except (LockHeldError, OrphanTerminationError) as e:
        logger.error("startup: %s", e)
        raise click.ClickException(f"{e} Exiting.") from None

    # Covers the window before the event loop installs its own handlers.
    signal.signal(signal.SIGTERM, _raise_interrupt)
    logger.info("startup: pid=%d serving topic=%s", supervisor.pid, config.topic or "(none)")

    status: JournalStatus = "crashed"
    try:
        server.mcp.run(transport="stdio")
        status = "stopped"
    except KeyboardInterrupt:
        _exit("stopped", 0)
    finally:
        supervisor.finalize(status)


@click.group(invoke_without_command=True)
@click.option("--topic", default=None, help="ntfy topic (defaults to $NTFY_TOPIC).")
@click.option(
    "--base-url",
    "--server",
    "base_url",
    default=None,
    help="ntfy server URL (defaults to $NTFY_BASE_URL or https://ntfy.sh).",
)
@click.option("--auth-token", default=None, help="Bearer token for protected topics.")
@click.option("--username", default=None, help="Basic auth username.")
@click.option("--password", default=None, help="Basic auth password.")
@click.option("--since", default=None, help="Initial backlog cursor (default 0s).")
@click.option("--log-incoming", is_flag=True, help="Log every inbound message.")
@click.option("--fetch-timeout-ms", type=int, default=None, help="HTTP connect/request timeout.")
@click.option("--hydrate-min-ms", type=int, default=None, help="Minimum interval between fetches.")
@click.option("--hydrate-backoff-ms", type=int, default=None, help="Backoff after HTTP 429.")
@click.option(
    "--data-dir",
    default=None,
    help="Directory for cache, lock, journal and log (defaults to $NTFY_DATA_DIR or ~/.ntfy_mcp).",
)
@click.option("--verbose", "-v", is_flag=True, help="Debug-level logging.")
@click.pass_context
def main(
    ctx: click.Context,
    *,
    log_incoming: bool,
    verbose: bool,
    **options: Any,
) -> None:
    """ntfy MCP server (stdio) and administrative CLI."""
    if ctx.invoked_subcommand is not None:
        return
    if log_incoming:
        options["log_incoming"] = True
    run_server(options, verbose=verbose)


main.add_command(cli_group, name="cli")
