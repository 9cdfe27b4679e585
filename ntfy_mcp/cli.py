from __future__ import annotations

import json
from typing import Any

import anyio
import click

from ntfy_mcp.cache import MessageCache
from ntfy_mcp.client import NtfyClient, NtfyError
from ntfy_mcp.config import Config, load_config
from ntfy_mcp.models import Message
from ntfy_mcp.supervisor import InstanceLock, ProcessJournal, is_process_alive


@click.group()
@click.option(
    "--data-dir",
    default=None,
    help="Data directory (defaults to $NTFY_DATA_DIR or ~/.ntfy_mcp).",
)
@click.pass_context
def cli(ctx: click.Context, data_dir: str | None) -> None:
    """Administrative CLI for the ntfy MCP server."""
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir


def _config(ctx: click.Context, **overrides: Any) -> Config:
    data_dir = None
    if ctx.obj:
        data_dir = ctx.obj.get("data_dir")
    try:
        return load_config(data_dir=data_dir, **overrides)
    except ValueError as e:
        raise click.ClickException(str(e)) from None


def _running_server_pid(config: Config) -> int | None:
    holder = InstanceLock(config.lock_path, pid=0).read_holder()
    if holder is not None and is_process_alive(holder):
        return holder
    return None


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, ensure_ascii=True, sort_keys=True, indent=2))


def _message_line(m: dict[str, Any]) -> str:
    title = f" [{m['title']}]" if m.get("title") else ""
    body = str(m.get("message") or "").splitlines()
    preview = body[0][:80] if body else ""
    return f"- {m.get('time')} id={m.get('id')}{title}: {preview}"


@cli.group("cache")
def cache_group() -> None:
    """Message cache operations."""


@cache_group.command("show")
@click.option("--limit", type=int, default=50, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of text.")
@click.pass_context
def cache_show(ctx: click.Context, *, limit: int, as_json: bool) -> None:
    """Print cached messages, newest first."""
    if limit <= 0:
        raise click.ClickException("limit must be > 0")
    config = _config(ctx)
    cache = MessageCache(config.cache_path)
    cache.load()
    messages = [m.to_dict() for m in cache.messages[:limit]]

    if as_json:
        _echo_json({"path": str(cache.path), "messages": messages})
        return

    click.echo(f"Cache path: {cache.path}")
    click.echo(f"Messages: {len(cache)}")
    for m in messages:
        click.echo(_message_line(m))


@cache_group.command("clear")
@click.option("--yes", is_flag=True, help="Do not prompt for confirmation.")
@click.option("--force", is_flag=True, help="Clear even while a server is running.")
@click.pass_context
def cache_clear(ctx: click.Context, *, yes: bool, force: bool) -> None:
    """Empty the on-disk message cache."""
    config = _config(ctx)
    pid = _running_server_pid(config)
    if pid is not None and not force:
        raise click.ClickException(
            f"A server is running (pid {pid}) and owns the cache. Use --force to clear anyway."
        )
    click.echo(f"Cache path: {config.cache_path}")
    if not config.cache_path.exists():
        click.echo("Nothing to clear (cache file not found).")
        return
    if not yes and not click.confirm("Clear the message cache?", default=False):
        raise click.ClickException("Canceled.")
    if not MessageCache(config.cache_path).persist():
        raise click.ClickException("Failed to write cache file.")
    click.echo("Cache cleared.")


@cli.group("processes")
def processes_group() -> None:
    """Process journal operations."""


@processes_group.command("list")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table.")
@click.pass_context
def processes_list(ctx: click.Context, *, as_json: bool) -> None:
    """List journal entries and whether each pid is still alive."""
    config = _config(ctx)
    entries = ProcessJournal(config.journal_path).load()
    rows = [{**e.to_dict(), "alive": is_process_alive(e.pid)} for e in entries]

    if as_json:
        _echo_json({"path": str(config.journal_path), "processes": rows})
        return

    click.echo(f"Journal path: {config.journal_path}")
    click.echo(f"Processes: {len(rows)}")
    for r in rows:
        alive = "alive" if r["alive"] else "dead"
        ended = f" ended={r['endedAt']}" if r["endedAt"] else ""
        click.echo(
            f"- pid={r['pid']} status={r['status']} ({alive}) started={r['startedAt']}{ended}"
        )


@processes_group.command("prune")
@click.option("--yes", is_flag=True, help="Do not prompt for confirmation.")
@click.pass_context
def processes_prune(ctx: click.Context, *, yes: bool) -> None:
    """Drop finished entries from the journal."""
    config = _config(ctx)
    journal = ProcessJournal(config.journal_path)
    entries = journal.load()
    keep = [e for e in entries if e.is_open]
    removed = len(entries) - len(keep)
    if removed == 0:
        click.echo("Nothing to prune.")
        return
    if not yes and not click.confirm(f"Remove {removed} finished entr(ies)?", default=False):
        raise click.ClickException("Canceled.")
    if not journal.save(keep):
        raise click.ClickException("Failed to write journal file.")
    click.echo(f"Removed {removed} entr(ies).")


@cli.group("lock")
def lock_group() -> None:
    """Single-instance lock operations."""


@lock_group.command("status")
@click.pass_context
def lock_status(ctx: click.Context) -> None:
    """Show which process holds the single-instance lock."""
    config = _config(ctx)
    lock = InstanceLock(config.lock_path, pid=0)
    click.echo(f"Lock path: {lock.path}")
    if not lock.path.exists():
        click.echo("Not held.")
        return
    holder = lock.read_holder()
    if holder is None:
        click.echo("Held by an unreadable pid (stale).")
        return
    state = "alive" if is_process_alive(holder) else "dead (stale)"
    click.echo(f"Held by pid {holder}: {state}")


@cli.command("publish")
@click.argument("message")
@click.option("--topic", default=None, help="Topic (defaults to $NTFY_TOPIC).")
@click.option("--title", default=None)
@click.option("--priority", type=click.IntRange(1, 5), default=None)
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable).")
@click.option("--attach", default=None, help="URL of an attachment.")
@click.pass_context
def publish(
    ctx: click.Context,
    message: str,
    *,
    topic: str | None,
    title: str | None,
    priority: int | None,
    tags: tuple[str, ...],
    attach: str | None,
) -> None:
    """Publish one message."""
    config = _config(ctx, topic=topic)
    if not config.topic:
        raise click.ClickException("No topic configured. Pass --topic or set NTFY_TOPIC.")

    async def _publish() -> dict[str, Any]:
        client = NtfyClient(config)
        try:
            return await client.publish(
                topic=config.topic,
                message=message,
                title=title,
                priority=priority,
                tags=list(tags) or None,
                attach=attach,
            )
        finally:
            await client.aclose()

    try:
        result = anyio.run(_publish)
    except NtfyError as e:
        raise click.ClickException(str(e)) from None
    click.echo(f"Sent to {config.topic} id={result.get('id')}")


@cli.command("fetch")
@click.option("--topic", default=None, help="Topic (defaults to $NTFY_TOPIC).")
@click.option("--since", default="1h", show_default=True, help="Duration, timestamp or id.")
@click.option("--limit", type=int, default=20, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of text.")
@click.pass_context
def fetch(
    ctx: click.Context, *, topic: str | None, since: str, limit: int, as_json: bool
) -> None:
    """Poll recent messages from the server without touching the cache."""
    if limit <= 0:
        raise click.ClickException("limit must be > 0")
    config = _config(ctx, topic=topic)
    if not config.topic:
        raise click.ClickException("No topic configured. Pass --topic or set NTFY_TOPIC.")

    async def _fetch() -> list[Any]:
        client = NtfyClient(config)
        try:
            return await client.fetch_latest(config.topic, since=since, limit=limit)
        finally:
            await client.aclose()

    try:
        records = anyio.run(_fetch)
    except NtfyError as e:
        raise click.ClickException(str(e)) from None

    decoded = [Message.from_record(r) for r in records]
    messages = [m.to_dict() for m in decoded if m is not None]
    messages.reverse()

    if as_json:
        _echo_json({"topic": config.topic, "messages": messages})
        return
    click.echo(f"Topic: {config.topic} ({len(messages)} message(s), newest first)")
    for m in messages:
        click.echo(_message_line(m))
