"""
CLI entry point for agent-ledger.

Provides commands for:
- init: Create the store
- sync: Ingest new activity (one pass, or --watch to keep polling)
- monitor: Ingest when this process can own the store, otherwise observe
- discover: List the source files that would be ingested
- sessions: Show recent sessions
- messages: Stream messages committed after a row id
"""

from pathlib import Path
import json
import logging

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from agent_ledger import __version__
from agent_ledger.config import LedgerConfig
from agent_ledger.errors import IngestLockHeldError, StoreWriteError

console = Console()


def _setup_logging(verbose: bool) -> None:
    logger = logging.getLogger("agent_ledger")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        logger.addHandler(RichHandler(console=Console(stderr=True), show_path=False))


def _format_report(report) -> Panel:
    lines = [
        f"[bold]Sources[/bold]: {report.sources_discovered} found, "
        f"{report.sources_changed} changed, {report.sources_committed} committed",
        f"[bold]Messages[/bold]: {report.messages_inserted} new",
        f"[bold]Threads[/bold]: {report.threads_inserted} new, {report.threads_linked} linked",
    ]
    if report.plans_written:
        lines.append(f"[bold]Plans[/bold]: {report.plans_written} written")
    if report.pending_threads:
        lines.append(f"[bold]Unlinked threads[/bold]: {len(report.pending_threads)}")
    if report.warnings:
        lines.append(f"[yellow]{len(report.warnings)} warning(s)[/yellow]")
    if report.errors:
        lines.append(f"[red]{len(report.errors)} error(s)[/red]")
    return Panel.fit("\n".join(lines), title="Sync")


@click.group()
@click.version_option(version=__version__)
@click.option("--db", type=Path, default=None,
              help="Path to SQLite store (default: $AGENT_LEDGER_DB_PATH or XDG data dir)")
@click.option("--claude-root", type=Path, default=None,
              help="Claude Code home directory (default: ~/.claude)")
@click.option("--codex-root", type=Path, default=None,
              help="Codex home directory (default: ~/.codex)")
@click.option("--verbose", "-v", is_flag=True,
              help="Debug logging")
@click.pass_context
def main(ctx, db, claude_root, codex_root, verbose):
    """Agent Ledger: one canonical store for coding-assistant activity logs."""
    _setup_logging(verbose)
    ctx.obj = LedgerConfig.from_env().with_overrides(
        db_path=db,
        claude_root=claude_root,
        codex_root=codex_root,
    )


@main.command()
@click.pass_obj
def init(config: LedgerConfig):
    """Initialize the store."""
    from agent_ledger.db import init_db

    init_db(config.db_path)
    console.print(f"[green]Store initialized at {config.store_path}[/green]")


@main.command()
@click.option("--watch", "watch_mode", is_flag=True,
              help="Keep polling for new activity")
@click.option("--poll", type=float, default=None,
              help="Seconds between passes in watch mode")
@click.option("--outbox", type=Path, default=None,
              help="Append newly committed messages to this JSONL file")
@click.option("--json", "as_json", is_flag=True,
              help="Print the pass report as JSON")
@click.pass_obj
def sync(config: LedgerConfig, watch_mode, poll, outbox, as_json):
    """Ingest new activity into the store."""
    from agent_ledger.pipeline.sync import IngestCoordinator
    from agent_ledger.pipeline.watch import watch
    from agent_ledger.process_lock import acquire_ingest_role
    from agent_ledger.publish import JsonlOutboxSink

    try:
        lock = acquire_ingest_role(config, dedicated=True)
    except IngestLockHeldError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1)

    sinks = [JsonlOutboxSink(outbox)] if outbox else []
    coordinator = IngestCoordinator(config, lock=lock, sinks=sinks)

    def _show(report):
        if as_json:
            click.echo(json.dumps(report.to_dict()))
        elif report.wrote_anything or not watch_mode:
            console.print(_format_report(report))
        for error in report.errors:
            console.print(f"[yellow]{error}[/yellow]")

    try:
        if watch_mode:
            interval = poll if poll is not None else config.poll_interval_seconds
            console.print(f"Watching for activity every {interval:g}s (Ctrl+C to stop)")
            watch(coordinator, interval, on_report=_show)
        else:
            _show(coordinator.sync_pass())
    except KeyboardInterrupt:
        console.print("Stopped")
    except StoreWriteError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1)
    finally:
        orphans = coordinator.close()
        lock.release()

    if orphans and not as_json:
        console.print(f"[yellow]{len(orphans)} spawned thread(s) left unlinked[/yellow]")


@main.command()
@click.option("--poll", type=float, default=None,
              help="Seconds between refreshes")
@click.option("--iterations", type=int, default=None, hidden=True)
@click.pass_obj
def monitor(config: LedgerConfig, poll, iterations):
    """Ingest if no other process is, otherwise watch the store read-only."""
    from agent_ledger.pipeline.sync import IngestCoordinator
    from agent_ledger.pipeline.watch import observe, watch
    from agent_ledger.process_lock import acquire_ingest_role

    interval = poll if poll is not None else config.poll_interval_seconds
    lock = acquire_ingest_role(config, dedicated=False)

    try:
        if lock.held:
            console.print(f"[green]Ingesting {config.store_path}[/green]")
            coordinator = IngestCoordinator(config, lock=lock)
            try:
                watch(
                    coordinator,
                    interval,
                    on_report=lambda r: r.wrote_anything and console.print(
                        f"+{r.messages_inserted} message(s) from {r.sources_committed} source(s)"
                    ),
                    max_passes=iterations,
                )
            finally:
                coordinator.close()
        else:
            owner = lock.read_owner() or {}
            console.print(
                f"[yellow]Read-only: pid {owner.get('pid', '?')} is ingesting {config.store_path}[/yellow]"
            )
            observe(
                config,
                interval,
                on_refresh=lambda s: console.print(
                    f"{s.counts.get('sessions', 0)} session(s), "
                    f"{s.counts.get('messages', 0)} message(s), latest id {s.latest_message_id}"
                ),
                max_refreshes=iterations,
            )
    except KeyboardInterrupt:
        console.print("Stopped")
    except StoreWriteError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1)
    finally:
        lock.release()


@main.command()
@click.pass_obj
def discover(config: LedgerConfig):
    """List source files for every enabled dialect."""
    from agent_ledger.ingest.discovery import discover_sources
    from agent_ledger.ingest.parsers import create_all_parsers

    parsers = create_all_parsers(config)
    sources = discover_sources(p.dialect_root() for p in parsers)

    table = Table(title=f"{len(sources)} source(s)")
    table.add_column("Assistant")
    table.add_column("Kind")
    table.add_column("Size", justify="right")
    table.add_column("Path")
    for source in sources:
        table.add_row(
            source.assistant.display_name,
            source.entity_kind.value,
            str(source.size_bytes),
            str(source.path),
        )
    console.print(table)


@main.command()
@click.option("--limit", type=int, default=20,
              help="Number of sessions")
@click.option("--assistant", type=click.Choice(["claude_code", "codex"]), default=None,
              help="Only sessions from this assistant")
@click.pass_obj
def sessions(config: LedgerConfig, limit, assistant):
    """Show the most recently active sessions."""
    from agent_ledger.db import get_session
    from agent_ledger.db.queries import recent_sessions

    if not config.store_path.exists():
        console.print("[yellow]No sessions ingested yet[/yellow]")
        return

    db_session = get_session(config.db_path)
    try:
        rows = recent_sessions(db_session, limit=limit, assistant=assistant)
        if not rows:
            console.print("[yellow]No sessions ingested yet[/yellow]")
            return

        table = Table(title="Recent sessions")
        table.add_column("Session")
        table.add_column("Assistant")
        table.add_column("Model")
        table.add_column("Threads", justify="right")
        table.add_column("Last activity")
        for row in rows:
            table.add_row(
                row.id,
                row.assistant,
                row.backing_model or "-",
                str(len(row.threads)),
                row.last_activity_at.isoformat(timespec="seconds") if row.last_activity_at else "-",
            )
        console.print(table)
    finally:
        db_session.close()


@main.command()
@click.option("--since-id", type=int, default=0,
              help="Only messages with a row id greater than this")
@click.option("--limit", type=int, default=100,
              help="Maximum number of messages")
@click.pass_obj
def messages(config: LedgerConfig, since_id, limit):
    """Print committed messages as JSON lines, oldest row id first."""
    from agent_ledger.db import get_session
    from agent_ledger.db.queries import messages_since

    if not config.store_path.exists():
        return

    db_session = get_session(config.db_path)
    try:
        for row in messages_since(db_session, after_id=since_id, limit=limit):
            click.echo(json.dumps({
                "id": row.id,
                "thread_id": row.thread_id,
                "seq": row.seq,
                "session_id": row.session_id,
                "emitted_at": row.emitted_at.isoformat(),
                "observed_at": row.observed_at.isoformat(),
                "author_role": row.author_role,
                "message_type": row.message_type,
                "content": row.content,
                "tool_name": row.tool_name,
                "source_path": row.source_path,
                "source_offset": row.source_offset,
            }, ensure_ascii=False))
    finally:
        db_session.close()


if __name__ == "__main__":
    main()
