"""``claude-stats`` command line.

``hook`` is what the host runs on every session end and always exits 0.
The other commands are for inspecting and repairing the local queue by
hand.
"""

from __future__ import annotations

from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .buffer import BufferStore
from .config import StatsConfig, load_config
from .context import AgentContext
from .diagnostics import configure_diagnostics, shutdown_diagnostics
from .errors import StatsError
from .lock import RunLock, read_lock_info
from .runner import RunOutcome, RunReport, UsageSyncRunner, run_once
from .state import StateStore

app = typer.Typer(
    name="claude-stats",
    help="Collect local token usage and sync it to the stats server",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()

_OUTCOME_STYLES = {
    RunOutcome.SENT: "green",
    RunOutcome.NOTHING_TO_SEND: "green",
    RunOutcome.PARTIAL: "yellow",
    RunOutcome.LOCKED: "yellow",
    RunOutcome.DISABLED: "dim",
    RunOutcome.FAILED: "red",
    RunOutcome.ERROR: "red",
}


def _context() -> AgentContext:
    return AgentContext.from_env()


def _require_config(ctx: AgentContext) -> StatsConfig:
    config = load_config(ctx.config_file)
    if config is None or not config.server_url:
        console.print(f"[red]No usable config at[/red] {ctx.config_file}")
        raise typer.Exit(1)
    return config


def _print_report(report: RunReport) -> None:
    style = _OUTCOME_STYLES.get(report.outcome, "white")
    line = f"[{style}]{report.outcome.value}[/{style}]"
    if report.mode is not None:
        line += f" ({report.mode.value})"
    line += f"  sent={report.sent} remaining={report.remaining}"
    console.print(line)
    if report.error:
        console.print(f"[red]Error:[/red] {report.error}")


@app.command()
def hook() -> None:
    """Run one collection/sync cycle. Always exits 0."""
    run_once()
    raise typer.Exit(0)


@app.command()
def flush() -> None:
    """Send every pending record now, whatever the buffer size."""
    ctx = _context()
    config = _require_config(ctx)
    handler = configure_diagnostics(ctx)
    try:
        report = UsageSyncRunner(ctx, config).flush()
    except StatsError as e:
        console.print(f"[red]Flush failed:[/red] {e}")
        raise typer.Exit(1)
    finally:
        shutdown_diagnostics(handler)

    _print_report(report)
    if report.outcome in (RunOutcome.FAILED, RunOutcome.PARTIAL, RunOutcome.LOCKED):
        raise typer.Exit(1)


@app.command()
def status() -> None:
    """Show config, pending buffer and processed-state health."""
    ctx = _context()
    limits = ctx.limits
    config = load_config(ctx.config_file)

    config_lines: list[str] = []
    if config is None:
        config_lines.append("[yellow]Not configured[/yellow]")
    else:
        enabled = "[green]yes[/green]" if config.is_active else "[red]no[/red]"
        config_lines.append(f"[bold]User:[/bold]    {config.username or '-'}")
        config_lines.append(f"[bold]Server:[/bold]  {config.server_url or '-'}")
        config_lines.append(f"[bold]Active:[/bold]  {enabled}")
    console.print(Panel("\n".join(config_lines), title="Config", border_style="cyan", expand=False))

    buffer_store = BufferStore(ctx.buffer_file, limits.max_buffer_bytes, limits.max_buffer_entries)
    size = buffer_store.size_check()
    buffer = buffer_store.load()

    table = Table(title="Local Queue", show_header=False)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    table.add_row("Pending entries", f"{size.entries:,}")
    table.add_row("Buffer size", f"{size.size:,} bytes")
    table.add_row("Retry count", str(buffer.retry_count) if buffer else "-")
    table.add_row("Large backlog", "[red]yes[/red]" if size.is_large else "no")

    state = StateStore(ctx.state_file, retention_days=limits.retention_days).load()
    table.add_row("Processed hashes", f"{state.hash_count:,}")
    table.add_row("Day buckets", str(len(state.recent_hashes)))
    table.add_row("Last cleanup", state.last_cleanup or "-")

    lock_info = read_lock_info(ctx.lock_file)
    table.add_row("Lock", _describe_lock(lock_info) if ctx.lock_file.exists() else "free")
    console.print(table)


def _describe_lock(info: Optional[dict]) -> str:
    if not info:
        return "held (unreadable)"
    return f"held by pid {info.get('pid', '?')} since {info.get('timestamp', '?')}"


@app.command("reset-state")
def reset_state(
    yes: bool = typer.Option(False, "--yes", "-y", help="Confirm deleting the processed-hash ledger"),
) -> None:
    """Forget which records were shipped (they will be re-collected)."""
    if not yes:
        console.print("[yellow]Refusing to reset without --yes[/yellow]")
        raise typer.Exit(1)

    ctx = _context()
    lock = RunLock(ctx.lock_file, stale_seconds=ctx.limits.lock_stale_seconds)
    if not lock.acquire(timeout=ctx.limits.lock_timeout):
        console.print("[yellow]A sync run is in progress; try again shortly[/yellow]")
        raise typer.Exit(1)
    try:
        StateStore(ctx.state_file).reset()
    finally:
        lock.release()
    console.print(f"[green]Processed state reset[/green] ({ctx.state_file})")


def main() -> None:
    app()


def hook_main() -> None:
    """Console-script entry for the host hook (no argument parsing)."""
    run_once()
