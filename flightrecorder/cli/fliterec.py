#!/usr/bin/env python3
"""
Command line interface for flightrecorder.

Usage:
    fliterec daemon start           - Run the capture daemon in the foreground
    fliterec status                 - Show capture and storage status
    fliterec search "query"         - Search captured text
    fliterec recover --last 5       - Print recent captures for recovery
    fliterec delete ID              - Delete one capture
    fliterec prune                  - Apply retention rules now
    fliterec config show            - Show the effective configuration
    fliterec permission --request   - Check or request accessibility access
"""

import asyncio
import json
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import click
import psutil
import pyperclip
import yaml
from loguru import logger
from rich.console import Console
from rich.table import Table
from rich.text import Text

from ..daemon.capture import Capture, CaptureType, utc_now
from ..daemon.config import Config
from ..daemon.errors import ConfigError, StorageError, StoreOpenError
from ..daemon.main import run_daemon, setup_logging
from ..daemon.platform import AccessibilityPermission, write_clipboard
from ..daemon.retention import RetentionPolicy, RetentionWorker
from ..daemon.store import CaptureStore

console = Console()

RELATIVE_TIME = re.compile(r"^\s*(\d+)\s*([mhdw])\s*$", re.IGNORECASE)
TIME_UNITS = {"m": "minutes", "h": "hours", "d": "days", "w": "weeks"}

CAPTURE_TYPES = [t.value for t in CaptureType]


@dataclass
class CliState:
    config_path: Optional[Path] = None
    _config: Optional[Config] = None

    def config(self) -> Config:
        if self._config is None:
            try:
                self._config = Config.load(self.config_path)
            except ConfigError as e:
                console.print(f"[red]Configuration error:[/red] {e}")
                raise SystemExit(1)
        return self._config

    def open_store(self) -> CaptureStore:
        try:
            return CaptureStore(self.config().database_path())
        except StoreOpenError as e:
            console.print(f"[red]Storage error:[/red] {e}")
            raise SystemExit(1)


def parse_time(value: str, now: Optional[datetime] = None) -> datetime:
    """
    Parse a relative duration (30m, 2h, 7d, 1w) or an ISO date/datetime.

    Relative durations count back from now. Naive ISO values are read as
    local time.
    """
    match = RELATIVE_TIME.match(value)
    if match:
        amount, unit = int(match.group(1)), match.group(2).lower()
        return (now or utc_now()) - timedelta(**{TIME_UNITS[unit]: amount})

    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        raise click.BadParameter(
            f"'{value}' is not a duration like 30m, 2h, 7d, 1w or an ISO date"
        )
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed.astimezone(timezone.utc)


class TimeParam(click.ParamType):
    name = "time"

    def convert(self, value, param, ctx):
        if isinstance(value, datetime):
            return value
        try:
            return parse_time(value)
        except click.BadParameter as e:
            self.fail(e.message, param, ctx)


TIME = TimeParam()


@click.group()
@click.option("--config", "-c", type=click.Path(dir_okay=False, path_type=Path), help="Config file path")
@click.option("--verbose", "-v", count=True, help="Increase log verbosity")
@click.option("--quiet", "-q", is_flag=True, help="Only log errors")
@click.pass_context
def cli(ctx, config: Optional[Path], verbose: int, quiet: bool):
    """flightrecorder - local safety net for text you type and copy."""
    if quiet:
        level = "ERROR"
    else:
        level = {0: "WARNING", 1: "INFO"}.get(verbose, "DEBUG")
    setup_logging(level)
    ctx.obj = CliState(config_path=config)


def _local_time(ts: datetime) -> str:
    return ts.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _preview(content: str, width: int = 80) -> str:
    flat = " ".join(content.split())
    return flat if len(flat) <= width else flat[: width - 3] + "..."


def display_captures(captures: List[Capture], title: str) -> None:
    """Display captures in a table."""
    if not captures:
        console.print("[yellow]No captures found[/yellow]")
        return

    table = Table(title=title)
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Time", style="green")
    table.add_column("Type", style="magenta")
    table.add_column("App")
    table.add_column("Content", no_wrap=False, overflow="fold")

    for capture in captures:
        table.add_row(
            str(capture.id),
            _local_time(capture.timestamp),
            capture.capture_type.value,
            Text(capture.source_app or "-"),
            Text(_preview(capture.content)),
        )

    console.print(table)


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2))


@cli.group()
def daemon():
    """Run the capture daemon."""
    pass


@daemon.command()
@click.pass_obj
def start(state: CliState):
    """Start the daemon in the foreground (Ctrl+C to stop)."""
    config = state.config()
    setup_logging(
        config.logging.level,
        config.log_file(),
        config.logging.rotation,
        config.logging.retention,
    )
    console.print("[cyan]Starting flightrecorder daemon...[/cyan]")

    try:
        asyncio.run(run_daemon(config))
    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped by user[/yellow]")


def find_daemon_process() -> Optional[psutil.Process]:
    """A running 'daemon start' process other than this one, if any."""
    own_pid = os.getpid()
    for proc in psutil.process_iter(["pid", "cmdline"]):
        if proc.info["pid"] == own_pid:
            continue
        cmdline = " ".join(proc.info.get("cmdline") or [])
        if ("fliterec" in cmdline or "flightrecorder" in cmdline) and "daemon" in cmdline:
            if "start" in cmdline or "flightrecorder.daemon.main" in cmdline:
                return proc
    return None


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def status(state: CliState, as_json: bool):
    """Show daemon, monitor and storage status."""
    config = state.config()
    with state.open_store() as store:
        try:
            stats = store.stats()
        except StorageError as e:
            console.print(f"[red]Storage error:[/red] {e}")
            raise SystemExit(1)

    proc = find_daemon_process()
    permission = AccessibilityPermission()
    has_permission = permission.is_granted()

    data = {
        "daemon": {"running": proc is not None, "pid": proc.pid if proc else None},
        "monitors": {
            "clipboard": {"enabled": config.capture.clipboard_enabled},
            "accessibility": {
                "enabled": config.capture.text_field_enabled,
                "has_permission": has_permission,
            },
        },
        "storage": stats.to_dict(),
        "database_path": str(config.database_path()),
    }

    if as_json:
        _echo_json(data)
        return

    if proc:
        console.print(f"[green]✓ Daemon is running[/green] (pid {proc.pid})")
    else:
        console.print("[red]✗ Daemon is not running[/red]")
        console.print("Start with: [cyan]fliterec daemon start[/cyan]")

    console.print(f"\nClipboard capture: {'enabled' if config.capture.clipboard_enabled else 'disabled'}")
    text_state = "enabled" if config.capture.text_field_enabled else "disabled"
    if config.capture.text_field_enabled and not has_permission:
        text_state += " ([yellow]Accessibility permission required[/yellow])"
    console.print(f"Text field capture: {text_state}")

    console.print(f"\nDatabase: {config.database_path()}")
    console.print(f"Captures: {stats.total_captures}")
    if stats.oldest_capture:
        console.print(f"Oldest: {_local_time(stats.oldest_capture)}")
        console.print(f"Newest: {_local_time(stats.newest_capture)}")
    console.print(f"Size: {stats.db_size_bytes / 1024:.1f} KB")


@cli.command()
@click.argument("query")
@click.option("--app", "-a", help="Filter by source application")
@click.option("--type", "-t", "capture_type", type=click.Choice(CAPTURE_TYPES), help="Filter by capture type")
@click.option("--since", type=TIME, help="Only captures after this time (30m, 2h, 7d, 2024-01-15)")
@click.option("--until", type=TIME, help="Only captures before this time")
@click.option("--limit", "-l", default=20, show_default=True, help="Max results")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def search(
    state: CliState,
    query: str,
    app: Optional[str],
    capture_type: Optional[str],
    since: Optional[datetime],
    until: Optional[datetime],
    limit: int,
    as_json: bool,
):
    """Search captured text."""
    with state.open_store() as store:
        try:
            results = store.query(
                limit,
                text=query,
                app=app,
                capture_type=capture_type,
                since=since,
                until=until,
            )
        except StorageError as e:
            console.print(f"[red]Search failed:[/red] {e}")
            raise SystemExit(1)

    if as_json:
        _echo_json([c.to_dict() for c in results])
    else:
        display_captures(results, f"Search results for '{query}' ({len(results)})")


@cli.command()
@click.option("--last", "-n", "last", default=10, show_default=True, help="Number of captures")
@click.option("--app", "-a", help="Filter by source application")
@click.option("--since", type=TIME, help="Only captures after this time (30m, 2h, 7d, 2024-01-15)")
@click.option("--to-clipboard", is_flag=True, help="Copy the most recent match to the clipboard")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def recover(
    state: CliState,
    last: int,
    app: Optional[str],
    since: Optional[datetime],
    to_clipboard: bool,
    as_json: bool,
):
    """Print recent captures in full so lost text can be recovered."""
    with state.open_store() as store:
        try:
            captures = store.query(last, app=app, since=since)
        except StorageError as e:
            console.print(f"[red]Recover failed:[/red] {e}")
            raise SystemExit(1)

    if as_json:
        _echo_json([c.to_dict() for c in captures])
    elif not captures:
        console.print("[yellow]No captures found[/yellow]")
    else:
        for capture in captures:
            header = f"#{capture.id}  {_local_time(capture.timestamp)}  {capture.capture_type.value}"
            if capture.source_app:
                header += f"  {capture.source_app}"
            console.print(Text(header, style="bold cyan"))
            click.echo(capture.content)
            click.echo()

    if to_clipboard and captures:
        try:
            write_clipboard(captures[0].content)
        except pyperclip.PyperclipException as e:
            console.print(f"[red]Could not copy to clipboard:[/red] {e}")
            raise SystemExit(1)
        console.print(f"[green]✓[/green] Copied capture #{captures[0].id} to clipboard")


@cli.command()
@click.argument("capture_id", type=int)
@click.pass_obj
def delete(state: CliState, capture_id: int):
    """Delete a capture by ID."""
    with state.open_store() as store:
        try:
            deleted = store.delete(capture_id)
        except StorageError as e:
            console.print(f"[red]Delete failed:[/red] {e}")
            raise SystemExit(1)

    if deleted:
        console.print(f"[green]✓[/green] Deleted capture {capture_id}")
    else:
        console.print(f"[red]No capture with ID {capture_id}[/red]")
        raise SystemExit(1)


@cli.command()
@click.option("--max-age-days", type=int, help="Delete captures older than this many days")
@click.option("--keep", type=int, help="Keep only this many of the newest captures")
@click.pass_obj
def prune(state: CliState, max_age_days: Optional[int], keep: Optional[int]):
    """Apply retention rules now (defaults come from the config)."""
    config = state.config()
    policy = config.retention_policy()
    if max_age_days is not None:
        policy = RetentionPolicy(
            max_age=timedelta(days=max_age_days),
            max_count=policy.max_count,
            interval=policy.interval,
        )
    if keep is not None:
        policy = RetentionPolicy(
            max_age=policy.max_age,
            max_count=keep,
            interval=policy.interval,
        )

    with state.open_store() as store:
        try:
            report = RetentionWorker(store, policy).run_once()
        except StorageError as e:
            console.print(f"[red]Prune failed:[/red] {e}")
            raise SystemExit(1)

    console.print(
        f"[green]✓[/green] Pruned {report.total} captures "
        f"({report.by_age} by age, {report.by_count} by count)"
    )


@cli.group(name="config")
def config_group():
    """Inspect configuration."""
    pass


@config_group.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def show(state: CliState, as_json: bool):
    """Show the effective configuration."""
    data = state.config().model_dump(mode="json")
    if as_json:
        _echo_json(data)
        return

    click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))


@config_group.command()
@click.pass_obj
def path(state: CliState):
    """Show the configuration file path."""
    found = state.config_path or Config.find_config_path()
    if found:
        click.echo(str(found))
    else:
        default = Config.search_paths()[-1]
        click.echo(f"{default} (not created, using defaults)")


@config_group.command()
@click.option("--file", "-f", "file_path", type=click.Path(dir_okay=False, path_type=Path), help="Config file to validate")
@click.pass_obj
def validate(state: CliState, file_path: Optional[Path]):
    """Validate a configuration file."""
    target = file_path or state.config_path or Config.find_config_path()
    if target is None:
        console.print("[yellow]No config file found; defaults are valid[/yellow]")
        return

    try:
        Config.load(target)
    except ConfigError as e:
        console.print(f"[red]✗ Invalid configuration:[/red] {e}")
        raise SystemExit(1)
    console.print(f"[green]✓[/green] {target} is valid")


@cli.command()
@click.option("--request", is_flag=True, help="Open system settings to grant access")
def permission(request: bool):
    """Check accessibility permission for text field capture."""
    checker = AccessibilityPermission()
    if checker.is_granted():
        console.print("[green]✓ Accessibility permission granted[/green]")
        return

    console.print("[yellow]Accessibility permission required[/yellow]\n")
    click.echo(checker.instructions())

    if request:
        if checker.request():
            console.print("\n[cyan]Opened system settings[/cyan]")
        else:
            console.print("\n[red]Could not open system settings[/red]")
            logger.debug("Accessibility settings request failed")


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
