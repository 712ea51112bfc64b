"""CLI interface for CCWatch."""

import logging
import time

import click
import uvicorn
from rich.console import Console, Group
from rich.live import Live
from rich.table import Table

from . import __version__
from .config import API_PORT, CCUSAGE_COMMAND, CCUSAGE_INSTALL_URL, REFRESH_INTERVAL
from .models import Origin, TimeWindow, WindowSnapshot
from .normalizer import format_cost, format_cost_line
from .service import UsageService

console = Console()

WINDOW_CHOICES = [w.value for w in TimeWindow]

ORIGIN_STYLES = {
    Origin.LIVE: "green",
    Origin.CACHED_STALE: "yellow",
    Origin.EMPTY: "dim",
    Origin.UNKNOWN: "red",
}


def _setup_logging(log_level: str):
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


def build_table(snapshot: WindowSnapshot) -> Table:
    style = ORIGIN_STYLES[snapshot.origin]
    fetched = snapshot.fetched_at.astimezone().strftime("%H:%M:%S") if snapshot.fetched_at else "never"
    t = Table(
        title=f"[bold]{snapshot.window.label}[/] [{style}]{snapshot.origin.value}[/] [dim]{fetched}[/]",
        show_header=True,
        header_style="bold cyan",
    )
    t.add_column("Model", style="white")
    t.add_column("Input", justify="right")
    t.add_column("Output", justify="right")
    t.add_column("Cache W", justify="right")
    t.add_column("Cache R", justify="right")
    t.add_column("Cost", justify="right", style="yellow")

    for b in snapshot.breakdowns:
        t.add_row(
            b.display_name,
            f"{b.input_tokens:,}",
            f"{b.output_tokens:,}",
            f"{b.cache_creation_tokens:,}",
            f"{b.cache_read_tokens:,}",
            format_cost(b.cost),
        )

    if snapshot.breakdowns:
        t.add_section()
        t.add_row("[bold]TOTAL[/]", "", "", "", "", f"[bold yellow]{format_cost(snapshot.total_cost)}[/]")
    elif snapshot.origin is Origin.EMPTY:
        t.add_row("[dim]No usage data available[/]", "", "", "", "", "")
    if snapshot.error is not None:
        t.caption = f"[{style}]{snapshot.error.kind.value}: {snapshot.error.message}[/]"
    return t


def _install_hint():
    console.print(f"[red]ccusage could not be run ({' '.join(CCUSAGE_COMMAND)}).[/]")
    console.print(f"[dim]Install it from {CCUSAGE_INSTALL_URL}[/]")


@click.group()
@click.version_option(__version__)
def cli():
    """CCWatch - rolling-window Claude Code usage from ccusage."""
    pass


@cli.command()
@click.option("--window", "-w", "windows", multiple=True, type=click.Choice(WINDOW_CHOICES))
@click.option("--plain", is_flag=True, help="One 'Model: $cost' line per model, as in the tray menu")
@click.option("--log-level", default="warning", type=click.Choice(["debug", "info", "warning", "error"]))
def show(windows, plain, log_level):
    """Fetch usage once and print it."""
    _setup_logging(log_level)
    service = UsageService()
    with console.status("Running ccusage..."):
        outcome = service.accessor.trigger_manual_refresh()

    if outcome.tool_unavailable:
        _install_hint()
        raise SystemExit(1)

    selected = [TimeWindow(w) for w in windows] or list(TimeWindow)
    for window in selected:
        snapshot = service.accessor.current(window)
        if not plain:
            console.print(build_table(snapshot))
            console.print()
            continue
        console.print(f"{window.label}:", markup=False)
        if not snapshot.breakdowns:
            console.print("  No usage data available", markup=False)
        for b in snapshot.breakdowns:
            console.print(f"  {format_cost_line(b)}", markup=False)


@cli.command()
@click.option("--interval", "-i", default=REFRESH_INTERVAL, type=float, help="Seconds between refreshes")
@click.option("--log-level", default="warning", type=click.Choice(["debug", "info", "warning", "error"]))
def watch(interval, log_level):
    """Keep usage tables live, refreshing in the background."""
    _setup_logging(log_level)
    service = UsageService(interval=interval)
    accessor = service.accessor

    def render():
        tables = [build_table(s) for s in accessor.snapshots().values()]
        if accessor.tool_unavailable:
            tables.insert(0, f"[red]ccusage is not available.[/] [dim]Install it from {CCUSAGE_INSTALL_URL}[/]")
        return Group(*tables)

    service.start()
    try:
        with Live(render(), console=console, refresh_per_second=1) as live:
            accessor.subscribe(lambda window, snapshot: live.update(render()))
            while True:
                time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        service.stop()


@cli.command()
@click.option("--port", default=API_PORT, help="HTTP port")
@click.option("--interval", "-i", default=REFRESH_INTERVAL, type=float, help="Seconds between refreshes")
@click.option("--log-level", default="info", type=click.Choice(["debug", "info", "warning", "error"]))
def serve(port, interval, log_level):
    """Serve snapshots as JSON over HTTP."""
    _setup_logging(log_level)
    from .api import create_app

    console.print(f"[bold green]CCWatch v{__version__}[/]")
    console.print(f"  API: http://localhost:{port}/api/snapshots")
    console.print()
    uvicorn.run(create_app(UsageService(interval=interval)), host="127.0.0.1", port=port, log_level=log_level)
