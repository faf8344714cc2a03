#!/usr/bin/env python3
"""Source health check utility."""

import asyncio
import sys
from datetime import datetime
from pathlib import Path

import click
import orjson
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import get_settings
from .logging import get_logger, quiet_third_party, setup_logging
from .store import CoverageStore
from .tracker import SourceRunTracker

logger = get_logger(__name__)
console = Console()

STATUS_COLORS = {
    'healthy': 'green',
    'degraded': 'yellow',
    'unhealthy': 'red',
    'unknown': 'dim',
}


async def load_health_report(database_path: str | Path, include_inactive: bool = False) -> dict:
    """Build the health report from recorded run history."""
    async with CoverageStore(database_path) as store:
        return await SourceRunTracker(store).health_report(include_inactive=include_inactive)


def _format_time(value: datetime | None) -> str:
    return value.strftime('%Y-%m-%d %H:%M') if value else "-"


def display_health_report(report: dict):
    """Display health report in a formatted table."""
    console.print("\n")

    summary = report['summary']
    summary_text = (
        f"[green]Healthy: {summary['healthy']}[/green] | "
        f"[yellow]Degraded: {summary['degraded']}[/yellow] | "
        f"[red]Unhealthy: {summary['unhealthy']}[/red] | "
        f"[dim]Never run: {summary['unknown']}[/dim] | "
        f"Total: {summary['total']}"
    )

    console.print(Panel(
        summary_text,
        title="[bold]Source Health Summary[/bold]",
        border_style="cyan"
    ))

    if not report['sources']:
        console.print("[yellow]No sources configured[/yellow]")
        return

    table = Table(
        title="\nDetailed Source Status",
        box=box.ROUNDED,
        show_header=True,
        header_style="bold cyan"
    )

    table.add_column("Source Name", style="dim", overflow="fold")
    table.add_column("Type")
    table.add_column("Status", justify="center")
    table.add_column("Last Run", justify="right")
    table.add_column("Found", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Failures", justify="right")
    table.add_column("Backoff Until", justify="right")
    table.add_column("Last Message", overflow="fold")

    for name, status in report['sources'].items():
        color = STATUS_COLORS.get(status['status'], 'white')
        status_text = f"[{color}]{status['status'].upper()}[/{color}]"
        if not status['is_active']:
            status_text += " [dim](inactive)[/dim]"

        failures = status['consecutive_failures']
        failure_text = f"[red]{failures}[/red]" if failures > 0 else "-"

        message = status['last_run_message'] or '-'
        if len(message) > 50:
            message = message[:47] + "..."

        table.add_row(
            name,
            status['source_type'],
            status_text,
            _format_time(status['last_run_at']),
            str(status['items_found_last_run']),
            str(status['total_items_found']),
            failure_text,
            _format_time(status['backoff_until']),
            message,
        )

    console.print(table)


@click.command()
@click.option('--verbose', '-v', is_flag=True, help='Show verbose output')
@click.option('--json', 'output_json', is_flag=True, help='Output as JSON')
@click.option('--all', 'include_inactive', is_flag=True, help='Include inactive sources')
@click.option('--db', 'database', type=click.Path(dir_okay=False, path_type=Path), help='Database file')
@click.option('--fail-on-unhealthy', is_flag=True, help='Exit with status 3 when any source is unhealthy')
def main(verbose: bool, output_json: bool, include_inactive: bool, database: Path | None,
         fail_on_unhealthy: bool):
    """Check health status of all configured sources."""
    setup_logging(log_level="DEBUG" if verbose else "WARNING", json_logging=False)
    if not verbose:
        quiet_third_party()

    try:
        report = asyncio.run(
            load_health_report(database or get_settings().database_path, include_inactive)
        )

        if output_json:
            click.echo(orjson.dumps(report, option=orjson.OPT_INDENT_2, default=str).decode())
        else:
            display_health_report(report)

        if fail_on_unhealthy and report['summary']['unhealthy']:
            sys.exit(3)

    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(1)
    except Exception as e:
        console.print(f"\n[red]Error: {e}[/red]")
        logger.debug("Health check failed", error=str(e), exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
