"""Entry point for healthtrend."""

from __future__ import annotations

import argparse
import logging
import sys

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from healthtrend.api.server import default_strategies
from healthtrend.config import settings
from healthtrend.health.catalog import CheckCatalog
from healthtrend.health.retention import run_retention_job
from healthtrend.storage.store import HealthStore

console = Console()
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)


def run_server() -> None:
    """Start the FastAPI server."""
    console.print(Panel("Starting healthtrend API Server", style="bold green"))
    uvicorn.run(
        "healthtrend.api.server:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


def run_retention() -> None:
    """Run the retention job once against the configured database."""
    console.print(Panel(f"Retention job on {settings.db_path}", title="healthtrend", style="bold blue"))

    store = HealthStore()
    try:
        CheckCatalog().load().sync(store)
        with console.status("[bold green]Applying retention..."):
            report = run_retention_job(store, default_strategies())
    finally:
        store.close()

    if report.skipped:
        console.print("[yellow]Another retention run holds the lock, skipped[/yellow]")
        return

    table = Table(title="Retention report")
    table.add_column("Step")
    table.add_column("Rows", justify="right")
    table.add_row("Raw runs deleted", str(report.runs_deleted))
    table.add_row("Hourly rows backfilled", str(report.hourly_backfilled))
    table.add_row("Hourly rows rolled up", str(report.hourly_rolled_up))
    table.add_row("Daily rows written", str(report.daily_written))
    table.add_row("Daily rows deleted", str(report.daily_deleted))
    console.print(table)

    if report.failed:
        failed = ", ".join(f"{s}/{c}" for s, c in report.failed)
        console.print(f"[bold red]Failed assignments:[/bold red] {failed}")
        sys.exit(1)


def main() -> None:
    parser = argparse.ArgumentParser(description="healthtrend health history service")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Start the API server")
    sub.add_parser("retention", help="Run the retention job once")

    args = parser.parse_args()

    if args.command == "serve":
        run_server()
    elif args.command == "retention":
        run_retention()
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
