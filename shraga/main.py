"""Entry point for the Shraga monitoring service."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from shraga.config import Settings, settings
from shraga.monitor.context import RunContext
from shraga.monitor.manager import Manager
from shraga.registry import MonitorRegistry, SyncReport
from shraga.store.sqlite import SqliteStore

console = Console()
logger = logging.getLogger("shraga")


def setup_logging(cfg: Settings) -> None:
    if cfg.app_env == "prod":
        fmt = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
    else:
        fmt = "%(asctime)s [%(name)s] %(levelname)s %(filename)s:%(lineno)d: %(message)s"
    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format=fmt,
    )


def sync_monitors(store: SqliteStore, path: Path) -> SyncReport:
    """Load the monitors file into the store and show what changed."""
    report = MonitorRegistry(path).sync(store)

    table = Table(title=f"Monitors from {path}")
    table.add_column("Change", style="bold")
    table.add_column("Monitors")
    table.add_row("[green]added[/green]", ", ".join(report.added) or "-")
    table.add_row("[cyan]updated[/cyan]", ", ".join(report.updated) or "-")
    table.add_row("[yellow]skipped[/yellow]", ", ".join(report.skipped) or "-")
    console.print(table)
    return report


async def serve(store: SqliteStore, cfg: Settings) -> str:
    """Run the manager until SIGINT/SIGTERM. Returns the stop cause."""
    ctx = RunContext()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, ctx.cancel, f"received {sig.name}")
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(
                sig,
                lambda signum, _frame: loop.call_soon_threadsafe(
                    ctx.cancel, f"received {signal.Signals(signum).name}"
                ),
            )

    manager = Manager(
        store,
        pool_size=cfg.pool_size,
        tick=cfg.tick_interval,
        lock_lease=cfg.lock_lease,
    )
    return await manager.run(ctx)


def run_service(monitors_file: Path) -> None:
    """Sync monitors, then schedule checks until interrupted."""
    console.print(Panel("Starting Shraga monitor", style="bold green"))
    store = SqliteStore(settings.database_path)

    if monitors_file.exists():
        sync_monitors(store, monitors_file)
    else:
        logger.info("No monitors file at %s, using stored monitors only", monitors_file)

    cause = asyncio.run(serve(store, settings))
    logger.info("exiting: %s", cause)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Shraga HTTP health monitor")
    sub = parser.add_subparsers(dest="command")

    run_parser = sub.add_parser("run", help="Run the monitor scheduler")
    run_parser.add_argument("--monitors", default=settings.monitors_file, help="YAML monitors file")

    sync_parser = sub.add_parser("sync", help="Load the monitors file into the store")
    sync_parser.add_argument("--monitors", default=settings.monitors_file, help="YAML monitors file")

    args = parser.parse_args(argv)
    setup_logging(settings)

    if args.command == "run":
        run_service(Path(args.monitors))
    elif args.command == "sync":
        sync_monitors(SqliteStore(settings.database_path), Path(args.monitors))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
