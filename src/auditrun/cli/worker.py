"""CLI command: auditrun worker, the long-running job consumer."""

from __future__ import annotations

import asyncio
import logging
import signal

import click
from rich.console import Console

from auditrun.config import AuditRunConfig
from auditrun.events import EventKind, LogLevel, Notifier, ProgressEvent
from auditrun.pipeline.models import ScanState
from auditrun.pipeline.worker import JobConsumer
from auditrun.steps.defaults import default_executors
from auditrun.storage.db import get_db

console = Console(stderr=True)

_LEVEL_STYLES = {
    LogLevel.DEFAULT: "dim",
    LogLevel.INFO: "blue",
    LogLevel.WARN: "yellow",
    LogLevel.ALERT: "red",
    LogLevel.ANALYSIS: "magenta",
}

_STATE_STYLES = {
    ScanState.SUCCEEDED: "green",
    ScanState.FAILED: "red",
    ScanState.CANCELED: "yellow",
}


class ConsoleSink:
    """Prints scan events to the terminal."""

    def __init__(self, out: Console | None = None) -> None:
        self._console = out or console

    async def send(self, event: ProgressEvent) -> None:
        scan = event.scan_id[:8]
        if event.kind == EventKind.STARTED:
            self._console.print(
                f"[bold]{scan}[/bold] started on agent {event.data.get('agent_id')}"
            )
        elif event.kind == EventKind.PROGRESS:
            pct = f"{event.progress:>3}%" if event.progress is not None else "   -"
            self._console.print(
                f"[bold]{scan}[/bold] {pct} [cyan]{event.step}[/cyan] {event.message}"
            )
        elif event.kind == EventKind.LOG:
            style = _LEVEL_STYLES.get(event.level, "white")
            self._console.print(f"[bold]{scan}[/bold] [{style}]{event.message}[/{style}]")
        elif event.kind == EventKind.COMPLETED:
            style = _STATE_STYLES.get(event.state, "white")
            state = event.state.value if event.state else "?"
            detail = f" ({event.data.get('error_code')})" if event.data.get("error_code") else ""
            self._console.print(
                f"[bold]{scan}[/bold] [{style}]{state}[/{style}]{detail} "
                f"findings={event.data.get('findings_count', 0)}"
            )


@click.command()
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Scans to run at once (default from config).",
)
@click.option("--once", is_flag=True, help="Process at most one due job and exit.")
@click.pass_context
def worker(ctx: click.Context, concurrency: int | None, once: bool) -> None:
    """Consume the scan queue."""
    config: AuditRunConfig = ctx.obj["config"]
    if concurrency is not None:
        config.concurrency = concurrency
    if not ctx.obj.get("verbose"):
        logging.getLogger("auditrun").setLevel(logging.INFO)

    console.print(
        f"[bold]auditrun[/bold] worker on [cyan]{config.db_path}[/cyan] "
        f"(concurrency={config.concurrency}, AI "
        f"{'enabled' if config.ai_enabled else 'disabled'})"
    )

    async def _run() -> None:
        db = await get_db(config.db_path)
        try:
            consumer = JobConsumer(
                db,
                config,
                default_executors(config, db),
                Notifier([ConsoleSink()]),
            )
            if once:
                await consumer.restore_interrupted()
                if not await consumer.run_once():
                    console.print("No scan jobs are due.")
                return

            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, consumer.stop)
            console.print("  Press Ctrl+C to stop.\n")
            await consumer.run()
        finally:
            await db.close()

    asyncio.run(_run())
