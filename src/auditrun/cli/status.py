"""CLI commands: auditrun status / queue."""

from __future__ import annotations

import asyncio
import sys
import time

import click
from rich.console import Console
from rich.table import Table

from auditrun.config import AuditRunConfig
from auditrun.storage.db import get_db
from auditrun.storage.queue import ScanQueue
from auditrun.storage.repos import FindingRepo, ScanRepo, ScanStepRepo

console = Console()

_STATUS_COLORS = {
    "RUNNING": "cyan",
    "COMPLETED": "green",
    "FAILED": "red",
}


def _fmt_time(ts: float | None) -> str:
    if ts is None:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(ts))


def _fmt_duration(start: float | None, end: float | None) -> str:
    if start is None or end is None:
        return "-"
    return f"{end - start:.1f}s"


@click.command()
@click.argument("scan_id")
@click.pass_context
def status(ctx: click.Context, scan_id: str) -> None:
    """Show a scan and its step ledger."""
    config: AuditRunConfig = ctx.obj["config"]

    async def _load():
        db = await get_db(config.db_path)
        try:
            scan = await ScanRepo(db).get_with_protocol(scan_id)
            if scan is None:
                return None, [], []
            steps = await ScanStepRepo(db).list_by_scan(scan_id)
            findings = await FindingRepo(db).list_by_scan(scan_id)
            return scan, steps, findings
        finally:
            await db.close()

    scan, steps, findings = asyncio.run(_load())
    if scan is None:
        console.print(f"[red]Scan {scan_id} not found[/red]")
        sys.exit(1)

    console.print(
        f"[bold]Scan {scan['id']}[/bold] "
        f"([cyan]{scan['protocol_name']}[/cyan] {scan['contract_name']})"
    )
    console.print(f"  State:    {scan['state']}")
    console.print(f"  Step:     {scan['current_step'] or '-'}")
    console.print(f"  Findings: {scan['findings_count']}")
    console.print(f"  Retries:  {scan['retry_count']}")
    if scan["error_code"]:
        console.print(
            f"  Error:    [red]{scan['error_code']}[/red] {scan['error_message'] or ''}"
        )

    if steps:
        table = Table(title="Steps", show_lines=False)
        table.add_column("Step", style="bold")
        table.add_column("Status")
        table.add_column("Started")
        table.add_column("Duration", justify="right")
        table.add_column("Error")
        for step in steps:
            color = _STATUS_COLORS.get(step["status"], "white")
            table.add_row(
                step["step"],
                f"[{color}]{step['status']}[/{color}]",
                _fmt_time(step["started_at"]),
                _fmt_duration(step["started_at"], step["completed_at"]),
                step["error_code"] or "",
            )
        console.print(table)

    if findings:
        table = Table(title="Findings", show_lines=False)
        table.add_column("Severity", style="bold", width=10)
        table.add_column("Type")
        table.add_column("Location", style="cyan")
        table.add_column("Method")
        for finding in findings:
            location = finding.file_path
            if finding.line_number:
                location = f"{location}:{finding.line_number}"
            table.add_row(
                finding.severity.value,
                finding.vulnerability_type,
                location,
                finding.analysis_method.value,
            )
        console.print(table)


@click.command()
@click.pass_context
def queue(ctx: click.Context) -> None:
    """Show scan queue counts."""
    config: AuditRunConfig = ctx.obj["config"]

    async def _metrics() -> dict[str, int]:
        db = await get_db(config.db_path)
        try:
            return await ScanQueue(db).metrics()
        finally:
            await db.close()

    metrics = asyncio.run(_metrics())
    table = Table(title="Scan queue")
    table.add_column("Status", style="bold")
    table.add_column("Jobs", justify="right")
    for name, count in metrics.items():
        table.add_row(name, str(count))
    console.print(table)
