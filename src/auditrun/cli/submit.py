"""CLI commands: auditrun submit / cancel."""

from __future__ import annotations

import asyncio
import sys
from urllib.parse import urlparse

import click
from rich.console import Console

from auditrun.config import AuditRunConfig
from auditrun.events import LoggingSink, Notifier
from auditrun.pipeline.models import Protocol, Scan, ScanJob
from auditrun.pipeline.worker import cancel_scan
from auditrun.steps.clone import InvalidRepositoryUrl, validate_repo_url
from auditrun.storage.db import get_db
from auditrun.storage.queue import ScanQueue
from auditrun.storage.repos import ProtocolRepo, ScanRepo

console = Console(stderr=True)


def _protocol_name(repo_url: str) -> str:
    parts = [p for p in urlparse(repo_url).path.split("/") if p]
    return parts[-1].removesuffix(".git") if parts else repo_url


@click.command()
@click.argument("repo_url")
@click.option("--contract-path", required=True, help="Contract source path in the repo.")
@click.option("--contract-name", required=True, help="Contract to build and deploy.")
@click.option("--branch", default=None, help="Branch to clone.")
@click.option("--commit", default=None, help="Commit to check out.")
@click.option("--name", default=None, help="Protocol name (defaults to the repo name).")
@click.pass_context
def submit(
    ctx: click.Context,
    repo_url: str,
    contract_path: str,
    contract_name: str,
    branch: str | None,
    commit: str | None,
    name: str | None,
) -> None:
    """Queue a scan of REPO_URL."""
    config: AuditRunConfig = ctx.obj["config"]
    try:
        validate_repo_url(repo_url)
    except InvalidRepositoryUrl as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    async def _submit() -> str:
        db = await get_db(config.db_path)
        try:
            protocol = Protocol(
                name=name or _protocol_name(repo_url),
                github_url=repo_url,
                contract_path=contract_path,
                contract_name=contract_name,
            )
            await ProtocolRepo(db).create(protocol)
            scan = Scan(
                protocol_id=protocol.id,
                target_branch=branch,
                target_commit=commit,
            )
            await ScanRepo(db).create(scan)
            await ScanQueue(db, config.queue_attempts).enqueue(
                ScanJob(
                    scan_id=scan.id,
                    protocol_id=protocol.id,
                    target_branch=branch,
                    target_commit=commit,
                    queued_at=scan.created_at,
                    max_attempts=config.queue_attempts,
                )
            )
            return scan.id
        finally:
            await db.close()

    scan_id = asyncio.run(_submit())
    console.print(f"Queued scan [cyan]{scan_id}[/cyan] for {repo_url}")
    click.echo(scan_id)


@click.command()
@click.argument("scan_id")
@click.pass_context
def cancel(ctx: click.Context, scan_id: str) -> None:
    """Cancel a queued scan."""
    config: AuditRunConfig = ctx.obj["config"]

    async def _cancel() -> tuple[bool, bool]:
        db = await get_db(config.db_path)
        try:
            return await cancel_scan(db, scan_id, Notifier([LoggingSink()]))
        finally:
            await db.close()

    flagged, marked = asyncio.run(_cancel())
    if not flagged:
        console.print(f"[yellow]No pending job for scan {scan_id}[/yellow]")
        sys.exit(1)
    if marked:
        console.print(f"Scan [cyan]{scan_id}[/cyan] canceled")
    else:
        console.print(f"Cancellation requested for scan [cyan]{scan_id}[/cyan]")
