"""CLI commands: auditrun agents add / list."""

from __future__ import annotations

import asyncio

import click
from rich.console import Console
from rich.table import Table

from auditrun.config import AuditRunConfig
from auditrun.pipeline.models import Agent
from auditrun.storage.db import get_db
from auditrun.storage.repos import AgentRepo

console = Console()


@click.group()
def agents() -> None:
    """Manage the researcher agent pool."""


@agents.command("add")
@click.argument("name")
@click.option(
    "--capacity",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Scans this agent may run at once.",
)
@click.pass_context
def add(ctx: click.Context, name: str, capacity: int) -> None:
    """Register a researcher agent."""
    config: AuditRunConfig = ctx.obj["config"]
    agent = Agent(name=name, capacity=capacity)

    async def _add() -> None:
        db = await get_db(config.db_path)
        try:
            await AgentRepo(db).create(agent)
        finally:
            await db.close()

    asyncio.run(_add())
    console.print(f"Added agent [cyan]{name}[/cyan] ({agent.id}, capacity {capacity})")


@agents.command("list")
@click.pass_context
def list_agents(ctx: click.Context) -> None:
    """List registered agents."""
    config: AuditRunConfig = ctx.obj["config"]

    async def _list() -> list[dict]:
        db = await get_db(config.db_path)
        try:
            return await AgentRepo(db).list_all()
        finally:
            await db.close()

    rows = asyncio.run(_list())
    if not rows:
        console.print("No agents registered. Add one with 'auditrun agents add NAME'.")
        return

    table = Table(title="Agents")
    table.add_column("Name", style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Status")
    table.add_column("Active", justify="right")
    table.add_column("Completed", justify="right")
    table.add_column("Task", style="cyan")
    for row in rows:
        table.add_row(
            row["name"],
            row["id"],
            row["status"],
            f"{row['active_scans']}/{row['capacity']}",
            str(row["scans_completed"]),
            row["current_task"] or "",
        )
    console.print(table)
