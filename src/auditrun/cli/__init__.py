"""CLI entry point: Click group with global options."""

from __future__ import annotations

import logging

import click

from auditrun import __version__
from auditrun.config import AuditRunConfig


@click.group()
@click.version_option(version=__version__, prog_name="auditrun")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="Path to a YAML config file.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """auditrun: queue-driven smart-contract audit pipeline."""
    ctx.ensure_object(dict)
    config = AuditRunConfig.load(config_path)
    config.verbose = verbose
    ctx.obj["config"] = config
    ctx.obj["verbose"] = verbose

    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _register_commands() -> None:
    from auditrun.cli.agents import agents  # noqa: F811
    from auditrun.cli.status import queue, status  # noqa: F811
    from auditrun.cli.submit import cancel, submit  # noqa: F811
    from auditrun.cli.worker import worker  # noqa: F811

    main.add_command(submit)
    main.add_command(cancel)
    main.add_command(worker)
    main.add_command(status)
    main.add_command(queue)
    main.add_command(agents)


_register_commands()
