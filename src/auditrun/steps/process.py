"""Run external tools as asyncio subprocesses."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


class CommandError(RuntimeError):
    """A tool exited non-zero."""

    def __init__(self, args: list[str], result: CommandResult) -> None:
        self.args_ = args
        self.result = result
        detail = (result.stderr or result.stdout).strip()[-2000:]
        super().__init__(
            f"{args[0]} exited with code {result.returncode}: {detail}"
        )


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


async def run_command(
    args: list[str],
    cwd: Path | None = None,
    timeout: float | None = None,
    check: bool = True,
) -> CommandResult:
    """Run ``args`` to completion and capture its output.

    Raises FileNotFoundError if the tool is not installed, CommandError on a
    non-zero exit when ``check`` is set.
    """
    logger.debug("Running %s (cwd=%s)", " ".join(args), cwd)
    proc = await asyncio.create_subprocess_exec(
        *args,
        cwd=str(cwd) if cwd else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise

    result = CommandResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
    if check and result.returncode != 0:
        raise CommandError(args, result)
    return result
