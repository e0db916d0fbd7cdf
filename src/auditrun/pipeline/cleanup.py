"""Ephemeral chain process lifecycle: graceful terminate, then forced kill."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import psutil

logger = logging.getLogger(__name__)


class ChainProcess(Protocol):
    """The subset of ``asyncio.subprocess.Process`` cleanup relies on."""

    pid: int

    @property
    def returncode(self) -> int | None:
        ...

    def terminate(self) -> None:
        ...

    def kill(self) -> None:
        ...

    async def wait(self) -> int:
        ...


class ResourceCleanupManager:
    """Terminates chain processes. Safe to call repeatedly, never raises."""

    def __init__(self, grace_period: float = 5.0) -> None:
        self._grace_period = grace_period

    async def cleanup(self, process: ChainProcess | None) -> None:
        if process is None:
            return
        try:
            await self._terminate(process)
        except Exception:
            logger.warning(
                "Failed to clean up chain process %s",
                getattr(process, "pid", "?"),
                exc_info=True,
            )

    async def _terminate(self, process: ChainProcess) -> None:
        if process.returncode is not None:
            return

        pid = process.pid
        # Collect children first; they get reparented once the parent exits
        children = _child_processes(pid)

        logger.info("Terminating chain process %d", pid)
        try:
            process.terminate()
        except ProcessLookupError:
            logger.debug("Chain process %d already exited", pid)
            return

        try:
            await asyncio.wait_for(process.wait(), timeout=self._grace_period)
        except asyncio.TimeoutError:
            logger.warning(
                "Chain process %d did not stop gracefully, forcing kill", pid
            )
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

        if children:
            await asyncio.to_thread(_reap_children, children, self._grace_period)
        logger.info("Chain process %d terminated", pid)


class ChainScope:
    """Holds one pipeline run's chain process until the run ends.

    ``close`` hands the process (or None) to the cleanup manager exactly
    once; later calls are no-ops.
    """

    def __init__(self, cleanup: ResourceCleanupManager) -> None:
        self._cleanup = cleanup
        self._process: ChainProcess | None = None
        self._closed = False

    @property
    def process(self) -> ChainProcess | None:
        return self._process

    @property
    def closed(self) -> bool:
        return self._closed

    def attach(self, process: ChainProcess) -> None:
        self._process = process

    async def discard(self) -> None:
        """Drop a partially started process without ending the scope."""
        process, self._process = self._process, None
        if process is not None:
            await self._cleanup.cleanup(process)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        process, self._process = self._process, None
        await self._cleanup.cleanup(process)

    async def __aenter__(self) -> ChainScope:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


def _child_processes(pid: int) -> list[psutil.Process]:
    try:
        return psutil.Process(pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return []


def _reap_children(children: list[psutil.Process], timeout: float) -> None:
    for child in children:
        try:
            child.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    _, alive = psutil.wait_procs(children, timeout=timeout)
    for child in alive:
        try:
            child.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
