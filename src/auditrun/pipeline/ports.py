"""Job-scoped local ports for ephemeral chain processes."""

from __future__ import annotations

import asyncio
import logging
import threading

import psutil

logger = logging.getLogger(__name__)


class PortsExhausted(RuntimeError):
    pass


class ChainPortPool:
    """Leases distinct ports from ``[start, end)`` to concurrently running jobs.

    A port held by this pool is never handed out twice; a port some other
    process is already listening on is skipped.
    """

    def __init__(self, start: int = 8545, end: int = 8645) -> None:
        if end <= start:
            raise ValueError(f"Empty port range {start}-{end}")
        self._start = start
        self._end = end
        self._leased: dict[int, str] = {}
        self._lock = threading.Lock()

    async def lease(self, owner: str) -> int:
        busy = await asyncio.to_thread(_listening_ports)
        with self._lock:
            for port in range(self._start, self._end):
                if port in self._leased or port in busy:
                    continue
                self._leased[port] = owner
                logger.debug("Leased chain port %d to %s", port, owner)
                return port
        raise PortsExhausted(f"No free chain port in {self._start}-{self._end}")

    def release(self, port: int) -> None:
        with self._lock:
            self._leased.pop(port, None)

    @property
    def leased(self) -> dict[int, str]:
        with self._lock:
            return dict(self._leased)


def _listening_ports() -> set[int]:
    try:
        conns = psutil.net_connections(kind="inet")
    except (psutil.AccessDenied, OSError):
        return set()
    return {
        conn.laddr.port
        for conn in conns
        if conn.laddr and conn.status == psutil.CONN_LISTEN
    }
