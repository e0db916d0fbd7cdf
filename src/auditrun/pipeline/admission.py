"""Admission control: wait for a free researcher agent, up to a deadline."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Awaitable, Callable

from auditrun.errors import ScanError
from auditrun.events import Notifier
from auditrun.pipeline.models import ScanState, WorkerHandle
from auditrun.storage.repos import AgentRepo

logger = logging.getLogger(__name__)


class AdmissionController:
    """Claims a slot on a pool agent before a pipeline may start.

    The deadline runs from when the job was queued, so time spent waiting in
    the queue counts against the budget. Claims are optimistic: pick a
    candidate, then take the slot with a conditional update. Losing that race
    triggers an immediate re-query rather than a sleep.
    """

    def __init__(
        self,
        agents: AgentRepo,
        notifier: Notifier,
        wait_seconds: float = 300.0,
        poll_seconds: float = 15.0,
        role: str = "RESEARCHER",
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._agents = agents
        self._notifier = notifier
        self._wait = wait_seconds
        self._poll = poll_seconds
        self._role = role
        self._clock = clock
        self._sleep = sleep

    async def acquire_capacity(
        self, scan_id: str, protocol_id: str, queued_at: float
    ) -> WorkerHandle:
        deadline = queued_at + self._wait
        while True:
            handle = await self._try_claim(scan_id)
            if handle is not None:
                logger.info(
                    "Scan %s admitted on agent %s", scan_id, handle.agent_name
                )
                return handle

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ScanError.capacity_timeout(
                    "No researcher capacity available within "
                    f"{int(self._wait // 60)} minutes"
                )

            seconds_left = max(0, math.ceil(remaining))
            logger.warning(
                "No available researcher agent for scan %s, waiting for capacity "
                "(%ds remaining)",
                scan_id,
                seconds_left,
            )
            await self._notifier.progress(
                scan_id,
                protocol_id,
                "QUEUE",
                ScanState.QUEUED,
                0,
                f"Waiting for available researcher agent ({seconds_left}s remaining)",
            )
            await self._sleep(min(self._poll, remaining))

    async def _try_claim(self, scan_id: str) -> WorkerHandle | None:
        while True:
            candidate = await self._agents.find_available(self._role)
            if candidate is None:
                return None
            if await self._agents.claim(candidate["id"], scan_id):
                return WorkerHandle(
                    agent_id=candidate["id"],
                    agent_name=candidate["name"],
                    scan_id=scan_id,
                )
            logger.debug(
                "Lost the claim on agent %s for scan %s, re-querying",
                candidate["id"],
                scan_id,
            )

    async def release(self, handle: WorkerHandle, succeeded: bool) -> None:
        await self._agents.release(handle.agent_id, succeeded)
        logger.debug(
            "Released agent %s from scan %s (succeeded=%s)",
            handle.agent_name,
            handle.scan_id,
            succeeded,
        )
