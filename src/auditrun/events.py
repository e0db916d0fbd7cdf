"""Progress events: send-and-forget notifications to any number of sinks."""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from auditrun.pipeline.models import ScanState

logger = logging.getLogger(__name__)


class EventKind(enum.Enum):
    STARTED = "started"
    PROGRESS = "progress"
    LOG = "log"
    COMPLETED = "completed"


class LogLevel(enum.Enum):
    DEFAULT = "DEFAULT"
    INFO = "INFO"
    WARN = "WARN"
    ALERT = "ALERT"
    ANALYSIS = "ANALYSIS"


@dataclass
class ProgressEvent:
    """One notification about a scan."""

    kind: EventKind
    scan_id: str
    protocol_id: str
    step: str | None = None
    state: ScanState | None = None
    progress: int | None = None
    message: str = ""
    level: LogLevel = LogLevel.DEFAULT
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class EventSink(Protocol):
    """Anything that can receive progress events."""

    async def send(self, event: ProgressEvent) -> None:
        ...


class LoggingSink:
    """Writes events to the standard logger."""

    _LEVELS = {
        LogLevel.DEFAULT: logging.INFO,
        LogLevel.INFO: logging.INFO,
        LogLevel.ANALYSIS: logging.INFO,
        LogLevel.WARN: logging.WARNING,
        LogLevel.ALERT: logging.WARNING,
    }

    async def send(self, event: ProgressEvent) -> None:
        if event.kind == EventKind.LOG:
            logger.log(
                self._LEVELS.get(event.level, logging.INFO),
                "[scan=%s] %s",
                event.scan_id,
                event.message,
            )
        else:
            logger.debug(
                "[scan=%s] %s step=%s progress=%s %s",
                event.scan_id,
                event.kind.value,
                event.step,
                event.progress,
                event.message,
            )


class QueueSink:
    """Buffers events on an asyncio queue for in-process consumers.

    Events are dropped when the queue is full; a slow reader never blocks
    the pipeline.
    """

    def __init__(self, maxsize: int = 1000) -> None:
        self.queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    async def send(self, event: ProgressEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1


class Notifier:
    """Fans events out to sinks. Sink failures are logged and swallowed."""

    def __init__(self, sinks: Iterable[EventSink] = ()) -> None:
        self._sinks: list[EventSink] = list(sinks)

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    async def publish(self, event: ProgressEvent) -> None:
        for sink in self._sinks:
            try:
                await sink.send(event)
            except Exception:
                logger.warning(
                    "Event sink %s failed for scan %s",
                    type(sink).__name__,
                    event.scan_id,
                    exc_info=True,
                )

    async def started(
        self,
        scan_id: str,
        protocol_id: str,
        agent_id: str,
        target_branch: str | None = None,
        target_commit: str | None = None,
    ) -> None:
        await self.publish(
            ProgressEvent(
                kind=EventKind.STARTED,
                scan_id=scan_id,
                protocol_id=protocol_id,
                state=ScanState.RUNNING,
                data={
                    "agent_id": agent_id,
                    "target_branch": target_branch,
                    "target_commit": target_commit,
                },
            )
        )

    async def progress(
        self,
        scan_id: str,
        protocol_id: str,
        step: str,
        state: ScanState,
        progress: int | None,
        message: str,
    ) -> None:
        await self.publish(
            ProgressEvent(
                kind=EventKind.PROGRESS,
                scan_id=scan_id,
                protocol_id=protocol_id,
                step=step,
                state=state,
                progress=progress,
                message=message,
            )
        )

    async def log(
        self,
        scan_id: str,
        protocol_id: str,
        level: LogLevel,
        message: str,
    ) -> None:
        await self.publish(
            ProgressEvent(
                kind=EventKind.LOG,
                scan_id=scan_id,
                protocol_id=protocol_id,
                level=level,
                message=message,
            )
        )

    async def completed(
        self,
        scan_id: str,
        protocol_id: str,
        state: ScanState,
        findings_count: int,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> None:
        await self.publish(
            ProgressEvent(
                kind=EventKind.COMPLETED,
                scan_id=scan_id,
                protocol_id=protocol_id,
                state=state,
                progress=100 if state == ScanState.SUCCEEDED else None,
                message=error_message or "",
                data={
                    "findings_count": findings_count,
                    "error_code": error_code,
                },
            )
        )
