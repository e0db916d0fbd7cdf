"""Tests for progress event fan-out."""

from __future__ import annotations

import asyncio
import logging

from auditrun.events import EventKind, LoggingSink, LogLevel, Notifier, QueueSink
from auditrun.pipeline.models import ScanState


def run_async(coro):
    """Helper to run async functions in sync tests."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    return loop.run_until_complete(coro)


class ExplodingSink:
    async def send(self, event):
        raise ConnectionError("subscriber went away")


def test_fan_out(sink):
    other = QueueSink()
    notifier = Notifier([sink, other])
    run_async(notifier.progress("s1", "p1", "CLONE", ScanState.RUNNING, 5, "Cloning"))

    assert len(sink.events) == 1
    event = sink.events[0]
    assert event.kind == EventKind.PROGRESS
    assert event.step == "CLONE"
    assert event.progress == 5
    assert other.queue.qsize() == 1


def test_sink_failure_is_swallowed(sink, caplog):
    notifier = Notifier([ExplodingSink(), sink])
    with caplog.at_level(logging.WARNING, logger="auditrun.events"):
        run_async(notifier.log("s1", "p1", LogLevel.ALERT, "[ALERT] boom"))

    assert len(sink.events) == 1
    assert "ExplodingSink" in caplog.text


def test_completed_event(sink):
    notifier = Notifier([sink])
    run_async(notifier.completed("s1", "p1", ScanState.SUCCEEDED, 3))
    run_async(
        notifier.completed("s2", "p1", ScanState.FAILED, 0, "CLONE_FAILED", "boom")
    )

    ok, failed = sink.of_kind(EventKind.COMPLETED)
    assert ok.progress == 100
    assert ok.data == {"findings_count": 3, "error_code": None}
    assert failed.progress is None
    assert failed.message == "boom"
    assert failed.data["error_code"] == "CLONE_FAILED"


def test_started_event(sink):
    notifier = Notifier()
    notifier.add_sink(sink)
    run_async(notifier.started("s1", "p1", "agent-1", "main", None))

    event = sink.events[0]
    assert event.state == ScanState.RUNNING
    assert event.data["agent_id"] == "agent-1"
    assert event.data["target_branch"] == "main"


def test_queue_sink_drops_when_full():
    queue_sink = QueueSink(maxsize=2)
    notifier = Notifier([queue_sink])

    async def _flood():
        for i in range(5):
            await notifier.progress("s1", "p1", "CLONE", ScanState.RUNNING, i, "x")

    run_async(_flood())
    assert queue_sink.queue.qsize() == 2
    assert queue_sink.dropped == 3


def test_logging_sink(caplog):
    notifier = Notifier([LoggingSink()])
    with caplog.at_level(logging.INFO, logger="auditrun.events"):
        run_async(notifier.log("abc", "p1", LogLevel.WARN, "[WARN] deployment failed"))

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert "[scan=abc] [WARN] deployment failed" in record.getMessage()
