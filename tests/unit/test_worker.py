"""Tests for the job consumer: retries, terminal states and restart recovery."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest

from auditrun.config import AuditRunConfig
from auditrun.events import EventKind, Notifier
from auditrun.pipeline.models import Agent, JobStatus, ScanState


def run_async(coro):
    """Helper to run async functions in sync tests."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    return loop.run_until_complete(coro)


@pytest.fixture(autouse=True)
def _no_listening_ports():
    with patch("auditrun.pipeline.ports._listening_ports", return_value=set()):
        yield


@pytest.fixture
def config(tmp_path) -> AuditRunConfig:
    return AuditRunConfig(
        data_dir=tmp_path,
        work_dir=tmp_path / "repos",
        queue_backoff=0.0,
        queue_poll_interval=0.01,
        capacity_poll=0.01,
    )


@pytest.fixture
def agent(db) -> Agent:
    from auditrun.storage.repos import AgentRepo

    agent = Agent(name="researcher-1")
    run_async(AgentRepo(db).create(agent))
    return agent


def _consumer(db, config, executors, sink, cleanup):
    from auditrun.pipeline.worker import JobConsumer

    return JobConsumer(db, config, executors, Notifier([sink]), cleanup=cleanup)


def _scan(db, scan_id):
    from auditrun.storage.repos import ScanRepo

    return run_async(ScanRepo(db).get(scan_id))


class TestProcess:
    def test_success(self, db, config, agent, sink, cleanup, seed_scan, executors_factory):
        from auditrun.storage.repos import AgentRepo, AgentRunRepo

        job = seed_scan()
        consumer = _consumer(db, config, executors_factory(), sink, cleanup)
        assert run_async(consumer.run_once()) is True

        scan = _scan(db, job.scan_id)
        assert scan["state"] == "SUCCEEDED"
        assert scan["findings_count"] == 1
        assert scan["error_code"] is None
        assert scan["agent_id"] == agent.id

        row = run_async(AgentRepo(db).get(agent.id))
        assert row["active_scans"] == 0
        assert row["scans_completed"] == 1

        runs = run_async(AgentRunRepo(db).list_by_scan(job.scan_id))
        assert len(runs) == 1
        assert runs[0]["error_code"] is None
        assert runs[0]["duration"] is not None

        assert run_async(consumer.queue.get(job.id)).status == JobStatus.COMPLETED
        started = sink.of_kind(EventKind.STARTED)
        assert started[0].data["agent_id"] == agent.id
        completed = sink.of_kind(EventKind.COMPLETED)
        assert len(completed) == 1
        assert completed[0].state == ScanState.SUCCEEDED
        assert completed[0].data["findings_count"] == 1

    def test_ai_fallback_is_recorded(
        self, db, config, agent, sink, cleanup, seed_scan, executors_factory, fakes
    ):
        job = seed_scan()
        executors = executors_factory(ai=fakes["ai"](error=RuntimeError("model offline")))
        run_async(_consumer(db, config, executors, sink, cleanup).run_once())

        scan = _scan(db, job.scan_id)
        assert scan["state"] == "SUCCEEDED"
        assert scan["error_code"] == "AI_ANALYSIS_FAILED"

    def test_retry_until_exhausted(
        self, db, config, agent, sink, cleanup, seed_scan, executors_factory, fakes
    ):
        from auditrun.storage.repos import AgentRepo, AgentRunRepo, ScanRepo

        job = seed_scan(max_attempts=3)
        clone = fakes["clone"](RuntimeError("network unreachable"))
        consumer = _consumer(db, config, executors_factory(clone=clone), sink, cleanup)

        async def _drain():
            handled = 0
            while await consumer.run_once():
                handled += 1
                scan = await ScanRepo(db).get(job.scan_id)
                if handled < 3:
                    assert scan["state"] == "RUNNING"
            return handled

        assert run_async(_drain()) == 3
        assert len(clone.calls) == 3

        scan = _scan(db, job.scan_id)
        assert scan["state"] == "FAILED"
        assert scan["error_code"] == "CLONE_FAILED"
        assert scan["retry_count"] == 2

        queued = run_async(consumer.queue.get(job.id))
        assert queued.status == JobStatus.FAILED
        assert queued.attempts_made == 3

        runs = run_async(AgentRunRepo(db).list_by_scan(job.scan_id))
        assert [r["error_code"] for r in runs] == ["CLONE_FAILED"] * 3
        assert run_async(AgentRepo(db).get(agent.id))["active_scans"] == 0

        completed = sink.of_kind(EventKind.COMPLETED)
        assert len(completed) == 1
        assert completed[0].state == ScanState.FAILED
        assert completed[0].data["error_code"] == "CLONE_FAILED"

    def test_non_retryable_fails_immediately(
        self, db, tmp_path, agent, sink, cleanup, seed_scan, executors_factory
    ):
        config = AuditRunConfig(data_dir=tmp_path, queue_backoff=0.0, ai_enabled=False)
        job = seed_scan()
        consumer = _consumer(db, config, executors_factory(), sink, cleanup)

        assert run_async(consumer.run_once()) is True
        assert run_async(consumer.run_once()) is False

        scan = _scan(db, job.scan_id)
        assert scan["state"] == "FAILED"
        assert scan["error_code"] == "AI_ANALYSIS_REQUIRED_DISABLED"
        assert scan["retry_count"] == 0

    def test_inconclusive_keeps_zero_findings(
        self, db, config, agent, sink, cleanup, seed_scan, executors_factory, fakes
    ):
        job = seed_scan()
        executors = executors_factory(analyze=fakes["analyze"]([]))
        run_async(_consumer(db, config, executors, sink, cleanup).run_once())

        scan = _scan(db, job.scan_id)
        assert scan["state"] == "FAILED"
        assert scan["error_code"] == "SCAN_INCONCLUSIVE_AI_ZERO_FINDINGS"
        assert scan["findings_count"] == 0

    def test_capacity_timeout(self, db, config, sink, cleanup, seed_scan, executors_factory):
        from auditrun.storage.repos import AgentRunRepo

        job = seed_scan(queued_at=0.0)
        executors = executors_factory()
        run_async(_consumer(db, config, executors, sink, cleanup).run_once())

        scan = _scan(db, job.scan_id)
        assert scan["state"] == "FAILED"
        assert scan["error_code"] == "NO_RESEARCHER_CAPACITY_TIMEOUT"
        assert executors.clone.calls == []
        assert run_async(AgentRunRepo(db).list_by_scan(job.scan_id)) == []

    def test_canceled_while_active(
        self, db, config, agent, sink, cleanup, seed_scan, executors_factory
    ):
        from auditrun.storage.repos import AgentRepo

        job = seed_scan()
        executors = executors_factory()
        consumer = _consumer(db, config, executors, sink, cleanup)

        async def _run():
            reserved = await consumer.queue.reserve()
            await consumer.queue.cancel(reserved.id)
            await consumer.process(reserved)

        run_async(_run())

        scan = _scan(db, job.scan_id)
        assert scan["state"] == "CANCELED"
        assert scan["error_code"] == "CANCELED"
        assert executors.clone.calls == []
        assert run_async(AgentRepo(db).get(agent.id))["active_scans"] == 0

    def test_port_released(self, db, config, agent, sink, cleanup, seed_scan, executors_factory):
        from auditrun.pipeline.ports import ChainPortPool
        from auditrun.pipeline.worker import JobConsumer

        seed_scan()
        ports = ChainPortPool(9000, 9002)
        executors = executors_factory()
        consumer = JobConsumer(
            db, config, executors, Notifier([sink]), ports=ports, cleanup=cleanup
        )
        run_async(consumer.run_once())

        assert executors.deploy.calls[0].port == 9000
        assert ports.leased == {}

    def test_inconclusive_retry_clears_earlier_attempt(
        self,
        db,
        config,
        agent,
        sink,
        cleanup,
        seed_scan,
        executors_factory,
        fakes,
        finding_factory,
    ):
        from auditrun.storage.repos import FindingRepo, ProofRepo

        job = seed_scan()
        analyze = fakes["analyze"]([finding_factory()])
        executors = executors_factory(
            analyze=analyze, submit=fakes["submit"](RuntimeError("outbox down"))
        )
        consumer = _consumer(db, config, executors, sink, cleanup)

        assert run_async(consumer.run_once()) is True
        assert _scan(db, job.scan_id)["state"] == "RUNNING"
        assert len(run_async(ProofRepo(db).list_by_scan(job.scan_id))) == 1

        analyze.findings = []
        assert run_async(consumer.run_once()) is True

        scan = _scan(db, job.scan_id)
        assert scan["state"] == "FAILED"
        assert scan["error_code"] == "SCAN_INCONCLUSIVE_AI_ZERO_FINDINGS"
        assert scan["findings_count"] == 0
        assert run_async(FindingRepo(db).list_by_scan(job.scan_id)) == []
        assert run_async(ProofRepo(db).list_by_scan(job.scan_id)) == []

    def test_cancel_during_retry_backoff(
        self, db, tmp_path, agent, sink, cleanup, seed_scan, executors_factory, fakes
    ):
        from auditrun.pipeline.worker import cancel_scan

        config = AuditRunConfig(data_dir=tmp_path, queue_backoff=60.0, capacity_poll=0.01)
        job = seed_scan()
        clone = fakes["clone"](RuntimeError("network unreachable"))
        consumer = _consumer(db, config, executors_factory(clone=clone), sink, cleanup)

        assert run_async(consumer.run_once()) is True
        assert _scan(db, job.scan_id)["state"] == "RUNNING"
        assert run_async(consumer.queue.get(job.id)).status == JobStatus.WAITING

        flagged, canceled = run_async(cancel_scan(db, job.scan_id, Notifier([sink])))

        assert (flagged, canceled) == (True, True)
        scan = _scan(db, job.scan_id)
        assert scan["state"] == "CANCELED"
        assert scan["error_code"] == "CANCELED"
        assert scan["error_message"] == "Canceled while waiting to retry"
        assert run_async(consumer.queue.get(job.id)).status == JobStatus.FAILED
        completed = sink.of_kind(EventKind.COMPLETED)
        assert [e.state for e in completed] == [ScanState.CANCELED]

    def test_cancel_active_job_only_flags(
        self, db, config, agent, sink, cleanup, seed_scan, executors_factory
    ):
        from auditrun.pipeline.worker import cancel_scan

        job = seed_scan()
        consumer = _consumer(db, config, executors_factory(), sink, cleanup)
        run_async(consumer.queue.reserve())

        assert run_async(cancel_scan(db, job.scan_id)) == (True, False)
        assert _scan(db, job.scan_id)["state"] == "QUEUED"
        assert run_async(consumer.queue.is_canceled(job.id)) is True

    def test_failed_bookkeeping_fails_the_job(
        self, db, config, agent, sink, cleanup, seed_scan, executors_factory, fakes
    ):
        import sqlite3
        from unittest.mock import AsyncMock

        from auditrun.storage.repos import AgentRepo

        job = seed_scan()
        clone = fakes["clone"](RuntimeError("network unreachable"))
        consumer = _consumer(db, config, executors_factory(clone=clone), sink, cleanup)
        locked = AsyncMock(side_effect=sqlite3.OperationalError("database is locked"))

        with patch.object(consumer.queue, "retry", locked):
            assert run_async(consumer.run_once()) is True

        scan = _scan(db, job.scan_id)
        assert scan["state"] == "FAILED"
        assert scan["error_code"] == "UNKNOWN"
        assert "database is locked" in scan["error_message"]
        assert run_async(consumer.queue.get(job.id)).status == JobStatus.FAILED
        assert run_async(AgentRepo(db).get(agent.id))["active_scans"] == 0
        completed = sink.of_kind(EventKind.COMPLETED)
        assert completed[-1].data["error_code"] == "UNKNOWN"

    def test_failed_bookkeeping_after_success_completes_the_job(
        self, db, config, agent, sink, cleanup, seed_scan, executors_factory
    ):
        import sqlite3
        from unittest.mock import AsyncMock

        job = seed_scan()
        consumer = _consumer(db, config, executors_factory(), sink, cleanup)
        real_complete = consumer.queue.complete
        calls = []

        async def _flaky_complete(job_id):
            calls.append(job_id)
            if len(calls) == 1:
                raise sqlite3.OperationalError("database is locked")
            await real_complete(job_id)

        with patch.object(consumer.queue, "complete", AsyncMock(side_effect=_flaky_complete)):
            run_async(consumer.run_once())

        assert _scan(db, job.scan_id)["state"] == "SUCCEEDED"
        assert run_async(consumer.queue.get(job.id)).status == JobStatus.COMPLETED


class TestRestoreInterrupted:
    def test_running_scans_fail_on_restart(
        self, db, config, agent, sink, cleanup, seed_scan, executors_factory
    ):
        from auditrun.storage.repos import AgentRepo, ScanRepo

        job = seed_scan(queued_at=1.0)
        other = seed_scan(queued_at=2.0)
        consumer = _consumer(db, config, executors_factory(), sink, cleanup)

        async def _interrupt():
            await consumer.queue.reserve()
            await ScanRepo(db).assign_to_agent(job.scan_id, agent.id)
            await AgentRepo(db).claim(agent.id, job.scan_id)
            return await consumer.restore_interrupted()

        assert run_async(_interrupt()) == [job.scan_id]

        scan = _scan(db, job.scan_id)
        assert scan["state"] == "FAILED"
        assert scan["error_code"] == "WORKER_RESTART"
        assert "resubmit" in scan["error_message"]
        assert _scan(db, other.scan_id)["state"] == "QUEUED"

        assert run_async(consumer.queue.get(job.id)).status == JobStatus.FAILED
        assert run_async(consumer.queue.get(other.id)).status == JobStatus.WAITING
        assert run_async(AgentRepo(db).get(agent.id))["active_scans"] == 0

        completed = sink.of_kind(EventKind.COMPLETED)
        assert [e.scan_id for e in completed] == [job.scan_id]


class TestRunLoop:
    def test_runs_jobs_until_stopped(
        self, db, config, agent, sink, cleanup, seed_scan, executors_factory
    ):
        from auditrun.pipeline.worker import JobConsumer

        first = seed_scan()
        second = seed_scan()

        async def _run():
            consumer = JobConsumer(
                db, config, executors_factory(), Notifier([sink]), cleanup=cleanup
            )

            class StopWhenDone:
                def __init__(self):
                    self.seen = set()

                async def send(self, event):
                    if event.kind == EventKind.COMPLETED:
                        self.seen.add(event.scan_id)
                        if len(self.seen) == 2:
                            consumer.stop()

            consumer._notifier.add_sink(StopWhenDone())
            await asyncio.wait_for(consumer.run(), timeout=10)
            return consumer

        consumer = run_async(_run())
        assert consumer.in_flight == 0
        assert _scan(db, first.scan_id)["state"] == "SUCCEEDED"
        assert _scan(db, second.scan_id)["state"] == "SUCCEEDED"

    def test_crashed_task_is_logged(self, db, config, sink, cleanup, executors_factory, caplog):
        import logging
        from unittest.mock import AsyncMock

        from auditrun.pipeline.models import ScanJob

        consumer = _consumer(db, config, executors_factory(), sink, cleanup)

        async def _run():
            crash = AsyncMock(side_effect=RuntimeError("boom"))
            with patch.object(consumer, "process", crash):
                consumer._spawn(ScanJob(scan_id="s1", protocol_id="p1"))
                await asyncio.gather(*consumer._tasks, return_exceptions=True)
            await asyncio.sleep(0)

        with caplog.at_level(logging.ERROR, logger="auditrun.pipeline.worker"):
            run_async(_run())

        assert consumer.in_flight == 0
        assert "scan-s1 crashed" in caplog.text
