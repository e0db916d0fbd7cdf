"""Job consumer: dequeue scan jobs and run them with bounded concurrency."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Awaitable, Callable

import aiosqlite

from auditrun import __version__
from auditrun.config import AuditRunConfig
from auditrun.errors import ErrorCode, ErrorKind, ScanError, classify
from auditrun.events import Notifier
from auditrun.pipeline.admission import AdmissionController
from auditrun.pipeline.cleanup import ResourceCleanupManager
from auditrun.pipeline.models import AgentRun, JobStatus, ScanJob, ScanState
from auditrun.pipeline.orchestrator import PipelineOrchestrator
from auditrun.pipeline.ports import ChainPortPool
from auditrun.steps.contracts import StepExecutors
from auditrun.storage.queue import ScanQueue
from auditrun.storage.repos import AgentRepo, AgentRunRepo, ScanRepo

logger = logging.getLogger(__name__)

RESTART_MESSAGE = "Scan interrupted by worker restart. Please resubmit."


class JobConsumer:
    """Pulls jobs off the scan queue and decides retry vs. permanent failure.

    The consumer is the only component that writes ``Scan.state``. Whether a
    failed attempt is retried depends on ``ScanError.retryable`` and the
    job's remaining attempts, never on the error text.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        config: AuditRunConfig,
        executors: StepExecutors,
        notifier: Notifier,
        ports: ChainPortPool | None = None,
        cleanup: ResourceCleanupManager | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._queue = ScanQueue(db, default_attempts=config.queue_attempts)
        self._scans = ScanRepo(db)
        self._agents = AgentRepo(db)
        self._runs = AgentRunRepo(db)
        self._notifier = notifier
        self._admission = AdmissionController(
            self._agents,
            notifier,
            wait_seconds=config.capacity_wait,
            poll_seconds=config.capacity_poll,
            clock=clock,
            sleep=sleep,
        )
        self._orchestrator = PipelineOrchestrator(
            db,
            executors,
            notifier,
            config.pipeline,
            cleanup=cleanup,
            is_canceled=self._queue.is_canceled,
        )
        self._ports = ports or ChainPortPool(
            config.chain_port_start, config.chain_port_end
        )
        self._concurrency = max(1, config.concurrency)
        self._poll_interval = config.queue_poll_interval
        self._backoff = config.queue_backoff
        self._clock = clock
        self._tasks: set[asyncio.Task] = set()
        self._stop_event = asyncio.Event()
        self.worker_id = f"worker-{os.getpid()}"

    @property
    def queue(self) -> ScanQueue:
        return self._queue

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def restore_interrupted(self) -> list[str]:
        """Fail scans a previous worker process left RUNNING."""
        await self._queue.fail_stalled(
            f"{ErrorCode.WORKER_RESTART.value}: {RESTART_MESSAGE}"
        )
        freed = await self._agents.reset_slots()
        if freed:
            logger.info("Released %d agent(s) held by a previous worker", freed)

        restored = []
        for scan in await self._scans.list_by_state(ScanState.RUNNING):
            marked = await self._scans.mark_failed(
                scan["id"], ErrorCode.WORKER_RESTART.value, RESTART_MESSAGE
            )
            if not marked:
                continue
            restored.append(scan["id"])
            logger.warning("Scan %s was interrupted by a worker restart", scan["id"])
            await self._notifier.completed(
                scan["id"],
                scan["protocol_id"],
                ScanState.FAILED,
                scan["findings_count"],
                ErrorCode.WORKER_RESTART.value,
                RESTART_MESSAGE,
            )
        return restored

    async def run(self, recover: bool = True) -> None:
        """Consume jobs until ``stop`` is called, then drain in-flight jobs."""
        if recover:
            await self.restore_interrupted()
        self._stop_event.clear()
        logger.info(
            "%s consuming scan jobs (concurrency=%d)", self.worker_id, self._concurrency
        )

        while not self._stop_event.is_set():
            if len(self._tasks) < self._concurrency:
                job = await self._queue.reserve()
                if job is not None:
                    self._spawn(job)
                    continue
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._poll_interval
                )
            except asyncio.TimeoutError:
                pass

        if self._tasks:
            logger.info("Waiting for %d in-flight scan(s) to finish", len(self._tasks))
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("%s stopped", self.worker_id)

    def stop(self) -> None:
        self._stop_event.set()

    async def run_once(self) -> bool:
        """Process at most one due job inline. Returns False if none was due."""
        job = await self._queue.reserve()
        if job is None:
            return False
        await self.process(job)
        return True

    def _spawn(self, job: ScanJob) -> None:
        task = asyncio.create_task(self.process(job), name=f"scan-{job.scan_id}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("%s crashed", task.get_name(), exc_info=error)

    async def process(self, job: ScanJob) -> None:
        """Run one reserved job: admission, pipeline, then outcome bookkeeping."""
        logger.info(
            "Processing scan %s (attempt %d/%d)",
            job.scan_id,
            job.attempts_made,
            job.max_attempts,
        )
        try:
            await self._attempt(job)
        except Exception as e:
            await self._abandon(job, e)

    async def _attempt(self, job: ScanJob) -> None:
        started = self._clock()
        handle = None
        run = None
        port = None
        succeeded = False
        try:
            handle = await self._admission.acquire_capacity(
                job.scan_id, job.protocol_id, job.queued_at
            )
            run = await self._runs.start(
                AgentRun(
                    agent_id=handle.agent_id,
                    scan_id=job.scan_id,
                    worker_id=self.worker_id,
                    runtime_version=__version__,
                )
            )
            if not await self._scans.assign_to_agent(job.scan_id, handle.agent_id):
                raise await self._unassignable(job.scan_id)
            await self._notifier.started(
                job.scan_id,
                job.protocol_id,
                handle.agent_id,
                job.target_branch,
                job.target_commit,
            )
            port = await self._ports.lease(job.scan_id)
            outcome = await self._orchestrator.run(job.scan_id, port)
        except Exception as e:
            await self._handle_failure(job, run, e, self._clock() - started)
        else:
            succeeded = True
            await self._scans.mark_succeeded(
                job.scan_id,
                outcome.findings_count,
                ErrorCode.AI_ANALYSIS_FAILED.value if outcome.ai_fallback else None,
            )
            if run is not None:
                await self._runs.complete(run.id, self._clock() - started)
            await self._queue.complete(job.id)
            logger.info(
                "Scan %s succeeded with %d findings", job.scan_id, outcome.findings_count
            )
            await self._notifier.completed(
                job.scan_id,
                job.protocol_id,
                ScanState.SUCCEEDED,
                outcome.findings_count,
            )
        finally:
            if port is not None:
                self._ports.release(port)
            if handle is not None:
                await self._admission.release(handle, succeeded)

    async def _abandon(self, job: ScanJob, error: Exception) -> None:
        """Fail the job outright when recording its outcome went wrong."""
        logger.error(
            "Recording the outcome of scan %s failed", job.scan_id, exc_info=error
        )
        message = f"Outcome bookkeeping failed: {str(error) or type(error).__name__}"
        marked = await self._scans.mark_failed(
            job.scan_id, ErrorCode.UNKNOWN.value, message
        )
        if not marked:
            # The scan reached a terminal state before bookkeeping broke
            scan = await self._scans.get(job.scan_id)
            if scan is not None and scan["state"] == ScanState.SUCCEEDED.value:
                await self._queue.complete(job.id)
                return
        await self._queue.fail(job.id, f"{ErrorCode.UNKNOWN.value}: {message}")
        if marked:
            await self._notifier.completed(
                job.scan_id,
                job.protocol_id,
                ScanState.FAILED,
                0,
                ErrorCode.UNKNOWN.value,
                message,
            )

    async def _unassignable(self, scan_id: str) -> ScanError:
        scan = await self._scans.get(scan_id)
        if scan is None:
            return ScanError.scan_not_found(scan_id)
        if scan["state"] == ScanState.CANCELED.value:
            return ScanError.canceled(scan_id)
        return ScanError(
            ErrorKind.INTERNAL,
            ErrorCode.UNKNOWN,
            f"Scan {scan_id} is already {scan['state']}",
            retryable=False,
        )

    async def _handle_failure(
        self,
        job: ScanJob,
        run: AgentRun | None,
        error: Exception,
        duration: float,
    ) -> None:
        err = classify(error)
        if run is not None:
            await self._runs.fail(run.id, duration, err.code.value, err.message)

        if err.retryable and not job.attempts_exhausted:
            delay = self._backoff * 2 ** max(job.attempts_made - 1, 0)
            logger.warning(
                "Scan %s attempt %d/%d failed (%s); retrying in %.0fs",
                job.scan_id,
                job.attempts_made,
                job.max_attempts,
                err.code.value,
                delay,
            )
            await self._scans.increment_retry(job.scan_id)
            await self._queue.retry(job.id, f"{err.code.value}: {err.message}", delay)
            return

        if err.kind == ErrorKind.INTERNAL and err.code == ErrorCode.UNKNOWN:
            logger.error("Scan %s failed", job.scan_id, exc_info=error)
        else:
            logger.error("Scan %s failed: %r", job.scan_id, err)

        state = ScanState.CANCELED if err.kind == ErrorKind.CANCELED else ScanState.FAILED
        await self._scans.mark_failed(job.scan_id, err.code.value, err.message, state)
        await self._queue.fail(job.id, f"{err.code.value}: {err.message}")

        scan = await self._scans.get(job.scan_id)
        await self._notifier.completed(
            job.scan_id,
            job.protocol_id,
            state,
            scan["findings_count"] if scan else 0,
            err.code.value,
            err.message,
        )


async def cancel_scan(
    db: aiosqlite.Connection, scan_id: str, notifier: Notifier | None = None
) -> tuple[bool, bool]:
    """Request cancellation of a scan. Returns ``(flagged, canceled_now)``.

    A job no consumer holds right now (never started, or waiting out a retry
    backoff) is failed in the queue, so its scan is marked CANCELED here. An
    active job only gets the flag; its consumer notices it on the next attempt.
    """
    queue = ScanQueue(db)
    scans = ScanRepo(db)
    if not await queue.cancel(scan_id):
        return False, False

    job = await queue.get(scan_id)
    if job is None or job.status != JobStatus.FAILED:
        return True, False

    scan = await scans.get(scan_id)
    if scan is None:
        return True, False
    message = (
        "Canceled before it started"
        if scan["state"] == ScanState.QUEUED.value
        else "Canceled while waiting to retry"
    )
    marked = await scans.mark_failed(
        scan_id, ErrorCode.CANCELED.value, message, state=ScanState.CANCELED
    )
    if marked:
        logger.info("Scan %s canceled", scan_id)
        if notifier is not None:
            await notifier.completed(
                scan_id,
                scan["protocol_id"],
                ScanState.CANCELED,
                scan["findings_count"],
                ErrorCode.CANCELED.value,
                message,
            )
    return True, marked
