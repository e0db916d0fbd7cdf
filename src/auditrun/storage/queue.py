"""Durable scan job queue on top of the SQLite database."""

from __future__ import annotations

import logging
import time

import aiosqlite

from auditrun.pipeline.models import JobStatus, ScanJob

logger = logging.getLogger(__name__)


class ScanQueue:
    """FIFO queue of scan jobs with attempt counting, delayed retries and cancellation.

    The job id is the scan id, so enqueueing the same scan twice is a no-op.
    ``reserve`` claims a job with a conditional UPDATE, which keeps two
    consumers on the same database from running the same job.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        default_attempts: int = 3,
    ) -> None:
        self._db = db
        self._default_attempts = default_attempts

    async def enqueue(self, job: ScanJob) -> bool:
        cursor = await self._db.execute(
            "INSERT OR IGNORE INTO scan_jobs "
            "(id, scan_id, protocol_id, target_branch, target_commit, queued_at, "
            "status, attempts_made, max_attempts, available_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)",
            (
                job.id,
                job.scan_id,
                job.protocol_id,
                job.target_branch,
                job.target_commit,
                job.queued_at,
                JobStatus.WAITING.value,
                job.max_attempts or self._default_attempts,
                job.queued_at,
            ),
        )
        await self._db.commit()
        added = cursor.rowcount == 1
        if added:
            logger.info("Enqueued scan job %s", job.id)
        return added

    async def reserve(self, now: float | None = None) -> ScanJob | None:
        """Claim the oldest due job, or return None if nothing is ready."""
        now = time.time() if now is None else now
        while True:
            cursor = await self._db.execute(
                "SELECT id FROM scan_jobs WHERE status = ? AND canceled = 0 "
                "AND available_at <= ? ORDER BY available_at, queued_at LIMIT 1",
                (JobStatus.WAITING.value, now),
            )
            row = await cursor.fetchone()
            if row is None:
                return None

            cursor = await self._db.execute(
                "UPDATE scan_jobs SET status = ?, attempts_made = attempts_made + 1 "
                "WHERE id = ? AND status = ?",
                (JobStatus.ACTIVE.value, row["id"], JobStatus.WAITING.value),
            )
            await self._db.commit()
            if cursor.rowcount == 1:
                return await self.get(row["id"])
            # Lost the race to another consumer; look again

    async def get(self, job_id: str) -> ScanJob | None:
        cursor = await self._db.execute(
            "SELECT * FROM scan_jobs WHERE id = ?", (job_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return ScanJob(
            scan_id=row["scan_id"],
            protocol_id=row["protocol_id"],
            target_branch=row["target_branch"],
            target_commit=row["target_commit"],
            queued_at=row["queued_at"],
            status=JobStatus(row["status"]),
            attempts_made=row["attempts_made"],
            max_attempts=row["max_attempts"],
            available_at=row["available_at"],
            canceled=bool(row["canceled"]),
            last_error=row["last_error"],
        )

    async def complete(self, job_id: str) -> None:
        await self._set_status(job_id, JobStatus.COMPLETED, None)

    async def fail(self, job_id: str, error: str) -> None:
        """Fail the job permanently."""
        await self._set_status(job_id, JobStatus.FAILED, error)

    async def retry(self, job_id: str, error: str, delay: float) -> None:
        """Put the job back in the queue, due after ``delay`` seconds."""
        await self._db.execute(
            "UPDATE scan_jobs SET status = ?, last_error = ?, available_at = ? "
            "WHERE id = ?",
            (JobStatus.WAITING.value, error, time.time() + delay, job_id),
        )
        await self._db.commit()

    async def cancel(self, job_id: str) -> bool:
        """Flag the job as canceled. A job still waiting is failed at once."""
        cursor = await self._db.execute(
            "UPDATE scan_jobs SET canceled = 1 WHERE id = ? AND status IN (?, ?)",
            (job_id, JobStatus.WAITING.value, JobStatus.ACTIVE.value),
        )
        await self._db.execute(
            "UPDATE scan_jobs SET status = ?, last_error = ? "
            "WHERE id = ? AND status = ?",
            (JobStatus.FAILED.value, "CANCELED", job_id, JobStatus.WAITING.value),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    async def is_canceled(self, job_id: str) -> bool:
        cursor = await self._db.execute(
            "SELECT canceled FROM scan_jobs WHERE id = ?", (job_id,)
        )
        row = await cursor.fetchone()
        return bool(row and row["canceled"])

    async def fail_stalled(self, reason: str) -> list[str]:
        """Fail jobs left ACTIVE by a previous worker process."""
        cursor = await self._db.execute(
            "SELECT id FROM scan_jobs WHERE status = ?", (JobStatus.ACTIVE.value,)
        )
        stalled = [row["id"] async for row in cursor]
        for job_id in stalled:
            await self._set_status(job_id, JobStatus.FAILED, reason)
        return stalled

    async def metrics(self) -> dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        cursor = await self._db.execute(
            "SELECT status, COUNT(*) AS n FROM scan_jobs GROUP BY status"
        )
        async for row in cursor:
            counts[row["status"]] = row["n"]
        return counts

    async def _set_status(
        self, job_id: str, status: JobStatus, error: str | None
    ) -> None:
        await self._db.execute(
            "UPDATE scan_jobs SET status = ?, last_error = COALESCE(?, last_error) "
            "WHERE id = ?",
            (status.value, error, job_id),
        )
        await self._db.commit()
