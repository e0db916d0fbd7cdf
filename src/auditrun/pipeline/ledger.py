"""Step ledger: start/complete/fail records for each stage of one scan attempt."""

from __future__ import annotations

import logging
from typing import Any

from auditrun.pipeline.models import ScanStep, ScanStepRecord, StepStatus
from auditrun.storage.repos import ScanRepo, ScanStepRepo

logger = logging.getLogger(__name__)


class LedgerOrderError(RuntimeError):
    """A stage was opened out of order or before the previous one closed."""


class StepLedger:
    """Ledger for a single execution attempt of one scan.

    Stages open strictly forward and one at a time. Opening a stage also
    advances ``Scan.current_step``.
    """

    def __init__(self, scan_id: str, steps: ScanStepRepo, scans: ScanRepo) -> None:
        self._scan_id = scan_id
        self._steps = steps
        self._scans = scans
        self._last_step: ScanStep | None = None
        self._open: ScanStepRecord | None = None

    @property
    def current_step(self) -> ScanStep | None:
        return self._last_step

    @property
    def open_record(self) -> ScanStepRecord | None:
        return self._open

    async def open(self, step: ScanStep) -> ScanStepRecord:
        if self._open is not None:
            raise LedgerOrderError(
                f"{step.value} opened while {self._open.step.value} is still running"
            )
        if self._last_step is not None and step.order <= self._last_step.order:
            raise LedgerOrderError(
                f"{step.value} cannot follow {self._last_step.value}"
            )

        record = await self._steps.start(self._scan_id, step)
        await self._scans.set_current_step(self._scan_id, step)
        self._last_step = step
        self._open = record
        return record

    async def complete(
        self, record: ScanStepRecord, metadata: dict[str, Any] | None = None
    ) -> None:
        closed = await self._steps.complete(record.id, metadata)
        if not closed:
            logger.warning("Step record %s was already closed", record.id)
        record.status = StepStatus.COMPLETED
        record.metadata = dict(metadata or {})
        self._release(record)

    async def fail(self, record: ScanStepRecord, error_code: str, message: str) -> None:
        closed = await self._steps.fail(record.id, error_code, message)
        if not closed:
            logger.warning("Step record %s was already closed", record.id)
        record.status = StepStatus.FAILED
        record.error_code = error_code
        record.error_message = message
        self._release(record)

    def _release(self, record: ScanStepRecord) -> None:
        if self._open is not None and self._open.id == record.id:
            self._open = None
