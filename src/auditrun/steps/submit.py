"""SUBMIT stage: hand proofs to the downstream validator through the outbox."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import aiosqlite

from auditrun.pipeline.models import ProofStatus
from auditrun.steps.contracts import SubmitParams, SubmitResult
from auditrun.storage.repos import ProofRepo, SubmissionRepo

logger = logging.getLogger(__name__)


class OutboxSubmitter:
    """Writes one ``proof_submissions`` row per proof and marks it SUBMITTED."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._submissions = SubmissionRepo(db)
        self._proofs = ProofRepo(db)

    async def run(self, params: SubmitParams) -> SubmitResult:
        submitted = 0
        for proof in params.proofs:
            message = {
                "scanId": params.scan_id,
                "protocolId": params.protocol_id,
                "proofId": proof.id,
                "findingId": proof.finding_id,
                "commitHash": params.target_commit or "latest",
                "signature": proof.researcher_signature,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            try:
                await self._submissions.record(
                    proof.id, params.scan_id, params.protocol_id, message
                )
                await self._proofs.update_status(proof.id, ProofStatus.SUBMITTED)
            except aiosqlite.Error:
                logger.error(
                    "Failed to submit proof %s for scan %s",
                    proof.id,
                    params.scan_id,
                    exc_info=True,
                )
                continue
            submitted += 1

        logger.info(
            "Submitted %d/%d proofs for scan %s",
            submitted,
            len(params.proofs),
            params.scan_id,
        )
        return SubmitResult(
            proofs_submitted=submitted,
            submission_timestamp=datetime.now(timezone.utc).isoformat(),
        )
