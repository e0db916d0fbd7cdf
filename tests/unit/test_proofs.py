"""Tests for proof payload construction and outbox submission."""

from __future__ import annotations

import asyncio
from pathlib import Path

from auditrun.pipeline.models import Proof, ProofStatus
from auditrun.steps.contracts import ProofParams, SubmitParams
from auditrun.steps.proofs import (
    ProofBuilder,
    build_payload,
    expected_outcome,
    reproduction_steps,
)


def run_async(coro):
    """Helper to run async functions in sync tests."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    return loop.run_until_complete(coro)


class TestReproductionSteps:
    def test_numbered_and_connects_to_deployment(self, finding_factory):
        steps = reproduction_steps(finding_factory("REENTRANCY"), "0xabc")
        assert steps[0] == "1. Connect to the deployed contract at 0xabc"
        assert all(step.startswith(f"{i}. ") for i, step in enumerate(steps, start=1))
        assert len(steps) > 3

    def test_without_deployment(self, finding_factory):
        steps = reproduction_steps(finding_factory("TX_ORIGIN"), None)
        assert steps[0] == "1. Deploy the vulnerable contract to a test network"

    def test_unknown_type_uses_location(self, finding_factory):
        steps = reproduction_steps(finding_factory("SOMETHING_NEW"), None)
        assert any("src/Vault.sol:42" in step for step in steps)
        assert any("Call withdraw" in step for step in steps)

    def test_oracle_appends_description(self, finding_factory):
        finding = finding_factory("ORACLE_MANIPULATION")
        steps = reproduction_steps(finding, None)
        assert steps[-1].endswith(f"Reported issue: {finding.description}")

    def test_expected_outcome_fallback(self, finding_factory):
        finding = finding_factory("SOMETHING_NEW")
        assert expected_outcome(finding).startswith("SOMETHING_NEW can be exploited")
        assert expected_outcome(finding_factory("REENTRANCY")) != expected_outcome(finding)


class TestPayload:
    def test_fields(self, finding_factory):
        finding = finding_factory("REENTRANCY")
        payload = build_payload("p1", "s1", finding, "0xabc")

        assert payload["id"] == "p1"
        assert payload["findingId"] == finding.id
        assert payload["severity"] == "HIGH"
        assert payload["location"] == {
            "filePath": "src/Vault.sol",
            "lineNumber": 42,
            "functionSelector": "withdraw",
        }
        assert payload["metadata"]["scanId"] == "s1"
        assert payload["metadata"]["confidenceScore"] == 0.9
        assert payload["contractDetails"]["deploymentAddress"] == "0xabc"
        assert payload["exploitDetails"]["expectedOutcome"]

    def test_no_contract_details_without_deployment(self, finding_factory):
        payload = build_payload("p1", "s1", finding_factory(), None)
        assert "contractDetails" not in payload

    def test_builder(self, finding_factory):
        params = ProofParams(
            scan_id="s1", finding=finding_factory(), cloned_path=Path("/tmp/repo")
        )
        draft = run_async(ProofBuilder().generate(params))
        proof_id = draft.payload["id"]
        assert len(proof_id) == 16
        assert draft.researcher_signature == "0x" + proof_id.encode().hex()


class TestOutboxSubmitter:
    def test_records_each_proof(self, db, seed_scan, finding_factory):
        from auditrun.steps.submit import OutboxSubmitter
        from auditrun.storage.repos import FindingRepo, ProofRepo, SubmissionRepo

        job = seed_scan()
        proofs = []
        for vuln in ("REENTRANCY", "TX_ORIGIN"):
            finding = finding_factory(vuln)
            finding.scan_id = job.scan_id
            run_async(FindingRepo(db).create(finding))
            proof = Proof(
                scan_id=job.scan_id,
                finding_id=finding.id,
                payload={"id": vuln},
                researcher_signature="0xsig",
            )
            run_async(ProofRepo(db).create(proof))
            proofs.append(proof)

        result = run_async(
            OutboxSubmitter(db).run(
                SubmitParams(
                    scan_id=job.scan_id,
                    protocol_id=job.protocol_id,
                    proofs=tuple(proofs),
                    target_commit=None,
                )
            )
        )

        assert result.proofs_submitted == 2
        rows = run_async(SubmissionRepo(db).list_by_scan(job.scan_id))
        assert [r["proof_id"] for r in rows] == [p.id for p in proofs]
        assert rows[0]["message"]["commitHash"] == "latest"
        assert rows[0]["message"]["signature"] == "0xsig"
        stored = run_async(ProofRepo(db).list_by_scan(job.scan_id))
        assert {p.status for p in stored} == {ProofStatus.SUBMITTED}

    def test_unknown_proof_is_skipped(self, db, seed_scan):
        from auditrun.steps.submit import OutboxSubmitter

        job = seed_scan()
        ghost = Proof(scan_id=job.scan_id, finding_id="gone", payload={})
        result = run_async(
            OutboxSubmitter(db).run(
                SubmitParams(
                    scan_id=job.scan_id,
                    protocol_id=job.protocol_id,
                    proofs=(ghost,),
                    target_commit="abc",
                )
            )
        )
        assert result.proofs_submitted == 0
