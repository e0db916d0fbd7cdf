"""Repository classes for async CRUD operations on SQLite."""

from __future__ import annotations

import json
import time
from typing import Any

import aiosqlite

from auditrun.pipeline.models import (
    Agent,
    AgentRun,
    AgentStatus,
    AnalysisMethod,
    Finding,
    Proof,
    ProofStatus,
    Protocol,
    Scan,
    ScanState,
    ScanStep,
    ScanStepRecord,
    Severity,
    StepStatus,
)

_TERMINAL_STATES = (
    ScanState.SUCCEEDED.value,
    ScanState.FAILED.value,
    ScanState.CANCELED.value,
)


class ProtocolRepo:
    """CRUD for audited protocols."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def create(self, protocol: Protocol) -> None:
        await self._db.execute(
            "INSERT INTO protocols "
            "(id, name, github_url, contract_path, contract_name, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                protocol.id,
                protocol.name,
                protocol.github_url,
                protocol.contract_path,
                protocol.contract_name,
                protocol.created_at,
            ),
        )
        await self._db.commit()

    async def get(self, protocol_id: str) -> dict | None:
        cursor = await self._db.execute(
            "SELECT * FROM protocols WHERE id = ?", (protocol_id,)
        )
        row = await cursor.fetchone()
        return dict(row) if row else None


class ScanRepo:
    """CRUD and state transitions for scans.

    State writes are guarded so a scan never leaves a terminal state.
    """

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def create(self, scan: Scan) -> None:
        await self._db.execute(
            "INSERT INTO scans "
            "(id, protocol_id, state, current_step, findings_count, "
            "target_branch, target_commit, retry_count, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                scan.id,
                scan.protocol_id,
                scan.state.value,
                scan.current_step.value if scan.current_step else None,
                scan.findings_count,
                scan.target_branch,
                scan.target_commit,
                scan.retry_count,
                scan.created_at,
            ),
        )
        await self._db.commit()

    async def get(self, scan_id: str) -> dict | None:
        cursor = await self._db.execute(
            "SELECT * FROM scans WHERE id = ?", (scan_id,)
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def get_with_protocol(self, scan_id: str) -> dict | None:
        cursor = await self._db.execute(
            "SELECT s.*, p.name AS protocol_name, p.github_url, "
            "p.contract_path, p.contract_name "
            "FROM scans s JOIN protocols p ON p.id = s.protocol_id "
            "WHERE s.id = ?",
            (scan_id,),
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def list_by_state(self, state: ScanState) -> list[dict]:
        cursor = await self._db.execute(
            "SELECT * FROM scans WHERE state = ? ORDER BY created_at",
            (state.value,),
        )
        return [dict(row) async for row in cursor]

    async def assign_to_agent(self, scan_id: str, agent_id: str) -> bool:
        """Move a scan to RUNNING under ``agent_id``. Retries keep it RUNNING."""
        cursor = await self._db.execute(
            "UPDATE scans SET state = ?, agent_id = ?, "
            "started_at = COALESCE(started_at, ?), current_step = NULL "
            "WHERE id = ? AND state IN (?, ?)",
            (
                ScanState.RUNNING.value,
                agent_id,
                time.time(),
                scan_id,
                ScanState.QUEUED.value,
                ScanState.RUNNING.value,
            ),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    async def set_current_step(self, scan_id: str, step: ScanStep) -> None:
        await self._db.execute(
            "UPDATE scans SET current_step = ? WHERE id = ?",
            (step.value, scan_id),
        )
        await self._db.commit()

    async def increment_retry(self, scan_id: str) -> None:
        await self._db.execute(
            "UPDATE scans SET retry_count = retry_count + 1 WHERE id = ?",
            (scan_id,),
        )
        await self._db.commit()

    async def mark_succeeded(
        self, scan_id: str, findings_count: int, error_code: str | None = None
    ) -> bool:
        """``error_code`` records a degraded-but-successful run (AI fallback)."""
        cursor = await self._db.execute(
            "UPDATE scans SET state = ?, findings_count = ?, error_code = ?, "
            "completed_at = ? WHERE id = ? AND state = ?",
            (
                ScanState.SUCCEEDED.value,
                findings_count,
                error_code,
                time.time(),
                scan_id,
                ScanState.RUNNING.value,
            ),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    async def mark_failed(
        self,
        scan_id: str,
        error_code: str,
        error_message: str,
        state: ScanState = ScanState.FAILED,
    ) -> bool:
        cursor = await self._db.execute(
            "UPDATE scans SET state = ?, error_code = ?, error_message = ?, "
            "completed_at = ? "
            f"WHERE id = ? AND state NOT IN ({', '.join('?' * len(_TERMINAL_STATES))})",
            (
                state.value,
                error_code,
                error_message,
                time.time(),
                scan_id,
                *_TERMINAL_STATES,
            ),
        )
        await self._db.commit()
        return cursor.rowcount == 1


class ScanStepRepo:
    """Step ledger rows. Closed rows are never updated again."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def start(self, scan_id: str, step: ScanStep) -> ScanStepRecord:
        record = ScanStepRecord(scan_id=scan_id, step=step)
        await self._db.execute(
            "INSERT INTO scan_steps (id, scan_id, step, status, started_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                record.id,
                scan_id,
                step.value,
                StepStatus.RUNNING.value,
                record.started_at,
            ),
        )
        await self._db.commit()
        return record

    async def complete(
        self, record_id: str, metadata: dict[str, Any] | None = None
    ) -> bool:
        cursor = await self._db.execute(
            "UPDATE scan_steps SET status = ?, metadata = ?, completed_at = ? "
            "WHERE id = ? AND status = ?",
            (
                StepStatus.COMPLETED.value,
                json.dumps(metadata or {}, default=str),
                time.time(),
                record_id,
                StepStatus.RUNNING.value,
            ),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    async def fail(self, record_id: str, error_code: str, error_message: str) -> bool:
        cursor = await self._db.execute(
            "UPDATE scan_steps SET status = ?, error_code = ?, error_message = ?, "
            "completed_at = ? WHERE id = ? AND status = ?",
            (
                StepStatus.FAILED.value,
                error_code,
                error_message,
                time.time(),
                record_id,
                StepStatus.RUNNING.value,
            ),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    async def list_by_scan(self, scan_id: str) -> list[dict]:
        cursor = await self._db.execute(
            "SELECT * FROM scan_steps WHERE scan_id = ? ORDER BY started_at, rowid",
            (scan_id,),
        )
        rows = []
        async for row in cursor:
            data = dict(row)
            data["metadata"] = json.loads(data["metadata"] or "{}")
            rows.append(data)
        return rows


class FindingRepo:
    """CRUD for findings."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def create(self, finding: Finding) -> None:
        await self._db.execute(
            "INSERT INTO findings "
            "(id, scan_id, vulnerability_type, severity, file_path, line_number, "
            "function_selector, description, confidence_score, ai_confidence_score, "
            "remediation_suggestion, code_snippet, analysis_method) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                finding.id,
                finding.scan_id,
                finding.vulnerability_type,
                finding.severity.value,
                finding.file_path,
                finding.line_number,
                finding.function_selector,
                finding.description,
                finding.confidence_score,
                finding.ai_confidence_score,
                finding.remediation_suggestion,
                finding.code_snippet,
                finding.analysis_method.value,
            ),
        )
        await self._db.commit()

    async def list_by_scan(self, scan_id: str) -> list[Finding]:
        cursor = await self._db.execute(
            "SELECT * FROM findings WHERE scan_id = ? ORDER BY rowid", (scan_id,)
        )
        return [_row_to_finding(dict(row)) async for row in cursor]

    async def count_by_scan(self, scan_id: str) -> int:
        cursor = await self._db.execute(
            "SELECT COUNT(*) FROM findings WHERE scan_id = ?", (scan_id,)
        )
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def discard_for_scan(self, scan_id: str) -> int:
        """Remove findings, proofs and outbox rows left by an earlier attempt."""
        await self._db.execute(
            "DELETE FROM proof_submissions WHERE scan_id = ?", (scan_id,)
        )
        await self._db.execute("DELETE FROM proofs WHERE scan_id = ?", (scan_id,))
        cursor = await self._db.execute(
            "DELETE FROM findings WHERE scan_id = ?", (scan_id,)
        )
        await self._db.commit()
        return cursor.rowcount


class ProofRepo:
    """CRUD for proofs."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def create(self, proof: Proof) -> None:
        await self._db.execute(
            "INSERT INTO proofs "
            "(id, scan_id, finding_id, payload, researcher_signature, status, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                proof.id,
                proof.scan_id,
                proof.finding_id,
                json.dumps(proof.payload, default=str),
                proof.researcher_signature,
                proof.status.value,
                proof.created_at,
            ),
        )
        await self._db.commit()

    async def list_by_scan(self, scan_id: str) -> list[Proof]:
        cursor = await self._db.execute(
            "SELECT * FROM proofs WHERE scan_id = ? ORDER BY created_at, rowid",
            (scan_id,),
        )
        return [
            Proof(
                id=row["id"],
                scan_id=row["scan_id"],
                finding_id=row["finding_id"],
                payload=json.loads(row["payload"]),
                researcher_signature=row["researcher_signature"],
                status=ProofStatus(row["status"]),
                created_at=row["created_at"],
            )
            async for row in cursor
        ]

    async def update_status(self, proof_id: str, status: ProofStatus) -> None:
        await self._db.execute(
            "UPDATE proofs SET status = ? WHERE id = ?",
            (status.value, proof_id),
        )
        await self._db.commit()


class SubmissionRepo:
    """Outbox of proof submissions consumed by the downstream validator."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def record(
        self,
        proof_id: str,
        scan_id: str,
        protocol_id: str,
        message: dict[str, Any],
    ) -> None:
        await self._db.execute(
            "INSERT INTO proof_submissions "
            "(proof_id, scan_id, protocol_id, message, submitted_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (proof_id, scan_id, protocol_id, json.dumps(message), time.time()),
        )
        await self._db.commit()

    async def list_by_scan(self, scan_id: str) -> list[dict]:
        cursor = await self._db.execute(
            "SELECT * FROM proof_submissions WHERE scan_id = ? ORDER BY id",
            (scan_id,),
        )
        rows = []
        async for row in cursor:
            data = dict(row)
            data["message"] = json.loads(data["message"])
            rows.append(data)
        return rows


class AgentRepo:
    """The bounded pool of worker identities."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def create(self, agent: Agent) -> None:
        await self._db.execute(
            "INSERT INTO agents "
            "(id, name, role, status, capacity, active_scans, current_task, "
            "scans_completed) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                agent.id,
                agent.name,
                agent.role,
                agent.status.value,
                agent.capacity,
                agent.active_scans,
                agent.current_task,
                agent.scans_completed,
            ),
        )
        await self._db.commit()

    async def get(self, agent_id: str) -> dict | None:
        cursor = await self._db.execute(
            "SELECT * FROM agents WHERE id = ?", (agent_id,)
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def list_all(self) -> list[dict]:
        cursor = await self._db.execute("SELECT * FROM agents ORDER BY name")
        return [dict(row) async for row in cursor]

    async def find_available(self, role: str = "RESEARCHER") -> dict | None:
        """Return one agent of ``role`` that is up and below capacity."""
        cursor = await self._db.execute(
            "SELECT * FROM agents WHERE role = ? AND status IN (?, ?) "
            "AND active_scans < capacity "
            "ORDER BY active_scans, scans_completed LIMIT 1",
            (role, AgentStatus.ONLINE.value, AgentStatus.SCANNING.value),
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def claim(self, agent_id: str, scan_id: str) -> bool:
        """Take one slot on the agent. False if another consumer got there first."""
        cursor = await self._db.execute(
            "UPDATE agents SET active_scans = active_scans + 1, status = ?, "
            "current_task = ? "
            "WHERE id = ? AND status IN (?, ?) AND active_scans < capacity",
            (
                AgentStatus.SCANNING.value,
                scan_id,
                agent_id,
                AgentStatus.ONLINE.value,
                AgentStatus.SCANNING.value,
            ),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    async def release(self, agent_id: str, succeeded: bool) -> None:
        await self._db.execute(
            "UPDATE agents SET "
            "active_scans = MAX(active_scans - 1, 0), "
            "scans_completed = scans_completed + ?, "
            "status = CASE WHEN active_scans - 1 <= 0 AND status = ? "
            "THEN ? ELSE status END, "
            "current_task = CASE WHEN active_scans - 1 <= 0 "
            "THEN NULL ELSE current_task END "
            "WHERE id = ?",
            (
                1 if succeeded else 0,
                AgentStatus.SCANNING.value,
                AgentStatus.ONLINE.value,
                agent_id,
            ),
        )
        await self._db.commit()

    async def reset_slots(self) -> int:
        """Zero every agent's active slots after a worker crash."""
        cursor = await self._db.execute(
            "UPDATE agents SET active_scans = 0, current_task = NULL, "
            "status = CASE WHEN status = ? THEN ? ELSE status END "
            "WHERE active_scans > 0 OR status = ?",
            (
                AgentStatus.SCANNING.value,
                AgentStatus.ONLINE.value,
                AgentStatus.SCANNING.value,
            ),
        )
        await self._db.commit()
        return cursor.rowcount


class AgentRunRepo:
    """One row per pipeline attempt by an agent."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def start(self, run: AgentRun) -> AgentRun:
        await self._db.execute(
            "INSERT INTO agent_runs "
            "(id, agent_id, scan_id, worker_id, runtime_version, started_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                run.id,
                run.agent_id,
                run.scan_id,
                run.worker_id,
                run.runtime_version,
                run.started_at,
            ),
        )
        await self._db.commit()
        return run

    async def complete(self, run_id: str, duration: float) -> None:
        await self._db.execute(
            "UPDATE agent_runs SET completed_at = ?, duration = ? WHERE id = ?",
            (time.time(), duration, run_id),
        )
        await self._db.commit()

    async def fail(
        self, run_id: str, duration: float, error_code: str, error_message: str
    ) -> None:
        await self._db.execute(
            "UPDATE agent_runs SET completed_at = ?, duration = ?, "
            "error_code = ?, error_message = ? WHERE id = ?",
            (time.time(), duration, error_code, error_message, run_id),
        )
        await self._db.commit()

    async def list_by_scan(self, scan_id: str) -> list[dict]:
        cursor = await self._db.execute(
            "SELECT * FROM agent_runs WHERE scan_id = ? ORDER BY started_at",
            (scan_id,),
        )
        return [dict(row) async for row in cursor]


def _row_to_finding(row: dict) -> Finding:
    return Finding(
        id=row["id"],
        scan_id=row["scan_id"],
        vulnerability_type=row["vulnerability_type"],
        severity=Severity(row["severity"]),
        file_path=row["file_path"],
        line_number=row["line_number"],
        function_selector=row["function_selector"],
        description=row["description"],
        confidence_score=row["confidence_score"],
        ai_confidence_score=row["ai_confidence_score"],
        remediation_suggestion=row["remediation_suggestion"],
        code_snippet=row["code_snippet"],
        analysis_method=AnalysisMethod(row["analysis_method"]),
    )
