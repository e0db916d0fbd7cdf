"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from auditrun.events import ProgressEvent
from auditrun.pipeline.models import (
    AnalysisMethod,
    Finding,
    Protocol,
    Scan,
    ScanJob,
    Severity,
)
from auditrun.steps.contracts import (
    AIAnalysisResult,
    AIMetrics,
    AnalyzeResult,
    CloneResult,
    CompileResult,
    DeployResult,
    ProofDraft,
    StepExecutors,
    SubmitResult,
)


def _run(coro):
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    return loop.run_until_complete(coro)


class RecordingSink:
    """Event sink that keeps everything it receives."""

    def __init__(self) -> None:
        self.events: list[ProgressEvent] = []

    async def send(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind) -> list[ProgressEvent]:
        return [e for e in self.events if e.kind == kind]


class FakeProcess:
    """Stands in for an anvil subprocess."""

    def __init__(self, pid: int = 4242) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.terminated = False
        self.killed = False

    def terminate(self) -> None:
        self.terminated = True
        self.returncode = -15

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    async def wait(self) -> int:
        return self.returncode if self.returncode is not None else 0


class RecordingCleanup:
    """Cleanup manager double that records what it was asked to stop."""

    def __init__(self) -> None:
        self.calls: list = []

    async def cleanup(self, process) -> None:
        self.calls.append(process)
        if process is not None and process.returncode is None:
            process.terminate()

    @property
    def stopped(self) -> list:
        return [p for p in self.calls if p is not None]


class FakeClone:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls = []

    async def run(self, params):
        self.calls.append(params)
        if self.error:
            raise self.error
        return CloneResult(
            cloned_path=Path("/tmp/auditrun-test") / params.scan_id,
            branch=params.target_branch or "main",
            commit_hash="abc1234def5678",
        )


class FakeCompile:
    def __init__(self, result: CompileResult | None = None, error: Exception | None = None):
        self.result = result
        self.error = error
        self.calls = []

    async def run(self, params):
        self.calls.append(params)
        if self.error:
            raise self.error
        return self.result or CompileResult(
            success=True,
            artifacts_path=params.cloned_path / "out",
            abi=[{"type": "constructor", "inputs": []}],
            bytecode="0x6080",
        )


class FakeDeploy:
    def __init__(self, error: Exception | None = None, attach_before_error: bool = True):
        self.error = error
        self.attach_before_error = attach_before_error
        self.process = FakeProcess()
        self.calls = []

    async def run(self, params):
        self.calls.append(params)
        if self.attach_before_error:
            params.scope.attach(self.process)
        if self.error:
            raise self.error
        return DeployResult(
            deployment_address="0x5FbDB2315678afecb367f032d93F642f64180aa3",
            port=params.port,
            process=self.process,
            transaction_hash="0xfeed",
        )


class FakeAnalyze:
    def __init__(self, findings: list[Finding] | None = None, error: Exception | None = None):
        self.findings = findings if findings is not None else []
        self.error = error
        self.calls = []

    async def run(self, params):
        self.calls.append(params)
        if self.error:
            raise self.error
        return AnalyzeResult(findings=list(self.findings), tools_used=["slither"])


class FakeAI:
    def __init__(
        self,
        findings: list[Finding] | None = None,
        enhanced: bool = False,
        error: Exception | None = None,
    ) -> None:
        self.findings = findings
        self.enhanced = enhanced
        self.error = error
        self.calls = []

    async def run(self, params):
        self.calls.append(params)
        if self.error:
            raise self.error
        findings = (
            list(self.findings) if self.findings is not None else list(params.static_findings)
        )
        return AIAnalysisResult(
            findings=findings,
            metrics=AIMetrics(
                total_findings=len(findings),
                enhanced_findings=len(params.static_findings) if self.enhanced else 0,
                new_findings=max(len(findings) - len(params.static_findings), 0),
                model_used="fake-model",
            ),
            ai_enhanced=self.enhanced,
        )


class FakeProofs:
    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.fail_for = fail_for or set()
        self.calls = []

    async def generate(self, params):
        self.calls.append(params)
        if params.finding.vulnerability_type in self.fail_for:
            raise RuntimeError(f"cannot prove {params.finding.vulnerability_type}")
        return ProofDraft(
            payload={
                "findingId": params.finding.id,
                "vulnerabilityType": params.finding.vulnerability_type,
                "deploymentAddress": params.deployment_address,
            },
            researcher_signature="0xsig",
        )


class FakeSubmit:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls = []

    async def run(self, params):
        self.calls.append(params)
        if self.error:
            raise self.error
        return SubmitResult(
            proofs_submitted=len(params.proofs),
            submission_timestamp="2026-01-01T00:00:00+00:00",
        )


def make_finding(
    vulnerability_type: str = "REENTRANCY",
    severity: Severity = Severity.HIGH,
    method: AnalysisMethod = AnalysisMethod.STATIC,
) -> Finding:
    return Finding(
        vulnerability_type=vulnerability_type,
        severity=severity,
        file_path="src/Vault.sol",
        line_number=42,
        function_selector="withdraw",
        description=f"{vulnerability_type} in Vault.withdraw",
        confidence_score=0.9,
        analysis_method=method,
    )


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
def db(db_path: Path):
    from auditrun.storage.db import get_db

    conn = _run(get_db(db_path))
    yield conn
    _run(conn.close())


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def cleanup() -> RecordingCleanup:
    return RecordingCleanup()


@pytest.fixture
def finding_factory():
    return make_finding


@pytest.fixture
def executors_factory():
    """Build a StepExecutors bundle of fakes; override any stage by keyword."""

    def _build(**overrides) -> StepExecutors:
        stages = {
            "clone": FakeClone(),
            "compile": FakeCompile(),
            "deploy": FakeDeploy(),
            "analyze": FakeAnalyze([make_finding()]),
            "ai": FakeAI(),
            "proofs": FakeProofs(),
            "submit": FakeSubmit(),
        }
        stages.update(overrides)
        return StepExecutors(**stages)

    return _build


@pytest.fixture
def fakes():
    """The fake executor classes, for tests that need to configure them."""
    return {
        "clone": FakeClone,
        "compile": FakeCompile,
        "deploy": FakeDeploy,
        "analyze": FakeAnalyze,
        "ai": FakeAI,
        "proofs": FakeProofs,
        "submit": FakeSubmit,
        "process": FakeProcess,
    }


@pytest.fixture
def seed_scan(db):
    """Create a protocol, a QUEUED scan and its queue job; returns the ScanJob."""
    from auditrun.storage.queue import ScanQueue
    from auditrun.storage.repos import ProtocolRepo, ScanRepo

    def _seed(
        branch: str | None = None,
        commit: str | None = None,
        queued_at: float | None = None,
        max_attempts: int = 3,
    ) -> ScanJob:
        async def _create() -> ScanJob:
            protocol = Protocol(
                name="vault",
                github_url="https://github.com/example/vault",
                contract_path="src/Vault.sol",
                contract_name="Vault",
            )
            await ProtocolRepo(db).create(protocol)
            scan = Scan(protocol_id=protocol.id, target_branch=branch, target_commit=commit)
            await ScanRepo(db).create(scan)
            job = ScanJob(
                scan_id=scan.id,
                protocol_id=protocol.id,
                target_branch=branch,
                target_commit=commit,
                queued_at=queued_at if queued_at is not None else scan.created_at,
                max_attempts=max_attempts,
            )
            await ScanQueue(db).enqueue(job)
            return job

        return _run(_create())

    return _seed
