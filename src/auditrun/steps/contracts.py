"""Step executor contracts: typed inputs and results for the seven pipeline stages.

Each executor is an async callable object. Executors raise on failure; the
orchestrator decides what a failure means for the scan.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from auditrun.pipeline.cleanup import ChainProcess, ChainScope
from auditrun.pipeline.models import Finding, Proof


@dataclass(frozen=True)
class CloneParams:
    scan_id: str
    protocol_id: str
    repo_url: str
    target_branch: str | None = None
    target_commit: str | None = None


@dataclass(frozen=True)
class CloneResult:
    cloned_path: Path
    branch: str
    commit_hash: str


@dataclass(frozen=True)
class CompileParams:
    cloned_path: Path
    contract_path: str
    contract_name: str


@dataclass
class CompileResult:
    success: bool
    artifacts_path: Path
    abi: list[dict[str, Any]] | None = None
    bytecode: str | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class DeployParams:
    abi: list[dict[str, Any]]
    bytecode: str
    contract_name: str
    port: int
    scope: ChainScope


@dataclass
class DeployResult:
    deployment_address: str
    port: int
    process: ChainProcess
    transaction_hash: str


@dataclass(frozen=True)
class AnalyzeParams:
    cloned_path: Path
    contract_path: str
    contract_name: str


class ToolStatus(enum.Enum):
    OK = "OK"
    TOOL_UNAVAILABLE = "TOOL_UNAVAILABLE"
    ERROR = "ERROR"


@dataclass
class AnalyzeResult:
    findings: list[Finding]
    tools_used: list[str] = field(default_factory=list)
    tool_status: ToolStatus = ToolStatus.OK
    tool_error: str | None = None


@dataclass(frozen=True)
class AIAnalysisParams:
    cloned_path: Path
    contract_path: str
    contract_name: str
    static_findings: tuple[Finding, ...]


@dataclass
class AIMetrics:
    total_findings: int = 0
    enhanced_findings: int = 0
    new_findings: int = 0
    processing_time_ms: int = 0
    model_used: str = "none"
    tokens_used: int | None = None


@dataclass
class AIAnalysisResult:
    findings: list[Finding]
    metrics: AIMetrics
    ai_enhanced: bool


@dataclass(frozen=True)
class ProofParams:
    scan_id: str
    finding: Finding
    cloned_path: Path
    deployment_address: str | None = None


@dataclass
class ProofDraft:
    payload: dict[str, Any]
    researcher_signature: str = ""


@dataclass(frozen=True)
class SubmitParams:
    scan_id: str
    protocol_id: str
    proofs: tuple[Proof, ...]
    target_commit: str | None = None


@dataclass
class SubmitResult:
    proofs_submitted: int
    submission_timestamp: str


class CloneExecutor(Protocol):
    async def run(self, params: CloneParams) -> CloneResult:
        ...


class CompileExecutor(Protocol):
    async def run(self, params: CompileParams) -> CompileResult:
        ...


class DeployExecutor(Protocol):
    async def run(self, params: DeployParams) -> DeployResult:
        """Attach the spawned process to ``params.scope`` as soon as it exists."""
        ...


class StaticAnalysisExecutor(Protocol):
    async def run(self, params: AnalyzeParams) -> AnalyzeResult:
        ...


class AIAnalysisExecutor(Protocol):
    async def run(self, params: AIAnalysisParams) -> AIAnalysisResult:
        ...


class ProofGenerator(Protocol):
    async def generate(self, params: ProofParams) -> ProofDraft:
        """Build the proof for a single finding."""
        ...


class SubmissionExecutor(Protocol):
    async def run(self, params: SubmitParams) -> SubmitResult:
        ...


@dataclass
class StepExecutors:
    """The full set of collaborators the orchestrator drives."""

    clone: CloneExecutor
    compile: CompileExecutor
    deploy: DeployExecutor
    analyze: StaticAnalysisExecutor
    ai: AIAnalysisExecutor
    proofs: ProofGenerator
    submit: SubmissionExecutor
