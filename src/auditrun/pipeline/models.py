"""Pipeline data models: scans, step records, findings, proofs, agents, jobs."""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


class ScanState(enum.Enum):
    """Lifecycle state of a scan."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"

    @property
    def is_terminal(self) -> bool:
        return self in (ScanState.SUCCEEDED, ScanState.FAILED, ScanState.CANCELED)


class ScanStep(enum.Enum):
    """The ordered stages of the scan pipeline."""

    CLONE = "CLONE"
    COMPILE = "COMPILE"
    DEPLOY = "DEPLOY"
    ANALYZE = "ANALYZE"
    AI_DEEP_ANALYSIS = "AI_DEEP_ANALYSIS"
    PROOF_GENERATION = "PROOF_GENERATION"
    SUBMIT = "SUBMIT"

    @property
    def order(self) -> int:
        return _STEP_ORDER.index(self)


_STEP_ORDER = list(ScanStep)


class StepStatus(enum.Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Severity(enum.Enum):
    INFO = "INFO"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AnalysisMethod(enum.Enum):
    """Where a finding came from."""

    STATIC = "STATIC"
    AI = "AI"
    HYBRID = "HYBRID"


class ProofStatus(enum.Enum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    VALIDATED = "VALIDATED"
    REJECTED = "REJECTED"


class AgentStatus(enum.Enum):
    ONLINE = "ONLINE"
    SCANNING = "SCANNING"
    OFFLINE = "OFFLINE"
    ERROR = "ERROR"


class JobStatus(enum.Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Protocol:
    """A registered protocol whose repository gets audited."""

    name: str
    github_url: str
    contract_path: str
    contract_name: str
    created_at: float = field(default_factory=time.time)
    id: str = field(default_factory=_new_id)


@dataclass
class Scan:
    """One end-to-end audit attempt against a protocol's repository."""

    protocol_id: str
    state: ScanState = ScanState.QUEUED
    current_step: ScanStep | None = None
    findings_count: int = 0
    error_code: str | None = None
    error_message: str | None = None
    target_branch: str | None = None
    target_commit: str | None = None
    agent_id: str | None = None
    retry_count: int = 0
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    id: str = field(default_factory=_new_id)


@dataclass
class ScanStepRecord:
    """One ledger row per (scan, stage) execution attempt."""

    scan_id: str
    step: ScanStep
    status: StepStatus = StepStatus.RUNNING
    metadata: dict[str, Any] = field(default_factory=dict)
    error_code: str | None = None
    error_message: str | None = None
    started_at: float = field(default_factory=time.time)
    completed_at: float | None = None
    id: str = field(default_factory=_new_id)


@dataclass
class Finding:
    """A single reported vulnerability."""

    vulnerability_type: str
    severity: Severity
    file_path: str
    description: str
    confidence_score: float
    line_number: int | None = None
    function_selector: str | None = None
    analysis_method: AnalysisMethod = AnalysisMethod.STATIC
    ai_confidence_score: float | None = None
    remediation_suggestion: str | None = None
    code_snippet: str | None = None
    scan_id: str = ""
    id: str = field(default_factory=_new_id)


@dataclass
class Proof:
    """A structured exploit narrative derived from one finding."""

    scan_id: str
    finding_id: str
    payload: dict[str, Any]
    researcher_signature: str = ""
    status: ProofStatus = ProofStatus.PENDING
    created_at: float = field(default_factory=time.time)
    id: str = field(default_factory=_new_id)


@dataclass
class Agent:
    """A poolable worker identity that bounds concurrent pipelines."""

    name: str
    role: str = "RESEARCHER"
    status: AgentStatus = AgentStatus.ONLINE
    capacity: int = 1
    active_scans: int = 0
    current_task: str | None = None
    scans_completed: int = 0
    id: str = field(default_factory=_new_id)


@dataclass
class AgentRun:
    """One pipeline execution attempt by a specific agent."""

    agent_id: str
    scan_id: str
    worker_id: str = ""
    runtime_version: str = ""
    started_at: float = field(default_factory=time.time)
    completed_at: float | None = None
    duration: float | None = None
    error_code: str | None = None
    error_message: str | None = None
    id: str = field(default_factory=_new_id)


@dataclass(frozen=True)
class WorkerHandle:
    """A claimed slot on an agent, returned by admission control."""

    agent_id: str
    agent_name: str
    scan_id: str


@dataclass
class ScanJob:
    """A queued request to run the pipeline for one scan."""

    scan_id: str
    protocol_id: str
    target_branch: str | None = None
    target_commit: str | None = None
    queued_at: float = field(default_factory=time.time)
    status: JobStatus = JobStatus.WAITING
    attempts_made: int = 0
    max_attempts: int = 3
    available_at: float = 0.0
    canceled: bool = False
    last_error: str | None = None

    @property
    def id(self) -> str:
        return self.scan_id

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts_made >= self.max_attempts


@dataclass(frozen=True)
class PipelineOutcome:
    """What the orchestrator reports back to the job consumer."""

    success: bool
    findings_count: int
    ai_fallback: bool = False
