"""Pipeline orchestrator: runs the seven scan stages for one job attempt.

Stage policy:

- CLONE, COMPILE, ANALYZE, PROOF_GENERATION and SUBMIT are fatal. A failure
  closes the chain scope, fails the ledger record and raises a retryable
  ScanError carrying the stage's error code.
- DEPLOY failures are absorbed; analysis continues without an address.
- AI failures are absorbed onto the static baseline, except the
  "required but disabled" policy error, which is fatal and non-retryable.
- An empty finding set after AI is an inconclusive, non-retryable failure.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import aiosqlite

from auditrun.config import PipelineConfig
from auditrun.errors import ErrorCode, ScanError
from auditrun.events import LogLevel, Notifier
from auditrun.pipeline.cleanup import ChainScope, ResourceCleanupManager
from auditrun.pipeline.ledger import StepLedger
from auditrun.pipeline.models import (
    Finding,
    PipelineOutcome,
    Proof,
    ScanState,
    ScanStep,
    ScanStepRecord,
    Severity,
)
from auditrun.steps.contracts import (
    AIAnalysisParams,
    AnalyzeParams,
    CloneParams,
    CompileParams,
    DeployParams,
    ProofParams,
    StepExecutors,
    SubmitParams,
)
from auditrun.storage.repos import FindingRepo, ProofRepo, ScanRepo, ScanStepRepo

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (start, end) progress percentage per stage
STEP_PROGRESS: dict[ScanStep, tuple[int, int]] = {
    ScanStep.CLONE: (5, 15),
    ScanStep.COMPILE: (20, 30),
    ScanStep.DEPLOY: (35, 45),
    ScanStep.ANALYZE: (50, 60),
    ScanStep.AI_DEEP_ANALYSIS: (65, 75),
    ScanStep.PROOF_GENERATION: (80, 90),
    ScanStep.SUBMIT: (95, 100),
}


class StageTimeout(Exception):
    def __init__(self, step: ScanStep, seconds: float) -> None:
        self.step = step
        self.seconds = seconds
        super().__init__(f"{step.value} exceeded its {seconds:g}s time budget")


def _describe(error: BaseException) -> str:
    if isinstance(error, ScanError):
        return error.message
    return str(error) or type(error).__name__


class PipelineOrchestrator:
    """Drives one scan through every stage and reports a PipelineOutcome.

    The orchestrator writes ledger rows, ``Scan.current_step``, findings and
    proofs. It never touches ``Scan.state``; the job consumer owns that.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        executors: StepExecutors,
        notifier: Notifier,
        config: PipelineConfig,
        cleanup: ResourceCleanupManager | None = None,
        is_canceled: Callable[[str], Awaitable[bool]] | None = None,
    ) -> None:
        self._scans = ScanRepo(db)
        self._steps = ScanStepRepo(db)
        self._findings = FindingRepo(db)
        self._proofs = ProofRepo(db)
        self._executors = executors
        self._notifier = notifier
        self._config = config
        self._cleanup = cleanup or ResourceCleanupManager(config.cleanup_grace_period)
        self._is_canceled = is_canceled

    async def run(self, scan_id: str, chain_port: int) -> PipelineOutcome:
        if self._is_canceled is not None and await self._is_canceled(scan_id):
            raise ScanError.canceled(scan_id)

        scan = await self._scans.get_with_protocol(scan_id)
        if scan is None:
            raise ScanError.scan_not_found(scan_id)

        run = _PipelineRun(self, scan, chain_port)
        async with ChainScope(self._cleanup) as scope:
            try:
                return await run.execute(scope)
            except Exception as e:
                record = run.ledger.open_record
                if record is not None:
                    logger.error(
                        "Scan %s: %s left open by an unexpected error",
                        scan_id,
                        record.step.value,
                    )
                    await run.ledger.fail(
                        record, ErrorCode.UNKNOWN.value, _describe(e)
                    )
                raise

    async def _execute(self, step: ScanStep, awaitable: Awaitable[T]) -> T:
        seconds = self._config.timeout_for(step)
        try:
            return await asyncio.wait_for(awaitable, timeout=seconds)
        except asyncio.TimeoutError as e:
            raise StageTimeout(step, seconds) from e


class _PipelineRun:
    """State for a single execution attempt."""

    def __init__(
        self, orchestrator: PipelineOrchestrator, scan: dict[str, Any], chain_port: int
    ) -> None:
        self._o = orchestrator
        self.scan_id: str = scan["id"]
        self.protocol_id: str = scan["protocol_id"]
        self.repo_url: str = scan["github_url"]
        self.contract_path: str = scan["contract_path"]
        self.contract_name: str = scan["contract_name"]
        self.target_branch: str | None = scan["target_branch"]
        self.target_commit: str | None = scan["target_commit"]
        self.chain_port = chain_port
        self.ledger = StepLedger(self.scan_id, orchestrator._steps, orchestrator._scans)

    async def _progress(
        self,
        step: ScanStep | str,
        progress: int | None,
        message: str,
        state: ScanState = ScanState.RUNNING,
    ) -> None:
        name = step.value if isinstance(step, ScanStep) else step
        await self._o._notifier.progress(
            self.scan_id, self.protocol_id, name, state, progress, message
        )

    async def _log(self, level: LogLevel, message: str) -> None:
        await self._o._notifier.log(self.scan_id, self.protocol_id, level, message)

    async def _open(self, step: ScanStep, message: str) -> ScanStepRecord:
        record = await self.ledger.open(step)
        await self._progress(step, STEP_PROGRESS[step][0], message)
        return record

    async def _finish(
        self, record: ScanStepRecord, metadata: dict[str, Any], message: str
    ) -> None:
        await self.ledger.complete(record, metadata)
        await self._progress(record.step, STEP_PROGRESS[record.step][1], message)

    async def _fatal(
        self,
        scope: ChainScope,
        record: ScanStepRecord,
        code: ErrorCode,
        error: BaseException,
    ) -> ScanError:
        """Close out a fatal stage and return the error to raise."""
        if isinstance(error, StageTimeout):
            code = ErrorCode.TIMEOUT
        message = _describe(error)
        logger.error(
            "Scan %s failed at %s: %s: %s", self.scan_id, record.step.value, code.value, message
        )
        await scope.close()
        await self.ledger.fail(record, code.value, message)
        await self._log(LogLevel.ALERT, f"[ALERT] Scan failed at step: {code.value}")
        await self._progress(
            "FAILED", None, f"Step failed: {code.value} - {message}", ScanState.FAILED
        )
        return ScanError.stage_failure(code, message)

    async def execute(self, scope: ChainScope) -> PipelineOutcome:
        o = self._o
        ex = o._executors

        # CLONE
        record = await self._open(ScanStep.CLONE, "Cloning repository...")
        await self._log(LogLevel.DEFAULT, f"> Cloning repository from {self.repo_url}...")
        try:
            cloned = await o._execute(
                ScanStep.CLONE,
                ex.clone.run(
                    CloneParams(
                        scan_id=self.scan_id,
                        protocol_id=self.protocol_id,
                        repo_url=self.repo_url,
                        target_branch=self.target_branch,
                        target_commit=self.target_commit,
                    )
                ),
            )
        except Exception as e:
            raise await self._fatal(scope, record, ErrorCode.CLONE_FAILED, e) from e
        await self._log(
            LogLevel.INFO,
            f"[INFO] Repository cloned ({cloned.branch}@{cloned.commit_hash[:7] or 'HEAD'})",
        )
        await self._finish(
            record,
            {
                "clonedPath": str(cloned.cloned_path),
                "branch": cloned.branch,
                "commitHash": cloned.commit_hash,
            },
            "Repository cloned",
        )

        # COMPILE
        record = await self._open(ScanStep.COMPILE, "Compiling contracts...")
        await self._log(LogLevel.DEFAULT, f"> Compiling {self.contract_name}...")
        try:
            compiled = await o._execute(
                ScanStep.COMPILE,
                ex.compile.run(
                    CompileParams(
                        cloned_path=cloned.cloned_path,
                        contract_path=self.contract_path,
                        contract_name=self.contract_name,
                    )
                ),
            )
            if not compiled.success:
                raise RuntimeError(
                    "Compilation failed: "
                    + ("; ".join(compiled.errors[:5]) or "unknown compiler error")
                )
        except Exception as e:
            raise await self._fatal(scope, record, ErrorCode.COMPILE_FAILED, e) from e
        await self._log(LogLevel.INFO, "[INFO] Compilation successful")
        if compiled.warnings:
            await self._log(
                LogLevel.WARN,
                f"[WARN] {len(compiled.warnings)} compilation warning(s)",
            )
        await self._finish(
            record,
            {
                "success": True,
                "artifactsPath": str(compiled.artifacts_path),
                "hasAbi": compiled.abi is not None,
                "hasBytecode": bool(compiled.bytecode),
                "warnings": len(compiled.warnings),
            },
            "Compilation successful",
        )

        # DEPLOY (optional)
        deployment_address = await self._deploy(scope, compiled.abi, compiled.bytecode)

        # ANALYZE
        record = await self._open(ScanStep.ANALYZE, "Running static analysis...")
        await self._log(LogLevel.ANALYSIS, "[ANALYSIS] Running static analysis...")
        try:
            analysis = await o._execute(
                ScanStep.ANALYZE,
                ex.analyze.run(
                    AnalyzeParams(
                        cloned_path=cloned.cloned_path,
                        contract_path=self.contract_path,
                        contract_name=self.contract_name,
                    )
                ),
            )
        except Exception as e:
            raise await self._fatal(scope, record, ErrorCode.ANALYSIS_FAILED, e) from e
        static_findings = list(analysis.findings)
        await self._log(
            LogLevel.INFO, f"[INFO] Found {len(static_findings)} potential vectors"
        )
        high = sum(
            1 for f in static_findings if f.severity in (Severity.HIGH, Severity.CRITICAL)
        )
        if high:
            await self._log(LogLevel.ALERT, f"[ALERT] {high} high/critical severity")
        await self._finish(
            record,
            {
                "findingsCount": len(static_findings),
                "toolsUsed": analysis.tools_used,
                "slitherStatus": analysis.tool_status.value,
                "slitherError": analysis.tool_error,
            },
            f"Static analysis found {len(static_findings)} issues",
        )

        # AI_DEEP_ANALYSIS
        findings, ai_fallback = await self._ai(scope, cloned.cloned_path, static_findings)

        # An earlier attempt may have persisted findings before failing later
        discarded = await o._findings.discard_for_scan(self.scan_id)
        if discarded:
            logger.info(
                "Discarded %d findings from an earlier attempt of scan %s",
                discarded,
                self.scan_id,
            )

        if not findings:
            message = (
                "AI analysis returned no actionable findings "
                f"(slitherStatus={analysis.tool_status.value}). "
                "Marking scan as inconclusive."
            )
            logger.warning("Scan %s: %s", self.scan_id, message)
            await scope.close()
            await self._log(LogLevel.WARN, f"[WARN] {message}")
            await self._progress(
                ScanStep.AI_DEEP_ANALYSIS,
                STEP_PROGRESS[ScanStep.AI_DEEP_ANALYSIS][1],
                message,
                ScanState.FAILED,
            )
            raise ScanError.inconclusive(message)

        for finding in findings:
            finding.scan_id = self.scan_id
            await o._findings.create(finding)

        # PROOF_GENERATION
        record = await self._open(ScanStep.PROOF_GENERATION, "Generating proofs...")
        await self._log(LogLevel.DEFAULT, "> Generating proofs of concept...")
        try:
            proofs = await o._execute(
                ScanStep.PROOF_GENERATION,
                self._generate_proofs(cloned.cloned_path, findings, deployment_address),
            )
        except Exception as e:
            raise await self._fatal(
                scope, record, ErrorCode.PROOF_GENERATION_FAILED, e
            ) from e
        await self._log(LogLevel.INFO, f"[INFO] {len(proofs)} proofs generated")
        await self._finish(
            record,
            {
                "proofsCreated": len(proofs),
                "deploymentUsed": deployment_address is not None,
            },
            f"{len(proofs)} proofs generated",
        )

        # SUBMIT
        record = await self._open(ScanStep.SUBMIT, "Submitting proofs...")
        await self._log(LogLevel.DEFAULT, "> Submitting proofs for validation...")
        try:
            submitted = await o._execute(
                ScanStep.SUBMIT,
                ex.submit.run(
                    SubmitParams(
                        scan_id=self.scan_id,
                        protocol_id=self.protocol_id,
                        proofs=tuple(proofs),
                        target_commit=self.target_commit or cloned.commit_hash,
                    )
                ),
            )
        except Exception as e:
            raise await self._fatal(scope, record, ErrorCode.SUBMISSION_FAILED, e) from e
        await self.ledger.complete(
            record,
            {
                "proofsSubmitted": submitted.proofs_submitted,
                "submissionTimestamp": submitted.submission_timestamp,
            },
        )
        await scope.close()
        await self._log(
            LogLevel.INFO, f"[INFO] {submitted.proofs_submitted} proofs submitted"
        )
        await self._progress(ScanStep.SUBMIT, 100, "Submission complete")
        await self._log(
            LogLevel.INFO, f"[INFO] Scan completed - {len(findings)} findings total"
        )

        return PipelineOutcome(
            success=True, findings_count=len(findings), ai_fallback=ai_fallback
        )

    async def _deploy(
        self,
        scope: ChainScope,
        abi: list[dict[str, Any]] | None,
        bytecode: str | None,
    ) -> str | None:
        o = self._o
        record = await self._open(ScanStep.DEPLOY, "Deploying to local chain...")
        await self._log(LogLevel.DEFAULT, "> Deploying to local chain...")
        try:
            if not abi or not bytecode:
                raise RuntimeError("No ABI or bytecode available from compilation")
            deployed = await o._execute(
                ScanStep.DEPLOY,
                o._executors.deploy.run(
                    DeployParams(
                        abi=abi,
                        bytecode=bytecode,
                        contract_name=self.contract_name,
                        port=self.chain_port,
                        scope=scope,
                    )
                ),
            )
        except Exception as e:
            code = ErrorCode.TIMEOUT if isinstance(e, StageTimeout) else ErrorCode.DEPLOY_FAILED
            message = _describe(e)
            logger.warning(
                "Scan %s: deployment failed, continuing without it: %s",
                self.scan_id,
                message,
            )
            await scope.discard()
            await self.ledger.fail(record, code.value, message)
            await self._log(
                LogLevel.WARN, "[WARN] Deployment failed - continuing with static analysis"
            )
            await self._progress(
                ScanStep.DEPLOY,
                STEP_PROGRESS[ScanStep.DEPLOY][1],
                "Deployment failed, continuing with static analysis",
            )
            return None

        if scope.process is None:
            scope.attach(deployed.process)
        await self._log(
            LogLevel.INFO, f"[INFO] Contract deployed at {deployed.deployment_address}"
        )
        await self._finish(
            record,
            {
                "chainPort": deployed.port,
                "deploymentAddress": deployed.deployment_address,
                "deploymentTx": deployed.transaction_hash,
            },
            "Deployment complete",
        )
        return deployed.deployment_address

    async def _ai(
        self, scope: ChainScope, cloned_path: Path, static_findings: list[Finding]
    ) -> tuple[list[Finding], bool]:
        """Return the adopted finding set and whether AI fell back to static."""
        o = self._o
        config = o._config
        record = await self._open(
            ScanStep.AI_DEEP_ANALYSIS, "Running AI deep analysis..."
        )

        if not config.ai_enabled:
            if config.ai_required:
                error = ScanError.ai_required_disabled()
                await self._policy_stop(scope, record, error)
                raise error
            logger.warning("Scan %s: AI analysis disabled, using static findings", self.scan_id)
            await self._log(LogLevel.WARN, "[WARN] AI analysis disabled - using static findings")
            await self._finish(
                record,
                {"aiEnhanced": False, "note": "AI analysis disabled by configuration"},
                "Using static findings only",
            )
            return static_findings, False

        await self._log(LogLevel.ANALYSIS, "[ANALYSIS] AI deep analysis starting...")
        try:
            result = await o._execute(
                ScanStep.AI_DEEP_ANALYSIS,
                o._executors.ai.run(
                    AIAnalysisParams(
                        cloned_path=cloned_path,
                        contract_path=self.contract_path,
                        contract_name=self.contract_name,
                        static_findings=tuple(static_findings),
                    )
                ),
            )
        except Exception as e:
            if (
                isinstance(e, ScanError)
                and e.code == ErrorCode.AI_ANALYSIS_REQUIRED_DISABLED
            ):
                error = ScanError.ai_required_disabled(e.message)
                await self._policy_stop(scope, record, error)
                raise error from e
            code = (
                ErrorCode.TIMEOUT if isinstance(e, StageTimeout) else ErrorCode.AI_ANALYSIS_FAILED
            )
            message = _describe(e)
            logger.warning(
                "Scan %s: AI analysis failed, falling back to static findings: %s",
                self.scan_id,
                message,
            )
            await self.ledger.fail(record, code.value, message)
            await self._log(
                LogLevel.WARN, "[WARN] AI analysis failed - continuing with static findings"
            )
            await self._progress(
                ScanStep.AI_DEEP_ANALYSIS,
                STEP_PROGRESS[ScanStep.AI_DEEP_ANALYSIS][1],
                "AI analysis failed, using static findings",
            )
            return static_findings, True

        metrics = result.metrics
        if result.ai_enhanced:
            await self._log(
                LogLevel.INFO, f"[INFO] AI enhanced {metrics.enhanced_findings} findings"
            )
            if metrics.new_findings:
                await self._log(
                    LogLevel.ALERT,
                    f"[ALERT] AI discovered {metrics.new_findings} new vulnerabilities",
                )
            await self._finish(
                record,
                {
                    "aiEnhanced": True,
                    "totalFindings": metrics.total_findings,
                    "enhancedFindings": metrics.enhanced_findings,
                    "newFindings": metrics.new_findings,
                    "processingTimeMs": metrics.processing_time_ms,
                    "modelUsed": metrics.model_used,
                    "tokensUsed": metrics.tokens_used,
                },
                f"AI analysis complete: {len(result.findings)} findings",
            )
            return list(result.findings), False

        await self._log(
            LogLevel.INFO, "[INFO] AI analysis did not enhance findings - using static results"
        )
        await self._finish(
            record,
            {
                "aiEnhanced": False,
                "note": "AI analysis produced no enhancement",
                "processingTimeMs": metrics.processing_time_ms,
                "modelUsed": metrics.model_used,
            },
            "Using static findings only",
        )
        return static_findings, False

    async def _policy_stop(
        self, scope: ChainScope, record: ScanStepRecord, error: ScanError
    ) -> None:
        logger.error("Scan %s: %s", self.scan_id, error.message)
        await scope.close()
        await self.ledger.fail(record, error.code.value, error.message)
        await self._log(LogLevel.ALERT, f"[ALERT] {error.message}")
        await self._progress(
            "FAILED", None, f"Step failed: {error.code.value} - {error.message}", ScanState.FAILED
        )

    async def _generate_proofs(
        self,
        cloned_path: Path,
        findings: list[Finding],
        deployment_address: str | None,
    ) -> list[Proof]:
        o = self._o
        proofs: list[Proof] = []
        for finding in findings:
            try:
                draft = await o._executors.proofs.generate(
                    ProofParams(
                        scan_id=self.scan_id,
                        finding=finding,
                        cloned_path=cloned_path,
                        deployment_address=deployment_address,
                    )
                )
            except Exception:
                logger.warning(
                    "Scan %s: proof generation failed for finding %s",
                    self.scan_id,
                    finding.id,
                    exc_info=True,
                )
                continue
            proof = Proof(
                scan_id=self.scan_id,
                finding_id=finding.id,
                payload=draft.payload,
                researcher_signature=draft.researcher_signature,
            )
            proof_id = draft.payload.get("id")
            if proof_id:
                proof.id = proof_id
            await o._proofs.create(proof)
            proofs.append(proof)
        return proofs
