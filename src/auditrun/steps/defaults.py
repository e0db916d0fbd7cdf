"""Wire the stock tool-backed executors into a StepExecutors bundle."""

from __future__ import annotations

import aiosqlite

from auditrun.config import AuditRunConfig
from auditrun.steps.ai import PassthroughAIAnalysis
from auditrun.steps.analyze import SlitherAnalysisExecutor
from auditrun.steps.clone import GitCloneExecutor
from auditrun.steps.compile import ForgeCompileExecutor
from auditrun.steps.contracts import StepExecutors
from auditrun.steps.deploy import AnvilDeployExecutor
from auditrun.steps.proofs import ProofBuilder
from auditrun.steps.submit import OutboxSubmitter


def default_executors(config: AuditRunConfig, db: aiosqlite.Connection) -> StepExecutors:
    return StepExecutors(
        clone=GitCloneExecutor(config.work_dir),
        compile=ForgeCompileExecutor(),
        deploy=AnvilDeployExecutor(),
        analyze=SlitherAnalysisExecutor(),
        ai=PassthroughAIAnalysis(),
        proofs=ProofBuilder(),
        submit=OutboxSubmitter(db),
    )
