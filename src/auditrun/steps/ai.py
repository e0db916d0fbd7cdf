"""AI_DEEP_ANALYSIS stage: default executor that leaves the static baseline as is."""

from __future__ import annotations

import logging
import time

from auditrun.steps.contracts import AIAnalysisParams, AIAnalysisResult, AIMetrics

logger = logging.getLogger(__name__)


class PassthroughAIAnalysis:
    """Stands in for an AI engine; reports the static findings unchanged."""

    async def run(self, params: AIAnalysisParams) -> AIAnalysisResult:
        start = time.monotonic()
        findings = list(params.static_findings)
        logger.info(
            "No AI engine configured for %s; keeping %d static findings",
            params.contract_name,
            len(findings),
        )
        return AIAnalysisResult(
            findings=findings,
            metrics=AIMetrics(
                total_findings=len(findings),
                processing_time_ms=int((time.monotonic() - start) * 1000),
            ),
            ai_enhanced=False,
        )
