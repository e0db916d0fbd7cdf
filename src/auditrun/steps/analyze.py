"""ANALYZE stage: Slither static analysis mapped onto findings.

Slither is tried with a few command lines in turn. A missing binary or a run
that never produces usable JSON is reported through ``tool_status`` rather
than raised, so the AI stage can still work from an empty static baseline.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from auditrun.pipeline.models import AnalysisMethod, Finding, Severity
from auditrun.steps.contracts import AnalyzeParams, AnalyzeResult, ToolStatus
from auditrun.steps.process import run_command

logger = logging.getLogger(__name__)

_IMPACT_SEVERITY = {
    "high": Severity.CRITICAL,
    "medium": Severity.HIGH,
    "low": Severity.MEDIUM,
    "informational": Severity.INFO,
}

_CONFIDENCE_SCORE = {
    "high": 0.9,
    "medium": 0.7,
    "low": 0.5,
}

CHECK_TYPES = {
    "reentrancy-eth": "REENTRANCY",
    "reentrancy-no-eth": "REENTRANCY",
    "reentrancy-benign": "REENTRANCY",
    "reentrancy-events": "REENTRANCY",
    "reentrancy-unlimited-gas": "REENTRANCY",
    "uninitialized-state": "UNINITIALIZED_STORAGE",
    "uninitialized-local": "UNINITIALIZED_VARIABLE",
    "uninitialized-storage": "UNINITIALIZED_STORAGE",
    "arbitrary-send": "ARBITRARY_SEND",
    "arbitrary-send-eth": "ARBITRARY_SEND",
    "controlled-delegatecall": "DELEGATECALL",
    "suicidal": "SELFDESTRUCT",
    "unprotected-upgrade": "ACCESS_CONTROL",
    "missing-zero-check": "ACCESS_CONTROL",
    "protected-vars": "ACCESS_CONTROL",
    "oracle-price": "ORACLE_MANIPULATION",
    "divide-before-multiply": "ORACLE_MANIPULATION",
    "incorrect-equality": "BUSINESS_LOGIC",
    "tautology": "BUSINESS_LOGIC",
    "integer-overflow": "INTEGER_OVERFLOW",
    "integer-underflow": "INTEGER_OVERFLOW",
    "divide-by-zero": "INTEGER_OVERFLOW",
    "low-level-calls": "UNCHECKED_RETURN_VALUE",
    "unchecked-lowlevel": "UNCHECKED_RETURN_VALUE",
    "unchecked-send": "UNCHECKED_RETURN_VALUE",
    "unchecked-transfer": "UNCHECKED_RETURN_VALUE",
    "calls-loop": "DOS_ATTACK",
    "msg-value-loop": "DOS_ATTACK",
    "timestamp": "TIMESTAMP_DEPENDENCE",
    "block-timestamp": "TIMESTAMP_DEPENDENCE",
    "weak-prng": "WEAK_RANDOMNESS",
    "tx-origin": "TX_ORIGIN",
    "flash-loan": "FLASH_LOAN_ATTACK",
    "price-manipulation": "ORACLE_MANIPULATION",
    "shadowing-state": "STORAGE_COLLISION",
    "shadowing-local": "STORAGE_COLLISION",
    "variable-scope": "STORAGE_COLLISION",
    "locked-ether": "LOCKED_ETHER",
    "deprecated-standards": "DEPRECATED_FUNCTION",
    "solc-version": "DEPRECATED_FUNCTION",
}

_EMBEDDED_JSON = re.compile(r"\{.*\"success\".*\}", re.DOTALL)


def severity_for_impact(impact: str | None) -> Severity:
    return _IMPACT_SEVERITY.get((impact or "").lower(), Severity.LOW)


def score_for_confidence(confidence: str | None) -> float:
    return _CONFIDENCE_SCORE.get((confidence or "").lower(), 0.6)


def type_for_check(check: str | None) -> str:
    check = check or ""
    return CHECK_TYPES.get(check) or check.upper().replace("-", "_")


def parse_slither_json(stdout: str) -> tuple[dict[str, Any] | None, str | None]:
    """Return ``(payload, None)`` for a successful run, else ``(None, error)``."""
    try:
        payload = json.loads(stdout)
    except json.JSONDecodeError:
        match = _EMBEDDED_JSON.search(stdout)
        if not match:
            return None, "Failed to parse Slither JSON output"
        try:
            payload = json.loads(match.group(0))
        except json.JSONDecodeError:
            return None, "Failed to parse Slither JSON output"

    if not isinstance(payload, dict) or not payload.get("success"):
        error = payload.get("error") if isinstance(payload, dict) else None
        return None, error or "Slither returned success=false"
    return payload, None


def detector_to_finding(detector: dict[str, Any], contract_path: str) -> Finding:
    file_path = contract_path
    line_number = None
    function_selector = None

    elements = detector.get("elements") or []
    if elements:
        element = elements[0]
        mapping = element.get("source_mapping") or {}
        if mapping.get("filename_relative"):
            file_path = mapping["filename_relative"]
        if mapping.get("lines"):
            line_number = mapping["lines"][0]
        if element.get("type") == "function" and element.get("name"):
            function_selector = element["name"]

    return Finding(
        vulnerability_type=type_for_check(detector.get("check")),
        severity=severity_for_impact(detector.get("impact")),
        file_path=file_path,
        line_number=line_number,
        function_selector=function_selector,
        description=(
            detector.get("description")
            or detector.get("check")
            or "Unknown vulnerability"
        ),
        confidence_score=score_for_confidence(detector.get("confidence")),
        analysis_method=AnalysisMethod.STATIC,
    )


def parse_findings(payload: dict[str, Any], contract_path: str) -> list[Finding]:
    detectors = (payload.get("results") or {}).get("detectors") or []
    findings = []
    for detector in detectors:
        try:
            findings.append(detector_to_finding(detector, contract_path))
        except (AttributeError, TypeError, IndexError):
            logger.warning("Skipping malformed Slither detector: %r", detector)
    return findings


def filter_findings(findings: list[Finding]) -> list[Finding]:
    """Drop low-confidence results and anything reported inside test files."""
    kept = []
    for finding in findings:
        if finding.confidence_score < 0.4:
            continue
        if finding.severity == Severity.INFO and finding.confidence_score < 0.7:
            continue
        if "test" in finding.file_path or "Test" in finding.file_path:
            continue
        kept.append(finding)
    return kept


class SlitherAnalysisExecutor:
    """Runs Slither against the cloned project."""

    def __init__(self, binary: str = "slither") -> None:
        self._binary = binary

    def _attempts(self, contract_path: str) -> list[list[str]]:
        base = ["--json", "-", "--exclude-dependencies"]
        return [
            [self._binary, contract_path, *base],
            [self._binary, ".", *base],
            [self._binary, contract_path, *base, "--ignore-compile"],
            [self._binary, ".", *base, "--ignore-compile"],
        ]

    async def run(self, params: AnalyzeParams) -> AnalyzeResult:
        logger.info("Running Slither on %s", params.contract_name)
        last_error = "Unknown Slither error"

        for args in self._attempts(params.contract_path):
            try:
                result = await run_command(args, cwd=params.cloned_path, check=False)
            except FileNotFoundError as e:
                logger.error("Slither is not installed or not in PATH")
                return AnalyzeResult(
                    findings=[],
                    tools_used=[],
                    tool_status=ToolStatus.TOOL_UNAVAILABLE,
                    tool_error=str(e),
                )

            payload, error = parse_slither_json(result.stdout)
            if payload is not None:
                if result.returncode != 0:
                    logger.warning(
                        "Slither exited with code %d but produced a result; accepting it",
                        result.returncode,
                    )
                findings = filter_findings(
                    parse_findings(payload, params.contract_path)
                )
                logger.info("Slither reported %d findings after filtering", len(findings))
                return AnalyzeResult(findings=findings, tools_used=["slither"])

            detail = result.stderr.strip() or error or last_error
            if "not found" in detail and "slither" in detail:
                return AnalyzeResult(
                    findings=[],
                    tools_used=[],
                    tool_status=ToolStatus.TOOL_UNAVAILABLE,
                    tool_error=detail,
                )
            last_error = detail
            logger.warning("Slither attempt %s failed: %s", " ".join(args[1:]), detail[:500])

        logger.error("Slither failed after all attempts: %s", last_error[:500])
        return AnalyzeResult(
            findings=[],
            tools_used=["slither"],
            tool_status=ToolStatus.ERROR,
            tool_error=last_error,
        )
