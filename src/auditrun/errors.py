"""Tagged scan error: one exception type carrying kind, code and retryability.

The job consumer decides retry vs. permanent failure from ``retryable`` alone;
``message`` is diagnostic text only.
"""

from __future__ import annotations

import enum


class ErrorKind(enum.Enum):
    CAPACITY_EXHAUSTED = "capacity_exhausted"
    STAGE_FAILURE = "stage_failure"
    POLICY_VIOLATION = "policy_violation"
    INCONCLUSIVE = "inconclusive"
    CANCELED = "canceled"
    INTERNAL = "internal"


class ErrorCode(str, enum.Enum):
    CLONE_FAILED = "CLONE_FAILED"
    COMPILE_FAILED = "COMPILE_FAILED"
    DEPLOY_FAILED = "DEPLOY_FAILED"
    ANALYSIS_FAILED = "ANALYSIS_FAILED"
    AI_ANALYSIS_FAILED = "AI_ANALYSIS_FAILED"
    AI_ANALYSIS_REQUIRED_DISABLED = "AI_ANALYSIS_REQUIRED_DISABLED"
    SCAN_INCONCLUSIVE_AI_ZERO_FINDINGS = "SCAN_INCONCLUSIVE_AI_ZERO_FINDINGS"
    PROOF_GENERATION_FAILED = "PROOF_GENERATION_FAILED"
    SUBMISSION_FAILED = "SUBMISSION_FAILED"
    NO_RESEARCHER_CAPACITY_TIMEOUT = "NO_RESEARCHER_CAPACITY_TIMEOUT"
    TIMEOUT = "TIMEOUT"
    CANCELED = "CANCELED"
    SCAN_NOT_FOUND = "SCAN_NOT_FOUND"
    WORKER_RESTART = "WORKER_RESTART"
    UNKNOWN = "UNKNOWN"


class ScanError(Exception):
    """A classified pipeline failure."""

    def __init__(
        self,
        kind: ErrorKind,
        code: ErrorCode,
        message: str,
        retryable: bool,
    ) -> None:
        self.kind = kind
        self.code = code
        self.message = message
        self.retryable = retryable
        super().__init__(message)

    def __repr__(self) -> str:
        return (
            f"ScanError(kind={self.kind.value}, code={self.code.value}, "
            f"retryable={self.retryable}, message={self.message!r})"
        )

    @classmethod
    def stage_failure(cls, code: ErrorCode, message: str) -> ScanError:
        return cls(ErrorKind.STAGE_FAILURE, code, message, retryable=True)

    @classmethod
    def capacity_timeout(cls, message: str) -> ScanError:
        return cls(
            ErrorKind.CAPACITY_EXHAUSTED,
            ErrorCode.NO_RESEARCHER_CAPACITY_TIMEOUT,
            message,
            retryable=False,
        )

    @classmethod
    def ai_required_disabled(
        cls, message: str = "AI analysis is required but disabled by configuration"
    ) -> ScanError:
        return cls(
            ErrorKind.POLICY_VIOLATION,
            ErrorCode.AI_ANALYSIS_REQUIRED_DISABLED,
            message,
            retryable=False,
        )

    @classmethod
    def inconclusive(cls, message: str) -> ScanError:
        return cls(
            ErrorKind.INCONCLUSIVE,
            ErrorCode.SCAN_INCONCLUSIVE_AI_ZERO_FINDINGS,
            message,
            retryable=False,
        )

    @classmethod
    def canceled(cls, scan_id: str) -> ScanError:
        return cls(
            ErrorKind.CANCELED,
            ErrorCode.CANCELED,
            f"Scan {scan_id} was canceled before it started",
            retryable=False,
        )

    @classmethod
    def scan_not_found(cls, scan_id: str) -> ScanError:
        return cls(
            ErrorKind.INTERNAL,
            ErrorCode.SCAN_NOT_FOUND,
            f"Scan {scan_id} not found",
            retryable=False,
        )


def classify(error: BaseException) -> ScanError:
    """Return ``error`` as a ScanError, wrapping unknown exceptions as retryable."""
    if isinstance(error, ScanError):
        return error
    message = str(error) or type(error).__name__
    return ScanError(ErrorKind.INTERNAL, ErrorCode.UNKNOWN, message, retryable=True)
