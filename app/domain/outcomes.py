from __future__ import annotations

from dataclasses import dataclass, field

from app.domain.error_taxonomy import ErrorCode, classify_error, resolve_stage_error
from app.domain.errors import PaymentsTransientError
from app.domain.models import Stage


@dataclass(frozen=True)
class Advance:
    next_stage: Stage
    detail: str = ""
    context: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class Finish:
    """Pipeline has nothing further to do for this run."""

    detail: str = ""
    context: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class RetryableFailure:
    error_code: ErrorCode
    detail: str = ""


@dataclass(frozen=True)
class TerminalFailure:
    error_code: ErrorCode
    detail: str = ""


StageOutcome = Advance | Finish | RetryableFailure | TerminalFailure


def failure_for(*, stage: Stage, code: str, detail: str) -> RetryableFailure | TerminalFailure:
    """Build the failure variant matching the canonical classification of ``code``."""
    error_code = resolve_stage_error(stage=stage, code=code)
    if classify_error(error_code) == "recoverable":
        return RetryableFailure(error_code=error_code, detail=detail)
    return TerminalFailure(error_code=error_code, detail=detail)


def format_failure(outcome: RetryableFailure | TerminalFailure) -> str:
    if outcome.detail:
        return f"{outcome.error_code}: {outcome.detail}"
    return outcome.error_code


def failure_from_payments_error(*, stage: Stage, exc: Exception) -> RetryableFailure | TerminalFailure:
    if isinstance(exc, PaymentsTransientError):
        return failure_for(stage=stage, code="payments_unavailable", detail=str(exc))
    return failure_for(stage=stage, code="payments_rejected", detail=str(exc))
