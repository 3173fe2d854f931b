from __future__ import annotations

from app.domain.errors import DomainInvariantError
from app.domain.models import JobStatus, Stage

PIPELINE_ORDER: tuple[Stage, ...] = (
    Stage.CUSTOMER_INGEST,
    Stage.BOOKING_ATTRIBUTION,
    Stage.FRIEND_REWARD,
    Stage.REFERRER_REWARD,
)

INITIAL_STAGE: Stage = PIPELINE_ORDER[0]

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_BASE_SECONDS = 5.0
DEFAULT_BACKOFF_CAP_SECONDS = 300.0

MAX_ERROR_LENGTH = 500


ALLOWED_JOB_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.QUEUED: {JobStatus.RUNNING},
    JobStatus.RUNNING: {JobStatus.QUEUED, JobStatus.COMPLETED, JobStatus.ERROR},
    JobStatus.COMPLETED: set(),
    JobStatus.ERROR: set(),
}

# Completed jobs stay immutable even for operators.
OPERATOR_RESET_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.RUNNING: {JobStatus.QUEUED},
    JobStatus.ERROR: {JobStatus.QUEUED},
}


def next_stage(stage: Stage) -> Stage | None:
    index = PIPELINE_ORDER.index(stage)
    if index + 1 >= len(PIPELINE_ORDER):
        return None
    return PIPELINE_ORDER[index + 1]


def previous_stage(stage: Stage) -> Stage | None:
    index = PIPELINE_ORDER.index(stage)
    if index == 0:
        return None
    return PIPELINE_ORDER[index - 1]


def is_job_transition_allowed(from_status: JobStatus, to_status: JobStatus, *, operator_reset: bool = False) -> bool:
    table = OPERATOR_RESET_TRANSITIONS if operator_reset else ALLOWED_JOB_TRANSITIONS
    return to_status in table.get(from_status, set())


def assert_job_transition(from_status: JobStatus, to_status: JobStatus, *, operator_reset: bool = False) -> None:
    if not is_job_transition_allowed(from_status, to_status, operator_reset=operator_reset):
        raise DomainInvariantError(f"invalid job transition: {from_status} -> {to_status}")


def compute_backoff_seconds(
    attempts: int,
    *,
    base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
    cap_seconds: float = DEFAULT_BACKOFF_CAP_SECONDS,
) -> float:
    exponent = min(max(0, attempts - 1), 32)
    delay = base_seconds * (2**exponent)
    # Always strictly positive so scheduled_at moves forward.
    return max(min(delay, cap_seconds), 1.0)


def truncate_error(message: str) -> str:
    if len(message) > MAX_ERROR_LENGTH:
        return f"{message[:MAX_ERROR_LENGTH]}…"
    return message
