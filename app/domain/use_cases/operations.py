from __future__ import annotations

from dataclasses import dataclass
import logging

from app.domain.contracts import PipelineRepository
from app.domain.models import JobSnapshot, QueueStatusCounts, RunSnapshot

COMPONENT_ID_STATUS = "domain.ops.queue_status"
COMPONENT_ID_RESET = "domain.ops.reset_job"

DEFAULT_STUCK_LIMIT = 10
DEFAULT_RECENT_ERRORS_LIMIT = 5

logger = logging.getLogger("runtime")


@dataclass(frozen=True)
class QueueStatus:
    counts: QueueStatusCounts
    stuck: list[JobSnapshot]
    recent_errors: list[JobSnapshot]
    dead_letters: int
    liveness_threshold_seconds: float


@dataclass(frozen=True)
class RunDetail:
    run: RunSnapshot
    jobs: list[JobSnapshot]


async def queue_status(
    repository: PipelineRepository,
    *,
    liveness_threshold_seconds: float,
    stuck_limit: int = DEFAULT_STUCK_LIMIT,
    errors_limit: int = DEFAULT_RECENT_ERRORS_LIMIT,
) -> QueueStatus:
    return QueueStatus(
        counts=await repository.job_status_counts(),
        stuck=await repository.list_stuck_jobs(
            liveness_threshold_seconds=liveness_threshold_seconds,
            limit=stuck_limit,
        ),
        recent_errors=await repository.list_failed_jobs(limit=errors_limit),
        dead_letters=await repository.count_dead_letters(),
        liveness_threshold_seconds=liveness_threshold_seconds,
    )


async def run_detail(repository: PipelineRepository, *, correlation_id: str) -> RunDetail | None:
    run = await repository.get_run(correlation_id=correlation_id)
    if run is None:
        return None
    jobs = await repository.list_jobs_for_run(correlation_id=correlation_id)
    return RunDetail(run=run, jobs=jobs)


async def reset_job(repository: PipelineRepository, *, job_id: str, extra_attempts: int = 1) -> JobSnapshot:
    """Operator unstick: running jobs lose their lock, failed jobs get extra attempts."""
    before = await repository.get_job(job_id=job_id)
    job = await repository.reset_job(job_id=job_id, extra_attempts=extra_attempts)
    logger.warning(
        "job reset by operator",
        extra={
            "job_id": job.id,
            "correlation_id": job.correlation_id,
            "stage": job.stage,
            "attempt": job.attempts,
            "error": before.last_error if before is not None else None,
        },
    )
    return job
