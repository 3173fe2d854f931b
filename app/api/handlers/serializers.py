from __future__ import annotations

from app.api.schemas import JobResponse, RunResponse
from app.domain.models import JobSnapshot, RunSnapshot


def job_response(job: JobSnapshot) -> JobResponse:
    return JobResponse(
        id=job.id,
        correlation_id=job.correlation_id,
        stage=job.stage,
        status=job.status,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        scheduled_at=job.scheduled_at,
        locked_at=job.locked_at,
        lock_owner=job.lock_owner,
        last_error=job.last_error,
        updated_at=job.updated_at,
    )


def run_response(run: RunSnapshot) -> RunResponse:
    return RunResponse(
        correlation_id=run.correlation_id,
        trigger_type=run.trigger_type.value,
        resource_id=run.resource_id,
        stage=run.stage,
        status=run.status,
        attempts=run.attempts,
        last_error=run.last_error,
        context=dict(run.context),
        created_at=run.created_at,
        updated_at=run.updated_at,
    )
