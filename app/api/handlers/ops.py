from __future__ import annotations

from app.api.handlers.deps import ApiDeps
from app.api.handlers.serializers import job_response
from app.api.schemas import (
    DeadLetterListResponse,
    DeadLetterResponse,
    DispatchResponse,
    DispatchResultItem,
    JobResponse,
    QueueCountsResponse,
    QueueStatusResponse,
    ReapResponse,
    ReplayResponse,
)
from app.domain.use_cases.operations import queue_status, reset_job

COMPONENT_ID_STATUS = "api.ops.queue_status"
COMPONENT_ID_RESET = "api.ops.reset_job"
COMPONENT_ID_DISPATCH = "api.ops.dispatch"
COMPONENT_ID_REAP = "api.ops.reap"
COMPONENT_ID_REPLAY = "api.ops.replay_dead_letters"


async def queue_status_handler(deps: ApiDeps) -> QueueStatusResponse:
    status = await queue_status(
        deps.repository,
        liveness_threshold_seconds=deps.reaper.liveness_threshold_seconds,
    )
    return QueueStatusResponse(
        counts=QueueCountsResponse(
            queued=status.counts.queued,
            running=status.counts.running,
            completed=status.counts.completed,
            error=status.counts.error,
            total=status.counts.total,
        ),
        stuck_count=len(status.stuck),
        stuck=[job_response(job) for job in status.stuck],
        recent_errors=[job_response(job) for job in status.recent_errors],
        dead_letters=status.dead_letters,
        liveness_threshold_seconds=status.liveness_threshold_seconds,
    )


async def reset_job_handler(deps: ApiDeps, *, job_id: str, extra_attempts: int) -> JobResponse:
    job = await reset_job(deps.repository, job_id=job_id, extra_attempts=extra_attempts)
    return job_response(job)


async def dispatch_handler(deps: ApiDeps, *, limit: int | None) -> DispatchResponse:
    results = await deps.dispatcher.dispatch_batch(limit=limit)
    return DispatchResponse(
        claimed=len(results),
        results=[
            DispatchResultItem(
                job_id=result.job_id,
                correlation_id=result.correlation_id,
                stage=result.stage,
                outcome=result.outcome,
                detail=result.detail,
            )
            for result in results
        ],
    )


async def reap_handler(deps: ApiDeps) -> ReapResponse:
    reaped = await deps.reaper.reap()
    return ReapResponse(reaped=len(reaped), jobs=[job_response(job) for job in reaped])


async def replay_dead_letters_handler(deps: ApiDeps, *, batch_size: int | None) -> ReplayResponse:
    result = await deps.replay.queue.replay(batch_size=batch_size or deps.replay.batch_size)
    return ReplayResponse(replayed=result.replayed, failed=result.failed, remaining=result.remaining)


async def list_dead_letters_handler(deps: ApiDeps, *, limit: int) -> DeadLetterListResponse:
    letters = await deps.repository.list_dead_letters(limit=limit)
    return DeadLetterListResponse(
        items=[
            DeadLetterResponse(
                id=letter.id,
                event_type=letter.event_type,
                payload=letter.payload,
                error_message=letter.error_message,
                created_at=letter.created_at,
            )
            for letter in letters
        ]
    )
