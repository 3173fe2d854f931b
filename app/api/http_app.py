from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
from collections.abc import Awaitable, Callable
import logging

from fastapi import FastAPI, HTTPException, Query

from app.api.handlers.deps import ApiDeps
from app.api.handlers.events import submit_event_handler
from app.api.handlers.ops import (
    dispatch_handler,
    list_dead_letters_handler,
    queue_status_handler,
    reap_handler,
    replay_dead_letters_handler,
    reset_job_handler,
)
from app.api.handlers.runs import get_run_handler
from app.api.schemas import (
    DeadLetterListResponse,
    DispatchRequest,
    DispatchResponse,
    ErrorResponse,
    HealthResponse,
    JobResponse,
    QueueStatusResponse,
    ReadyResponse,
    ReapResponse,
    ReplayRequest,
    ReplayResponse,
    ResetJobRequest,
    RunDetailResponse,
    TriggerEventRequest,
    TriggerEventResponse,
    WorkerMetrics,
)
from app.domain.errors import DomainInvariantError, DomainValidationError
from app.workers.runner import (
    PeriodicLoop,
    WorkerRuntimeSettings,
    WorkerRuntimeState,
    run_worker_until_stopped,
    worker_runtime_settings_from_env,
)

_API_ERRORS = {
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def build_app(
    role: str,
    run_id: str,
    worker_loop: PeriodicLoop | None = None,
    worker_runtime_settings: WorkerRuntimeSettings | None = None,
    api_deps: ApiDeps | None = None,
    on_startup: Callable[[], Awaitable[None]] | None = None,
    on_shutdown: Callable[[], Awaitable[None]] | None = None,
    mode: str = "skeleton",
) -> FastAPI:
    logger = logging.getLogger("runtime")
    worker_state: WorkerRuntimeState | None = None
    worker_task: asyncio.Task[None] | None = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal worker_task, worker_state
        del app
        stop_event: asyncio.Event | None = None

        logger.info(
            "role started",
            extra={"role": role, "service": role, "run_id": run_id},
        )

        if on_startup is not None:
            await on_startup()

        if worker_loop is not None:
            settings = worker_runtime_settings or worker_runtime_settings_from_env()
            worker_state = WorkerRuntimeState()
            stop_event = asyncio.Event()
            worker_task = asyncio.create_task(
                run_worker_until_stopped(
                    worker_loop=worker_loop,
                    role=role,
                    run_id=run_id,
                    stop_event=stop_event,
                    settings=settings,
                    logger=logger,
                    state=worker_state,
                )
            )

        yield

        if stop_event is not None and worker_task is not None:
            stop_event.set()
            await worker_task

        if on_shutdown is not None:
            await on_shutdown()

        logger.info(
            "role stopped",
            extra={"role": role, "service": role, "run_id": run_id},
        )

    app = FastAPI(title="referral-reward-pipeline", version="0.1.0", lifespan=lifespan)

    def _deps() -> ApiDeps:
        if api_deps is None:
            raise HTTPException(status_code=503, detail="api dependencies are not available")
        return api_deps

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", role=role, mode=mode)

    @app.get("/ready", response_model=ReadyResponse, tags=["System"])
    async def ready() -> ReadyResponse:
        worker_loop_enabled = worker_loop is not None
        worker_loop_ready = True
        metrics = WorkerMetrics(
            started=False,
            stopped=False,
            ticks_total=0,
            busy_ticks_total=0,
            idle_ticks_total=0,
            errors_total=0,
        )
        if worker_loop_enabled:
            worker_loop_ready = (
                worker_state is not None
                and worker_state.started
                and worker_task is not None
                and not worker_task.done()
            )
            if worker_state is not None:
                metrics = WorkerMetrics(
                    started=worker_state.started,
                    stopped=worker_state.stopped,
                    ticks_total=worker_state.ticks_total,
                    busy_ticks_total=worker_state.busy_ticks_total,
                    idle_ticks_total=worker_state.idle_ticks_total,
                    errors_total=worker_state.errors_total,
                )

        return ReadyResponse(
            status="ready",
            role=role,
            mode=mode,
            worker_loop_enabled=worker_loop_enabled,
            worker_loop_ready=worker_loop_ready,
            worker_metrics=metrics,
        )

    # Worker roles expose health endpoints only.
    if worker_loop is not None:
        return app

    @app.post("/events", response_model=TriggerEventResponse, responses=_API_ERRORS, tags=["Events"])
    async def submit_event(request: TriggerEventRequest) -> TriggerEventResponse:
        try:
            return await submit_event_handler(_deps(), request=request)
        except DomainValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    @app.get("/runs/{correlation_id}", response_model=RunDetailResponse, responses=_API_ERRORS, tags=["Runs"])
    async def get_run(correlation_id: str) -> RunDetailResponse:
        detail = await get_run_handler(_deps(), correlation_id=correlation_id)
        if detail is None:
            raise HTTPException(status_code=404, detail="run not found")
        return detail

    @app.get("/ops/queue", response_model=QueueStatusResponse, responses=_API_ERRORS, tags=["Operations"])
    async def get_queue_status() -> QueueStatusResponse:
        return await queue_status_handler(_deps())

    @app.post("/ops/jobs/{job_id}/reset", response_model=JobResponse, responses=_API_ERRORS, tags=["Operations"])
    async def reset_job(job_id: str, request: ResetJobRequest | None = None) -> JobResponse:
        extra_attempts = request.extra_attempts if request is not None else 1
        try:
            return await reset_job_handler(_deps(), job_id=job_id, extra_attempts=extra_attempts)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="job not found") from exc
        except DomainInvariantError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    @app.post("/ops/dispatch", response_model=DispatchResponse, responses=_API_ERRORS, tags=["Operations"])
    async def dispatch(request: DispatchRequest | None = None) -> DispatchResponse:
        return await dispatch_handler(_deps(), limit=request.limit if request is not None else None)

    @app.post("/ops/reap", response_model=ReapResponse, responses=_API_ERRORS, tags=["Operations"])
    async def reap() -> ReapResponse:
        return await reap_handler(_deps())

    @app.get("/ops/dead-letters", response_model=DeadLetterListResponse, responses=_API_ERRORS, tags=["Operations"])
    async def list_dead_letters(limit: int = Query(default=50, ge=1, le=500)) -> DeadLetterListResponse:
        return await list_dead_letters_handler(_deps(), limit=limit)

    @app.post(
        "/ops/dead-letters/replay",
        response_model=ReplayResponse,
        responses=_API_ERRORS,
        tags=["Operations"],
    )
    async def replay_dead_letters(request: ReplayRequest | None = None) -> ReplayResponse:
        batch_size = request.batch_size if request is not None else None
        return await replay_dead_letters_handler(_deps(), batch_size=batch_size)

    return app
