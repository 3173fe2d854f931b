from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from app.domain.models import JobStatus, RunStatus, Stage

TriggerTypeName = Literal["customer_ingest", "booking_created", "payment_completed", "manual"]


class ErrorResponse(BaseModel):
    detail: str


class WorkerMetrics(BaseModel):
    started: bool
    stopped: bool
    ticks_total: int
    busy_ticks_total: int
    idle_ticks_total: int
    errors_total: int


class HealthResponse(BaseModel):
    status: str
    role: str
    mode: str


class ReadyResponse(BaseModel):
    status: str
    role: str
    mode: str
    worker_loop_enabled: bool
    worker_loop_ready: bool
    worker_metrics: WorkerMetrics


class TriggerEventRequest(BaseModel):
    trigger_type: TriggerTypeName
    resource_id: str = Field(min_length=1, max_length=256)
    payload: dict[str, object] = Field(default_factory=dict)


class TriggerEventResponse(BaseModel):
    correlation_id: str
    created: bool
    stage: Stage
    status: RunStatus


class JobResponse(BaseModel):
    id: str
    correlation_id: str
    stage: Stage
    status: JobStatus
    attempts: int
    max_attempts: int
    scheduled_at: datetime
    locked_at: datetime | None = None
    lock_owner: str | None = None
    last_error: str | None = None
    updated_at: datetime | None = None


class RunResponse(BaseModel):
    correlation_id: str
    trigger_type: TriggerTypeName
    resource_id: str
    stage: Stage
    status: RunStatus
    attempts: int
    last_error: str | None = None
    context: dict[str, object] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class RunDetailResponse(BaseModel):
    run: RunResponse
    jobs: list[JobResponse]


class QueueCountsResponse(BaseModel):
    queued: int
    running: int
    completed: int
    error: int
    total: int


class QueueStatusResponse(BaseModel):
    counts: QueueCountsResponse
    stuck_count: int
    stuck: list[JobResponse]
    recent_errors: list[JobResponse]
    dead_letters: int
    liveness_threshold_seconds: float


class ResetJobRequest(BaseModel):
    extra_attempts: int = Field(default=1, ge=1, le=20)


class DispatchRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=500)


class DispatchResultItem(BaseModel):
    job_id: str
    correlation_id: str
    stage: Stage
    outcome: str
    detail: str


class DispatchResponse(BaseModel):
    claimed: int
    results: list[DispatchResultItem]


class ReapResponse(BaseModel):
    reaped: int
    jobs: list[JobResponse]


class ReplayRequest(BaseModel):
    batch_size: int | None = Field(default=None, ge=1, le=1000)


class ReplayResponse(BaseModel):
    replayed: int
    failed: int
    remaining: int


class DeadLetterResponse(BaseModel):
    id: int
    event_type: str
    payload: dict[str, object]
    error_message: str | None = None
    created_at: datetime


class DeadLetterListResponse(BaseModel):
    items: list[DeadLetterResponse]
