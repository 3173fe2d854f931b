from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
import logging

from app.domain.contracts import PipelineRepository
from app.domain.error_taxonomy import classify_error
from app.domain.lifecycle import PIPELINE_ORDER, next_stage
from app.domain.models import JobSnapshot, JobStatus, RunSnapshot, RunStatus, Stage, TERMINAL_RUN_STATUSES
from app.domain.outcomes import (
    Advance,
    Finish,
    RetryableFailure,
    StageOutcome,
    TerminalFailure,
    failure_for,
    format_failure,
)
from app.domain.reward_policy import RewardPolicy

StageHandler = Callable[[RunSnapshot, JobSnapshot], Awaitable[StageOutcome]]
Clock = Callable[[], datetime]
logger = logging.getLogger("runtime")
pipeline_logger = logging.getLogger("pipeline")


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True)
class JobResult:
    job_id: str
    correlation_id: str
    stage: Stage
    outcome: str
    detail: str = ""


@dataclass
class DispatchLoop:
    """Claims due jobs, runs their stage handler and records the outcome.

    Any number of these may run at once, in one process or many: exclusivity
    comes only from the repository's atomic claim. Outcome writes are guarded
    by ``lock_owner``, so a job this worker lost to the reaper is left to
    whoever claimed it next.
    """

    role: str
    worker_id: str
    repository: PipelineRepository
    handlers: Mapping[Stage, StageHandler]
    policy: RewardPolicy
    batch_size: int = 10
    max_concurrency: int = 4
    handler_timeout_seconds: float = 60.0
    heartbeat_interval_ms: int = 10000
    name: str = "dispatch"
    clock: Clock = _utc_now

    async def run_once(self) -> bool:
        results = await self.dispatch_batch()
        return bool(results)

    async def dispatch_batch(self, *, limit: int | None = None) -> list[JobResult]:
        jobs = await self.repository.claim_batch(
            limit=limit or self.batch_size,
            worker_id=self.worker_id,
            now=self.clock(),
        )
        if not jobs:
            return []

        logger.info("jobs claimed", extra={"worker_id": self.worker_id, "claimed": len(jobs)})
        lost: set[str] = set()
        finished: set[str] = set()
        stop_heartbeat = asyncio.Event()

        async def _heartbeat_loop() -> None:
            interval_seconds = max(self.heartbeat_interval_ms, 1) / 1000
            while not stop_heartbeat.is_set():
                try:
                    await asyncio.wait_for(stop_heartbeat.wait(), timeout=interval_seconds)
                    break
                except TimeoutError:
                    pass

                pending = sorted(job.id for job in jobs if job.id not in finished and job.id not in lost)
                if not pending:
                    continue
                try:
                    renewed = await self.repository.heartbeat(
                        job_ids=pending,
                        worker_id=self.worker_id,
                        now=self.clock(),
                    )
                except Exception:
                    logger.exception("job heartbeat failed", extra={"worker_id": self.worker_id})
                    continue
                lost.update(job_id for job_id in pending if job_id not in renewed)

        semaphore = asyncio.Semaphore(max(self.max_concurrency, 1))

        async def _run(job: JobSnapshot) -> JobResult:
            async with semaphore:
                try:
                    return await self._execute(job, lost=lost)
                except Exception as exc:
                    # The lease is left to expire; the reaper requeues the job.
                    logger.exception(
                        "job outcome could not be recorded",
                        extra={"worker_id": self.worker_id, "job_id": job.id, "stage": job.stage},
                    )
                    return JobResult(
                        job_id=job.id,
                        correlation_id=job.correlation_id,
                        stage=job.stage,
                        outcome="record_failed",
                        detail=f"{type(exc).__name__}: {exc}",
                    )
                finally:
                    finished.add(job.id)

        heartbeat_task = asyncio.create_task(_heartbeat_loop())
        try:
            results = await asyncio.gather(*(_run(job) for job in jobs))
        finally:
            stop_heartbeat.set()
            await heartbeat_task
        return list(results)

    async def _execute(self, job: JobSnapshot, *, lost: set[str]) -> JobResult:
        outcome = await self._invoke_handler(job)
        if job.id in lost:
            return self._lost(job, "lease lost while the handler was running")
        return await self._record(job, outcome)

    async def _invoke_handler(self, job: JobSnapshot) -> StageOutcome:
        run = await self.repository.get_run(correlation_id=job.correlation_id)
        if run is None:
            return TerminalFailure(error_code="internal_error", detail=f"run not found: {job.correlation_id}")
        handler = self.handlers.get(job.stage)
        if handler is None:
            return TerminalFailure(error_code="internal_error", detail=f"no handler for stage '{job.stage}'")

        try:
            outcome = await asyncio.wait_for(handler(run, job), timeout=self.handler_timeout_seconds)
        except TimeoutError:
            return failure_for(
                stage=job.stage,
                code="handler_timeout",
                detail=f"handler exceeded {self.handler_timeout_seconds:g}s",
            )
        except Exception as exc:
            pipeline_logger.exception(
                "stage handler raised",
                extra={"job_id": job.id, "correlation_id": job.correlation_id, "stage": job.stage},
            )
            return failure_for(stage=job.stage, code="internal_error", detail=f"{type(exc).__name__}: {exc}")

        if isinstance(outcome, Advance) and outcome.next_stage != next_stage(job.stage):
            return TerminalFailure(
                error_code="internal_error",
                detail=f"stage '{job.stage}' cannot advance to '{outcome.next_stage}'",
            )
        return outcome

    async def _record(self, job: JobSnapshot, outcome: StageOutcome) -> JobResult:
        if isinstance(outcome, Advance):
            return await self._record_advance(job, outcome)
        if isinstance(outcome, Finish):
            return await self._record_finish(job, outcome)
        return await self._record_failure(job, outcome)

    async def _record_advance(self, job: JobSnapshot, outcome: Advance) -> JobResult:
        advanced = await self.repository.advance_stage(
            correlation_id=job.correlation_id,
            next_stage=outcome.next_stage,
            context=outcome.context,
            now=self.clock(),
        )
        if advanced or await self._already_past(job.correlation_id, outcome.next_stage):
            await self.repository.enqueue(
                correlation_id=job.correlation_id,
                stage=outcome.next_stage,
                scheduled_at=self.clock(),
                max_attempts=self.policy.max_attempts_for(outcome.next_stage),
            )
        completed = await self.repository.complete(job_id=job.id, worker_id=self.worker_id, now=self.clock())
        if completed is None:
            return self._lost(job, "lease lost before completion")
        pipeline_logger.info(
            "stage advanced",
            extra={
                "job_id": job.id,
                "correlation_id": job.correlation_id,
                "stage": job.stage,
                "attempt": completed.attempts,
            },
        )
        return JobResult(
            job_id=job.id,
            correlation_id=job.correlation_id,
            stage=job.stage,
            outcome="advanced",
            detail=outcome.detail,
        )

    async def _record_finish(self, job: JobSnapshot, outcome: Finish) -> JobResult:
        await self.repository.mark_terminal(
            correlation_id=job.correlation_id,
            status=RunStatus.COMPLETED,
            context=outcome.context,
            now=self.clock(),
        )
        completed = await self.repository.complete(job_id=job.id, worker_id=self.worker_id, now=self.clock())
        if completed is None:
            return self._lost(job, "lease lost before completion")
        pipeline_logger.info(
            "run finished",
            extra={
                "job_id": job.id,
                "correlation_id": job.correlation_id,
                "stage": job.stage,
                "attempt": completed.attempts,
            },
        )
        return JobResult(
            job_id=job.id,
            correlation_id=job.correlation_id,
            stage=job.stage,
            outcome="finished",
            detail=outcome.detail,
        )

    async def _record_failure(self, job: JobSnapshot, outcome: RetryableFailure | TerminalFailure) -> JobResult:
        retryable = isinstance(outcome, RetryableFailure)
        updated = await self.repository.retry_or_fail(
            job_id=job.id,
            worker_id=self.worker_id,
            error=format_failure(outcome),
            retryable=retryable,
            backoff_seconds=self.policy.retry.backoff_seconds(job.attempts + 1),
            now=self.clock(),
        )
        if updated is None:
            return self._lost(job, "lease lost before failure was recorded")

        pipeline_logger.warning(
            "stage failed",
            extra={
                "job_id": job.id,
                "correlation_id": job.correlation_id,
                "stage": job.stage,
                "attempt": updated.attempts,
                "error_code": outcome.error_code,
                "retry_classification": classify_error(outcome.error_code),
            },
        )
        return JobResult(
            job_id=job.id,
            correlation_id=job.correlation_id,
            stage=job.stage,
            outcome="retry_scheduled" if updated.status == JobStatus.QUEUED else "failed",
            detail=format_failure(outcome),
        )

    async def _already_past(self, correlation_id: str, stage: Stage) -> bool:
        run = await self.repository.get_run(correlation_id=correlation_id)
        if run is None or run.status in TERMINAL_RUN_STATUSES:
            return False
        return PIPELINE_ORDER.index(run.stage) >= PIPELINE_ORDER.index(stage)

    def _lost(self, job: JobSnapshot, detail: str) -> JobResult:
        logger.warning(
            "job ownership is stale; outcome dropped",
            extra={"worker_id": self.worker_id, "job_id": job.id, "stage": job.stage},
        )
        return JobResult(
            job_id=job.id,
            correlation_id=job.correlation_id,
            stage=job.stage,
            outcome="lost",
            detail=detail,
        )
