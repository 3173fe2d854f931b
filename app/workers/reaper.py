from __future__ import annotations

from dataclasses import dataclass
import logging

from app.domain.contracts import JobStore
from app.domain.models import JobSnapshot

COMPONENT_ID = "worker.reaper.reap_stuck"
DEFAULT_LIVENESS_THRESHOLD_SECONDS = 300.0

logger = logging.getLogger("runtime")


@dataclass
class ReaperLoop:
    """Requeues jobs whose worker stopped renewing the lock.

    The threshold has to stay above the dispatcher's handler timeout, or
    in-flight work gets handed to a second worker.
    """

    repository: JobStore
    liveness_threshold_seconds: float = DEFAULT_LIVENESS_THRESHOLD_SECONDS
    name: str = "reaper"

    async def run_once(self) -> bool:
        reaped = await self.reap()
        return bool(reaped)

    async def reap(self) -> list[JobSnapshot]:
        reaped = await self.repository.reap_stuck(liveness_threshold_seconds=self.liveness_threshold_seconds)
        for job in reaped:
            logger.warning(
                "stuck job requeued",
                extra={
                    "job_id": job.id,
                    "correlation_id": job.correlation_id,
                    "stage": job.stage,
                    "attempt": job.attempts,
                },
            )
        if reaped:
            logger.info("reaper sweep finished", extra={"reaped": len(reaped)})
        return reaped
