from __future__ import annotations

from app.domain.models import JobSnapshot, RunSnapshot, Stage
from app.domain.outcomes import StageOutcome
from app.workers.handlers import booking_attribution, customer_ingest, friend_reward, referrer_reward
from app.workers.handlers.deps import StageDeps
from app.workers.loop import StageHandler


def build_stage_handlers(deps: StageDeps) -> dict[Stage, StageHandler]:
    async def _customer_ingest(run: RunSnapshot, job: JobSnapshot) -> StageOutcome:
        return await customer_ingest.process_job(deps, run=run, job=job)

    async def _booking_attribution(run: RunSnapshot, job: JobSnapshot) -> StageOutcome:
        return await booking_attribution.process_job(deps, run=run, job=job)

    async def _friend_reward(run: RunSnapshot, job: JobSnapshot) -> StageOutcome:
        return await friend_reward.process_job(deps, run=run, job=job)

    async def _referrer_reward(run: RunSnapshot, job: JobSnapshot) -> StageOutcome:
        return await referrer_reward.process_job(deps, run=run, job=job)

    return {
        Stage.CUSTOMER_INGEST: _customer_ingest,
        Stage.BOOKING_ATTRIBUTION: _booking_attribution,
        Stage.FRIEND_REWARD: _friend_reward,
        Stage.REFERRER_REWARD: _referrer_reward,
    }
