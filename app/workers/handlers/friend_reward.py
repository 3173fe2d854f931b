from __future__ import annotations

from app.domain.errors import DomainDependencyError, DomainValidationError
from app.domain.idempotency import build_stage_idempotency_key
from app.domain.models import JobSnapshot, RunSnapshot, Stage
from app.domain.outcomes import Advance, StageOutcome, failure_for, failure_from_payments_error
from app.workers.handlers.booking_attribution import customer_id_for_run
from app.workers.handlers.deps import StageDeps

COMPONENT_ID = "worker.friend_reward.process_job"
STAGE = Stage.FRIEND_REWARD


async def process_job(deps: StageDeps, *, run: RunSnapshot, job: JobSnapshot) -> StageOutcome:
    """Issue the signup bonus gift card to the referred customer."""
    del job
    try:
        customer_id = customer_id_for_run(run)
    except DomainValidationError as exc:
        return failure_for(stage=STAGE, code="payload_invalid", detail=str(exc))

    customer = await deps.directory.get_customer(customer_id=customer_id)
    if customer is None:
        return failure_for(stage=STAGE, code="customer_not_found", detail=customer_id)
    if customer.friend_bonus_gift_card_id:
        return Advance(next_stage=Stage.REFERRER_REWARD, detail="friend bonus already issued")

    reward = deps.policy.friend_reward
    idempotency_key = build_stage_idempotency_key(
        correlation_id=run.correlation_id,
        stage=STAGE,
        amount_cents=reward.amount_cents,
    )
    try:
        gift_card = await deps.payments.issue_gift_card(
            customer_id=customer_id,
            amount_cents=reward.amount_cents,
            currency=deps.policy.currency,
            reference=reward.reference,
            idempotency_key=idempotency_key,
        )
    except DomainDependencyError as exc:
        return failure_from_payments_error(stage=STAGE, exc=exc)

    await deps.directory.record_friend_bonus(customer_id=customer_id, gift_card_id=gift_card.gift_card_id)
    await deps.analytics.record(
        event_type="friend_reward_issued",
        payload={
            "correlation_id": run.correlation_id,
            "customer_id": customer_id,
            "referral_code": run.context.get("referral_code"),
            "gift_card_id": gift_card.gift_card_id,
            "amount_cents": reward.amount_cents,
            "currency": deps.policy.currency,
        },
    )
    return Advance(
        next_stage=Stage.REFERRER_REWARD,
        detail="friend bonus issued",
        context={"friend_gift_card_id": gift_card.gift_card_id},
    )
