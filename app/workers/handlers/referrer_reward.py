from __future__ import annotations

from app.domain.errors import DomainDependencyError, DomainValidationError
from app.domain.idempotency import build_stage_idempotency_key
from app.domain.models import JobSnapshot, RunSnapshot, Stage, TriggerType
from app.domain.outcomes import Finish, StageOutcome, failure_for, failure_from_payments_error
from app.workers.handlers.booking_attribution import customer_id_for_run
from app.workers.handlers.deps import StageDeps

COMPONENT_ID = "worker.referrer_reward.process_job"
STAGE = Stage.REFERRER_REWARD


async def process_job(deps: StageDeps, *, run: RunSnapshot, job: JobSnapshot) -> StageOutcome:
    """Reward the owner of the referral code the run's customer used.

    The code owner is looked up again in the directory instead of being read
    from the run context, and must differ from the referred customer before
    any payments call is made. Only the run holding the (referrer, friend)
    reservation pays, so concurrent payment runs for one friend reward once.
    """
    del job
    try:
        friend_id = customer_id_for_run(run)
    except DomainValidationError as exc:
        return failure_for(stage=STAGE, code="payload_invalid", detail=str(exc))

    friend = await deps.directory.get_customer(customer_id=friend_id)
    if friend is None:
        return failure_for(stage=STAGE, code="customer_not_found", detail=friend_id)

    context_code = run.context.get("referral_code")
    code = friend.used_referral_code or (context_code if isinstance(context_code, str) else None)
    if not code:
        return failure_for(stage=STAGE, code="referral_code_unknown", detail=f"customer {friend_id} has no referral code")

    referrer = await deps.directory.find_code_owner(code=code)
    if referrer is None:
        return failure_for(stage=STAGE, code="referral_code_unknown", detail=code)
    if referrer.customer_id == friend_id:
        return failure_for(stage=STAGE, code="self_referral", detail=f"customer {friend_id} owns code {code}")

    if run.trigger_type == TriggerType.BOOKING_CREATED:
        return Finish(detail="referrer is rewarded on payment")
    reserved = await deps.directory.reserve_referrer_reward(
        referrer_customer_id=referrer.customer_id,
        friend_customer_id=friend_id,
        correlation_id=run.correlation_id,
    )
    if not reserved:
        return Finish(detail="referrer reward for this friend belongs to another run")
    if await deps.directory.has_referrer_reward(referrer_customer_id=referrer.customer_id, friend_customer_id=friend_id):
        return Finish(detail="referrer already rewarded for this friend")

    reward = deps.policy.referrer_reward
    idempotency_key = build_stage_idempotency_key(
        correlation_id=run.correlation_id,
        stage=STAGE,
        amount_cents=reward.amount_cents,
    )
    try:
        if referrer.gift_card_id:
            gift_card = await deps.payments.load_gift_card(
                gift_card_id=referrer.gift_card_id,
                amount_cents=reward.amount_cents,
                currency=deps.policy.currency,
                reference=reward.reference,
                idempotency_key=idempotency_key,
            )
        else:
            gift_card = await deps.payments.issue_gift_card(
                customer_id=referrer.customer_id,
                amount_cents=reward.amount_cents,
                currency=deps.policy.currency,
                reference=reward.reference,
                idempotency_key=idempotency_key,
            )
    except DomainDependencyError as exc:
        return failure_from_payments_error(stage=STAGE, exc=exc)

    await deps.directory.record_referrer_reward(
        referrer_customer_id=referrer.customer_id,
        friend_customer_id=friend_id,
        gift_card_id=gift_card.gift_card_id,
        amount_cents=reward.amount_cents,
    )
    await deps.analytics.record(
        event_type="referrer_reward_issued",
        payload={
            "correlation_id": run.correlation_id,
            "referrer_customer_id": referrer.customer_id,
            "friend_customer_id": friend_id,
            "referral_code": code,
            "gift_card_id": gift_card.gift_card_id,
            "amount_cents": reward.amount_cents,
            "currency": deps.policy.currency,
        },
    )
    return Finish(
        detail="referrer rewarded",
        context={"referrer_gift_card_id": gift_card.gift_card_id},
    )
