from __future__ import annotations

from app.domain.errors import DomainValidationError
from app.domain.models import CustomerRecord, JobSnapshot, RunSnapshot, Stage
from app.domain.outcomes import Advance, Finish, StageOutcome, failure_for
from app.domain.payloads import extract_customer_id, extract_referral_code_candidates
from app.workers.handlers.deps import StageDeps

COMPONENT_ID = "worker.booking_attribution.process_job"
STAGE = Stage.BOOKING_ATTRIBUTION


async def process_job(deps: StageDeps, *, run: RunSnapshot, job: JobSnapshot) -> StageOutcome:
    """Attribute the run's customer to the referral code they used, if any."""
    del job
    try:
        customer_id = customer_id_for_run(run)
    except DomainValidationError as exc:
        return failure_for(stage=STAGE, code="payload_invalid", detail=str(exc))

    customer = await deps.directory.get_customer(customer_id=customer_id)
    if customer is None:
        return failure_for(stage=STAGE, code="customer_not_found", detail=customer_id)

    # A code already on record wins over whatever this payload carries.
    if customer.used_referral_code:
        candidates = [customer.used_referral_code]
    else:
        candidates = extract_referral_code_candidates(run.payload)

    owner: CustomerRecord | None = None
    for candidate in candidates:
        owner = await deps.directory.find_code_owner(code=candidate)
        if owner is not None:
            break
    if owner is None or owner.personal_code is None:
        return Finish(detail="no referral attribution")

    if owner.customer_id == customer_id:
        return failure_for(stage=STAGE, code="self_referral", detail=f"customer {customer_id} used own code")

    recorded = await deps.directory.record_used_code(customer_id=customer_id, code=owner.personal_code)
    return Advance(
        next_stage=Stage.FRIEND_REWARD,
        detail="referral attributed",
        context={"referral_code": recorded, "referrer_customer_id": owner.customer_id},
    )


def customer_id_for_run(run: RunSnapshot) -> str:
    value = run.context.get("customer_id")
    if isinstance(value, str) and value:
        return value
    return extract_customer_id(run.payload)
