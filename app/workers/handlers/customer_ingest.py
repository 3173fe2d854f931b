from __future__ import annotations

from app.domain.errors import DomainValidationError
from app.domain.models import JobSnapshot, RunSnapshot, Stage, TriggerType
from app.domain.outcomes import Advance, Finish, StageOutcome, failure_for
from app.domain.payloads import CustomerProfile, extract_customer_profile, generate_personal_code
from app.workers.handlers.deps import StageDeps

COMPONENT_ID = "worker.customer_ingest.process_job"
STAGE = Stage.CUSTOMER_INGEST
MAX_CODE_ATTEMPTS = 10


async def process_job(deps: StageDeps, *, run: RunSnapshot, job: JobSnapshot) -> StageOutcome:
    """Resolve the customer behind the trigger and give them a personal referral code.

    The personal code is assigned here, once, before any booking of this
    customer can be attributed; it never changes afterwards.
    """
    del job
    try:
        profile = extract_customer_profile(run.payload)
    except DomainValidationError as exc:
        return failure_for(stage=STAGE, code="payload_invalid", detail=str(exc))

    customer = await deps.directory.upsert_customer(
        customer_id=profile.customer_id,
        given_name=profile.given_name,
        family_name=profile.family_name,
        email_address=profile.email_address,
    )
    personal_code = customer.personal_code
    if personal_code is None:
        personal_code = await _assign_personal_code(deps, profile=profile, given_name=customer.given_name)
    if personal_code is None:
        return failure_for(
            stage=STAGE,
            code="referral_code_unavailable",
            detail=f"no free personal code after {MAX_CODE_ATTEMPTS} attempts",
        )

    context: dict[str, object] = {"customer_id": profile.customer_id, "personal_code": personal_code}
    if run.trigger_type == TriggerType.CUSTOMER_INGEST:
        return Finish(detail="customer ingested", context=context)
    return Advance(next_stage=Stage.BOOKING_ATTRIBUTION, detail="customer resolved", context=context)


async def _assign_personal_code(deps: StageDeps, *, profile: CustomerProfile, given_name: str | None) -> str | None:
    for attempt in range(MAX_CODE_ATTEMPTS):
        code = generate_personal_code(given_name=given_name, customer_id=profile.customer_id, attempt=attempt)
        assigned = await deps.directory.assign_personal_code(customer_id=profile.customer_id, code=code)
        if assigned is not None:
            return assigned
    return None
