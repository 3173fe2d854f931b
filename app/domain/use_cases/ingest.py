from __future__ import annotations

import logging

from app.domain.contracts import RunStore
from app.domain.errors import DomainValidationError
from app.domain.lifecycle import INITIAL_STAGE
from app.domain.models import FindOrCreateRunResult, TriggerType
from app.domain.reward_policy import RewardPolicy

COMPONENT_ID = "domain.run.submit_trigger"

logger = logging.getLogger("pipeline")


async def submit_trigger(
    runs: RunStore,
    *,
    policy: RewardPolicy,
    trigger_type: str,
    resource_id: str,
    payload: dict[str, object],
) -> FindOrCreateRunResult:
    """Record one inbound trigger event; re-deliveries resolve to the existing run."""
    try:
        trigger = TriggerType(trigger_type)
    except ValueError as exc:
        raise DomainValidationError(f"unsupported trigger type: {trigger_type}") from exc
    resource = resource_id.strip()
    if not resource:
        raise DomainValidationError("resource_id must not be empty")

    result = await runs.find_or_create_run(
        trigger_type=trigger,
        resource_id=resource,
        payload=payload,
        max_attempts=policy.max_attempts_for(INITIAL_STAGE),
    )
    logger.info(
        "trigger recorded" if result.created else "trigger re-delivered",
        extra={"correlation_id": result.run.correlation_id, "stage": result.run.stage},
    )
    return result
