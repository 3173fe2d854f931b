from __future__ import annotations

from app.api.handlers.deps import ApiDeps
from app.api.schemas import TriggerEventRequest, TriggerEventResponse
from app.domain.use_cases.ingest import submit_trigger

COMPONENT_ID = "api.events.submit"


async def submit_event_handler(deps: ApiDeps, *, request: TriggerEventRequest) -> TriggerEventResponse:
    result = await submit_trigger(
        deps.repository,
        policy=deps.policy,
        trigger_type=request.trigger_type,
        resource_id=request.resource_id,
        payload=request.payload,
    )
    return TriggerEventResponse(
        correlation_id=result.run.correlation_id,
        created=result.created,
        stage=result.run.stage,
        status=result.run.status,
    )
