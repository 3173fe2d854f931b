from __future__ import annotations

from app.api.handlers.deps import ApiDeps
from app.api.handlers.serializers import job_response, run_response
from app.api.schemas import RunDetailResponse
from app.domain.use_cases.operations import run_detail

COMPONENT_ID = "api.runs.get"


async def get_run_handler(deps: ApiDeps, *, correlation_id: str) -> RunDetailResponse | None:
    detail = await run_detail(deps.repository, correlation_id=correlation_id)
    if detail is None:
        return None
    return RunDetailResponse(
        run=run_response(detail.run),
        jobs=[job_response(job) for job in detail.jobs],
    )
