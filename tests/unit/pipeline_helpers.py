from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from app.clients.stub import StubAnalyticsSink, StubPaymentsClient
from app.domain.models import JobSnapshot, JobStatus, RunSnapshot, RunStatus, Stage, TriggerType
from app.domain.reward_policy import RewardPolicy, load_reward_policy
from app.domain.use_cases.analytics import AnalyticsDeadLetterQueue
from app.repositories.stub import InMemoryPipelineRepository, InMemoryReferralDirectory
from app.workers.handlers.deps import StageDeps
from app.workers.handlers.factory import build_stage_handlers
from app.workers.loop import DispatchLoop

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)

REFERRER_ID = "CUST-REF-0001"
REFERRER_CODE = "ANN0001"
FRIEND_ID = "CUST-FRIEND-0002"


@dataclass
class FakeClock:
    now: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@dataclass
class Pipeline:
    repository: InMemoryPipelineRepository
    directory: InMemoryReferralDirectory
    payments: StubPaymentsClient
    sink: StubAnalyticsSink
    analytics: AnalyticsDeadLetterQueue
    policy: RewardPolicy
    clock: FakeClock
    dispatcher: DispatchLoop
    deps: StageDeps = field(repr=False)


def build_pipeline(*, payments: StubPaymentsClient | None = None, clock: FakeClock | None = None) -> Pipeline:
    repository = InMemoryPipelineRepository()
    directory = InMemoryReferralDirectory()
    payments = payments or StubPaymentsClient()
    sink = StubAnalyticsSink()
    analytics = AnalyticsDeadLetterQueue(sink=sink, store=repository)
    policy = load_reward_policy()
    clock = clock or FakeClock()
    deps = StageDeps(directory=directory, payments=payments, analytics=analytics, policy=policy)
    dispatcher = DispatchLoop(
        role="worker-dispatch",
        worker_id="worker-dispatch:test",
        repository=repository,
        handlers=build_stage_handlers(deps),
        policy=policy,
        clock=clock,
    )
    return Pipeline(
        repository=repository,
        directory=directory,
        payments=payments,
        sink=sink,
        analytics=analytics,
        policy=policy,
        clock=clock,
        dispatcher=dispatcher,
        deps=deps,
    )


async def seed_referrer(directory: InMemoryReferralDirectory) -> None:
    await directory.upsert_customer(customer_id=REFERRER_ID, given_name="Ann")
    await directory.assign_personal_code(customer_id=REFERRER_ID, code=REFERRER_CODE)


def make_run(
    *,
    stage: Stage,
    trigger_type: TriggerType = TriggerType.PAYMENT_COMPLETED,
    payload: dict[str, object] | None = None,
    context: dict[str, object] | None = None,
) -> RunSnapshot:
    return RunSnapshot(
        correlation_id=f"{trigger_type}:unit",
        trigger_type=trigger_type,
        resource_id="unit-resource",
        payload=payload if payload is not None else {"customer_id": FRIEND_ID},
        stage=stage,
        status=RunStatus.RUNNING,
        context=context or {},
    )


def make_job(run: RunSnapshot) -> JobSnapshot:
    return JobSnapshot(
        id="job_unit",
        correlation_id=run.correlation_id,
        stage=run.stage,
        trigger_type=run.trigger_type,
        status=JobStatus.RUNNING,
        attempts=0,
        max_attempts=5,
        scheduled_at=T0,
        locked_at=T0,
        lock_owner="worker-dispatch:test",
    )
