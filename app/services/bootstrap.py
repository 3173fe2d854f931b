from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging
import os

from app.api.handlers.deps import ApiDeps
from app.clients.square import DEFAULT_API_VERSION, DEFAULT_BASE_URL, SquareGiftCardClient
from app.clients.stub import StubAnalyticsSink, StubPaymentsClient
from app.domain.contracts import AnalyticsSink, PaymentsClient, PipelineRepository, ReferralDirectory
from app.domain.ids import new_worker_id
from app.domain.reward_policy import RewardPolicy, load_reward_policy
from app.domain.use_cases.analytics import AnalyticsDeadLetterQueue
from app.repositories.postgres import (
    AsyncpgPoolManager,
    PostgresAnalyticsSink,
    PostgresPipelineRepository,
    PostgresReferralDirectory,
)
from app.repositories.stub import InMemoryPipelineRepository, InMemoryReferralDirectory
from app.roles import RuntimeRole
from app.workers.handlers.deps import StageDeps
from app.workers.handlers.factory import build_stage_handlers
from app.workers.loop import DispatchLoop
from app.workers.reaper import ReaperLoop
from app.workers.replay import DeadLetterReplayLoop
from app.workers.runner import PeriodicLoop, WorkerRuntimeSettings, worker_runtime_settings_from_env

logger = logging.getLogger("runtime")


@dataclass
class RuntimeContainer:
    repository: PipelineRepository
    directory: ReferralDirectory
    payments: PaymentsClient
    analytics: AnalyticsDeadLetterQueue
    policy: RewardPolicy
    settings: WorkerRuntimeSettings
    dispatcher: DispatchLoop
    reaper: ReaperLoop
    replay: DeadLetterReplayLoop
    api_deps: ApiDeps
    worker_loop: PeriodicLoop | None
    on_startup: Callable[[], Awaitable[None]] | None
    on_shutdown: Callable[[], Awaitable[None]] | None


def build_runtime_container(
    role: RuntimeRole,
    *,
    settings: WorkerRuntimeSettings | None = None,
    policy: RewardPolicy | None = None,
) -> RuntimeContainer:
    settings = settings or worker_runtime_settings_from_env()
    policy = policy or load_reward_policy()

    database_url = os.getenv("DATABASE_URL")
    on_startup: Callable[[], Awaitable[None]] | None = None
    on_shutdown: Callable[[], Awaitable[None]] | None = None
    repository: PipelineRepository
    directory: ReferralDirectory
    sink: AnalyticsSink
    if database_url:
        pool_manager = AsyncpgPoolManager(dsn=database_url)
        repository = PostgresPipelineRepository(pool_manager=pool_manager)
        directory = PostgresReferralDirectory(pool_manager=pool_manager)
        sink = PostgresAnalyticsSink(pool_manager=pool_manager)
        on_startup = pool_manager.startup
        on_shutdown = pool_manager.shutdown
    else:
        repository = InMemoryPipelineRepository()
        directory = InMemoryReferralDirectory()
        sink = StubAnalyticsSink()

    payments = build_payments_client()
    analytics = AnalyticsDeadLetterQueue(
        sink=sink,
        store=repository,
        enabled=_env_flag("ENABLE_REFERRAL_ANALYTICS", True),
    )

    if settings.reaper_liveness_threshold_seconds <= settings.handler_timeout_seconds:
        logger.warning(
            "reaper liveness threshold does not exceed the handler timeout; in-flight jobs may be reaped",
            extra={"role": role.name, "service": role.name},
        )

    dispatcher = DispatchLoop(
        role=role.name,
        worker_id=new_worker_id(role.name),
        repository=repository,
        handlers=build_stage_handlers(
            StageDeps(directory=directory, payments=payments, analytics=analytics, policy=policy)
        ),
        policy=policy,
        batch_size=settings.batch_size,
        max_concurrency=settings.max_concurrency,
        handler_timeout_seconds=float(settings.handler_timeout_seconds),
        heartbeat_interval_ms=settings.heartbeat_interval_ms,
    )
    reaper = ReaperLoop(
        repository=repository,
        liveness_threshold_seconds=float(settings.reaper_liveness_threshold_seconds),
    )
    replay = DeadLetterReplayLoop(queue=analytics, batch_size=settings.dead_letter_replay_batch_size)

    worker_loops: dict[str, PeriodicLoop] = {
        "worker-dispatch": dispatcher,
        "worker-reaper": reaper,
        "worker-analytics-replay": replay,
    }
    api_deps = ApiDeps(
        repository=repository,
        policy=policy,
        dispatcher=dispatcher,
        reaper=reaper,
        replay=replay,
    )

    return RuntimeContainer(
        repository=repository,
        directory=directory,
        payments=payments,
        analytics=analytics,
        policy=policy,
        settings=settings,
        dispatcher=dispatcher,
        reaper=reaper,
        replay=replay,
        api_deps=api_deps,
        worker_loop=worker_loops.get(role.name),
        on_startup=on_startup,
        on_shutdown=on_shutdown,
    )


def build_payments_client() -> PaymentsClient:
    access_token = os.getenv("SQUARE_ACCESS_TOKEN", "").strip()
    if not access_token:
        return StubPaymentsClient()
    location_id = os.getenv("SQUARE_LOCATION_ID", "").strip()
    if not location_id:
        raise ValueError("SQUARE_LOCATION_ID is required when SQUARE_ACCESS_TOKEN is set")
    return SquareGiftCardClient(
        access_token=access_token,
        location_id=location_id,
        base_url=os.getenv("SQUARE_API_BASE_URL", DEFAULT_BASE_URL),
        api_version=os.getenv("SQUARE_API_VERSION", DEFAULT_API_VERSION),
        timeout_seconds=_env_float("SQUARE_TIMEOUT_SECONDS", 10.0),
    )


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off"):
        return False
    return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default
