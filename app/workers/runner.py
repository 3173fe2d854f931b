from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Protocol


class PeriodicLoop(Protocol):
    name: str

    async def run_once(self) -> bool: ...


@dataclass(frozen=True)
class WorkerRuntimeSettings:
    poll_interval_ms: int = 200
    idle_backoff_ms: int = 1000
    error_backoff_ms: int = 2000
    heartbeat_interval_ms: int = 10000
    batch_size: int = 10
    max_concurrency: int = 4
    handler_timeout_seconds: int = 60
    reaper_liveness_threshold_seconds: int = 300
    reaper_interval_ms: int = 30000
    dead_letter_replay_batch_size: int = 50
    dead_letter_replay_interval_ms: int = 60000

    def intervals_for(self, loop_name: str) -> tuple[int, int]:
        """(delay after a busy tick, delay after an idle tick) in milliseconds."""
        if loop_name == "reaper":
            return self.reaper_interval_ms, self.reaper_interval_ms
        if loop_name == "analytics-replay":
            return self.dead_letter_replay_interval_ms, self.dead_letter_replay_interval_ms
        return self.poll_interval_ms, self.idle_backoff_ms


@dataclass
class WorkerRuntimeState:
    started: bool = False
    stopped: bool = False
    ticks_total: int = 0
    busy_ticks_total: int = 0
    idle_ticks_total: int = 0
    errors_total: int = 0


def worker_runtime_settings_from_env() -> WorkerRuntimeSettings:
    return WorkerRuntimeSettings(
        poll_interval_ms=_env_int("WORKER_POLL_INTERVAL_MS", 200),
        idle_backoff_ms=_env_int("WORKER_IDLE_BACKOFF_MS", 1000),
        error_backoff_ms=_env_int("WORKER_ERROR_BACKOFF_MS", 2000),
        heartbeat_interval_ms=_env_int("WORKER_HEARTBEAT_INTERVAL_MS", 10000),
        batch_size=_env_int("WORKER_BATCH_SIZE", 10),
        max_concurrency=_env_int("WORKER_MAX_CONCURRENCY", 4),
        handler_timeout_seconds=_env_int("WORKER_HANDLER_TIMEOUT_SECONDS", 60),
        reaper_liveness_threshold_seconds=_env_int("REAPER_LIVENESS_THRESHOLD_SECONDS", 300),
        reaper_interval_ms=_env_int("REAPER_INTERVAL_MS", 30000),
        dead_letter_replay_batch_size=_env_int("DEAD_LETTER_REPLAY_BATCH_SIZE", 50),
        dead_letter_replay_interval_ms=_env_int("DEAD_LETTER_REPLAY_INTERVAL_MS", 60000),
    )


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = int(value)
    except ValueError:
        return default

    return parsed if parsed > 0 else default


async def run_worker_until_stopped(
    *,
    worker_loop: PeriodicLoop,
    role: str,
    run_id: str,
    stop_event: asyncio.Event,
    settings: WorkerRuntimeSettings,
    logger: logging.Logger,
    state: WorkerRuntimeState | None = None,
) -> None:
    busy_delay_ms, idle_delay_ms = settings.intervals_for(worker_loop.name)
    if state is not None:
        state.started = True

    logger.info(
        "worker loop started",
        extra={"role": role, "service": role, "run_id": run_id},
    )

    while not stop_event.is_set():
        delay_ms = idle_delay_ms
        try:
            did_work = await worker_loop.run_once()
            if state is not None:
                state.ticks_total += 1
                if did_work:
                    state.busy_ticks_total += 1
                else:
                    state.idle_ticks_total += 1
            delay_ms = busy_delay_ms if did_work else idle_delay_ms
        except Exception:
            if state is not None:
                state.ticks_total += 1
                state.errors_total += 1
            delay_ms = settings.error_backoff_ms
            logger.exception(
                "worker tick error",
                extra={"role": role, "service": role, "run_id": run_id},
            )

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay_ms / 1000)
        except TimeoutError:
            continue

    logger.info(
        "worker loop stopped",
        extra={"role": role, "service": role, "run_id": run_id},
    )
    if state is not None:
        state.stopped = True
