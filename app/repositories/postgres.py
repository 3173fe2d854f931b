from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
import importlib
import json
from typing import Any

from app.domain.errors import DomainInvariantError
from app.domain.ids import build_correlation_id, new_job_id
from app.domain.lifecycle import (
    INITIAL_STAGE,
    PIPELINE_ORDER,
    assert_job_transition,
    compute_backoff_seconds,
    previous_stage,
    truncate_error,
)
from app.domain.models import (
    CustomerRecord,
    DeadLetterSnapshot,
    FindOrCreateRunResult,
    JobSnapshot,
    JobStatus,
    QueueStatusCounts,
    RunSnapshot,
    RunStatus,
    Stage,
    TriggerType,
)
from app.repositories.sql_loader import load_sql

try:
    asyncpg_module = importlib.import_module("asyncpg")
except ModuleNotFoundError:  # pragma: no cover
    asyncpg_module = None  # type: ignore[assignment]


SQL_INSERT_RUN = load_sql("insert_run.sql")
SQL_FIND_RUN_BY_RESOURCE = load_sql("find_run_by_resource.sql")
SQL_GET_RUN = load_sql("get_run.sql")
SQL_ADVANCE_RUN_STAGE = load_sql("advance_run_stage.sql")
SQL_MARK_RUN_TERMINAL = load_sql("mark_run_terminal.sql")
SQL_MARK_RUNS_RUNNING = load_sql("mark_runs_running.sql")
SQL_RECORD_RUN_FAILURE = load_sql("record_run_failure.sql")
SQL_REOPEN_RUN = load_sql("reopen_run.sql")
SQL_INSERT_JOB = load_sql("insert_job.sql")
SQL_GET_JOB_BY_STAGE = load_sql("get_job_by_stage.sql")
SQL_GET_JOB = load_sql("get_job.sql")
SQL_LOCK_JOB = load_sql("lock_job.sql")
SQL_CLAIM_BATCH = load_sql("claim_batch.sql")
SQL_HEARTBEAT_JOBS = load_sql("heartbeat_jobs.sql")
SQL_COMPLETE_JOB = load_sql("complete_job.sql")
SQL_LOCK_OWNED_JOB = load_sql("lock_owned_job.sql")
SQL_FINALIZE_JOB_FAILURE = load_sql("finalize_job_failure.sql")
SQL_REAP_STUCK_JOBS = load_sql("reap_stuck_jobs.sql")
SQL_LIST_JOBS_FOR_RUN = load_sql("list_jobs_for_run.sql")
SQL_JOB_STATUS_COUNTS = load_sql("job_status_counts.sql")
SQL_LIST_STUCK_JOBS = load_sql("list_stuck_jobs.sql")
SQL_LIST_FAILED_JOBS = load_sql("list_failed_jobs.sql")
SQL_RESET_RUNNING_JOB = load_sql("reset_running_job.sql")
SQL_RESET_FAILED_JOB = load_sql("reset_failed_job.sql")
SQL_INSERT_DEAD_LETTER = load_sql("insert_dead_letter.sql")
SQL_LIST_DEAD_LETTERS = load_sql("list_dead_letters.sql")
SQL_DELETE_DEAD_LETTER = load_sql("delete_dead_letter.sql")
SQL_COUNT_DEAD_LETTERS = load_sql("count_dead_letters.sql")
SQL_INSERT_REFERRAL_EVENT = load_sql("insert_referral_event.sql")
SQL_UPSERT_CUSTOMER = load_sql("upsert_customer.sql")
SQL_GET_CUSTOMER = load_sql("get_customer.sql")
SQL_ASSIGN_PERSONAL_CODE = load_sql("assign_personal_code.sql")
SQL_FIND_CODE_OWNER = load_sql("find_code_owner.sql")
SQL_RECORD_USED_CODE = load_sql("record_used_code.sql")
SQL_RECORD_FRIEND_BONUS = load_sql("record_friend_bonus.sql")
SQL_RESERVE_REFERRER_REWARD = load_sql("reserve_referrer_reward.sql")
SQL_HAS_REFERRER_REWARD = load_sql("has_referrer_reward.sql")
SQL_INSERT_REFERRER_REWARD = load_sql("insert_referrer_reward.sql")
SQL_SET_CUSTOMER_GIFT_CARD = load_sql("set_customer_gift_card.sql")

REAPED_NOTE = "lease expired; job requeued by reaper"


def _is_unique_violation(exc: Exception) -> bool:
    return getattr(exc, "sqlstate", None) == "23505"


@dataclass
class AsyncpgPoolManager:
    dsn: str
    pool: Any | None = None
    min_size: int = 1
    max_size: int = 5

    async def startup(self) -> None:
        if asyncpg_module is None:  # pragma: no cover
            raise RuntimeError("asyncpg is required for postgres repository mode")

        async def _init_connection(conn: Any) -> None:
            await conn.set_type_codec(
                "json",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )
            await conn.set_type_codec(
                "jsonb",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )

        self.pool = await asyncpg_module.create_pool(
            dsn=self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            init=_init_connection,
        )

    async def shutdown(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None


@dataclass
class PostgresPipelineRepository:
    """Run store, job store and analytics dead-letter store over one pool.

    Every multi-row change runs inside a single transaction; job claims rely on
    FOR UPDATE SKIP LOCKED so concurrent dispatchers never share a job.
    """

    pool_manager: AsyncpgPoolManager

    def _pool(self) -> Any:
        if self.pool_manager.pool is None:
            raise RuntimeError("postgres pool is not initialized")
        return self.pool_manager.pool

    async def find_or_create_run(
        self,
        *,
        trigger_type: TriggerType,
        resource_id: str,
        payload: dict[str, object],
        max_attempts: int = 5,
        now: datetime | None = None,
    ) -> FindOrCreateRunResult:
        now = now or datetime.now(tz=UTC)
        correlation_id = build_correlation_id(trigger_type=str(trigger_type), resource_id=resource_id)
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    SQL_INSERT_RUN,
                    correlation_id,
                    str(trigger_type),
                    resource_id,
                    dict(payload),
                    str(INITIAL_STAGE),
                    now,
                )
                if row is None:
                    existing = await conn.fetchrow(SQL_FIND_RUN_BY_RESOURCE, str(trigger_type), resource_id)
                    if existing is None:
                        raise DomainInvariantError("run create conflict without existing row")
                    return FindOrCreateRunResult(run=_run_from_row(existing), created=False)

                await conn.fetchrow(
                    SQL_INSERT_JOB,
                    new_job_id(),
                    correlation_id,
                    str(INITIAL_STAGE),
                    now,
                    max_attempts if max_attempts > 0 else 5,
                    now,
                )
        return FindOrCreateRunResult(run=_run_from_row(row), created=True)

    async def get_run(self, *, correlation_id: str) -> RunSnapshot | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_RUN, correlation_id)
        return _run_from_row(row) if row is not None else None

    async def advance_stage(
        self,
        *,
        correlation_id: str,
        next_stage: Stage,
        context: dict[str, object] | None = None,
        now: datetime | None = None,
    ) -> bool:
        expected = previous_stage(next_stage)
        if expected is None:
            return False
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                SQL_ADVANCE_RUN_STAGE,
                correlation_id,
                str(next_stage),
                dict(context or {}),
                now or datetime.now(tz=UTC),
                str(expected),
            )
        return row is not None

    async def mark_terminal(
        self,
        *,
        correlation_id: str,
        status: RunStatus,
        error: str | None = None,
        context: dict[str, object] | None = None,
        now: datetime | None = None,
    ) -> RunSnapshot | None:
        if status not in (RunStatus.COMPLETED, RunStatus.ERROR):
            raise DomainInvariantError(f"run status '{status}' is not terminal")
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                SQL_MARK_RUN_TERMINAL,
                correlation_id,
                str(status),
                truncate_error(error) if error is not None else None,
                dict(context or {}),
                now or datetime.now(tz=UTC),
            )
        return _run_from_row(row) if row is not None else None

    async def enqueue(
        self,
        *,
        correlation_id: str,
        stage: Stage,
        scheduled_at: datetime | None = None,
        max_attempts: int = 5,
    ) -> JobSnapshot:
        now = datetime.now(tz=UTC)
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                SQL_INSERT_JOB,
                new_job_id(),
                correlation_id,
                str(stage),
                scheduled_at or now,
                max_attempts if max_attempts > 0 else 5,
                now,
            )
            if row is None:
                row = await conn.fetchrow(SQL_GET_JOB_BY_STAGE, correlation_id, str(stage))
        if row is None:
            raise DomainInvariantError(f"run not found: {correlation_id}")
        return _job_from_row(row)

    async def claim_batch(self, *, limit: int, worker_id: str, now: datetime | None = None) -> list[JobSnapshot]:
        if limit <= 0:
            return []
        now = now or datetime.now(tz=UTC)
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(SQL_CLAIM_BATCH, limit, worker_id, now)
                if rows:
                    correlation_ids = sorted({row["correlation_id"] for row in rows})
                    await conn.execute(SQL_MARK_RUNS_RUNNING, correlation_ids, now)
        claimed = [_job_from_row(row) for row in rows]
        claimed.sort(key=lambda job: (job.scheduled_at, job.created_at or now, job.id))
        return claimed

    async def heartbeat(self, *, job_ids: list[str], worker_id: str, now: datetime | None = None) -> set[str]:
        if not job_ids:
            return set()
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_HEARTBEAT_JOBS, list(job_ids), worker_id, now or datetime.now(tz=UTC))
        return {row["id"] for row in rows}

    async def complete(self, *, job_id: str, worker_id: str, now: datetime | None = None) -> JobSnapshot | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_COMPLETE_JOB, job_id, worker_id, now or datetime.now(tz=UTC))
        return _job_from_row(row) if row is not None else None

    async def retry_or_fail(
        self,
        *,
        job_id: str,
        worker_id: str,
        error: str,
        retryable: bool = True,
        backoff_seconds: float | None = None,
        now: datetime | None = None,
    ) -> JobSnapshot | None:
        now = now or datetime.now(tz=UTC)
        message = truncate_error(error)
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchrow(SQL_LOCK_OWNED_JOB, job_id, worker_id)
                if current is None:
                    return None
                attempts = int(current["attempts"]) + 1
                scheduled_at = current["scheduled_at"]
                if retryable and attempts < int(current["max_attempts"]):
                    status = JobStatus.QUEUED
                    delay = backoff_seconds if backoff_seconds is not None else compute_backoff_seconds(attempts)
                    scheduled_at = now + timedelta(seconds=delay)
                else:
                    status = JobStatus.ERROR
                row = await conn.fetchrow(
                    SQL_FINALIZE_JOB_FAILURE,
                    job_id,
                    str(status),
                    attempts,
                    scheduled_at,
                    message,
                    now,
                )
                await conn.execute(
                    SQL_RECORD_RUN_FAILURE,
                    current["correlation_id"],
                    message,
                    status == JobStatus.ERROR,
                    now,
                )
        return _job_from_row(row) if row is not None else None

    async def reap_stuck(self, *, liveness_threshold_seconds: float, now: datetime | None = None) -> list[JobSnapshot]:
        now = now or datetime.now(tz=UTC)
        cutoff = now - timedelta(seconds=liveness_threshold_seconds)
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_REAP_STUCK_JOBS, cutoff, now, REAPED_NOTE)
        return [_job_from_row(row) for row in rows]

    async def get_job(self, *, job_id: str) -> JobSnapshot | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_JOB, job_id)
        return _job_from_row(row) if row is not None else None

    async def list_jobs_for_run(self, *, correlation_id: str) -> list[JobSnapshot]:
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_LIST_JOBS_FOR_RUN, correlation_id)
        jobs = [_job_from_row(row) for row in rows]
        jobs.sort(key=lambda job: PIPELINE_ORDER.index(job.stage))
        return jobs

    async def job_status_counts(self) -> QueueStatusCounts:
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_JOB_STATUS_COUNTS)
        counts = {row["status"]: int(row["total"]) for row in rows}
        return QueueStatusCounts(
            queued=counts.get(JobStatus.QUEUED, 0),
            running=counts.get(JobStatus.RUNNING, 0),
            completed=counts.get(JobStatus.COMPLETED, 0),
            error=counts.get(JobStatus.ERROR, 0),
        )

    async def list_stuck_jobs(
        self,
        *,
        liveness_threshold_seconds: float,
        limit: int = 10,
        now: datetime | None = None,
    ) -> list[JobSnapshot]:
        now = now or datetime.now(tz=UTC)
        cutoff = now - timedelta(seconds=liveness_threshold_seconds)
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_LIST_STUCK_JOBS, cutoff, limit)
        return [_job_from_row(row) for row in rows]

    async def list_failed_jobs(self, *, limit: int = 5) -> list[JobSnapshot]:
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_LIST_FAILED_JOBS, limit)
        return [_job_from_row(row) for row in rows]

    async def reset_job(self, *, job_id: str, extra_attempts: int = 1, now: datetime | None = None) -> JobSnapshot:
        now = now or datetime.now(tz=UTC)
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchrow(SQL_LOCK_JOB, job_id)
                if current is None:
                    raise KeyError(f"job not found: {job_id}")
                status = JobStatus(current["status"])
                assert_job_transition(status, JobStatus.QUEUED, operator_reset=True)
                if status == JobStatus.RUNNING:
                    row = await conn.fetchrow(SQL_RESET_RUNNING_JOB, job_id, now)
                else:
                    row = await conn.fetchrow(SQL_RESET_FAILED_JOB, job_id, max(extra_attempts, 1), now)
                    await conn.execute(SQL_REOPEN_RUN, current["correlation_id"], now)
        if row is None:
            raise DomainInvariantError("job reset rejected")
        return _job_from_row(row)

    async def add_dead_letter(
        self,
        *,
        event_type: str,
        payload: dict[str, object],
        error_message: str | None,
    ) -> int:
        pool = self._pool()
        async with pool.acquire() as conn:
            dead_letter_id = await conn.fetchval(
                SQL_INSERT_DEAD_LETTER,
                event_type,
                dict(payload),
                truncate_error(error_message) if error_message else None,
            )
        return int(dead_letter_id)

    async def list_dead_letters(self, *, limit: int) -> list[DeadLetterSnapshot]:
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_LIST_DEAD_LETTERS, limit)
        return [
            DeadLetterSnapshot(
                id=int(row["id"]),
                event_type=row["event_type"],
                payload=_json_object(row["payload"]),
                error_message=_as_str(_record_get(row, "error_message")),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def delete_dead_letter(self, *, dead_letter_id: int) -> None:
        pool = self._pool()
        async with pool.acquire() as conn:
            await conn.execute(SQL_DELETE_DEAD_LETTER, dead_letter_id)

    async def count_dead_letters(self) -> int:
        pool = self._pool()
        async with pool.acquire() as conn:
            total = await conn.fetchval(SQL_COUNT_DEAD_LETTERS)
        return int(total or 0)


@dataclass
class PostgresReferralDirectory:
    pool_manager: AsyncpgPoolManager

    def _pool(self) -> Any:
        if self.pool_manager.pool is None:
            raise RuntimeError("postgres pool is not initialized")
        return self.pool_manager.pool

    async def upsert_customer(
        self,
        *,
        customer_id: str,
        given_name: str | None = None,
        family_name: str | None = None,
        email_address: str | None = None,
    ) -> CustomerRecord:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_UPSERT_CUSTOMER, customer_id, given_name, family_name, email_address)
        if row is None:
            raise DomainInvariantError("customer upsert returned no row")
        return _customer_from_row(row)

    async def get_customer(self, *, customer_id: str) -> CustomerRecord | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_CUSTOMER, customer_id)
        return _customer_from_row(row) if row is not None else None

    async def assign_personal_code(self, *, customer_id: str, code: str) -> str | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            try:
                assigned = await conn.fetchval(SQL_ASSIGN_PERSONAL_CODE, customer_id, code)
            except Exception as exc:
                if _is_unique_violation(exc):
                    return None
                raise
            if assigned is not None:
                return str(assigned)
            row = await conn.fetchrow(SQL_GET_CUSTOMER, customer_id)
        if row is None:
            raise KeyError(f"customer not found: {customer_id}")
        return _as_str(_record_get(row, "personal_code"))

    async def find_code_owner(self, *, code: str) -> CustomerRecord | None:
        normalized = code.strip()
        if not normalized:
            return None
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_FIND_CODE_OWNER, normalized)
        return _customer_from_row(row) if row is not None else None

    async def record_used_code(self, *, customer_id: str, code: str) -> str:
        pool = self._pool()
        async with pool.acquire() as conn:
            recorded = await conn.fetchval(SQL_RECORD_USED_CODE, customer_id, code)
        if recorded is None:
            raise KeyError(f"customer not found: {customer_id}")
        return str(recorded)

    async def record_friend_bonus(self, *, customer_id: str, gift_card_id: str) -> None:
        pool = self._pool()
        async with pool.acquire() as conn:
            updated = await conn.fetchval(SQL_RECORD_FRIEND_BONUS, customer_id, gift_card_id)
        if updated is None:
            raise KeyError(f"customer not found: {customer_id}")

    async def reserve_referrer_reward(
        self,
        *,
        referrer_customer_id: str,
        friend_customer_id: str,
        correlation_id: str,
    ) -> bool:
        pool = self._pool()
        async with pool.acquire() as conn:
            holder = await conn.fetchval(
                SQL_RESERVE_REFERRER_REWARD,
                referrer_customer_id,
                friend_customer_id,
                correlation_id,
            )
        return holder == correlation_id

    async def has_referrer_reward(self, *, referrer_customer_id: str, friend_customer_id: str) -> bool:
        pool = self._pool()
        async with pool.acquire() as conn:
            exists = await conn.fetchval(SQL_HAS_REFERRER_REWARD, referrer_customer_id, friend_customer_id)
        return bool(exists)

    async def record_referrer_reward(
        self,
        *,
        referrer_customer_id: str,
        friend_customer_id: str,
        gift_card_id: str,
        amount_cents: int,
    ) -> bool:
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                inserted = await conn.fetchval(
                    SQL_INSERT_REFERRER_REWARD,
                    referrer_customer_id,
                    friend_customer_id,
                    gift_card_id,
                    amount_cents,
                )
                if inserted is None:
                    return False
                await conn.execute(SQL_SET_CUSTOMER_GIFT_CARD, referrer_customer_id, gift_card_id)
        return True


@dataclass
class PostgresAnalyticsSink:
    pool_manager: AsyncpgPoolManager

    async def write_event(self, *, event_type: str, payload: dict[str, object]) -> None:
        if self.pool_manager.pool is None:
            raise RuntimeError("postgres pool is not initialized")
        async with self.pool_manager.pool.acquire() as conn:
            await conn.execute(SQL_INSERT_REFERRAL_EVENT, event_type, dict(payload))


def _run_from_row(row: object) -> RunSnapshot:
    return RunSnapshot(
        correlation_id=str(_record_get(row, "correlation_id")),
        trigger_type=TriggerType(str(_record_get(row, "trigger_type"))),
        resource_id=str(_record_get(row, "resource_id")),
        payload=_json_object(_record_get(row, "payload")),
        stage=Stage(str(_record_get(row, "stage"))),
        status=RunStatus(str(_record_get(row, "status"))),
        attempts=_as_int(_record_get(row, "attempts")) or 0,
        last_error=_as_str(_record_get(row, "last_error")),
        context=_json_object(_record_get(row, "context")),
        created_at=_as_datetime(_record_get(row, "created_at")),
        updated_at=_as_datetime(_record_get(row, "updated_at")),
    )


def _job_from_row(row: object) -> JobSnapshot:
    scheduled_at = _as_datetime(_record_get(row, "scheduled_at"))
    if scheduled_at is None:
        raise DomainInvariantError("job row without scheduled_at")
    return JobSnapshot(
        id=str(_record_get(row, "id")),
        correlation_id=str(_record_get(row, "correlation_id")),
        stage=Stage(str(_record_get(row, "stage"))),
        trigger_type=TriggerType(str(_record_get(row, "trigger_type"))),
        status=JobStatus(str(_record_get(row, "status"))),
        attempts=_as_int(_record_get(row, "attempts")) or 0,
        max_attempts=_as_int(_record_get(row, "max_attempts")) or 5,
        scheduled_at=scheduled_at,
        locked_at=_as_datetime(_record_get(row, "locked_at")),
        lock_owner=_as_str(_record_get(row, "lock_owner")),
        last_error=_as_str(_record_get(row, "last_error")),
        created_at=_as_datetime(_record_get(row, "created_at")),
        updated_at=_as_datetime(_record_get(row, "updated_at")),
    )


def _customer_from_row(row: object) -> CustomerRecord:
    return CustomerRecord(
        customer_id=str(_record_get(row, "customer_id")),
        given_name=_as_str(_record_get(row, "given_name")),
        family_name=_as_str(_record_get(row, "family_name")),
        email_address=_as_str(_record_get(row, "email_address")),
        personal_code=_as_str(_record_get(row, "personal_code")),
        used_referral_code=_as_str(_record_get(row, "used_referral_code")),
        gift_card_id=_as_str(_record_get(row, "gift_card_id")),
        friend_bonus_gift_card_id=_as_str(_record_get(row, "friend_bonus_gift_card_id")),
    )


def _json_object(value: object) -> dict[str, object]:
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str):
        parsed = json.loads(value)
        if isinstance(parsed, dict):
            return parsed
    return {}


def _record_get(row: object, key: str) -> object | None:
    if isinstance(row, dict):
        return row.get(key)
    try:
        return row[key]  # type: ignore[index]
    except (KeyError, IndexError):
        return None


def _as_str(value: object | None) -> str | None:
    if isinstance(value, str):
        return value
    return None


def _as_int(value: object | None) -> int | None:
    if isinstance(value, int):
        return value
    return None


def _as_datetime(value: object | None) -> datetime | None:
    if isinstance(value, datetime):
        return value
    return None
