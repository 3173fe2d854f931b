from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta

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
from app.domain.payloads import normalize_code

REAPED_NOTE = "lease expired; job requeued by reaper"


@dataclass
class _RunRow:
    correlation_id: str
    trigger_type: TriggerType
    resource_id: str
    payload: dict[str, object]
    stage: Stage
    status: RunStatus
    attempts: int = 0
    last_error: str | None = None
    context: dict[str, object] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


@dataclass
class _JobRow:
    id: str
    correlation_id: str
    stage: Stage
    trigger_type: TriggerType
    status: JobStatus
    attempts: int
    max_attempts: int
    scheduled_at: datetime
    locked_at: datetime | None = None
    lock_owner: str | None = None
    last_error: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


@dataclass
class InMemoryPipelineRepository:
    """Non-network repository with deterministic behavior for skeleton mode.

    Every method body runs without awaiting, so each call is atomic with
    respect to other coroutines on the same event loop.
    """

    runs: dict[str, _RunRow] = field(default_factory=dict)
    run_keys: dict[tuple[str, str], str] = field(default_factory=dict)
    jobs: dict[str, _JobRow] = field(default_factory=dict)
    job_keys: dict[tuple[str, str], str] = field(default_factory=dict)
    dead_letters: dict[int, DeadLetterSnapshot] = field(default_factory=dict)
    next_dead_letter_id: int = 1

    async def find_or_create_run(
        self,
        *,
        trigger_type: TriggerType,
        resource_id: str,
        payload: dict[str, object],
        max_attempts: int = 5,
        now: datetime | None = None,
    ) -> FindOrCreateRunResult:
        key = (str(trigger_type), resource_id)
        existing = self.run_keys.get(key)
        if existing is not None:
            return FindOrCreateRunResult(run=_run_snapshot(self.runs[existing]), created=False)

        now = now or datetime.now(tz=UTC)
        correlation_id = build_correlation_id(trigger_type=str(trigger_type), resource_id=resource_id)
        row = _RunRow(
            correlation_id=correlation_id,
            trigger_type=TriggerType(trigger_type),
            resource_id=resource_id,
            payload=dict(payload),
            stage=INITIAL_STAGE,
            status=RunStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self.runs[correlation_id] = row
        self.run_keys[key] = correlation_id
        self._insert_job(
            correlation_id=correlation_id,
            stage=INITIAL_STAGE,
            trigger_type=row.trigger_type,
            scheduled_at=now,
            max_attempts=max_attempts,
            now=now,
        )
        return FindOrCreateRunResult(run=_run_snapshot(row), created=True)

    async def get_run(self, *, correlation_id: str) -> RunSnapshot | None:
        row = self.runs.get(correlation_id)
        return _run_snapshot(row) if row is not None else None

    async def advance_stage(
        self,
        *,
        correlation_id: str,
        next_stage: Stage,
        context: dict[str, object] | None = None,
        now: datetime | None = None,
    ) -> bool:
        row = self.runs.get(correlation_id)
        if row is None:
            return False
        expected = previous_stage(next_stage)
        if expected is None or row.stage != expected or row.status in (RunStatus.COMPLETED, RunStatus.ERROR):
            return False
        row.stage = next_stage
        row.status = RunStatus.RUNNING
        row.context = _merge_context(row.context, context)
        row.updated_at = now or datetime.now(tz=UTC)
        return True

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
        row = self.runs.get(correlation_id)
        if row is None:
            return None
        row.status = status
        if error is not None:
            row.last_error = truncate_error(error)
        row.context = _merge_context(row.context, context)
        row.updated_at = now or datetime.now(tz=UTC)
        return _run_snapshot(row)

    async def enqueue(
        self,
        *,
        correlation_id: str,
        stage: Stage,
        scheduled_at: datetime | None = None,
        max_attempts: int = 5,
    ) -> JobSnapshot:
        run = self.runs.get(correlation_id)
        if run is None:
            raise DomainInvariantError(f"run not found: {correlation_id}")
        existing = self.job_keys.get((correlation_id, str(stage)))
        if existing is not None:
            return _job_snapshot(self.jobs[existing])
        now = datetime.now(tz=UTC)
        row = self._insert_job(
            correlation_id=correlation_id,
            stage=stage,
            trigger_type=run.trigger_type,
            scheduled_at=scheduled_at or now,
            max_attempts=max_attempts,
            now=now,
        )
        return _job_snapshot(row)

    async def claim_batch(self, *, limit: int, worker_id: str, now: datetime | None = None) -> list[JobSnapshot]:
        now = now or datetime.now(tz=UTC)
        eligible = sorted(
            (row for row in self.jobs.values() if row.status == JobStatus.QUEUED and row.scheduled_at <= now),
            key=lambda row: (row.scheduled_at, row.created_at, row.id),
        )
        claimed: list[JobSnapshot] = []
        for row in eligible[: max(limit, 0)]:
            assert_job_transition(row.status, JobStatus.RUNNING)
            row.status = JobStatus.RUNNING
            row.locked_at = now
            row.lock_owner = worker_id
            row.updated_at = now
            run = self.runs.get(row.correlation_id)
            if run is not None and run.status == RunStatus.PENDING:
                run.status = RunStatus.RUNNING
                run.updated_at = now
            claimed.append(_job_snapshot(row))
        return claimed

    async def heartbeat(self, *, job_ids: list[str], worker_id: str, now: datetime | None = None) -> set[str]:
        now = now or datetime.now(tz=UTC)
        owned: set[str] = set()
        for job_id in job_ids:
            row = self.jobs.get(job_id)
            if row is None or row.status != JobStatus.RUNNING or row.lock_owner != worker_id:
                continue
            row.locked_at = now
            owned.add(job_id)
        return owned

    async def complete(self, *, job_id: str, worker_id: str, now: datetime | None = None) -> JobSnapshot | None:
        row = self._owned_row(job_id=job_id, worker_id=worker_id)
        if row is None:
            return None
        assert_job_transition(row.status, JobStatus.COMPLETED)
        row.status = JobStatus.COMPLETED
        row.attempts += 1
        row.locked_at = None
        row.lock_owner = None
        row.last_error = None
        row.updated_at = now or datetime.now(tz=UTC)
        return _job_snapshot(row)

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
        row = self._owned_row(job_id=job_id, worker_id=worker_id)
        if row is None:
            return None
        assert_job_transition(row.status, JobStatus.QUEUED if retryable else JobStatus.ERROR)
        now = now or datetime.now(tz=UTC)
        message = truncate_error(error)
        row.attempts += 1
        row.locked_at = None
        row.lock_owner = None
        row.last_error = message
        row.updated_at = now

        run = self.runs.get(row.correlation_id)
        if run is not None:
            run.attempts += 1
            run.last_error = message
            run.updated_at = now

        # Mirror Postgres behavior: recoverable -> queued with backoff, otherwise error.
        if retryable and row.attempts < row.max_attempts:
            delay = backoff_seconds if backoff_seconds is not None else compute_backoff_seconds(row.attempts)
            row.status = JobStatus.QUEUED
            row.scheduled_at = now + timedelta(seconds=delay)
        else:
            row.status = JobStatus.ERROR
            if run is not None:
                run.status = RunStatus.ERROR
        return _job_snapshot(row)

    async def reap_stuck(self, *, liveness_threshold_seconds: float, now: datetime | None = None) -> list[JobSnapshot]:
        now = now or datetime.now(tz=UTC)
        cutoff = now - timedelta(seconds=liveness_threshold_seconds)
        reaped: list[JobSnapshot] = []
        for row in self.jobs.values():
            if row.status != JobStatus.RUNNING or row.locked_at is None or row.locked_at >= cutoff:
                continue
            assert_job_transition(row.status, JobStatus.QUEUED)
            row.status = JobStatus.QUEUED
            row.locked_at = None
            row.lock_owner = None
            row.last_error = REAPED_NOTE
            row.updated_at = now
            reaped.append(_job_snapshot(row))
        return reaped

    async def get_job(self, *, job_id: str) -> JobSnapshot | None:
        row = self.jobs.get(job_id)
        return _job_snapshot(row) if row is not None else None

    async def list_jobs_for_run(self, *, correlation_id: str) -> list[JobSnapshot]:
        rows = [row for row in self.jobs.values() if row.correlation_id == correlation_id]
        rows.sort(key=lambda row: PIPELINE_ORDER.index(row.stage))
        return [_job_snapshot(row) for row in rows]

    async def job_status_counts(self) -> QueueStatusCounts:
        counts = {status: 0 for status in JobStatus}
        for row in self.jobs.values():
            counts[row.status] += 1
        return QueueStatusCounts(
            queued=counts[JobStatus.QUEUED],
            running=counts[JobStatus.RUNNING],
            completed=counts[JobStatus.COMPLETED],
            error=counts[JobStatus.ERROR],
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
        rows = [
            row
            for row in self.jobs.values()
            if row.status == JobStatus.RUNNING and row.locked_at is not None and row.locked_at < cutoff
        ]
        rows.sort(key=lambda row: row.locked_at or now)
        return [_job_snapshot(row) for row in rows[:limit]]

    async def list_failed_jobs(self, *, limit: int = 5) -> list[JobSnapshot]:
        rows = [row for row in self.jobs.values() if row.status == JobStatus.ERROR]
        rows.sort(key=lambda row: row.updated_at, reverse=True)
        return [_job_snapshot(row) for row in rows[:limit]]

    async def reset_job(self, *, job_id: str, extra_attempts: int = 1, now: datetime | None = None) -> JobSnapshot:
        row = self.jobs.get(job_id)
        if row is None:
            raise KeyError(f"job not found: {job_id}")
        now = now or datetime.now(tz=UTC)
        assert_job_transition(row.status, JobStatus.QUEUED, operator_reset=True)
        if row.status == JobStatus.RUNNING:
            row.status = JobStatus.QUEUED
            row.locked_at = None
            row.lock_owner = None
        else:
            row.status = JobStatus.QUEUED
            row.max_attempts = row.attempts + max(extra_attempts, 1)
            row.scheduled_at = now
            run = self.runs.get(row.correlation_id)
            if run is not None and run.status == RunStatus.ERROR:
                run.status = RunStatus.RUNNING
                run.updated_at = now
        row.updated_at = now
        return _job_snapshot(row)

    async def add_dead_letter(
        self,
        *,
        event_type: str,
        payload: dict[str, object],
        error_message: str | None,
    ) -> int:
        dead_letter_id = self.next_dead_letter_id
        self.next_dead_letter_id += 1
        self.dead_letters[dead_letter_id] = DeadLetterSnapshot(
            id=dead_letter_id,
            event_type=event_type,
            payload=dict(payload),
            error_message=truncate_error(error_message) if error_message else None,
            created_at=datetime.now(tz=UTC),
        )
        return dead_letter_id

    async def list_dead_letters(self, *, limit: int) -> list[DeadLetterSnapshot]:
        items = sorted(self.dead_letters.values(), key=lambda item: (item.created_at, item.id))
        return items[:limit]

    async def delete_dead_letter(self, *, dead_letter_id: int) -> None:
        self.dead_letters.pop(dead_letter_id, None)

    async def count_dead_letters(self) -> int:
        return len(self.dead_letters)

    def _insert_job(
        self,
        *,
        correlation_id: str,
        stage: Stage,
        trigger_type: TriggerType,
        scheduled_at: datetime,
        max_attempts: int,
        now: datetime,
    ) -> _JobRow:
        row = _JobRow(
            id=new_job_id(),
            correlation_id=correlation_id,
            stage=stage,
            trigger_type=trigger_type,
            status=JobStatus.QUEUED,
            attempts=0,
            max_attempts=max_attempts if max_attempts > 0 else 5,
            scheduled_at=scheduled_at,
            created_at=now,
            updated_at=now,
        )
        self.jobs[row.id] = row
        self.job_keys[(correlation_id, str(stage))] = row.id
        return row

    def _owned_row(self, *, job_id: str, worker_id: str) -> _JobRow | None:
        row = self.jobs.get(job_id)
        if row is None or row.status != JobStatus.RUNNING or row.lock_owner != worker_id:
            return None
        return row


@dataclass
class _CustomerRow:
    customer_id: str
    given_name: str | None = None
    family_name: str | None = None
    email_address: str | None = None
    personal_code: str | None = None
    used_referral_code: str | None = None
    gift_card_id: str | None = None
    friend_bonus_gift_card_id: str | None = None


@dataclass
class InMemoryReferralDirectory:
    customers: dict[str, _CustomerRow] = field(default_factory=dict)
    rewards: dict[tuple[str, str], dict[str, object]] = field(default_factory=dict)

    async def upsert_customer(
        self,
        *,
        customer_id: str,
        given_name: str | None = None,
        family_name: str | None = None,
        email_address: str | None = None,
    ) -> CustomerRecord:
        row = self.customers.get(customer_id)
        if row is None:
            row = _CustomerRow(customer_id=customer_id)
            self.customers[customer_id] = row
        # Never overwrite known profile fields.
        row.given_name = row.given_name or given_name
        row.family_name = row.family_name or family_name
        row.email_address = row.email_address or email_address
        return _customer_record(row)

    async def get_customer(self, *, customer_id: str) -> CustomerRecord | None:
        row = self.customers.get(customer_id)
        return _customer_record(row) if row is not None else None

    async def assign_personal_code(self, *, customer_id: str, code: str) -> str | None:
        row = self.customers.get(customer_id)
        if row is None:
            raise KeyError(f"customer not found: {customer_id}")
        if row.personal_code is not None:
            return row.personal_code
        normalized = normalize_code(code)
        for other in self.customers.values():
            if other.personal_code is not None and normalize_code(other.personal_code) == normalized:
                return None
        row.personal_code = code
        return code

    async def find_code_owner(self, *, code: str) -> CustomerRecord | None:
        normalized = normalize_code(code)
        if not normalized:
            return None
        for row in self.customers.values():
            if row.personal_code is not None and normalize_code(row.personal_code) == normalized:
                return _customer_record(row)
        return None

    async def record_used_code(self, *, customer_id: str, code: str) -> str:
        row = self.customers.get(customer_id)
        if row is None:
            raise KeyError(f"customer not found: {customer_id}")
        if row.used_referral_code is None:
            row.used_referral_code = code
        return row.used_referral_code

    async def record_friend_bonus(self, *, customer_id: str, gift_card_id: str) -> None:
        row = self.customers.get(customer_id)
        if row is None:
            raise KeyError(f"customer not found: {customer_id}")
        row.friend_bonus_gift_card_id = row.friend_bonus_gift_card_id or gift_card_id
        row.gift_card_id = row.gift_card_id or gift_card_id

    async def reserve_referrer_reward(
        self,
        *,
        referrer_customer_id: str,
        friend_customer_id: str,
        correlation_id: str,
    ) -> bool:
        entry = self.rewards.setdefault(
            (referrer_customer_id, friend_customer_id),
            {"reserved_by": correlation_id, "gift_card_id": None, "amount_cents": None},
        )
        return entry["reserved_by"] == correlation_id

    async def has_referrer_reward(self, *, referrer_customer_id: str, friend_customer_id: str) -> bool:
        entry = self.rewards.get((referrer_customer_id, friend_customer_id))
        return entry is not None and entry["gift_card_id"] is not None

    async def record_referrer_reward(
        self,
        *,
        referrer_customer_id: str,
        friend_customer_id: str,
        gift_card_id: str,
        amount_cents: int,
    ) -> bool:
        key = (referrer_customer_id, friend_customer_id)
        entry = self.rewards.get(key)
        if entry is not None and entry["gift_card_id"] is not None:
            return False
        self.rewards[key] = {
            "reserved_by": entry["reserved_by"] if entry is not None else None,
            "gift_card_id": gift_card_id,
            "amount_cents": amount_cents,
        }
        referrer = self.customers.get(referrer_customer_id)
        if referrer is not None:
            referrer.gift_card_id = referrer.gift_card_id or gift_card_id
        return True


def _merge_context(existing: dict[str, object], updates: dict[str, object] | None) -> dict[str, object]:
    # Existing keys win: attribution recorded once is never rewritten.
    if not updates:
        return dict(existing)
    return {**updates, **existing}


def _run_snapshot(row: _RunRow) -> RunSnapshot:
    return RunSnapshot(
        correlation_id=row.correlation_id,
        trigger_type=row.trigger_type,
        resource_id=row.resource_id,
        payload=dict(row.payload),
        stage=row.stage,
        status=row.status,
        attempts=row.attempts,
        last_error=row.last_error,
        context=dict(row.context),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _job_snapshot(row: _JobRow) -> JobSnapshot:
    return JobSnapshot(
        id=row.id,
        correlation_id=row.correlation_id,
        stage=row.stage,
        trigger_type=row.trigger_type,
        status=row.status,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        scheduled_at=row.scheduled_at,
        locked_at=row.locked_at,
        lock_owner=row.lock_owner,
        last_error=row.last_error,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _customer_record(row: _CustomerRow) -> CustomerRecord:
    return replace(
        CustomerRecord(customer_id=row.customer_id),
        given_name=row.given_name,
        family_name=row.family_name,
        email_address=row.email_address,
        personal_code=row.personal_code,
        used_referral_code=row.used_referral_code,
        gift_card_id=row.gift_card_id,
        friend_bonus_gift_card_id=row.friend_bonus_gift_card_id,
    )
