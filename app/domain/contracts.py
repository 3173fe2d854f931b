from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from app.domain.models import (
    CustomerRecord,
    DeadLetterSnapshot,
    FindOrCreateRunResult,
    GiftCardResult,
    JobSnapshot,
    QueueStatusCounts,
    RunSnapshot,
    RunStatus,
    Stage,
    TriggerType,
)

CLAIM_SQL_CONTRACT = "SELECT ... FOR UPDATE SKIP LOCKED"


@runtime_checkable
class RunStore(Protocol):
    """One row per logical trigger event.

    ``find_or_create_run`` must be safe under concurrent calls for the same
    (trigger_type, resource_id): creation relies on a unique constraint and
    insert-on-conflict, never on check-then-insert.
    """

    async def find_or_create_run(
        self,
        *,
        trigger_type: TriggerType,
        resource_id: str,
        payload: dict[str, object],
        max_attempts: int = 5,
        now: datetime | None = None,
    ) -> FindOrCreateRunResult: ...

    async def get_run(self, *, correlation_id: str) -> RunSnapshot | None: ...

    async def advance_stage(
        self,
        *,
        correlation_id: str,
        next_stage: Stage,
        context: dict[str, object] | None = None,
        now: datetime | None = None,
    ) -> bool: ...

    async def mark_terminal(
        self,
        *,
        correlation_id: str,
        status: RunStatus,
        error: str | None = None,
        context: dict[str, object] | None = None,
        now: datetime | None = None,
    ) -> RunSnapshot | None: ...


@runtime_checkable
class JobStore(Protocol):
    """Durable stage-attempt queue.

    Claim semantics must remain compatible with Postgres row claims using
    SELECT ... FOR UPDATE SKIP LOCKED plus an update that re-checks
    ``status = 'queued'``.
    """

    async def enqueue(
        self,
        *,
        correlation_id: str,
        stage: Stage,
        scheduled_at: datetime | None = None,
        max_attempts: int = 5,
    ) -> JobSnapshot: ...

    async def claim_batch(self, *, limit: int, worker_id: str, now: datetime | None = None) -> list[JobSnapshot]: ...

    async def heartbeat(self, *, job_ids: list[str], worker_id: str, now: datetime | None = None) -> set[str]: ...

    async def complete(self, *, job_id: str, worker_id: str, now: datetime | None = None) -> JobSnapshot | None: ...

    async def retry_or_fail(
        self,
        *,
        job_id: str,
        worker_id: str,
        error: str,
        retryable: bool = True,
        backoff_seconds: float | None = None,
        now: datetime | None = None,
    ) -> JobSnapshot | None: ...

    async def reap_stuck(self, *, liveness_threshold_seconds: float, now: datetime | None = None) -> list[JobSnapshot]: ...

    async def get_job(self, *, job_id: str) -> JobSnapshot | None: ...

    async def list_jobs_for_run(self, *, correlation_id: str) -> list[JobSnapshot]: ...

    async def job_status_counts(self) -> QueueStatusCounts: ...

    async def list_stuck_jobs(
        self,
        *,
        liveness_threshold_seconds: float,
        limit: int = 10,
        now: datetime | None = None,
    ) -> list[JobSnapshot]: ...

    async def list_failed_jobs(self, *, limit: int = 5) -> list[JobSnapshot]: ...

    async def reset_job(self, *, job_id: str, extra_attempts: int = 1, now: datetime | None = None) -> JobSnapshot: ...


@runtime_checkable
class DeadLetterStore(Protocol):
    async def add_dead_letter(
        self,
        *,
        event_type: str,
        payload: dict[str, object],
        error_message: str | None,
    ) -> int: ...

    async def list_dead_letters(self, *, limit: int) -> list[DeadLetterSnapshot]: ...

    async def delete_dead_letter(self, *, dead_letter_id: int) -> None: ...

    async def count_dead_letters(self) -> int: ...


@runtime_checkable
class PipelineRepository(RunStore, JobStore, DeadLetterStore, Protocol):
    """Run, job and dead-letter tables share one store and one transaction scope."""


@runtime_checkable
class ReferralDirectory(Protocol):
    """Customer and referral-code records owned by the rest of the platform."""

    async def upsert_customer(
        self,
        *,
        customer_id: str,
        given_name: str | None = None,
        family_name: str | None = None,
        email_address: str | None = None,
    ) -> CustomerRecord: ...

    async def get_customer(self, *, customer_id: str) -> CustomerRecord | None: ...

    # Set-once: returns the customer's effective code, or None when the code
    # is already owned by somebody else.
    async def assign_personal_code(self, *, customer_id: str, code: str) -> str | None: ...

    async def find_code_owner(self, *, code: str) -> CustomerRecord | None: ...

    # Set-once: returns the code effectively recorded for the customer.
    async def record_used_code(self, *, customer_id: str, code: str) -> str: ...

    async def record_friend_bonus(self, *, customer_id: str, gift_card_id: str) -> None: ...

    # Claims the (referrer, friend) reward for one run; True only for the run
    # holding it. Taken before any payments call.
    async def reserve_referrer_reward(
        self,
        *,
        referrer_customer_id: str,
        friend_customer_id: str,
        correlation_id: str,
    ) -> bool: ...

    # True once a gift card has been recorded for the pair.
    async def has_referrer_reward(self, *, referrer_customer_id: str, friend_customer_id: str) -> bool: ...

    async def record_referrer_reward(
        self,
        *,
        referrer_customer_id: str,
        friend_customer_id: str,
        gift_card_id: str,
        amount_cents: int,
    ) -> bool: ...


@runtime_checkable
class PaymentsClient(Protocol):
    """Gift card side of the payments platform.

    Implementations raise PaymentsTransientError or PaymentsPermanentError.
    """

    async def issue_gift_card(
        self,
        *,
        customer_id: str,
        amount_cents: int,
        currency: str,
        reference: str,
        idempotency_key: str,
    ) -> GiftCardResult: ...

    async def load_gift_card(
        self,
        *,
        gift_card_id: str,
        amount_cents: int,
        currency: str,
        reference: str,
        idempotency_key: str,
    ) -> GiftCardResult: ...


@runtime_checkable
class AnalyticsSink(Protocol):
    async def write_event(self, *, event_type: str, payload: dict[str, object]) -> None: ...
