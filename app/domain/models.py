from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class TriggerType(StrEnum):
    CUSTOMER_INGEST = "customer_ingest"
    BOOKING_CREATED = "booking_created"
    PAYMENT_COMPLETED = "payment_completed"
    MANUAL = "manual"


# Fixed pipeline stages.
#
# IMPORTANT:
# - Keep this enum synchronized with app/domain/lifecycle.py (PIPELINE_ORDER).
# - Keep this enum synchronized with the DB CHECK constraints in
#   db/migrations/000001_bootstrap.up.sql.
class Stage(StrEnum):
    CUSTOMER_INGEST = "customer_ingest"
    BOOKING_ATTRIBUTION = "booking_attribution"
    FRIEND_REWARD = "friend_reward"
    REFERRER_REWARD = "referrer_reward"


class RunStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class JobStatus(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_JOB_STATUSES: frozenset[JobStatus] = frozenset({JobStatus.COMPLETED, JobStatus.ERROR})
TERMINAL_RUN_STATUSES: frozenset[RunStatus] = frozenset({RunStatus.COMPLETED, RunStatus.ERROR})


@dataclass(frozen=True)
class RunSnapshot:
    correlation_id: str
    trigger_type: TriggerType
    resource_id: str
    payload: dict[str, object]
    stage: Stage
    status: RunStatus
    attempts: int = 0
    last_error: str | None = None
    context: dict[str, object] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class FindOrCreateRunResult:
    run: RunSnapshot
    created: bool


@dataclass(frozen=True)
class JobSnapshot:
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
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class DeadLetterSnapshot:
    id: int
    event_type: str
    payload: dict[str, object]
    error_message: str | None
    created_at: datetime


@dataclass(frozen=True)
class QueueStatusCounts:
    queued: int = 0
    running: int = 0
    completed: int = 0
    error: int = 0

    @property
    def total(self) -> int:
        return self.queued + self.running + self.completed + self.error


@dataclass(frozen=True)
class CustomerRecord:
    customer_id: str
    given_name: str | None = None
    family_name: str | None = None
    email_address: str | None = None
    personal_code: str | None = None
    used_referral_code: str | None = None
    gift_card_id: str | None = None
    friend_bonus_gift_card_id: str | None = None


@dataclass(frozen=True)
class GiftCardResult:
    gift_card_id: str
    amount_cents: int
    gan: str | None = None
    balance_cents: int | None = None
