from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
import logging

from app.domain.contracts import AnalyticsSink, DeadLetterStore

COMPONENT_ID_RECORD = "domain.analytics.record"
COMPONENT_ID_REPLAY = "domain.analytics.replay"

logger = logging.getLogger("analytics")


@dataclass(frozen=True)
class ReplayResult:
    replayed: int = 0
    failed: int = 0
    remaining: int = 0


def sanitize_payload(value: object) -> object:
    """Convert an event payload into JSON-safe values."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return sanitize_payload(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return {str(key): sanitize_payload(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [sanitize_payload(item) for item in value]
    return str(value)


@dataclass
class AnalyticsDeadLetterQueue:
    sink: AnalyticsSink
    store: DeadLetterStore
    enabled: bool = True
    dropped: int = field(default=0)

    async def record(self, *, event_type: str, payload: dict[str, object]) -> bool:
        """Deliver one analytics event, falling back to the dead-letter table.

        Returns False only when the event is lost: delivery failed and the
        dead letter could not be persisted either.
        """
        if not self.enabled:
            return True

        clean = sanitize_payload(payload)
        body = clean if isinstance(clean, dict) else {"value": clean}
        try:
            await self.sink.write_event(event_type=event_type, payload=body)
            return True
        except Exception as exc:
            delivery_error = f"{type(exc).__name__}: {exc}"

        try:
            dead_letter_id = await self.store.add_dead_letter(
                event_type=event_type,
                payload=body,
                error_message=delivery_error,
            )
        except Exception:
            self.dropped += 1
            logger.exception(
                "analytics dead letter persist failed",
                extra={"event_type": event_type, "error_code": "dead_letter_persist_failed"},
            )
            return False

        logger.warning(
            "analytics event dead-lettered",
            extra={"event_type": event_type, "dead_letter_id": dead_letter_id},
        )
        return True

    async def replay(self, *, batch_size: int) -> ReplayResult:
        """Re-deliver the oldest dead letters, deleting each one that succeeds."""
        letters = await self.store.list_dead_letters(limit=max(batch_size, 0))
        replayed = 0
        failed = 0
        for letter in letters:
            try:
                await self.sink.write_event(event_type=letter.event_type, payload=letter.payload)
            except Exception as exc:
                failed += 1
                logger.warning(
                    "analytics replay failed",
                    extra={"event_type": letter.event_type, "dead_letter_id": letter.id, "error": str(exc)},
                )
                continue
            await self.store.delete_dead_letter(dead_letter_id=letter.id)
            replayed += 1

        remaining = await self.store.count_dead_letters()
        if letters:
            logger.info(
                "analytics replay finished",
                extra={"replayed": replayed, "failed": failed, "remaining": remaining},
            )
        return ReplayResult(replayed=replayed, failed=failed, remaining=remaining)
