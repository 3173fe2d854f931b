from __future__ import annotations

from dataclasses import dataclass, field

from app.domain.errors import PaymentsPermanentError
from app.domain.models import GiftCardResult


@dataclass
class StubPaymentsClient:
    """Deterministic gift card client for skeleton mode and tests.

    Calls are idempotent by key: repeating a key returns the first result
    without creating another card. ``failures`` is a script of errors raised
    by the next calls, consumed front to back.
    """

    calls: list[dict[str, object]] = field(default_factory=list)
    results: dict[str, GiftCardResult] = field(default_factory=dict)
    balances: dict[str, int] = field(default_factory=dict)
    failures: list[Exception] = field(default_factory=list)

    async def issue_gift_card(
        self,
        *,
        customer_id: str,
        amount_cents: int,
        currency: str,
        reference: str,
        idempotency_key: str,
    ) -> GiftCardResult:
        self.calls.append(
            {
                "op": "issue",
                "customer_id": customer_id,
                "amount_cents": amount_cents,
                "currency": currency,
                "reference": reference,
                "idempotency_key": idempotency_key,
            }
        )
        self._raise_scripted_failure()
        existing = self.results.get(idempotency_key)
        if existing is not None:
            return existing
        gift_card_id = f"gftc:{len(self.balances) + 1:04d}"
        self.balances[gift_card_id] = amount_cents
        result = GiftCardResult(
            gift_card_id=gift_card_id,
            amount_cents=amount_cents,
            gan=f"7783{len(self.balances):012d}",
            balance_cents=amount_cents,
        )
        self.results[idempotency_key] = result
        return result

    async def load_gift_card(
        self,
        *,
        gift_card_id: str,
        amount_cents: int,
        currency: str,
        reference: str,
        idempotency_key: str,
    ) -> GiftCardResult:
        self.calls.append(
            {
                "op": "load",
                "gift_card_id": gift_card_id,
                "amount_cents": amount_cents,
                "currency": currency,
                "reference": reference,
                "idempotency_key": idempotency_key,
            }
        )
        self._raise_scripted_failure()
        existing = self.results.get(idempotency_key)
        if existing is not None:
            return existing
        if gift_card_id not in self.balances:
            raise PaymentsPermanentError(f"gift card not found: {gift_card_id}")
        self.balances[gift_card_id] += amount_cents
        result = GiftCardResult(
            gift_card_id=gift_card_id,
            amount_cents=amount_cents,
            balance_cents=self.balances[gift_card_id],
        )
        self.results[idempotency_key] = result
        return result

    def _raise_scripted_failure(self) -> None:
        if self.failures:
            raise self.failures.pop(0)


@dataclass
class StubAnalyticsSink:
    events: list[tuple[str, dict[str, object]]] = field(default_factory=list)
    fail_next: int = 0

    async def write_event(self, *, event_type: str, payload: dict[str, object]) -> None:
        if self.fail_next > 0:
            self.fail_next -= 1
            raise RuntimeError("analytics sink unavailable")
        self.events.append((event_type, dict(payload)))
