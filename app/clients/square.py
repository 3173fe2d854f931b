from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from app.domain.errors import PaymentsPermanentError, PaymentsTransientError
from app.domain.idempotency import derive_idempotency_key
from app.domain.models import GiftCardResult

DEFAULT_BASE_URL = "https://connect.squareup.com"
DEFAULT_API_VERSION = "2024-10-17"
OWNER_FUNDED = "OWNER_FUNDED"


@dataclass
class SquareGiftCardClient:
    """Gift card calls against the payments platform REST API.

    Every create-type call carries an idempotency key derived from the
    caller's stage key, so a retried stage lands on the same remote objects.
    """

    access_token: str
    location_id: str
    base_url: str = DEFAULT_BASE_URL
    api_version: str = DEFAULT_API_VERSION
    timeout_seconds: float = 10.0
    transport: httpx.AsyncBaseTransport | None = None

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Square-Version": self.api_version,
            "Content-Type": "application/json",
        }

    async def issue_gift_card(
        self,
        *,
        customer_id: str,
        amount_cents: int,
        currency: str,
        reference: str,
        idempotency_key: str,
    ) -> GiftCardResult:
        async with self._client() as client:
            created = await self._post(
                client,
                "/v2/gift-cards",
                {
                    "idempotency_key": derive_idempotency_key(idempotency_key, "create"),
                    "location_id": self.location_id,
                    "gift_card": {"type": "DIGITAL"},
                },
            )
            gift_card = _required_object(created, "gift_card")
            gift_card_id = _required_str(gift_card, "id")

            activity = await self._post(
                client,
                "/v2/gift-cards/activities",
                {
                    "idempotency_key": derive_idempotency_key(idempotency_key, "activate"),
                    "gift_card_activity": {
                        "gift_card_id": gift_card_id,
                        "type": "ACTIVATE",
                        "location_id": self.location_id,
                        "activate_activity_details": {
                            "amount_money": {"amount": amount_cents, "currency": currency},
                            "buyer_payment_instrument_ids": [OWNER_FUNDED],
                            "reference_id": reference[:40],
                        },
                    },
                },
            )

        return GiftCardResult(
            gift_card_id=gift_card_id,
            amount_cents=amount_cents,
            gan=gift_card.get("gan") if isinstance(gift_card.get("gan"), str) else None,
            balance_cents=_activity_balance(activity),
        )

    async def load_gift_card(
        self,
        *,
        gift_card_id: str,
        amount_cents: int,
        currency: str,
        reference: str,
        idempotency_key: str,
    ) -> GiftCardResult:
        async with self._client() as client:
            activity = await self._post(
                client,
                "/v2/gift-cards/activities",
                {
                    "idempotency_key": derive_idempotency_key(idempotency_key, "adjust"),
                    "gift_card_activity": {
                        "gift_card_id": gift_card_id,
                        "type": "ADJUST_INCREMENT",
                        "location_id": self.location_id,
                        "adjust_increment_activity_details": {
                            "amount_money": {"amount": amount_cents, "currency": currency},
                            "reason": "COMPLIMENTARY",
                        },
                    },
                },
            )
        return GiftCardResult(
            gift_card_id=gift_card_id,
            amount_cents=amount_cents,
            balance_cents=_activity_balance(activity),
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url.rstrip("/"),
            headers=self._headers(),
            timeout=self.timeout_seconds,
            transport=self.transport,
        )

    async def _post(self, client: httpx.AsyncClient, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await client.post(path, json=body)
        except httpx.TimeoutException as exc:
            raise PaymentsTransientError(f"timeout calling {path}") from exc
        except httpx.TransportError as exc:
            raise PaymentsTransientError(f"transport error calling {path}: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise PaymentsTransientError(f"{path} answered {response.status_code}")
        if response.status_code >= 400:
            raise PaymentsPermanentError(f"{path} answered {response.status_code}: {_error_detail(response)}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise PaymentsPermanentError(f"{path} returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise PaymentsPermanentError(f"{path} returned a non-object body")
        return payload


def _required_object(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key)
    if not isinstance(value, dict):
        raise PaymentsPermanentError(f"response is missing '{key}'")
    return value


def _required_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise PaymentsPermanentError(f"response is missing '{key}'")
    return value


def _activity_balance(payload: dict[str, Any]) -> int | None:
    activity = payload.get("gift_card_activity")
    if not isinstance(activity, dict):
        return None
    balance = activity.get("gift_card_balance_money")
    if isinstance(balance, dict) and isinstance(balance.get("amount"), int):
        return balance["amount"]
    return None


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    errors = payload.get("errors") if isinstance(payload, dict) else None
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        first = errors[0]
        return str(first.get("detail") or first.get("code") or "unknown error")
    return "unknown error"
