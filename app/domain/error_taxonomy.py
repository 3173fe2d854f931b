from __future__ import annotations

from collections.abc import Mapping
from typing import Literal

# Canonical error vocabulary for all stages.
ErrorCode = Literal[
    "payload_invalid",
    "customer_not_found",
    "referral_code_unknown",
    "referral_code_unavailable",
    "self_referral",
    "payments_unavailable",
    "payments_rejected",
    "handler_timeout",
    "internal_error",
]

RetryClassification = Literal["recoverable", "terminal"]

# Allowed persisted values for last_error codes.
CANONICAL_ERROR_CODES: tuple[ErrorCode, ...] = (
    "payload_invalid",
    "customer_not_found",
    "referral_code_unknown",
    "referral_code_unavailable",
    "self_referral",
    "payments_unavailable",
    "payments_rejected",
    "handler_timeout",
    "internal_error",
)

# Errors that can be retried within stage attempt policy.
RECOVERABLE_ERROR_CODES: frozenset[ErrorCode] = frozenset(
    {
        "payments_unavailable",
        "handler_timeout",
        "internal_error",
    }
)

# Stage-specific allowlist. If a stage emits a code outside this map,
# it is normalized to internal_error by resolve_stage_error().
STAGE_ERROR_MAP: Mapping[str, frozenset[ErrorCode]] = {
    "customer_ingest": frozenset(
        {
            "payload_invalid",
            "referral_code_unavailable",
            "handler_timeout",
            "internal_error",
        }
    ),
    "booking_attribution": frozenset(
        {
            "payload_invalid",
            "customer_not_found",
            "self_referral",
            "handler_timeout",
            "internal_error",
        }
    ),
    "friend_reward": frozenset(
        {
            "payload_invalid",
            "customer_not_found",
            "payments_unavailable",
            "payments_rejected",
            "handler_timeout",
            "internal_error",
        }
    ),
    "referrer_reward": frozenset(
        {
            "payload_invalid",
            "customer_not_found",
            "referral_code_unknown",
            "self_referral",
            "payments_unavailable",
            "payments_rejected",
            "handler_timeout",
            "internal_error",
        }
    ),
}


def is_canonical_error_code(code: str) -> bool:
    return code in CANONICAL_ERROR_CODES


def classify_error(code: ErrorCode) -> RetryClassification:
    if code in RECOVERABLE_ERROR_CODES:
        return "recoverable"
    return "terminal"


def resolve_stage_error(*, stage: str, code: str) -> ErrorCode:
    allowed = STAGE_ERROR_MAP.get(stage, frozenset({"internal_error"}))
    if code in allowed and is_canonical_error_code(code):
        return code  # type: ignore[return-value]
    # Keep persistence stable even if a handler emitted an unsupported code.
    return "internal_error"
