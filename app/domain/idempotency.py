from __future__ import annotations

from collections.abc import Sequence
import hashlib
import re

# The gift card and payments APIs reject idempotency keys longer than this.
MAX_IDEMPOTENCY_KEY_LENGTH = 45
MAX_PREFIX_LENGTH = 10

_UNSAFE_PART_RE = re.compile(r"[^a-zA-Z0-9_\-]")


def _safe_part(value: object, fallback: str = "na") -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        return fallback
    return _UNSAFE_PART_RE.sub("-", text).lower()


def build_idempotency_key(segments: Sequence[str], amount: int | None = None) -> str:
    """Return a short deterministic key for a create-type external call.

    The key is ``<prefix>:<sha256 hex>`` truncated to the API limit. The prefix
    is the first segment (sanitized, at most ten characters) and exists only to
    make keys readable in the payments dashboard; uniqueness comes from the
    digest over every raw segment and the amount, so case and punctuation
    count.

    Callers must pass only values that are stable across retries. A timestamp
    or random value here silently turns every retry into a new external object.
    """
    if not segments:
        raise ValueError("idempotency key needs at least one segment")
    raw_parts = ["" if segment is None else str(segment) for segment in segments]
    raw_parts.append("" if amount is None else str(int(amount)))
    # Length-prefixed so segment boundaries cannot be shifted between inputs.
    encoded = "".join(f"{len(part)}:{part}" for part in raw_parts)
    digest = hashlib.sha256(encoded.encode("utf-8")).hexdigest()
    prefix = _safe_part(raw_parts[0])[:MAX_PREFIX_LENGTH].strip(":") or "idemp"
    digest_length = MAX_IDEMPOTENCY_KEY_LENGTH - len(prefix) - 1
    return f"{prefix}:{digest[:digest_length]}"


def build_stage_idempotency_key(*, correlation_id: str, stage: str, amount_cents: int) -> str:
    """Key for the single create-type call a stage makes for one run."""
    return build_idempotency_key(["stage", correlation_id, stage], amount=amount_cents)


def derive_idempotency_key(base_key: str, action: str) -> str:
    """Key for one sub-call (create, activate, adjust) of a keyed operation."""
    return build_idempotency_key([action, base_key])
