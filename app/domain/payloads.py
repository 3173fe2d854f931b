from __future__ import annotations

from dataclasses import dataclass
import re

from app.domain.errors import DomainValidationError

MAX_CODE_LENGTH = 20
MAX_CODE_WORDS = 3
MAX_NAME_PART_LENGTH = 10

_NON_ALNUM_RE = re.compile(r"[^a-zA-Z0-9]")
_DIGITS_RE = re.compile(r"\d+")


@dataclass(frozen=True)
class CustomerProfile:
    customer_id: str
    given_name: str | None
    family_name: str | None
    email_address: str | None


def clean_value(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def extract_customer_id(payload: dict[str, object]) -> str:
    creator = payload.get("creator_details")
    candidates: list[object] = [
        payload.get("customerId"),
        payload.get("customer_id"),
        creator.get("customer_id") if isinstance(creator, dict) else None,
        payload.get("id"),
    ]
    for candidate in candidates:
        value = clean_value(candidate)
        if value is not None:
            return value
    raise DomainValidationError("payload does not carry a customer id")


def extract_customer_profile(payload: dict[str, object]) -> CustomerProfile:
    return CustomerProfile(
        customer_id=extract_customer_id(payload),
        given_name=_first_value(payload, "givenName", "given_name", "firstName", "first_name"),
        family_name=_first_value(payload, "familyName", "family_name", "lastName", "last_name"),
        email_address=_first_value(payload, "emailAddress", "email_address", "email"),
    )


def normalize_code(code: str) -> str:
    return code.strip().upper()


def looks_like_code(value: str) -> bool:
    return 0 < len(value) <= MAX_CODE_LENGTH and len(value.split()) <= MAX_CODE_WORDS


def extract_referral_code_candidates(payload: dict[str, object]) -> list[str]:
    """Ordered, de-duplicated referral code candidates found in a booking payload.

    Explicit fields come first, then booking custom fields, then custom fields
    of each appointment segment. Candidates still have to be matched against a
    known code owner by the caller.
    """
    candidates: list[str] = []
    for key in ("referral_code", "referralCode"):
        value = clean_value(payload.get(key))
        if value is not None:
            candidates.append(value)

    candidates.extend(_custom_field_candidates(payload.get("custom_fields") or payload.get("customFields")))

    segments = payload.get("appointment_segments") or payload.get("appointmentSegments")
    if isinstance(segments, list):
        for segment in segments:
            if not isinstance(segment, dict):
                continue
            candidates.extend(
                _custom_field_candidates(segment.get("custom_fields") or segment.get("customFields"))
            )

    seen: set[str] = set()
    unique: list[str] = []
    for candidate in candidates:
        normalized = normalize_code(candidate)
        if normalized in seen:
            continue
        seen.add(normalized)
        unique.append(candidate)
    return unique


def generate_personal_code(*, given_name: str | None, customer_id: str, attempt: int = 0) -> str:
    """Readable referral code: first-name letters plus the tail of the customer id.

    ``attempt`` > 0 replaces the last two characters with a zero-padded
    suffix so collisions can be retried deterministically.
    """
    name_part = "CUST"
    if given_name:
        first_word = given_name.strip().split(" ")[0]
        name_part = _NON_ALNUM_RE.sub("", first_word).upper()[:MAX_NAME_PART_LENGTH] or "CUST"

    numeric = "".join(_DIGITS_RE.findall(customer_id))
    if numeric:
        id_part = numeric[-4:].rjust(4, "0")
    else:
        id_part = customer_id[-4:].upper().rjust(4, "0")

    code = f"{name_part}{id_part}"
    if attempt > 0:
        code = f"{code[:-2]}{attempt:02d}"
    return code


def _first_value(payload: dict[str, object], *keys: str) -> str | None:
    for key in keys:
        value = clean_value(payload.get(key))
        if value is not None:
            return value
    return None


def _custom_field_candidates(fields: object) -> list[str]:
    if not isinstance(fields, list):
        return []
    result: list[str] = []
    for field in fields:
        if not isinstance(field, dict):
            continue
        name = str(field.get("name") or field.get("label") or field.get("title") or "").lower()
        key = str(field.get("booking_custom_field_id") or field.get("custom_field_id") or field.get("key") or "").lower()
        raw_value = next(
            (field[name_key] for name_key in ("string_value", "stringValue", "text_value", "value") if field.get(name_key)),
            None,
        )
        if not isinstance(raw_value, str):
            continue
        value = raw_value.strip()
        if not value:
            continue
        mentions_ref = "ref" in name or "ref" in key
        if mentions_ref or looks_like_code(value):
            result.append(value)
    return result
