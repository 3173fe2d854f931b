import pytest

from app.domain.errors import DomainValidationError
from app.domain.payloads import (
    extract_customer_id,
    extract_customer_profile,
    extract_referral_code_candidates,
    generate_personal_code,
    looks_like_code,
)


@pytest.mark.unit
def test_customer_id_lookup_order() -> None:
    assert extract_customer_id({"customerId": "A", "customer_id": "B"}) == "A"
    assert extract_customer_id({"creator_details": {"customer_id": "C"}, "id": "D"}) == "C"
    assert extract_customer_id({"id": "  D  "}) == "D"


@pytest.mark.unit
def test_missing_customer_id_is_a_validation_error() -> None:
    with pytest.raises(DomainValidationError):
        extract_customer_id({"customer_id": "   "})


@pytest.mark.unit
def test_profile_accepts_camel_and_snake_case() -> None:
    profile = extract_customer_profile(
        {"id": "C-1", "givenName": "Ann", "family_name": "Lee", "email": "ann@example.com"}
    )

    assert profile.customer_id == "C-1"
    assert profile.given_name == "Ann"
    assert profile.family_name == "Lee"
    assert profile.email_address == "ann@example.com"


@pytest.mark.unit
def test_referral_code_candidates_are_ordered_and_deduplicated() -> None:
    payload: dict[str, object] = {
        "referral_code": "ANN0001",
        "custom_fields": [
            {"name": "Referral", "string_value": "ann0001"},
            {"name": "Promo", "string_value": "SPRING"},
            {"name": "Notes", "string_value": "please call me before the appointment starts"},
        ],
        "appointment_segments": [
            {"custom_fields": [{"key": "ref_code", "value": "BOB0002"}]},
            "not-a-segment",
        ],
    }

    assert extract_referral_code_candidates(payload) == ["ANN0001", "SPRING", "BOB0002"]


@pytest.mark.unit
def test_referral_code_candidates_empty_payload() -> None:
    assert extract_referral_code_candidates({}) == []


@pytest.mark.unit
def test_code_shape_check() -> None:
    assert looks_like_code("ANN0001")
    assert not looks_like_code("")
    assert not looks_like_code("one two three four")


@pytest.mark.unit
def test_personal_code_generation() -> None:
    assert generate_personal_code(given_name="Ann", customer_id="CUST-REF-0001") == "ANN0001"
    assert generate_personal_code(given_name="Ann", customer_id="CUST-REF-0001", attempt=3) == "ANN0003"
    assert generate_personal_code(given_name="Mary Jane", customer_id="C-1") == "MARY0001"
    assert generate_personal_code(given_name=None, customer_id="abcdef") == "CUSTCDEF"
