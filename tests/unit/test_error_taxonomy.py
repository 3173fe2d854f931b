import pytest

from app.domain.error_taxonomy import (
    STAGE_ERROR_MAP,
    classify_error,
    is_canonical_error_code,
    resolve_stage_error,
)
from app.domain.errors import PaymentsPermanentError, PaymentsTransientError
from app.domain.models import Stage
from app.domain.outcomes import (
    RetryableFailure,
    TerminalFailure,
    failure_for,
    failure_from_payments_error,
    format_failure,
)


@pytest.mark.unit
def test_canonical_error_codes_are_enforced() -> None:
    assert is_canonical_error_code("payments_unavailable") is True
    assert is_canonical_error_code("unknown_error") is False


@pytest.mark.unit
def test_retry_classification_contract() -> None:
    assert classify_error("payments_unavailable") == "recoverable"
    assert classify_error("handler_timeout") == "recoverable"
    assert classify_error("internal_error") == "recoverable"
    assert classify_error("self_referral") == "terminal"
    assert classify_error("payments_rejected") == "terminal"


@pytest.mark.unit
def test_stage_error_mapping_normalizes_unknown_codes() -> None:
    assert resolve_stage_error(stage="friend_reward", code="payments_unavailable") == "payments_unavailable"
    assert resolve_stage_error(stage="customer_ingest", code="payments_unavailable") == "internal_error"
    assert resolve_stage_error(stage="unknown-stage", code="payload_invalid") == "internal_error"


@pytest.mark.unit
def test_every_stage_allows_timeout_and_internal_error() -> None:
    for stage in Stage:
        allowed = STAGE_ERROR_MAP[stage.value]
        assert "handler_timeout" in allowed
        assert "internal_error" in allowed


@pytest.mark.unit
def test_failure_for_picks_variant_from_classification() -> None:
    retryable = failure_for(stage=Stage.FRIEND_REWARD, code="payments_unavailable", detail="503")
    terminal = failure_for(stage=Stage.REFERRER_REWARD, code="self_referral", detail="own code")

    assert isinstance(retryable, RetryableFailure)
    assert isinstance(terminal, TerminalFailure)
    assert format_failure(retryable) == "payments_unavailable: 503"
    assert format_failure(TerminalFailure(error_code="payload_invalid")) == "payload_invalid"


@pytest.mark.unit
def test_payments_errors_map_to_transient_and_permanent_failures() -> None:
    transient = failure_from_payments_error(stage=Stage.FRIEND_REWARD, exc=PaymentsTransientError("429"))
    permanent = failure_from_payments_error(stage=Stage.FRIEND_REWARD, exc=PaymentsPermanentError("400"))

    assert transient == RetryableFailure(error_code="payments_unavailable", detail="429")
    assert permanent == TerminalFailure(error_code="payments_rejected", detail="400")
