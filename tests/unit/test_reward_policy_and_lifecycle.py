from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from app.domain.errors import DomainInvariantError
from app.domain.lifecycle import (
    PIPELINE_ORDER,
    assert_job_transition,
    compute_backoff_seconds,
    is_job_transition_allowed,
    next_stage,
    previous_stage,
    truncate_error,
)
from app.domain.models import JobStatus, Stage
from app.domain.reward_policy import DEFAULT_POLICY_PATH, load_reward_policy, parse_reward_policy


def _policy_data() -> dict[str, object]:
    return yaml.safe_load(DEFAULT_POLICY_PATH.read_text(encoding="utf-8"))


@pytest.mark.unit
def test_default_policy_loads() -> None:
    policy = load_reward_policy()

    assert policy.policy_version == "reward-policy:v1"
    assert policy.currency == "USD"
    assert policy.friend_reward.amount_cents == 1000
    assert policy.referrer_reward.amount_cents == 1000
    assert policy.max_attempts_for(Stage.FRIEND_REWARD) == 5


@pytest.mark.unit
def test_policy_path_can_come_from_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data = _policy_data()
    data["policy_version"] = "reward-policy:test"
    path = tmp_path / "policy.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    monkeypatch.setenv("REWARD_POLICY_PATH", str(path))

    assert load_reward_policy().policy_version == "reward-policy:test"


@pytest.mark.unit
def test_missing_stage_falls_back_to_default_attempts() -> None:
    data = _policy_data()
    stages = data["stages"]
    assert isinstance(stages, dict)
    del stages["referrer_reward"]

    policy = parse_reward_policy(data)

    assert policy.max_attempts_for(Stage.REFERRER_REWARD) == 5


@pytest.mark.unit
@pytest.mark.parametrize(
    ("mutate", "message"),
    [
        (lambda data: data.update(currency="usd"), "ISO 4217"),
        (lambda data: data["stages"].update(unknown_stage={"max_attempts": 3}), "unknown stage"),
        (lambda data: data["retry"].update(max_delay_seconds=1), "max_delay_seconds"),
        (lambda data: data["rewards"]["friend_reward"].update(amount_cents=0), "positive integer"),
        (lambda data: data.pop("policy_version"), "policy_version"),
    ],
)
def test_invalid_policy_is_rejected(mutate, message: str) -> None:
    data = _policy_data()
    mutate(data)

    with pytest.raises(ValueError, match=message):
        parse_reward_policy(data)


@pytest.mark.unit
def test_backoff_grows_and_is_capped() -> None:
    policy = load_reward_policy()

    assert policy.retry.backoff_seconds(1) == 5
    assert policy.retry.backoff_seconds(2) == 10
    assert policy.retry.backoff_seconds(3) == 20
    assert policy.retry.backoff_seconds(20) == 300
    assert compute_backoff_seconds(1, base_seconds=0.01) == 1.0


@pytest.mark.unit
def test_stage_order_navigation() -> None:
    assert PIPELINE_ORDER[0] == Stage.CUSTOMER_INGEST
    assert next_stage(Stage.BOOKING_ATTRIBUTION) == Stage.FRIEND_REWARD
    assert next_stage(Stage.REFERRER_REWARD) is None
    assert previous_stage(Stage.CUSTOMER_INGEST) is None
    assert previous_stage(Stage.REFERRER_REWARD) == Stage.FRIEND_REWARD


@pytest.mark.unit
def test_job_transition_guard() -> None:
    assert is_job_transition_allowed(JobStatus.QUEUED, JobStatus.RUNNING)
    assert is_job_transition_allowed(JobStatus.RUNNING, JobStatus.QUEUED)
    assert not is_job_transition_allowed(JobStatus.QUEUED, JobStatus.COMPLETED)
    assert not is_job_transition_allowed(JobStatus.COMPLETED, JobStatus.QUEUED)
    assert is_job_transition_allowed(JobStatus.ERROR, JobStatus.QUEUED, operator_reset=True)
    assert not is_job_transition_allowed(JobStatus.COMPLETED, JobStatus.QUEUED, operator_reset=True)

    assert_job_transition(JobStatus.RUNNING, JobStatus.COMPLETED)
    with pytest.raises(DomainInvariantError, match="invalid job transition"):
        assert_job_transition(JobStatus.ERROR, JobStatus.RUNNING)


@pytest.mark.unit
def test_error_messages_are_truncated() -> None:
    assert truncate_error("short") == "short"
    truncated = truncate_error("x" * 800)
    assert len(truncated) == 501
    assert truncated.endswith("…")
