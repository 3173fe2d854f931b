from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import re

import yaml

from app.domain.lifecycle import DEFAULT_MAX_ATTEMPTS, PIPELINE_ORDER, compute_backoff_seconds
from app.domain.models import Stage

DEFAULT_POLICY_PATH = Path(__file__).resolve().parents[1] / "config" / "reward_policy.v1.yaml"
CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


@dataclass(frozen=True)
class RewardAmount:
    amount_cents: int
    reference: str


@dataclass(frozen=True)
class RetryPolicy:
    base_delay_seconds: float
    max_delay_seconds: float

    def backoff_seconds(self, attempts: int) -> float:
        return compute_backoff_seconds(
            attempts,
            base_seconds=self.base_delay_seconds,
            cap_seconds=self.max_delay_seconds,
        )


@dataclass(frozen=True)
class RewardPolicy:
    policy_version: str
    currency: str
    friend_reward: RewardAmount
    referrer_reward: RewardAmount
    retry: RetryPolicy
    max_attempts: dict[Stage, int]

    def max_attempts_for(self, stage: Stage) -> int:
        return self.max_attempts.get(stage, DEFAULT_MAX_ATTEMPTS)


def load_reward_policy(*, file_path: str | Path | None = None) -> RewardPolicy:
    path = Path(file_path or os.getenv("REWARD_POLICY_PATH") or DEFAULT_POLICY_PATH)
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("reward policy must be a YAML object")
    return parse_reward_policy(data)


def parse_reward_policy(data: dict[str, object]) -> RewardPolicy:
    policy_version = _required_str(data, "policy_version")
    currency = _required_str(data, "currency")
    if not CURRENCY_RE.match(currency):
        raise ValueError("currency must be an ISO 4217 code, e.g. 'USD'")

    rewards_raw = _required_obj(data, "rewards")
    friend_reward = _reward(_required_obj(rewards_raw, "friend_reward"), "rewards.friend_reward")
    referrer_reward = _reward(_required_obj(rewards_raw, "referrer_reward"), "rewards.referrer_reward")

    retry_raw = _required_obj(data, "retry")
    retry = RetryPolicy(
        base_delay_seconds=_required_positive_float(retry_raw, "base_delay_seconds"),
        max_delay_seconds=_required_positive_float(retry_raw, "max_delay_seconds"),
    )
    if retry.max_delay_seconds < retry.base_delay_seconds:
        raise ValueError("retry.max_delay_seconds must be >= retry.base_delay_seconds")

    stages_raw = _required_obj(data, "stages")
    max_attempts: dict[Stage, int] = {}
    for stage in PIPELINE_ORDER:
        stage_raw = stages_raw.get(stage.value)
        if stage_raw is None:
            max_attempts[stage] = DEFAULT_MAX_ATTEMPTS
            continue
        if not isinstance(stage_raw, dict):
            raise ValueError(f"stages.{stage.value} must be object")
        max_attempts[stage] = _required_positive_int(stage_raw, "max_attempts", prefix=f"stages.{stage.value}")
    unknown = set(stages_raw) - {stage.value for stage in PIPELINE_ORDER}
    if unknown:
        raise ValueError(f"stages contains unknown stage(s): {', '.join(sorted(unknown))}")

    return RewardPolicy(
        policy_version=policy_version,
        currency=currency,
        friend_reward=friend_reward,
        referrer_reward=referrer_reward,
        retry=retry,
        max_attempts=max_attempts,
    )


def _reward(data: dict[str, object], prefix: str) -> RewardAmount:
    return RewardAmount(
        amount_cents=_required_positive_int(data, "amount_cents", prefix=prefix),
        reference=_required_str(data, "reference"),
    )


def _required_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"{key} is required and must be non-empty string")
    return value


def _required_obj(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ValueError(f"{key} is required and must be object")
    return value


def _required_positive_int(data: dict[str, object], key: str, *, prefix: str) -> int:
    value = data.get(key)
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ValueError(f"{prefix}.{key} is required and must be positive integer")
    return value


def _required_positive_float(data: dict[str, object], key: str) -> float:
    value = data.get(key)
    if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
        raise ValueError(f"retry.{key} is required and must be positive number")
    return float(value)
