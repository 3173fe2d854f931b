from __future__ import annotations

from dataclasses import dataclass

from app.domain.contracts import PaymentsClient, ReferralDirectory
from app.domain.reward_policy import RewardPolicy
from app.domain.use_cases.analytics import AnalyticsDeadLetterQueue


@dataclass(frozen=True)
class StageDeps:
    directory: ReferralDirectory
    payments: PaymentsClient
    analytics: AnalyticsDeadLetterQueue
    policy: RewardPolicy
