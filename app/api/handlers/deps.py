from __future__ import annotations

from dataclasses import dataclass

from app.domain.contracts import PipelineRepository
from app.domain.reward_policy import RewardPolicy
from app.workers.loop import DispatchLoop
from app.workers.reaper import ReaperLoop
from app.workers.replay import DeadLetterReplayLoop


@dataclass(frozen=True)
class ApiDeps:
    repository: PipelineRepository
    policy: RewardPolicy
    dispatcher: DispatchLoop
    reaper: ReaperLoop
    replay: DeadLetterReplayLoop
