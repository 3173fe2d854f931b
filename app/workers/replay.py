from __future__ import annotations

from dataclasses import dataclass

from app.domain.use_cases.analytics import AnalyticsDeadLetterQueue, ReplayResult

COMPONENT_ID = "worker.analytics.replay"


@dataclass
class DeadLetterReplayLoop:
    queue: AnalyticsDeadLetterQueue
    batch_size: int = 50
    name: str = "analytics-replay"

    async def run_once(self) -> bool:
        result = await self.replay()
        return result.replayed > 0

    async def replay(self) -> ReplayResult:
        return await self.queue.replay(batch_size=self.batch_size)
