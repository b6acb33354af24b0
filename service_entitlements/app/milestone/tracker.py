"""
Community milestone tracker.
"""

from typing import Optional

from shared.errors import ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..persistence.base import EntitlementStore
from ..rules.models import MilestoneStage, MilestoneState


class MilestoneTracker:
    """Global subscriber counter that unlocks community features at a target.

    The state only moves LOCKED -> UNLOCKED. Once the store has latched
    the unlocked flag, later count corrections never relock it.
    """

    def __init__(self, store: EntitlementStore, target: int = 10000, metrics: Optional[MetricsCollector] = None):
        if target <= 0:
            raise ValidationError("Milestone target must be positive", {"target": target})
        self.store = store
        self.target = target
        self.metrics = metrics
        self.logger = get_logger("entitlements.milestone")

    async def increment(self, by: int = 1) -> int:
        """Add ``by`` new subscribers and return the new count."""
        if isinstance(by, bool) or not isinstance(by, int) or by <= 0:
            raise ValidationError("Milestone increment must be a positive integer", {"by": repr(by)})

        state = await self.store.increment_milestone(by, self.target)
        self.observe(state, previous_count=state.current_count - by)
        return state.current_count

    async def get_status(self) -> MilestoneState:
        """Published milestone snapshot."""
        return await self.store.get_milestone(self.target)

    async def is_unlocked(self) -> bool:
        status = await self.get_status()
        return status.state == MilestoneStage.UNLOCKED

    def observe(self, state: MilestoneState, previous_count: int):
        """Publish the gauge and log the unlock transition once."""
        if self.metrics:
            self.metrics.set_gauge("milestone_current_count", state.current_count)

        if previous_count < self.target <= state.current_count:
            if self.metrics:
                self.metrics.record_business_event("milestone_unlocked")
            self.logger.info(
                "Community milestone unlocked",
                current_count=state.current_count,
                target_count=self.target
            )
