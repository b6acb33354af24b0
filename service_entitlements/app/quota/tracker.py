"""
Per-user usage quotas for metered features.
"""

from datetime import datetime
from typing import Callable, Optional

from shared.errors import ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..persistence.base import EntitlementStore
from ..rules.models import FeatureRule, QuotaResult, Tier, utc_now


class QuotaTracker:
    """Fixed-window usage counters keyed by ``(user_id, feature_key)``."""

    def __init__(
        self,
        store: EntitlementStore,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = utc_now,
        warning_threshold: int = 2,
    ):
        self.store = store
        self.metrics = metrics
        self.clock = clock
        self.warning_threshold = warning_threshold
        self.logger = get_logger("entitlements.quota")

    @staticmethod
    def _limit_for(rule: FeatureRule, tier: Tier) -> Optional[int]:
        if not rule.metered:
            raise ValidationError("Feature is not metered", {"feature_key": rule.feature_key})
        return rule.quota_limit_for(tier)

    async def check_and_consume(
        self, user_id: str, feature_key: str, rule: FeatureRule, tier: Tier = Tier.FREE
    ) -> QuotaResult:
        """Consume one unit if the window still has room.

        Rollover, limit check and increment happen in a single atomic step.
        A unit is committed as soon as this returns ``allowed``.
        """
        limit = self._limit_for(rule, tier)
        result = await self.store.consume_quota(
            user_id, feature_key, limit, rule.quota_window, self.clock(), enforce=True
        )
        self._observe(feature_key, "allowed" if result.allowed else "exceeded")

        if not result.allowed:
            self.logger.info(
                "Quota exhausted",
                user_id=user_id,
                feature_key=feature_key,
                limit=limit,
                resets_at=result.resets_at.isoformat()
            )
        return result

    async def record(
        self, user_id: str, feature_key: str, rule: FeatureRule, tier: Tier = Tier.FREE
    ) -> QuotaResult:
        """Count one unit without ever denying."""
        limit = self._limit_for(rule, tier)
        result = await self.store.consume_quota(
            user_id, feature_key, limit, rule.quota_window, self.clock(), enforce=False
        )
        self._observe(feature_key, "recorded")
        return result

    async def get_usage(
        self, user_id: str, feature_key: str, rule: FeatureRule, tier: Tier = Tier.FREE
    ) -> QuotaResult:
        """Current window usage, read-only."""
        limit = self._limit_for(rule, tier)
        now = self.clock()
        counter = await self.store.get_quota(user_id, feature_key)
        if counter is None or now >= counter.window_start + rule.quota_window:
            return QuotaResult(True, 0, limit, now, now + rule.quota_window)

        allowed = limit is None or counter.count < limit
        return QuotaResult(
            allowed, counter.count, limit, counter.window_start, counter.window_start + rule.quota_window
        )

    def is_low(self, result: QuotaResult) -> bool:
        """True when the remaining allowance is at or below the warning threshold."""
        remaining = result.remaining
        return remaining is not None and remaining <= self.warning_threshold

    def _observe(self, feature_key: str, outcome: str):
        if self.metrics:
            self.metrics.increment_counter("quota_consumed_total", feature_key=feature_key, outcome=outcome)
