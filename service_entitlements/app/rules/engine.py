"""
Entitlement resolution for the Entitlements Service.
"""

import time
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from shared.errors import StorageUnavailable, UnknownFeatureError, ValidationError
from shared.logging import get_logger, set_user_context
from shared.metrics import MetricsCollector
from ..milestone.tracker import MilestoneTracker
from ..overrides.presets import DEFAULT_MESSAGE
from ..overrides.store import OverrideStore
from ..persistence.base import EntitlementStore
from ..quota.tracker import QuotaTracker
from .models import (
    Decision, FeatureRule, ForcedState, MilestoneStage, QuotaResult, ReasonCode,
    Tier, UserEntitlement, utc_now
)
from .registry import FeatureRegistry, validate_identifier, validate_user_id


class EntitlementResolver:
    """Composes overrides, rules, the milestone, tiers and quotas into a decision.

    Checks run in a fixed order and the first decisive one wins:

    1. the feature rule; overrides only apply to a registered pair
    2. an effective override (kill switch or force-enable)
    3. the community milestone for community-gated features
    4. the user's effective tier
    5. the usage quota for metered features
    """

    def __init__(
        self,
        registry: FeatureRegistry,
        store: EntitlementStore,
        overrides: OverrideStore,
        milestone: MilestoneTracker,
        quotas: QuotaTracker,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.registry = registry
        self.store = store
        self.overrides = overrides
        self.milestone = milestone
        self.quotas = quotas
        self.metrics = metrics
        self.clock = clock
        self.logger = get_logger("entitlements.resolver")

    async def resolve(self, user_id: str, category: str, feature_key: str) -> Decision:
        """Decide whether ``user_id`` may use ``category/feature_key`` right now.

        Never raises for caller mistakes or storage faults: those come back
        as deny decisions with the matching reason code.
        """
        start_time = time.time()
        try:
            decision = await self._resolve(user_id, category, feature_key)
        except ValidationError as e:
            decision = Decision(False, ReasonCode.VALIDATION_ERROR, e.message)
        except UnknownFeatureError as e:
            decision = Decision(False, ReasonCode.UNKNOWN_FEATURE, e.message)
        except StorageUnavailable as e:
            self.logger.error(
                "Storage unavailable during resolve; denying",
                feature_key=feature_key,
                error=e.message
            )
            decision = Decision(
                False,
                ReasonCode.STORAGE_UNAVAILABLE,
                "Entitlements are temporarily unavailable, please retry"
            )

        if self.metrics:
            self.metrics.increment_counter("entitlement_decisions_total", reason_code=decision.reason_code.value)
            metric = self.metrics.get_metric("entitlement_decision_duration_seconds")
            if metric is not None:
                metric.observe(time.time() - start_time)

        self.logger.info(
            "Entitlement resolved",
            feature_key=feature_key,
            allowed=decision.allowed,
            reason_code=decision.reason_code.value
        )
        return decision

    async def _resolve(self, user_id: str, category: str, feature_key: str) -> Decision:
        validate_user_id(user_id)
        validate_identifier(category, "category")
        validate_identifier(feature_key, "feature_key")
        set_user_context(user_id)

        now = self.clock()
        rule = self.registry.get_rule(category, feature_key)

        override = await self.overrides.get_override(feature_key, now)
        if override is not None:
            if override.forced_state == ForcedState.DISABLED:
                cta = None
                if override.message or override.expected_date:
                    cta = {
                        "action": "maintenance",
                        "message": override.message,
                        "expected_date": override.expected_date,
                    }
                return Decision(
                    False,
                    ReasonCode.OVERRIDE_DISABLED,
                    override.reason or override.message or DEFAULT_MESSAGE,
                    cta=cta
                )
            return await self._force_enabled(user_id, rule, now)

        if rule.community_gated:
            status = await self.milestone.get_status()
            if status.state == MilestoneStage.LOCKED:
                return Decision(
                    False,
                    ReasonCode.COMMUNITY_LOCKED,
                    f"{rule.display_name} unlocks for everyone at {status.target_count} subscribers "
                    f"({status.remaining} to go)",
                    cta={"action": "upgrade_or_share", "remaining": status.remaining},
                    progress=status.to_dict()
                )

        user = await self.store.get_user(user_id)
        tier = user.effective_tier(now)
        if tier < rule.min_tier and not user.has_feature_grant(feature_key, now):
            return Decision(
                False,
                ReasonCode.TIER_INSUFFICIENT,
                f"{rule.display_name} requires the {rule.min_tier.value} plan",
                cta={
                    "action": "upgrade",
                    "required_tier": rule.min_tier.value,
                    "current_tier": tier.value,
                }
            )

        if rule.metered and rule.quota_limit_for(tier) is not None:
            result = await self.quotas.check_and_consume(user_id, feature_key, rule, tier)
            if not result.allowed:
                return Decision(
                    False,
                    ReasonCode.QUOTA_EXCEEDED,
                    f"{rule.display_name} limit of {result.limit} reached",
                    cta={"action": "upgrade", "resets_at": result.resets_at.isoformat()},
                    quota_remaining=0,
                    quota_resets_at=result.resets_at
                )
            return Decision(
                True,
                ReasonCode.GRANTED,
                "Access granted",
                quota_remaining=result.remaining,
                quota_resets_at=result.resets_at
            )

        return Decision(True, ReasonCode.GRANTED, "Access granted")

    async def _force_enabled(self, user_id: str, rule: FeatureRule, now: datetime) -> Decision:
        decision = Decision(True, ReasonCode.OVERRIDE_ENABLED, "Access granted by administrator override")
        if rule.metered:
            user = await self.store.get_user(user_id)
            result = await self.quotas.record(user_id, rule.feature_key, rule, user.effective_tier(now))
            decision.quota_remaining = result.remaining
            decision.quota_resets_at = result.resets_at
        return decision

    async def record_usage(self, user_id: str, feature_key: str) -> Tuple[QuotaResult, bool]:
        """Consume one unit of a metered feature.

        Returns the quota result and whether the remaining allowance is low.
        Under an ``enabled`` override the unit is counted but never denied.
        Under a ``disabled`` override nothing is consumed and the result is
        a denial carrying the current window usage.
        """
        validate_user_id(user_id)
        validate_identifier(feature_key, "feature_key")
        rule = self.registry.get_rule_by_key(feature_key)
        if not rule.metered:
            raise ValidationError("Feature is not metered", {"feature_key": feature_key})

        now = self.clock()
        user = await self.store.get_user(user_id)
        tier = user.effective_tier(now)

        override = await self.overrides.get_override(feature_key, now)
        if override is not None and override.forced_state == ForcedState.DISABLED:
            usage = await self.quotas.get_usage(user_id, feature_key, rule, tier)
            self.logger.info("Usage refused by override", user_id=user_id, feature_key=feature_key)
            result = replace(usage, allowed=False)
        elif override is not None and override.forced_state == ForcedState.ENABLED:
            result = await self.quotas.record(user_id, feature_key, rule, tier)
        else:
            result = await self.quotas.check_and_consume(user_id, feature_key, rule, tier)
        return result, self.quotas.is_low(result)

    async def describe_user(self, user_id: str) -> Dict[str, Any]:
        """Subscription tier, effective tier and active grants for a user."""
        validate_user_id(user_id)
        now = self.clock()
        user = await self.store.get_user(user_id)
        return {
            "user_id": user.user_id,
            "subscription_tier": user.subscription_tier,
            "effective_tier": user.effective_tier(now),
            "active_grants": user.active_grants(now),
        }

    async def set_subscription_tier(self, user_id: str, tier: Tier) -> UserEntitlement:
        validate_user_id(user_id)
        try:
            tier = Tier(tier)
        except ValueError:
            raise ValidationError("Unknown tier", {"tier": str(tier)})

        user = await self.store.set_subscription_tier(user_id, tier)
        self.logger.info("Subscription tier updated", user_id=user_id, tier=tier.value)
        return user

