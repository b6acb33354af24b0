"""
Referral ledger: idempotent referral processing and grant issuance.
"""

import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from shared.errors import ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..milestone.tracker import MilestoneTracker
from ..persistence.base import EntitlementStore
from ..rules.models import MAX_GRANT_DAYS, Grant, GrantSource, ReferralEvent, ReferralOutcome, Tier, utc_now
from ..rules.registry import FeatureRegistry, validate_identifier, validate_user_id
from .policy import RewardPolicy


def new_grant_id() -> str:
    return uuid.uuid4().hex


class ReferralLedger:
    """Records referrals exactly once and rewards the referrer."""

    def __init__(
        self,
        store: EntitlementStore,
        milestone: MilestoneTracker,
        registry: FeatureRegistry,
        policy: Optional[RewardPolicy] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.milestone = milestone
        self.registry = registry
        self.policy = policy or RewardPolicy()
        self.metrics = metrics
        self.clock = clock
        self.logger = get_logger("entitlements.referrals")

    async def record(
        self,
        idempotency_key: str,
        referrer_id: str,
        referee_id: str,
        reward_tier: Tier = Tier.PREMIUM,
    ) -> ReferralOutcome:
        """Process a referral event.

        The first call for an ``idempotency_key`` stores the event, bumps the
        referrer's count, issues the reward grant and adds one to the
        community milestone in a single atomic write. Replays return the
        original grant with ``created=False``, whatever ids they carry.
        """
        validate_user_id(idempotency_key, "idempotency_key")
        validate_user_id(referrer_id, "referrer_id")
        validate_user_id(referee_id, "referee_id")
        if referrer_id == referee_id:
            raise ValidationError("A user cannot refer themselves", {"referrer_id": referrer_id})
        reward_tier = self._check_reward_tier(reward_tier)

        event = ReferralEvent(
            idempotency_key=idempotency_key,
            referrer_id=referrer_id,
            referee_id=referee_id,
            reward_tier=reward_tier,
            timestamp=self.clock(),
        )
        outcome = await self.store.record_referral(event, new_grant_id(), self.policy, self.milestone.target)

        if outcome.created:
            if outcome.milestone is not None:
                self.milestone.observe(outcome.milestone, previous_count=outcome.milestone.current_count - 1)
            self.logger.info(
                "Referral recorded",
                referrer_id=referrer_id,
                referral_number=outcome.referral_number,
                grant_id=outcome.grant.grant_id,
                expires_at=outcome.grant.expires_at.isoformat()
            )
        else:
            self.logger.info(
                "Referral replay ignored",
                idempotency_key=idempotency_key,
                grant_id=outcome.grant.grant_id
            )

        if self.metrics:
            self.metrics.increment_counter(
                "referrals_recorded_total", outcome="created" if outcome.created else "replayed"
            )
        return outcome

    async def issue_grant(
        self,
        user_id: str,
        duration: timedelta,
        source: GrantSource = GrantSource.PROMO,
        tier: Optional[Tier] = None,
        feature_key: Optional[str] = None,
    ) -> Grant:
        """Issue a promo or admin grant for a tier or for a single feature."""
        validate_user_id(user_id)
        if source == GrantSource.REFERRAL:
            raise ValidationError("Referral grants are issued by recording a referral")
        if (tier is None) == (feature_key is None):
            raise ValidationError("A grant names exactly one of tier or feature_key")
        if tier is not None:
            tier = self._check_reward_tier(tier)
        if feature_key is not None:
            validate_identifier(feature_key, "feature_key")
            if not self.registry.has_feature_key(feature_key):
                raise ValidationError("Unknown feature key", {"feature_key": feature_key})
        if duration <= timedelta(0):
            raise ValidationError("Grant duration must be positive")
        if duration > timedelta(days=MAX_GRANT_DAYS):
            raise ValidationError("Grant duration is too long", {"max_days": MAX_GRANT_DAYS})

        now = self.clock()
        grant = Grant(
            grant_id=new_grant_id(),
            user_id=user_id,
            source=source,
            issued_at=now,
            expires_at=now + duration,
            tier=tier,
            feature_key=feature_key,
        )
        await self.store.add_grant(grant)

        self.logger.info(
            "Grant issued",
            user_id=user_id,
            source=source.value,
            tier=tier.value if tier else None,
            feature_key=feature_key,
            expires_at=grant.expires_at.isoformat()
        )
        return grant

    async def referral_count(self, referrer_id: str) -> int:
        validate_user_id(referrer_id, "referrer_id")
        return await self.store.get_referral_count(referrer_id)

    @staticmethod
    def _check_reward_tier(tier) -> Tier:
        try:
            tier = Tier(tier)
        except ValueError:
            raise ValidationError("Unknown tier", {"tier": str(tier)})
        if tier <= Tier.FREE:
            raise ValidationError("Reward tier must be above free", {"tier": tier.value})
        return tier
