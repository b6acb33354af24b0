"""
Storage contract for the Entitlements Service.

Every write that the engine needs to be linearizable is a single method
here, so each backend can make it atomic with its own primitive (a lock,
a Lua script, or a database transaction).
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from ..referrals.policy import RewardPolicy
from ..rules.models import (
    Grant, GrantSource, MilestoneState, Override, OverrideAuditEntry, QuotaCounter,
    QuotaResult, ReferralEvent, ReferralOutcome, Tier, UserEntitlement
)


class EntitlementStore(ABC):
    """Backend for users, grants, quotas, the milestone, referrals and overrides."""

    name = "base"

    async def start(self):
        """Open connections and create schema."""

    async def stop(self):
        """Release connections."""

    async def health_check(self) -> bool:
        return True

    # Users and grants

    @abstractmethod
    async def get_user(self, user_id: str) -> UserEntitlement:
        """Entitlement record; unknown users are free with no grants."""

    @abstractmethod
    async def set_subscription_tier(self, user_id: str, tier: Tier) -> UserEntitlement:
        """Set a user's paid tier."""

    @abstractmethod
    async def add_grant(self, grant: Grant) -> Grant:
        """Store a promo or admin grant."""

    # Quota

    @abstractmethod
    async def consume_quota(
        self,
        user_id: str,
        feature_key: str,
        limit: Optional[int],
        window: timedelta,
        now: datetime,
        enforce: bool = True,
    ) -> QuotaResult:
        """Roll the window, check the limit and count one unit, atomically."""

    @abstractmethod
    async def get_quota(self, user_id: str, feature_key: str) -> Optional[QuotaCounter]:
        """Last stored counter, without rolling it."""

    # Milestone

    @abstractmethod
    async def increment_milestone(self, by: int, target: int) -> MilestoneState:
        """Add ``by`` and latch the unlocked flag once ``target`` is reached."""

    @abstractmethod
    async def get_milestone(self, target: int) -> MilestoneState:
        """Committed milestone snapshot."""

    # Referrals

    @abstractmethod
    async def record_referral(
        self,
        event: ReferralEvent,
        grant_id: str,
        policy: RewardPolicy,
        milestone_target: int,
    ) -> ReferralOutcome:
        """Record a referral exactly once.

        First processing appends the event, bumps the referrer's count,
        stores the referrer's grant and increments the milestone by one, all
        or nothing. A replay returns the stored grant with ``created=False``.
        """

    @abstractmethod
    async def get_referral_count(self, referrer_id: str) -> int:
        """Referrals credited to ``referrer_id``."""

    # Overrides

    @abstractmethod
    async def get_override(self, feature_key: str) -> Optional[Override]:
        """Stored override for a feature, effective or not."""

    @abstractmethod
    async def list_overrides(self) -> List[Override]:
        """All stored overrides."""

    @abstractmethod
    async def put_overrides(self, overrides: Sequence[Override], audit: OverrideAuditEntry):
        """Write a batch of overrides and its audit entry in one atomic step."""

    @abstractmethod
    async def list_override_audit(self, limit: int = 50) -> List[OverrideAuditEntry]:
        """Most recent audit entries first."""


def build_referral_grant(event: ReferralEvent, grant_id: str, duration: timedelta) -> Grant:
    """Grant earned by the referrer of ``event``."""
    return Grant(
        grant_id=grant_id,
        user_id=event.referrer_id,
        source=GrantSource.REFERRAL,
        issued_at=event.timestamp,
        expires_at=event.timestamp + duration,
        tier=event.reward_tier,
    )
