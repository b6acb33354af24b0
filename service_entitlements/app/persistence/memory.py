"""
In-process storage for the Entitlements Service.

Each read-modify-write runs inside a ``threading.Lock`` scoped to its key
and never awaits while holding it, so the store is linearizable for both
asyncio tasks and threads. Readers of the milestone and the override
table pick up an immutable snapshot and never take a writer lock.
"""

import threading
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from shared.logging import get_logger
from .base import EntitlementStore, build_referral_grant
from ..quota.window import apply_consumption, roll_window
from ..referrals.policy import RewardPolicy
from ..rules.models import (
    Grant, MilestoneState, Override, OverrideAuditEntry, QuotaCounter,
    QuotaResult, ReferralEvent, ReferralOutcome, Tier, UserEntitlement
)


class KeyedLocks:
    """Lazily created lock per key."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[object, threading.Lock] = {}

    def get(self, key) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock


class MemoryStore(EntitlementStore):
    """Single-process backend; state is lost on restart."""

    name = "memory"

    def __init__(self):
        self.logger = get_logger("entitlements.persistence.memory")

        self._tiers: Dict[str, Tier] = {}
        self._grants: Dict[str, List[Grant]] = defaultdict(list)
        self._user_locks = KeyedLocks()

        self._quotas: Dict[Tuple[str, str], QuotaCounter] = {}
        self._quota_locks = KeyedLocks()

        self._milestone_count = 0
        self._milestone_unlocked = False
        self._milestone_lock = threading.Lock()
        self._milestone_snapshot: Optional[MilestoneState] = None

        self._referrals: Dict[str, Tuple[ReferralEvent, Grant]] = {}
        self._referral_counts: Dict[str, int] = defaultdict(int)
        self._referral_lock = threading.Lock()

        self._overrides: Dict[str, Override] = {}
        self._override_audit: List[OverrideAuditEntry] = []
        self._override_lock = threading.Lock()

    async def start(self):
        self.logger.info("Memory store started")

    # Users and grants

    async def get_user(self, user_id: str) -> UserEntitlement:
        with self._user_locks.get(user_id):
            return UserEntitlement(
                user_id=user_id,
                subscription_tier=self._tiers.get(user_id, Tier.FREE),
                grants=list(self._grants.get(user_id, ())),
            )

    async def set_subscription_tier(self, user_id: str, tier: Tier) -> UserEntitlement:
        with self._user_locks.get(user_id):
            self._tiers[user_id] = tier
        return await self.get_user(user_id)

    async def add_grant(self, grant: Grant) -> Grant:
        with self._user_locks.get(grant.user_id):
            self._grants[grant.user_id].append(grant)
        return grant

    # Quota

    async def consume_quota(
        self,
        user_id: str,
        feature_key: str,
        limit: Optional[int],
        window: timedelta,
        now: datetime,
        enforce: bool = True,
    ) -> QuotaResult:
        key = (user_id, feature_key)
        with self._quota_locks.get(key):
            current = self._quotas.get(key)
            counter = roll_window(
                replace(current) if current else None, user_id, feature_key, now, window
            )
            allowed, counter = apply_consumption(counter, limit, enforce)
            self._quotas[key] = counter

        return QuotaResult(
            allowed=allowed,
            count=counter.count,
            limit=limit,
            window_start=counter.window_start,
            resets_at=counter.window_start + window,
        )

    async def get_quota(self, user_id: str, feature_key: str) -> Optional[QuotaCounter]:
        counter = self._quotas.get((user_id, feature_key))
        return replace(counter) if counter else None

    # Milestone

    def _increment_milestone_locked(self, by: int, target: int) -> MilestoneState:
        self._milestone_count += by
        if self._milestone_count >= target:
            self._milestone_unlocked = True
        snapshot = MilestoneState(self._milestone_count, target, self._milestone_unlocked)
        self._milestone_snapshot = snapshot
        return snapshot

    async def increment_milestone(self, by: int, target: int) -> MilestoneState:
        with self._milestone_lock:
            return self._increment_milestone_locked(by, target)

    async def get_milestone(self, target: int) -> MilestoneState:
        snapshot = self._milestone_snapshot
        if snapshot is None:
            return MilestoneState(0, target, False)
        if snapshot.target_count != target:
            return MilestoneState(snapshot.current_count, target, snapshot.unlocked)
        return snapshot

    # Referrals

    async def record_referral(
        self,
        event: ReferralEvent,
        grant_id: str,
        policy: RewardPolicy,
        milestone_target: int,
    ) -> ReferralOutcome:
        # Lock order: referral ledger, then milestone.
        with self._referral_lock:
            existing = self._referrals.get(event.idempotency_key)
            if existing is not None:
                stored_event, grant = existing
                return ReferralOutcome(grant=grant, created=False, referral_number=stored_event.referral_number)

            number = self._referral_counts[event.referrer_id] + 1
            grant = build_referral_grant(event, grant_id, policy.duration_for(number))

            with self._milestone_lock:
                self._referral_counts[event.referrer_id] = number
                self._referrals[event.idempotency_key] = (
                    replace(event, referral_number=number, grant_id=grant.grant_id),
                    grant,
                )
                with self._user_locks.get(grant.user_id):
                    self._grants[grant.user_id].append(grant)
                milestone = self._increment_milestone_locked(1, milestone_target)

        return ReferralOutcome(grant=grant, created=True, referral_number=number, milestone=milestone)

    async def get_referral_count(self, referrer_id: str) -> int:
        return self._referral_counts.get(referrer_id, 0)

    # Overrides

    async def get_override(self, feature_key: str) -> Optional[Override]:
        return self._overrides.get(feature_key)

    async def list_overrides(self) -> List[Override]:
        return list(self._overrides.values())

    async def put_overrides(self, overrides: Sequence[Override], audit: OverrideAuditEntry):
        if not overrides:
            return
        with self._override_lock:
            table = dict(self._overrides)
            for override in overrides:
                table[override.feature_key] = override
            # Publish the whole table at once; readers see all or none.
            self._overrides = table
            self._override_audit.append(audit)

    async def list_override_audit(self, limit: int = 50) -> List[OverrideAuditEntry]:
        return list(reversed(self._override_audit[-limit:])) if limit > 0 else []
