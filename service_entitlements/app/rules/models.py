"""
Data models for the Entitlements Service.

Domain records are dataclasses; request/response bodies are pydantic models.
"""

from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Aware UTC copy of ``value``; naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Longest promo or admin grant, ten years.
MAX_GRANT_DAYS = 3650


class Tier(str, Enum):
    """Ordered subscription tiers."""
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def __ge__(self, other):
        if isinstance(other, Tier):
            return self.rank >= other.rank
        return NotImplemented

    def __gt__(self, other):
        if isinstance(other, Tier):
            return self.rank > other.rank
        return NotImplemented

    def __le__(self, other):
        if isinstance(other, Tier):
            return self.rank <= other.rank
        return NotImplemented

    def __lt__(self, other):
        if isinstance(other, Tier):
            return self.rank < other.rank
        return NotImplemented


_TIER_ORDER = [Tier.FREE, Tier.BASIC, Tier.PREMIUM]


class FeatureCategory(str, Enum):
    """Closed set of feature categories."""
    JOBS = "jobs"
    APPLICATIONS = "applications"
    CV = "cv"
    CAREER = "career"
    INSIGHTS = "insights"


class GrantSource(str, Enum):
    """Where a grant came from."""
    REFERRAL = "referral"
    PROMO = "promo"
    ADMIN = "admin"


class ForcedState(str, Enum):
    """Administrator override states."""
    ENABLED = "enabled"
    DISABLED = "disabled"
    UNSET = "unset"


class MilestoneStage(str, Enum):
    """Community milestone states."""
    LOCKED = "LOCKED"
    UNLOCKED = "UNLOCKED"


class ReasonCode(str, Enum):
    """Decision reason codes."""
    GRANTED = "Granted"
    OVERRIDE_ENABLED = "OverrideEnabled"
    OVERRIDE_DISABLED = "OverrideDisabled"
    UNKNOWN_FEATURE = "UnknownFeature"
    VALIDATION_ERROR = "ValidationError"
    COMMUNITY_LOCKED = "CommunityLocked"
    TIER_INSUFFICIENT = "TierInsufficient"
    QUOTA_EXCEEDED = "QuotaExceeded"
    STORAGE_UNAVAILABLE = "StorageUnavailable"


@dataclass(frozen=True)
class FeatureRule:
    """Access rule for one (category, feature_key) pair."""
    category: FeatureCategory
    feature_key: str
    min_tier: Tier = Tier.FREE
    community_gated: bool = False
    quota_limit: Optional[int] = None
    quota_window: Optional[timedelta] = None
    title: Optional[str] = None
    # Per-tier limit overrides; an explicit None leaves that tier unmetered.
    quota_limits_by_tier: Dict[Tier, Optional[int]] = field(default_factory=dict, hash=False, compare=False)

    @property
    def metered(self) -> bool:
        return self.quota_limit is not None

    @property
    def display_name(self) -> str:
        return self.title or self.feature_key

    def quota_limit_for(self, tier: Tier) -> Optional[int]:
        """Quota limit that applies to a user at ``tier`` (None = unmetered)."""
        if not self.metered:
            return None
        if tier in self.quota_limits_by_tier:
            return self.quota_limits_by_tier[tier]
        return self.quota_limit


@dataclass(frozen=True)
class Grant:
    """Temporary elevation of a user's tier, or access to one feature."""
    grant_id: str
    user_id: str
    source: GrantSource
    issued_at: datetime
    expires_at: datetime
    tier: Optional[Tier] = None
    feature_key: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        return self.issued_at <= now < self.expires_at

    def covers_feature(self, feature_key: str) -> bool:
        return self.feature_key is not None and self.feature_key == feature_key


@dataclass
class UserEntitlement:
    """Subscription tier plus grants for one user."""
    user_id: str
    subscription_tier: Tier = Tier.FREE
    grants: List[Grant] = field(default_factory=list)

    def active_grants(self, now: datetime) -> List[Grant]:
        # Expired grants stay stored but are ignored here.
        return [g for g in self.grants if g.is_active(now)]

    def effective_tier(self, now: datetime) -> Tier:
        tiers = [self.subscription_tier]
        tiers.extend(g.tier for g in self.active_grants(now) if g.tier is not None)
        return max(tiers, key=lambda t: t.rank)

    def has_feature_grant(self, feature_key: str, now: datetime) -> bool:
        return any(g.covers_feature(feature_key) for g in self.active_grants(now))


@dataclass
class QuotaCounter:
    """Usage counter for one (user, feature) window."""
    user_id: str
    feature_key: str
    window_start: datetime
    count: int = 0


@dataclass(frozen=True)
class QuotaResult:
    """Outcome of a quota check-and-consume."""
    allowed: bool
    count: int
    limit: Optional[int]
    window_start: datetime
    resets_at: datetime

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(0, self.limit - self.count)


@dataclass(frozen=True)
class MilestoneState:
    """Global community counter snapshot."""
    current_count: int
    target_count: int
    unlocked: bool = False

    @property
    def progress_percent(self) -> int:
        if self.target_count <= 0:
            return 100
        return min(100, (self.current_count * 100) // self.target_count)

    @property
    def state(self) -> MilestoneStage:
        if self.unlocked or self.current_count >= self.target_count:
            return MilestoneStage.UNLOCKED
        return MilestoneStage.LOCKED

    @property
    def remaining(self) -> int:
        return max(0, self.target_count - self.current_count)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_count": self.current_count,
            "target_count": self.target_count,
            "progress_percent": self.progress_percent,
            "state": self.state.value,
            "remaining": self.remaining,
        }


@dataclass(frozen=True)
class ReferralEvent:
    """A processed referral, keyed by idempotency key."""
    idempotency_key: str
    referrer_id: str
    referee_id: str
    reward_tier: Tier
    timestamp: datetime
    referral_number: int = 0
    grant_id: Optional[str] = None


@dataclass(frozen=True)
class ReferralOutcome:
    """Result of recording a referral."""
    grant: Grant
    created: bool
    referral_number: int
    milestone: Optional[MilestoneState] = None


@dataclass(frozen=True)
class Override:
    """Administrator-forced decision for a feature."""
    feature_key: str
    forced_state: ForcedState
    reason: str = ""
    effective_from: datetime = field(default_factory=utc_now)
    effective_until: Optional[datetime] = None
    message: Optional[str] = None
    expected_date: Optional[str] = None
    updated_by: Optional[str] = None
    updated_at: datetime = field(default_factory=utc_now)

    def is_effective(self, now: datetime) -> bool:
        if self.forced_state == ForcedState.UNSET:
            return False
        if now < self.effective_from:
            return False
        if self.effective_until is not None and now >= self.effective_until:
            return False
        return True


@dataclass(frozen=True)
class OverrideAuditEntry:
    """Append-only record of an override write."""
    action: str
    actor: str
    feature_keys: List[str]
    created_at: datetime
    preset: Optional[str] = None


@dataclass
class Decision:
    """Access decision returned by the resolver."""
    allowed: bool
    reason_code: ReasonCode
    message: str
    cta: Optional[Dict[str, Any]] = None
    progress: Optional[Dict[str, Any]] = None
    quota_remaining: Optional[int] = None
    quota_resets_at: Optional[datetime] = None


# API models

class ResolveRequest(BaseModel):
    """Request model for an access check."""
    user_id: str = Field(..., description="Verified user ID")
    category: str = Field(..., description="Feature category")
    feature_key: str = Field(..., description="Feature key")


class DecisionResponse(BaseModel):
    """Response model for an access check."""
    allowed: bool = Field(..., description="Whether access is granted")
    reason_code: ReasonCode = Field(..., description="Why the decision was made")
    message: str = Field(..., description="Human readable reason")
    cta: Optional[Dict[str, Any]] = Field(None, description="Call to action payload")
    progress: Optional[Dict[str, Any]] = Field(None, description="Community milestone progress")
    quota_remaining: Optional[int] = Field(None, description="Units left in the current window")
    quota_resets_at: Optional[datetime] = Field(None, description="When the quota window resets")

    @classmethod
    def from_decision(cls, decision: Decision) -> "DecisionResponse":
        return cls(
            allowed=decision.allowed,
            reason_code=decision.reason_code,
            message=decision.message,
            cta=decision.cta,
            progress=decision.progress,
            quota_remaining=decision.quota_remaining,
            quota_resets_at=decision.quota_resets_at
        )


class UsageRequest(BaseModel):
    """Request model for recording usage of a metered feature."""
    user_id: str = Field(..., description="Verified user ID")
    feature_key: str = Field(..., description="Metered feature key")


class UsageResponse(BaseModel):
    """Response model for recorded usage."""
    allowed: bool
    quota_remaining: Optional[int] = Field(None, description="None when the plan is unmetered")
    limit: Optional[int] = None
    resets_at: datetime
    warning: bool = False


class ReferralRequest(BaseModel):
    """Request model for a referral event."""
    idempotency_key: str = Field(..., description="Caller supplied unique token")
    referrer_id: str = Field(..., description="User who referred")
    referee_id: str = Field(..., description="User who was referred")
    reward_tier: Tier = Field(Tier.PREMIUM, description="Tier granted to the referrer")


class GrantResponse(BaseModel):
    """Response model for a grant."""
    grant_id: str
    user_id: str
    source: GrantSource
    tier: Optional[Tier] = None
    feature_key: Optional[str] = None
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def from_grant(cls, grant: Grant) -> "GrantResponse":
        return cls(
            grant_id=grant.grant_id,
            user_id=grant.user_id,
            source=grant.source,
            tier=grant.tier,
            feature_key=grant.feature_key,
            issued_at=grant.issued_at,
            expires_at=grant.expires_at
        )


class ReferralResponse(BaseModel):
    """Response model for a recorded referral."""
    grant: GrantResponse
    created: bool
    referral_number: int


class MilestoneStatusResponse(BaseModel):
    """Response model for the community milestone."""
    current_count: int
    target_count: int
    progress_percent: int
    state: MilestoneStage
    remaining: int


class MilestoneIncrementRequest(BaseModel):
    """Request model for counting new subscribers."""
    by: int = Field(1, description="Amount to add")


class OverrideRequest(BaseModel):
    """Request model for setting an override."""
    forced_state: ForcedState
    reason: str = Field("", description="Reason shown when the feature is disabled")
    message: Optional[str] = None
    expected_date: Optional[str] = None
    effective_from: Optional[datetime] = None
    effective_until: Optional[datetime] = None


class OverrideResponse(BaseModel):
    """Response model for an override."""
    feature_key: str
    forced_state: ForcedState
    reason: str
    message: Optional[str]
    expected_date: Optional[str]
    effective_from: datetime
    effective_until: Optional[datetime]
    updated_by: Optional[str]
    updated_at: datetime

    @classmethod
    def from_override(cls, override: Override) -> "OverrideResponse":
        return cls(
            feature_key=override.feature_key,
            forced_state=override.forced_state,
            reason=override.reason,
            message=override.message,
            expected_date=override.expected_date,
            effective_from=override.effective_from,
            effective_until=override.effective_until,
            updated_by=override.updated_by,
            updated_at=override.updated_at
        )


class TierUpdateRequest(BaseModel):
    """Request model for syncing a subscription tier."""
    tier: Tier


class GrantCreateRequest(BaseModel):
    """Request model for a promo or admin grant."""
    user_id: str
    source: GrantSource = GrantSource.PROMO
    tier: Optional[Tier] = None
    feature_key: Optional[str] = None
    duration_days: int = Field(..., gt=0, le=MAX_GRANT_DAYS, description="Grant lifetime in days")


class FeatureRuleResponse(BaseModel):
    """Response model for a registry entry."""
    category: FeatureCategory
    feature_key: str
    title: Optional[str]
    min_tier: Tier
    community_gated: bool
    quota_limit: Optional[int]
    quota_window_seconds: Optional[int]

    @classmethod
    def from_rule(cls, rule: FeatureRule) -> "FeatureRuleResponse":
        return cls(
            category=rule.category,
            feature_key=rule.feature_key,
            title=rule.title,
            min_tier=rule.min_tier,
            community_gated=rule.community_gated,
            quota_limit=rule.quota_limit,
            quota_window_seconds=int(rule.quota_window.total_seconds()) if rule.quota_window else None
        )


class UserEntitlementResponse(BaseModel):
    """Response model for a user's entitlement record."""
    user_id: str
    subscription_tier: Tier
    effective_tier: Tier
    active_grants: List[GrantResponse]
