"""
Redis storage for the Entitlements Service.

Compound writes (quota consume, milestone increment, referral processing)
run as Lua scripts so they are atomic on the server. Override batches go
through a MULTI/EXEC pipeline together with their audit entry.
"""

import json
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import StorageUnavailable
from shared.logging import get_logger
from .base import EntitlementStore
from ..referrals.policy import RewardPolicy
from ..rules.models import (
    ForcedState, Grant, GrantSource, MilestoneState, Override, OverrideAuditEntry,
    QuotaCounter, QuotaResult, ReferralEvent, ReferralOutcome, Tier, UserEntitlement
)


# KEYS: quota hash. ARGV: now_ms, window_ms, limit (-1 = none), enforce (1/0)
QUOTA_SCRIPT = """
local start = redis.call('HGET', KEYS[1], 'window_start')
local count = tonumber(redis.call('HGET', KEYS[1], 'count')) or 0
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
if (not start) or now >= tonumber(start) + window then
    start = ARGV[1]
    count = 0
end
local limit = tonumber(ARGV[3])
local allowed = 1
if ARGV[4] == '1' and limit >= 0 and count >= limit then
    allowed = 0
else
    count = count + 1
end
redis.call('HSET', KEYS[1], 'window_start', start, 'count', count)
redis.call('PEXPIRE', KEYS[1], math.max(1, tonumber(start) + window - now))
return {allowed, count, start}
"""

# KEYS: milestone hash. ARGV: by, target
MILESTONE_SCRIPT = """
local count = redis.call('HINCRBY', KEYS[1], 'count', ARGV[1])
local unlocked = tonumber(redis.call('HGET', KEYS[1], 'unlocked')) or 0
if unlocked == 0 and count >= tonumber(ARGV[2]) then
    unlocked = 1
    redis.call('HSET', KEYS[1], 'unlocked', 1)
end
return {count, unlocked}
"""

# KEYS: referral record, referrer count, referrer grants, milestone hash
# ARGV: idempotency_key, referrer_id, referee_id, reward_tier, timestamp_ms,
#       grant_id, boost_ms, bonus_ms, bonus_threshold, milestone_target
REFERRAL_SCRIPT = """
local existing = redis.call('GET', KEYS[1])
if existing then
    local record = cjson.decode(existing)
    return {0, record['referral_number'], cjson.encode(record['grant'])}
end

local number = redis.call('INCR', KEYS[2])
local duration = tonumber(ARGV[7])
local threshold = tonumber(ARGV[9])
if threshold > 0 and number % threshold == 0 then
    duration = tonumber(ARGV[8])
end
local issued = tonumber(ARGV[5])
local grant = {
    grant_id = ARGV[6],
    user_id = ARGV[2],
    source = 'referral',
    tier = ARGV[4],
    issued_at_ms = issued,
    expires_at_ms = issued + duration
}
local grant_json = cjson.encode(grant)
redis.call('SET', KEYS[1], cjson.encode({
    idempotency_key = ARGV[1],
    referrer_id = ARGV[2],
    referee_id = ARGV[3],
    reward_tier = ARGV[4],
    timestamp_ms = issued,
    referral_number = number,
    grant = grant
}))
redis.call('RPUSH', KEYS[3], grant_json)

local count = redis.call('HINCRBY', KEYS[4], 'count', 1)
local unlocked = tonumber(redis.call('HGET', KEYS[4], 'unlocked')) or 0
if unlocked == 0 and count >= tonumber(ARGV[10]) then
    unlocked = 1
    redis.call('HSET', KEYS[4], 'unlocked', 1)
end
return {1, number, grant_json, count, unlocked}
"""


def to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def from_ms(value) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def _ms(value: timedelta) -> int:
    return int(value.total_seconds() * 1000)


def encode_grant(grant: Grant) -> str:
    data = {
        "grant_id": grant.grant_id,
        "user_id": grant.user_id,
        "source": grant.source.value,
        "issued_at_ms": to_ms(grant.issued_at),
        "expires_at_ms": to_ms(grant.expires_at),
    }
    if grant.tier is not None:
        data["tier"] = grant.tier.value
    if grant.feature_key is not None:
        data["feature_key"] = grant.feature_key
    return json.dumps(data)


def decode_grant(raw: str) -> Grant:
    data = json.loads(raw)
    return Grant(
        grant_id=data["grant_id"],
        user_id=data["user_id"],
        source=GrantSource(data["source"]),
        issued_at=from_ms(data["issued_at_ms"]),
        expires_at=from_ms(data["expires_at_ms"]),
        tier=Tier(data["tier"]) if data.get("tier") else None,
        feature_key=data.get("feature_key"),
    )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def encode_override(override: Override) -> str:
    return json.dumps({
        "feature_key": override.feature_key,
        "forced_state": override.forced_state.value,
        "reason": override.reason,
        "effective_from": _iso(override.effective_from),
        "effective_until": _iso(override.effective_until),
        "message": override.message,
        "expected_date": override.expected_date,
        "updated_by": override.updated_by,
        "updated_at": _iso(override.updated_at),
    })


def decode_override(raw: str) -> Override:
    data = json.loads(raw)
    return Override(
        feature_key=data["feature_key"],
        forced_state=ForcedState(data["forced_state"]),
        reason=data.get("reason") or "",
        effective_from=_parse_iso(data["effective_from"]),
        effective_until=_parse_iso(data.get("effective_until")),
        message=data.get("message"),
        expected_date=data.get("expected_date"),
        updated_by=data.get("updated_by"),
        updated_at=_parse_iso(data["updated_at"]),
    )


def encode_audit(entry: OverrideAuditEntry) -> str:
    return json.dumps({
        "action": entry.action,
        "actor": entry.actor,
        "feature_keys": list(entry.feature_keys),
        "created_at": _iso(entry.created_at),
        "preset": entry.preset,
    })


def decode_audit(raw: str) -> OverrideAuditEntry:
    data = json.loads(raw)
    return OverrideAuditEntry(
        action=data["action"],
        actor=data["actor"],
        feature_keys=data["feature_keys"],
        created_at=_parse_iso(data["created_at"]),
        preset=data.get("preset"),
    )


class RedisStore(EntitlementStore):
    """Backend sharing state across service replicas through Redis."""

    name = "redis"

    def __init__(self, redis_url: str, key_prefix: str = "ent:"):
        self.redis_url = redis_url
        self.prefix = key_prefix
        self.logger = get_logger("entitlements.persistence.redis")
        self.redis: Optional[redis.Redis] = None

        self._quota_script = None
        self._milestone_script = None
        self._referral_script = None

    async def start(self):
        """Connect and register scripts."""
        with self._storage_errors("start"):
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )
            await self.redis.ping()

        self._quota_script = self.redis.register_script(QUOTA_SCRIPT)
        self._milestone_script = self.redis.register_script(MILESTONE_SCRIPT)
        self._referral_script = self.redis.register_script(REFERRAL_SCRIPT)
        self.logger.info("Redis store started", prefix=self.prefix)

    async def stop(self):
        if self.redis:
            await self.redis.close()
            self.logger.info("Redis store stopped")

    async def health_check(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except (RedisError, OSError) as e:
            self.logger.warning("Redis health check failed", error=str(e))
            return False

    @contextmanager
    def _storage_errors(self, operation: str):
        try:
            yield
        except (RedisError, OSError) as e:
            self.logger.error("Redis operation failed", operation=operation, error=str(e))
            raise StorageUnavailable(f"Redis {operation} failed", {"backend": self.name})

    # Keys

    def _key(self, *parts: str) -> str:
        return self.prefix + ":".join(parts)

    def _user_key(self, user_id: str) -> str:
        return self._key("user", user_id)

    def _grants_key(self, user_id: str) -> str:
        return self._key("grants", user_id)

    def _quota_key(self, user_id: str, feature_key: str) -> str:
        return self._key("quota", user_id, feature_key)

    @property
    def _milestone_key(self) -> str:
        return self._key("milestone")

    @property
    def _overrides_key(self) -> str:
        return self._key("overrides")

    @property
    def _audit_key(self) -> str:
        return self._key("overrides", "audit")

    # Users and grants

    async def get_user(self, user_id: str) -> UserEntitlement:
        with self._storage_errors("get_user"):
            async with self.redis.pipeline(transaction=False) as pipe:
                pipe.hget(self._user_key(user_id), "tier")
                pipe.lrange(self._grants_key(user_id), 0, -1)
                tier, grants = await pipe.execute()

        return UserEntitlement(
            user_id=user_id,
            subscription_tier=Tier(tier) if tier else Tier.FREE,
            grants=[decode_grant(raw) for raw in grants or []],
        )

    async def set_subscription_tier(self, user_id: str, tier: Tier) -> UserEntitlement:
        with self._storage_errors("set_subscription_tier"):
            await self.redis.hset(self._user_key(user_id), "tier", tier.value)
        return await self.get_user(user_id)

    async def add_grant(self, grant: Grant) -> Grant:
        with self._storage_errors("add_grant"):
            await self.redis.rpush(self._grants_key(grant.user_id), encode_grant(grant))
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
        with self._storage_errors("consume_quota"):
            allowed, count, start = await self._quota_script(
                keys=[self._quota_key(user_id, feature_key)],
                args=[to_ms(now), _ms(window), -1 if limit is None else limit, 1 if enforce else 0],
            )

        window_start = from_ms(start)
        return QuotaResult(
            allowed=bool(int(allowed)),
            count=int(count),
            limit=limit,
            window_start=window_start,
            resets_at=window_start + window,
        )

    async def get_quota(self, user_id: str, feature_key: str) -> Optional[QuotaCounter]:
        with self._storage_errors("get_quota"):
            data = await self.redis.hgetall(self._quota_key(user_id, feature_key))
        if not data:
            return None
        return QuotaCounter(
            user_id=user_id,
            feature_key=feature_key,
            window_start=from_ms(data["window_start"]),
            count=int(data.get("count", 0)),
        )

    # Milestone

    async def increment_milestone(self, by: int, target: int) -> MilestoneState:
        with self._storage_errors("increment_milestone"):
            count, unlocked = await self._milestone_script(keys=[self._milestone_key], args=[by, target])
        return MilestoneState(int(count), target, bool(int(unlocked)))

    async def get_milestone(self, target: int) -> MilestoneState:
        with self._storage_errors("get_milestone"):
            data = await self.redis.hgetall(self._milestone_key)
        return MilestoneState(
            int(data.get("count", 0)),
            target,
            data.get("unlocked") == "1",
        )

    # Referrals

    async def record_referral(
        self,
        event: ReferralEvent,
        grant_id: str,
        policy: RewardPolicy,
        milestone_target: int,
    ) -> ReferralOutcome:
        keys = [
            self._key("referral", event.idempotency_key),
            self._key("referrals", "count", event.referrer_id),
            self._grants_key(event.referrer_id),
            self._milestone_key,
        ]
        args = [
            event.idempotency_key,
            event.referrer_id,
            event.referee_id,
            event.reward_tier.value,
            to_ms(event.timestamp),
            grant_id,
            _ms(policy.boost),
            _ms(policy.bonus),
            policy.bonus_threshold,
            milestone_target,
        ]
        with self._storage_errors("record_referral"):
            result = await self._referral_script(keys=keys, args=args)

        created = bool(int(result[0]))
        grant = decode_grant(result[2])
        milestone = None
        if created:
            milestone = MilestoneState(int(result[3]), milestone_target, bool(int(result[4])))
        return ReferralOutcome(
            grant=grant,
            created=created,
            referral_number=int(result[1]),
            milestone=milestone,
        )

    async def get_referral_count(self, referrer_id: str) -> int:
        with self._storage_errors("get_referral_count"):
            value = await self.redis.get(self._key("referrals", "count", referrer_id))
        return int(value) if value else 0

    # Overrides

    async def get_override(self, feature_key: str) -> Optional[Override]:
        with self._storage_errors("get_override"):
            raw = await self.redis.hget(self._overrides_key, feature_key)
        return decode_override(raw) if raw else None

    async def list_overrides(self) -> List[Override]:
        with self._storage_errors("list_overrides"):
            table: Dict[str, Any] = await self.redis.hgetall(self._overrides_key)
        return [decode_override(raw) for raw in table.values()]

    async def put_overrides(self, overrides: Sequence[Override], audit: OverrideAuditEntry):
        if not overrides:
            return
        mapping = {o.feature_key: encode_override(o) for o in overrides}
        with self._storage_errors("put_overrides"):
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._overrides_key, mapping=mapping)
                pipe.lpush(self._audit_key, encode_audit(audit))
                await pipe.execute()

    async def list_override_audit(self, limit: int = 50) -> List[OverrideAuditEntry]:
        if limit <= 0:
            return []
        with self._storage_errors("list_override_audit"):
            entries = await self.redis.lrange(self._audit_key, 0, limit - 1)
        return [decode_audit(raw) for raw in entries]
