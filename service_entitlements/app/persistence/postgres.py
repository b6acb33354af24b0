"""
PostgreSQL storage for the Entitlements Service.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

import asyncpg

from shared.errors import StorageUnavailable
from shared.logging import get_logger
from .base import EntitlementStore, build_referral_grant
from ..quota.window import apply_consumption, roll_window
from ..referrals.policy import RewardPolicy
from ..rules.models import (
    ForcedState, Grant, GrantSource, MilestoneState, Override, OverrideAuditEntry,
    QuotaCounter, QuotaResult, ReferralEvent, ReferralOutcome, Tier, UserEntitlement
)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS user_entitlements (
        user_id VARCHAR(128) PRIMARY KEY,
        subscription_tier VARCHAR(20) NOT NULL DEFAULT 'free',
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS grants (
        grant_id VARCHAR(64) PRIMARY KEY,
        user_id VARCHAR(128) NOT NULL,
        source VARCHAR(20) NOT NULL,
        tier VARCHAR(20),
        feature_key VARCHAR(64),
        issued_at TIMESTAMP WITH TIME ZONE NOT NULL,
        expires_at TIMESTAMP WITH TIME ZONE NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_grants_user ON grants(user_id);",
    """
    CREATE TABLE IF NOT EXISTS quota_counters (
        user_id VARCHAR(128) NOT NULL,
        feature_key VARCHAR(64) NOT NULL,
        window_start TIMESTAMP WITH TIME ZONE NOT NULL,
        count INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (user_id, feature_key)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS milestone (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        current_count BIGINT NOT NULL DEFAULT 0,
        unlocked_at TIMESTAMP WITH TIME ZONE
    );
    """,
    "INSERT INTO milestone (id) VALUES (1) ON CONFLICT (id) DO NOTHING;",
    """
    CREATE TABLE IF NOT EXISTS referral_events (
        idempotency_key VARCHAR(128) PRIMARY KEY,
        referrer_id VARCHAR(128) NOT NULL,
        referee_id VARCHAR(128) NOT NULL,
        reward_tier VARCHAR(20) NOT NULL,
        referral_number INTEGER,
        grant_id VARCHAR(64),
        created_at TIMESTAMP WITH TIME ZONE NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS referral_stats (
        referrer_id VARCHAR(128) PRIMARY KEY,
        referral_count INTEGER NOT NULL DEFAULT 0
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS overrides (
        feature_key VARCHAR(64) PRIMARY KEY,
        forced_state VARCHAR(20) NOT NULL,
        reason TEXT NOT NULL DEFAULT '',
        message TEXT,
        expected_date VARCHAR(64),
        effective_from TIMESTAMP WITH TIME ZONE NOT NULL,
        effective_until TIMESTAMP WITH TIME ZONE,
        updated_by VARCHAR(128),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS override_audit (
        id BIGSERIAL PRIMARY KEY,
        action VARCHAR(32) NOT NULL,
        actor VARCHAR(128) NOT NULL,
        feature_keys TEXT[] NOT NULL,
        preset VARCHAR(32),
        created_at TIMESTAMP WITH TIME ZONE NOT NULL
    );
    """,
]


def _grant_from_row(row) -> Grant:
    return Grant(
        grant_id=row["grant_id"],
        user_id=row["user_id"],
        source=GrantSource(row["source"]),
        issued_at=row["issued_at"],
        expires_at=row["expires_at"],
        tier=Tier(row["tier"]) if row["tier"] else None,
        feature_key=row["feature_key"],
    )


def _override_from_row(row) -> Override:
    return Override(
        feature_key=row["feature_key"],
        forced_state=ForcedState(row["forced_state"]),
        reason=row["reason"],
        message=row["message"],
        expected_date=row["expected_date"],
        effective_from=row["effective_from"],
        effective_until=row["effective_until"],
        updated_by=row["updated_by"],
        updated_at=row["updated_at"],
    )


class PostgresStore(EntitlementStore):
    """Durable backend; each compound write is one transaction."""

    name = "postgres"

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("entitlements.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the pool and create tables."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30
            )
            async with self.pool.acquire() as conn:
                for statement in SCHEMA:
                    await conn.execute(statement)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            self.logger.error("Failed to start PostgreSQL store", error=str(e))
            raise StorageUnavailable("PostgreSQL start failed", {"backend": self.name})

        self.logger.info("PostgreSQL store started")

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL store stopped")

    async def health_check(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            self.logger.warning("PostgreSQL health check failed", error=str(e))
            return False

    @asynccontextmanager
    async def _connection(self, operation: str, transaction: bool = False):
        """Pooled connection, optionally inside a transaction."""
        try:
            async with self.pool.acquire() as conn:
                if transaction:
                    async with conn.transaction():
                        yield conn
                else:
                    yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            self.logger.error("PostgreSQL operation failed", operation=operation, error=str(e))
            raise StorageUnavailable(f"PostgreSQL {operation} failed", {"backend": self.name})

    # Users and grants

    async def get_user(self, user_id: str) -> UserEntitlement:
        async with self._connection("get_user") as conn:
            tier = await conn.fetchval(
                "SELECT subscription_tier FROM user_entitlements WHERE user_id = $1", user_id
            )
            rows = await conn.fetch(
                "SELECT * FROM grants WHERE user_id = $1 ORDER BY issued_at", user_id
            )

        return UserEntitlement(
            user_id=user_id,
            subscription_tier=Tier(tier) if tier else Tier.FREE,
            grants=[_grant_from_row(row) for row in rows],
        )

    async def set_subscription_tier(self, user_id: str, tier: Tier) -> UserEntitlement:
        async with self._connection("set_subscription_tier") as conn:
            await conn.execute("""
                INSERT INTO user_entitlements (user_id, subscription_tier, updated_at)
                VALUES ($1, $2, NOW())
                ON CONFLICT (user_id) DO UPDATE SET
                    subscription_tier = EXCLUDED.subscription_tier,
                    updated_at = EXCLUDED.updated_at
            """, user_id, tier.value)
        return await self.get_user(user_id)

    @staticmethod
    async def _insert_grant(conn, grant: Grant):
        await conn.execute("""
            INSERT INTO grants (grant_id, user_id, source, tier, feature_key, issued_at, expires_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
        """,
            grant.grant_id, grant.user_id, grant.source.value,
            grant.tier.value if grant.tier else None, grant.feature_key,
            grant.issued_at, grant.expires_at
        )

    async def add_grant(self, grant: Grant) -> Grant:
        async with self._connection("add_grant") as conn:
            await self._insert_grant(conn, grant)
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
        async with self._connection("consume_quota", transaction=True) as conn:
            await conn.execute("""
                INSERT INTO quota_counters (user_id, feature_key, window_start, count)
                VALUES ($1, $2, $3, 0)
                ON CONFLICT (user_id, feature_key) DO NOTHING
            """, user_id, feature_key, now)
            row = await conn.fetchrow("""
                SELECT window_start, count FROM quota_counters
                WHERE user_id = $1 AND feature_key = $2
                FOR UPDATE
            """, user_id, feature_key)

            counter = roll_window(
                QuotaCounter(user_id, feature_key, row["window_start"], row["count"]),
                user_id, feature_key, now, window
            )
            allowed, counter = apply_consumption(counter, limit, enforce)

            await conn.execute("""
                UPDATE quota_counters SET window_start = $3, count = $4
                WHERE user_id = $1 AND feature_key = $2
            """, user_id, feature_key, counter.window_start, counter.count)

        return QuotaResult(
            allowed=allowed,
            count=counter.count,
            limit=limit,
            window_start=counter.window_start,
            resets_at=counter.window_start + window,
        )

    async def get_quota(self, user_id: str, feature_key: str) -> Optional[QuotaCounter]:
        async with self._connection("get_quota") as conn:
            row = await conn.fetchrow("""
                SELECT window_start, count FROM quota_counters
                WHERE user_id = $1 AND feature_key = $2
            """, user_id, feature_key)
        if row is None:
            return None
        return QuotaCounter(user_id, feature_key, row["window_start"], row["count"])

    # Milestone

    @staticmethod
    async def _bump_milestone(conn, by: int, target: int) -> MilestoneState:
        row = await conn.fetchrow("""
            UPDATE milestone SET
                current_count = current_count + $1,
                unlocked_at = CASE
                    WHEN unlocked_at IS NULL AND current_count + $1 >= $2 THEN NOW()
                    ELSE unlocked_at
                END
            WHERE id = 1
            RETURNING current_count, unlocked_at
        """, by, target)
        return MilestoneState(row["current_count"], target, row["unlocked_at"] is not None)

    async def increment_milestone(self, by: int, target: int) -> MilestoneState:
        async with self._connection("increment_milestone", transaction=True) as conn:
            return await self._bump_milestone(conn, by, target)

    async def get_milestone(self, target: int) -> MilestoneState:
        async with self._connection("get_milestone") as conn:
            row = await conn.fetchrow("SELECT current_count, unlocked_at FROM milestone WHERE id = 1")
        if row is None:
            return MilestoneState(0, target, False)
        return MilestoneState(row["current_count"], target, row["unlocked_at"] is not None)

    # Referrals

    async def record_referral(
        self,
        event: ReferralEvent,
        grant_id: str,
        policy: RewardPolicy,
        milestone_target: int,
    ) -> ReferralOutcome:
        async with self._connection("record_referral", transaction=True) as conn:
            inserted = await conn.fetchval("""
                INSERT INTO referral_events (
                    idempotency_key, referrer_id, referee_id, reward_tier, created_at
                ) VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (idempotency_key) DO NOTHING
                RETURNING idempotency_key
            """,
                event.idempotency_key, event.referrer_id, event.referee_id,
                event.reward_tier.value, event.timestamp
            )

            if inserted is None:
                row = await conn.fetchrow("""
                    SELECT e.referral_number, g.*
                    FROM referral_events e JOIN grants g ON g.grant_id = e.grant_id
                    WHERE e.idempotency_key = $1
                """, event.idempotency_key)
                return ReferralOutcome(
                    grant=_grant_from_row(row),
                    created=False,
                    referral_number=row["referral_number"],
                )

            number = await conn.fetchval("""
                INSERT INTO referral_stats (referrer_id, referral_count) VALUES ($1, 1)
                ON CONFLICT (referrer_id) DO UPDATE SET
                    referral_count = referral_stats.referral_count + 1
                RETURNING referral_count
            """, event.referrer_id)

            grant = build_referral_grant(event, grant_id, policy.duration_for(number))
            await self._insert_grant(conn, grant)
            await conn.execute("""
                UPDATE referral_events SET referral_number = $2, grant_id = $3
                WHERE idempotency_key = $1
            """, event.idempotency_key, number, grant.grant_id)

            milestone = await self._bump_milestone(conn, 1, milestone_target)

        return ReferralOutcome(grant=grant, created=True, referral_number=number, milestone=milestone)

    async def get_referral_count(self, referrer_id: str) -> int:
        async with self._connection("get_referral_count") as conn:
            count = await conn.fetchval(
                "SELECT referral_count FROM referral_stats WHERE referrer_id = $1", referrer_id
            )
        return count or 0

    # Overrides

    async def get_override(self, feature_key: str) -> Optional[Override]:
        async with self._connection("get_override") as conn:
            row = await conn.fetchrow("SELECT * FROM overrides WHERE feature_key = $1", feature_key)
        return _override_from_row(row) if row else None

    async def list_overrides(self) -> List[Override]:
        async with self._connection("list_overrides") as conn:
            rows = await conn.fetch("SELECT * FROM overrides ORDER BY feature_key")
        return [_override_from_row(row) for row in rows]

    async def put_overrides(self, overrides: Sequence[Override], audit: OverrideAuditEntry):
        if not overrides:
            return
        async with self._connection("put_overrides", transaction=True) as conn:
            await conn.executemany("""
                INSERT INTO overrides (
                    feature_key, forced_state, reason, message, expected_date,
                    effective_from, effective_until, updated_by, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (feature_key) DO UPDATE SET
                    forced_state = EXCLUDED.forced_state,
                    reason = EXCLUDED.reason,
                    message = EXCLUDED.message,
                    expected_date = EXCLUDED.expected_date,
                    effective_from = EXCLUDED.effective_from,
                    effective_until = EXCLUDED.effective_until,
                    updated_by = EXCLUDED.updated_by,
                    updated_at = EXCLUDED.updated_at
            """, [
                (
                    o.feature_key, o.forced_state.value, o.reason, o.message, o.expected_date,
                    o.effective_from, o.effective_until, o.updated_by, o.updated_at
                )
                for o in overrides
            ])
            await conn.execute("""
                INSERT INTO override_audit (action, actor, feature_keys, preset, created_at)
                VALUES ($1, $2, $3, $4, $5)
            """, audit.action, audit.actor, list(audit.feature_keys), audit.preset, audit.created_at)

    async def list_override_audit(self, limit: int = 50) -> List[OverrideAuditEntry]:
        if limit <= 0:
            return []
        async with self._connection("list_override_audit") as conn:
            rows = await conn.fetch(
                "SELECT * FROM override_audit ORDER BY id DESC LIMIT $1", limit
            )
        return [
            OverrideAuditEntry(
                action=row["action"],
                actor=row["actor"],
                feature_keys=list(row["feature_keys"]),
                created_at=row["created_at"],
                preset=row["preset"],
            )
            for row in rows
        ]
