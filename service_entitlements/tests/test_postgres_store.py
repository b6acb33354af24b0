"""
Unit tests for the PostgreSQL storage backend.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from shared.errors import StorageUnavailable
from service_entitlements.app.persistence.postgres import PostgresStore
from service_entitlements.app.referrals.policy import RewardPolicy
from service_entitlements.app.rules.models import (
    ForcedState, Override, OverrideAuditEntry, ReferralEvent, Tier
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def async_context(value):
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=value)
    ctx.__aexit__ = AsyncMock(return_value=False)
    return ctx


class TestPostgresStore:
    """Test cases for PostgresStore."""

    @pytest.fixture
    def conn(self):
        """Mock asyncpg connection."""
        conn = MagicMock()
        conn.execute = AsyncMock()
        conn.executemany = AsyncMock()
        conn.fetch = AsyncMock(return_value=[])
        conn.fetchrow = AsyncMock(return_value=None)
        conn.fetchval = AsyncMock(return_value=None)
        conn.transaction = MagicMock(return_value=async_context(None))
        return conn

    @pytest.fixture
    def pg_store(self, conn):
        store = PostgresStore("postgres://localhost:5432/access")
        store.pool = MagicMock()
        store.pool.acquire = MagicMock(return_value=async_context(conn))
        return store

    @pytest.mark.asyncio
    async def test_start_creates_schema(self, conn):
        pool = MagicMock()
        pool.acquire = MagicMock(return_value=async_context(conn))

        with patch("asyncpg.create_pool", AsyncMock(return_value=pool)):
            await PostgresStore("postgres://localhost:5432/access").start()

        statements = " ".join(call.args[0] for call in conn.execute.await_args_list)
        for table in ("user_entitlements", "grants", "quota_counters", "milestone",
                      "referral_events", "referral_stats", "overrides", "override_audit"):
            assert f"CREATE TABLE IF NOT EXISTS {table} " in statements

    @pytest.mark.asyncio
    async def test_start_failure(self):
        with patch("asyncpg.create_pool", AsyncMock(side_effect=OSError("refused"))):
            with pytest.raises(StorageUnavailable):
                await PostgresStore("postgres://localhost:5432/access").start()

    @pytest.mark.asyncio
    async def test_consume_quota_in_transaction(self, pg_store, conn):
        conn.fetchrow.return_value = {"window_start": NOW, "count": 2}

        result = await pg_store.consume_quota("u1", "search", 10, timedelta(days=1), NOW + timedelta(hours=1))

        conn.transaction.assert_called_once()
        select_sql = conn.fetchrow.await_args.args[0]
        assert "FOR UPDATE" in select_sql
        update_args = conn.execute.await_args_list[-1].args
        assert update_args[1:] == ("u1", "search", NOW, 3)
        assert result.allowed is True
        assert result.remaining == 7

    @pytest.mark.asyncio
    async def test_consume_quota_denied_keeps_count(self, pg_store, conn):
        conn.fetchrow.return_value = {"window_start": NOW, "count": 10}

        result = await pg_store.consume_quota("u1", "search", 10, timedelta(days=1), NOW)

        assert result.allowed is False
        assert conn.execute.await_args_list[-1].args[4] == 10

    @pytest.mark.asyncio
    async def test_consume_quota_rolls_window(self, pg_store, conn):
        conn.fetchrow.return_value = {"window_start": NOW, "count": 10}
        later = NOW + timedelta(days=1)

        result = await pg_store.consume_quota("u1", "search", 10, timedelta(days=1), later)

        assert result.allowed is True
        assert result.window_start == later
        assert conn.execute.await_args_list[-1].args[3:] == (later, 1)

    @pytest.mark.asyncio
    async def test_driver_error_becomes_storage_unavailable(self, pg_store, conn):
        conn.fetchval.side_effect = asyncpg.PostgresError("boom")

        with pytest.raises(StorageUnavailable):
            await pg_store.get_referral_count("alice")

    @pytest.mark.asyncio
    async def test_increment_milestone(self, pg_store, conn):
        conn.fetchrow.return_value = {"current_count": 10000, "unlocked_at": NOW}

        state = await pg_store.increment_milestone(1, 10000)

        assert state.unlocked is True
        assert conn.fetchrow.await_args.args[1:] == (1, 10000)

    @pytest.mark.asyncio
    async def test_record_referral_first_time(self, pg_store, conn):
        conn.fetchval.side_effect = ["ref-1", 5]
        conn.fetchrow.return_value = {"current_count": 42, "unlocked_at": None}
        event = ReferralEvent("ref-1", "alice", "bob", Tier.PREMIUM, NOW)

        outcome = await pg_store.record_referral(event, "g1", RewardPolicy(), 10000)

        assert outcome.created is True
        assert outcome.referral_number == 5
        assert outcome.grant.expires_at == NOW + timedelta(days=30)
        assert outcome.milestone.current_count == 42
        conn.transaction.assert_called_once()

    @pytest.mark.asyncio
    async def test_record_referral_replay(self, pg_store, conn):
        conn.fetchval.return_value = None
        conn.fetchrow.return_value = {
            "referral_number": 1,
            "grant_id": "g1",
            "user_id": "alice",
            "source": "referral",
            "tier": "premium",
            "feature_key": None,
            "issued_at": NOW,
            "expires_at": NOW + timedelta(days=7),
        }
        event = ReferralEvent("ref-1", "mallory", "bob", Tier.PREMIUM, NOW)

        outcome = await pg_store.record_referral(event, "g2", RewardPolicy(), 10000)

        assert outcome.created is False
        assert outcome.grant.grant_id == "g1"
        assert outcome.grant.user_id == "alice"
        conn.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_user(self, pg_store, conn):
        conn.fetchval.return_value = "premium"
        conn.fetch.return_value = []

        user = await pg_store.get_user("u1")

        assert user.subscription_tier == Tier.PREMIUM
        assert user.grants == []

    @pytest.mark.asyncio
    async def test_put_overrides(self, pg_store, conn):
        override = Override("search", ForcedState.DISABLED, "outage", effective_from=NOW, updated_at=NOW)
        audit = OverrideAuditEntry("set:disabled", "ops", ["search"], NOW)

        await pg_store.put_overrides([override], audit)

        conn.transaction.assert_called_once()
        rows = conn.executemany.await_args.args[1]
        assert rows[0][:3] == ("search", "disabled", "outage")
        assert conn.execute.await_args.args[1:3] == ("set:disabled", "ops")

    @pytest.mark.asyncio
    async def test_health_check(self, pg_store, conn):
        conn.fetchval.return_value = 1
        assert await pg_store.health_check() is True

        conn.fetchval.side_effect = asyncpg.InterfaceError("closed")
        assert await pg_store.health_check() is False
