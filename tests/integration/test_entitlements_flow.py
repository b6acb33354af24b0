"""
Integration tests for the community unlock flow.
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from shared.config import EntitlementsConfig
from service_entitlements.app.main import EntitlementsService
from service_entitlements.app.persistence.memory import MemoryStore

ADMIN = {"X-Admin-Key": "flow-secret", "X-Admin-Actor": "ops"}


class Clock:
    def __init__(self):
        self.now = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


class TestEntitlementsFlow:
    """Integration tests for Entitlements service flow."""

    @pytest.fixture
    def clock(self):
        return Clock()

    @pytest.fixture
    def client(self, clock):
        config = EntitlementsConfig(
            service_name="entitlements",
            port=8011,
            admin_api_key="flow-secret",
            milestone_target=5,
        )
        service = EntitlementsService(config=config, store=MemoryStore(), clock=clock)
        with TestClient(service.app) as client:
            yield client

    def resolve(self, client, user_id, category, feature_key):
        response = client.post(
            "/entitlements/resolve",
            json={"user_id": user_id, "category": category, "feature_key": feature_key}
        )
        return response.json()

    def test_referrals_unlock_community_search(self, client, clock):
        """Referrals reward the referrer and count toward the shared milestone."""
        assert self.resolve(client, "dana", "jobs", "search")["reason_code"] == "CommunityLocked"

        for n in range(1, 5):
            response = client.post("/referrals", json={
                "idempotency_key": f"signup-{n}",
                "referrer_id": "alice",
                "referee_id": f"friend-{n}",
            })
            assert response.status_code == 201

        locked = self.resolve(client, "dana", "jobs", "search")
        assert locked["reason_code"] == "CommunityLocked"
        assert locked["progress"]["progress_percent"] == 80
        assert locked["cta"]["remaining"] == 1

        fifth = client.post("/referrals", json={
            "idempotency_key": "signup-5",
            "referrer_id": "alice",
            "referee_id": "friend-5",
        }).json()
        assert fifth["referral_number"] == 5

        status = client.get("/milestone").json()
        assert status["state"] == "UNLOCKED"

        granted = self.resolve(client, "dana", "jobs", "search")
        assert granted["allowed"] is True
        assert granted["quota_remaining"] == 9

        # Alice's referral grants lift her to premium for the bonus month.
        assert self.resolve(client, "alice", "applications", "autoApply")["allowed"] is True
        clock.now += timedelta(days=31)
        assert self.resolve(client, "alice", "applications", "autoApply")["reason_code"] == "TierInsufficient"

        # Unlock is permanent for the epoch.
        assert client.get("/milestone").json()["state"] == "UNLOCKED"

    def test_kill_switch_then_relaunch(self, client):
        client.post("/admin/milestone/increment", json={"by": 5}, headers=ADMIN)
        client.put("/admin/users/pat/tier", json={"tier": "premium"}, headers=ADMIN)

        client.post("/admin/overrides/presets/DEVELOPMENT", headers=ADMIN)
        disabled = self.resolve(client, "pat", "jobs", "search")
        assert disabled["reason_code"] == "OverrideDisabled"
        assert disabled["cta"]["expected_date"] == "2024-06-15"

        client.post("/admin/overrides/presets/FULL_LAUNCH", headers=ADMIN)
        enabled = self.resolve(client, "pat", "jobs", "search")
        assert enabled["allowed"] is True
        assert enabled["quota_remaining"] == 99

        audit = client.get("/admin/overrides/audit", headers=ADMIN).json()["entries"]
        assert [e["preset"] for e in audit] == ["FULL_LAUNCH", "DEVELOPMENT"]

    def test_daily_quota_resets(self, client, clock):
        client.post("/admin/milestone/increment", json={"by": 5}, headers=ADMIN)

        decisions = [self.resolve(client, "sam", "jobs", "search") for _ in range(11)]
        assert [d["allowed"] for d in decisions].count(True) == 10
        assert decisions[-1]["reason_code"] == "QuotaExceeded"

        clock.now += timedelta(days=1)
        assert self.resolve(client, "sam", "jobs", "search")["allowed"] is True
