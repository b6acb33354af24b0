"""
Unit tests for Entitlements main service.
"""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from shared.config import EntitlementsConfig
from shared.errors import StorageUnavailable
from service_entitlements.app.main import EntitlementsService
from service_entitlements.app.persistence.memory import MemoryStore

ADMIN = {"X-Admin-Key": "secret", "X-Admin-Actor": "ops"}


class TestEntitlementsService:
    """Test cases for EntitlementsService."""

    @pytest.fixture
    def config(self):
        return EntitlementsConfig(service_name="entitlements", port=8011, admin_api_key="secret")

    @pytest.fixture
    def entitlements_service(self, config, clock):
        """Create EntitlementsService instance."""
        return EntitlementsService(config=config, store=MemoryStore(), clock=clock)

    @pytest.fixture
    def client(self, entitlements_service):
        """Create test client."""
        with TestClient(entitlements_service.app) as client:
            yield client

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "entitlements"
        assert data["storage"] == "memory"

    def test_health_check(self, client):
        """Test health check endpoint."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["dependencies"] == {"memory": "ok"}

    def test_metrics_endpoint(self, client):
        client.post("/entitlements/resolve", json={"user_id": "u1", "category": "insights", "feature_key": "adFree"})
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "entitlement_decisions_total" in response.text

    def test_resolve_tier_insufficient(self, client):
        """Test a free user asking for a premium feature."""
        response = client.post(
            "/entitlements/resolve",
            json={"user_id": "u1", "category": "applications", "feature_key": "autoApply"}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["allowed"] is False
        assert data["reason_code"] == "TierInsufficient"
        assert data["cta"]["required_tier"] == "premium"
        assert "X-Request-ID" in response.headers

    def test_resolve_community_locked(self, client, entitlements_service):
        client.post("/admin/milestone/increment", json={"by": 4000}, headers=ADMIN)

        response = client.post(
            "/entitlements/resolve",
            json={"user_id": "u1", "category": "jobs", "feature_key": "search"}
        )

        data = response.json()
        assert data["reason_code"] == "CommunityLocked"
        assert data["progress"]["progress_percent"] == 40

    def test_resolve_unknown_feature(self, client):
        response = client.post(
            "/entitlements/resolve",
            json={"user_id": "u1", "category": "jobs", "feature_key": "teleport"}
        )
        assert response.status_code == 200
        assert response.json()["reason_code"] == "UnknownFeature"

    def test_resolve_storage_unavailable(self, client, entitlements_service):
        entitlements_service.store.get_user = AsyncMock(side_effect=StorageUnavailable())

        response = client.post(
            "/entitlements/resolve",
            json={"user_id": "u1", "category": "insights", "feature_key": "adFree"}
        )

        assert response.status_code == 503
        data = response.json()
        assert data["allowed"] is False
        assert data["reason_code"] == "StorageUnavailable"

    def test_resolve_missing_field(self, client):
        response = client.post("/entitlements/resolve", json={"user_id": "u1"})
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_record_usage(self, client):
        response = client.post("/entitlements/usage", json={"user_id": "u1", "feature_key": "cvAnalysis"})
        assert response.status_code == 200
        data = response.json()
        assert data["allowed"] is True
        assert data["quota_remaining"] == 2
        assert data["limit"] == 3
        assert data["warning"] is True

    def test_record_usage_unmetered(self, client):
        response = client.post("/entitlements/usage", json={"user_id": "u1", "feature_key": "adFree"})
        assert response.status_code == 400

    def test_record_usage_unknown(self, client):
        response = client.post("/entitlements/usage", json={"user_id": "u1", "feature_key": "teleport"})
        assert response.status_code == 404
        assert response.json()["code"] == "UNKNOWN_FEATURE"

    def test_referral_idempotent(self, client):
        body = {"idempotency_key": "ref-1", "referrer_id": "alice", "referee_id": "bob"}

        first = client.post("/referrals", json=body)
        replay = client.post("/referrals", json={**body, "referrer_id": "mallory"})

        assert first.status_code == 201
        assert replay.status_code == 200
        assert replay.json()["grant"]["grant_id"] == first.json()["grant"]["grant_id"]
        assert replay.json()["created"] is False
        assert client.get("/milestone").json()["current_count"] == 1
        assert client.get("/referrals/alice/count").json()["referral_count"] == 1

    def test_self_referral(self, client):
        response = client.post(
            "/referrals",
            json={"idempotency_key": "ref-1", "referrer_id": "alice", "referee_id": "alice"}
        )
        assert response.status_code == 400

    def test_milestone_status(self, client):
        response = client.get("/milestone")
        assert response.status_code == 200
        assert response.json() == {
            "current_count": 0,
            "target_count": 10000,
            "progress_percent": 0,
            "state": "LOCKED",
            "remaining": 10000,
        }

    def test_list_features(self, client):
        response = client.get("/entitlements/features", params={"category": "career"})
        assert response.status_code == 200
        keys = [f["feature_key"] for f in response.json()["features"]]
        assert keys == ["careerAdvice", "careerConsultations", "interviewPrep"]

    def test_unexpected_fault(self, entitlements_service):
        entitlements_service.resolver.describe_user = AsyncMock(side_effect=RuntimeError("boom"))

        with TestClient(entitlements_service.app, raise_server_exceptions=False) as client:
            response = client.get("/entitlements/users/u1")

        assert response.status_code == 500
        assert response.json()["code"] == "INTERNAL_ERROR"
        assert response.json()["message"] == "Internal server error"

    def test_describe_user(self, client):
        client.put("/admin/users/u1/tier", json={"tier": "basic"}, headers=ADMIN)

        response = client.get("/entitlements/users/u1")

        assert response.status_code == 200
        assert response.json()["subscription_tier"] == "basic"
        assert response.json()["effective_tier"] == "basic"


class TestAdminRoutes:
    """Test cases for the admin surface."""

    @pytest.fixture
    def client(self, clock):
        config = EntitlementsConfig(service_name="entitlements", port=8011, admin_api_key="secret")
        service = EntitlementsService(config=config, store=MemoryStore(), clock=clock)
        with TestClient(service.app) as client:
            yield client

    def test_missing_admin_key(self, client):
        response = client.get("/admin/overrides")
        assert response.status_code == 401

    def test_wrong_admin_key(self, client):
        response = client.get("/admin/overrides", headers={"X-Admin-Key": "nope"})
        assert response.status_code == 403
        assert response.json()["code"] == "AUTHORIZATION_ERROR"

    def test_override_kill_switch(self, client):
        response = client.put(
            "/admin/overrides/workerPlacement",
            json={"forced_state": "disabled", "reason": "TEA Registration Required"},
            headers=ADMIN
        )
        assert response.status_code == 200
        assert response.json()["updated_by"] == "ops"

        decision = client.post(
            "/entitlements/resolve",
            json={"user_id": "u1", "category": "applications", "feature_key": "workerPlacement"}
        ).json()
        assert decision["reason_code"] == "OverrideDisabled"
        assert decision["message"] == "TEA Registration Required"

    def test_override_bad_state(self, client):
        response = client.put("/admin/overrides/search", json={"forced_state": "maybe"}, headers=ADMIN)
        assert response.status_code == 400

    def test_override_unknown_feature(self, client):
        response = client.put("/admin/overrides/teleport", json={"forced_state": "disabled"}, headers=ADMIN)
        assert response.status_code == 400

    def test_override_naive_until(self, client):
        response = client.put(
            "/admin/overrides/autoApply",
            json={"forced_state": "disabled", "effective_until": "2030-01-01T00:00:00"},
            headers=ADMIN
        )
        assert response.status_code == 200

        decision = client.post(
            "/entitlements/resolve",
            json={"user_id": "u1", "category": "applications", "feature_key": "autoApply"}
        )
        assert decision.status_code == 200
        assert decision.json()["reason_code"] == "OverrideDisabled"

    def test_override_naive_window(self, client):
        response = client.put(
            "/admin/overrides/autoApply",
            json={
                "forced_state": "disabled",
                "effective_from": "2024-01-01T00:00:00",
                "effective_until": "2030-01-01T00:00:00",
            },
            headers=ADMIN
        )
        assert response.status_code == 200

        decision = client.post(
            "/entitlements/resolve",
            json={"user_id": "u1", "category": "applications", "feature_key": "autoApply"}
        )
        assert decision.status_code == 200
        assert decision.json()["reason_code"] == "OverrideDisabled"

    def test_apply_preset_and_audit(self, client):
        response = client.post("/admin/overrides/presets/TEA_COMPLIANT", headers=ADMIN)
        assert response.status_code == 200
        assert len(response.json()["overrides"]) == 4

        audit = client.get("/admin/overrides/audit", headers=ADMIN).json()["entries"]
        assert len(audit) == 1
        assert audit[0]["preset"] == "TEA_COMPLIANT"

        info = client.get("/entitlements/features/jobPosting/maintenance").json()
        assert info["enabled"] is False
        assert info["expected_date"] == "2024-07-01"

    def test_unknown_preset(self, client):
        response = client.post("/admin/overrides/presets/CHAOS", headers=ADMIN)
        assert response.status_code == 400

    def test_admin_grant(self, client):
        response = client.post(
            "/admin/grants",
            json={"user_id": "u1", "tier": "premium", "duration_days": 14},
            headers=ADMIN
        )
        assert response.status_code == 201
        assert response.json()["source"] == "promo"

        decision = client.post(
            "/entitlements/resolve",
            json={"user_id": "u1", "category": "insights", "feature_key": "adFree"}
        ).json()
        assert decision["allowed"] is True

    def test_admin_grant_too_long(self, client):
        response = client.post(
            "/admin/grants",
            json={"user_id": "u1", "tier": "premium", "duration_days": 1000000000},
            headers=ADMIN
        )
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_milestone_increment_validation(self, client):
        response = client.post("/admin/milestone/increment", json={"by": 0}, headers=ADMIN)
        assert response.status_code == 400

    def test_milestone_unlock(self, client):
        response = client.post("/admin/milestone/increment", json={"by": 10000}, headers=ADMIN)
        assert response.json()["state"] == "UNLOCKED"

        decision = client.post(
            "/entitlements/resolve",
            json={"user_id": "u1", "category": "jobs", "feature_key": "search"}
        ).json()
        assert decision["allowed"] is True
