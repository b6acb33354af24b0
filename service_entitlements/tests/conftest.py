"""
Shared fixtures for Entitlements service tests.
"""

from datetime import datetime, timedelta, timezone

import pytest
from prometheus_client import CollectorRegistry

from shared.metrics import MetricsCollector
from service_entitlements.app.milestone.tracker import MilestoneTracker
from service_entitlements.app.overrides.store import OverrideStore
from service_entitlements.app.persistence.memory import MemoryStore
from service_entitlements.app.quota.tracker import QuotaTracker
from service_entitlements.app.referrals.ledger import ReferralLedger
from service_entitlements.app.rules.engine import EntitlementResolver
from service_entitlements.app.rules.registry import FeatureRegistry


class FakeClock:
    """Controllable clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta):
        self.now = self.now + delta


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def registry():
    return FeatureRegistry.default()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def metrics():
    return MetricsCollector("entitlements", CollectorRegistry())


@pytest.fixture
def milestone(store, metrics):
    return MilestoneTracker(store, target=10000, metrics=metrics)


@pytest.fixture
def quotas(store, metrics, clock):
    return QuotaTracker(store, metrics, clock, warning_threshold=2)


@pytest.fixture
def overrides(store, registry, metrics, clock):
    return OverrideStore(store, registry, metrics, clock)


@pytest.fixture
def ledger(store, milestone, registry, metrics, clock):
    return ReferralLedger(store, milestone, registry, metrics=metrics, clock=clock)


@pytest.fixture
def resolver(registry, store, overrides, milestone, quotas, metrics, clock):
    return EntitlementResolver(registry, store, overrides, milestone, quotas, metrics, clock)
