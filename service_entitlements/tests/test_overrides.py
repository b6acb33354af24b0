"""
Unit tests for administrator overrides.
"""

from datetime import timedelta, timezone

import pytest

from shared.errors import ValidationError
from service_entitlements.app.overrides.presets import PRESETS
from service_entitlements.app.rules.models import ForcedState


class TestOverrideStore:
    """Test cases for OverrideStore."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, overrides):
        await overrides.set_override("search", ForcedState.DISABLED, "ops", reason="Provider outage")

        override = await overrides.get_override("search")
        assert override.forced_state == ForcedState.DISABLED
        assert override.reason == "Provider outage"
        assert override.updated_by == "ops"

    @pytest.mark.asyncio
    async def test_effective_window(self, overrides, clock):
        start = clock() + timedelta(hours=1)
        await overrides.set_override(
            "search", ForcedState.ENABLED, "ops",
            effective_from=start, effective_until=start + timedelta(hours=2)
        )

        assert await overrides.get_override("search") is None
        clock.advance(timedelta(hours=1))
        assert await overrides.get_override("search") is not None
        clock.advance(timedelta(hours=2))
        assert await overrides.get_override("search") is None

    @pytest.mark.asyncio
    async def test_unset_is_absent(self, overrides):
        await overrides.set_override("search", ForcedState.UNSET, "ops")
        assert await overrides.get_override("search") is None

    @pytest.mark.asyncio
    async def test_rejects_unknown_feature(self, overrides):
        with pytest.raises(ValidationError):
            await overrides.set_override("teleport", ForcedState.DISABLED, "ops")

    @pytest.mark.asyncio
    async def test_rejects_inverted_window(self, overrides, clock):
        with pytest.raises(ValidationError):
            await overrides.set_override(
                "search", ForcedState.DISABLED, "ops",
                effective_from=clock(), effective_until=clock() - timedelta(minutes=1)
            )
        assert await overrides.list_overrides() == []

    @pytest.mark.asyncio
    async def test_naive_window_is_utc(self, overrides, clock):
        start = (clock() + timedelta(hours=1)).replace(tzinfo=None)
        override = await overrides.set_override(
            "search", ForcedState.DISABLED, "ops",
            effective_from=start, effective_until=start + timedelta(hours=1)
        )

        assert override.effective_from == clock() + timedelta(hours=1)
        assert override.effective_until.tzinfo is not None
        assert await overrides.get_override("search") is None
        clock.advance(timedelta(hours=1))
        assert (await overrides.get_override("search")).forced_state == ForcedState.DISABLED

    @pytest.mark.asyncio
    async def test_naive_until_only(self, overrides, clock):
        until = (clock() + timedelta(hours=1)).replace(tzinfo=None)
        await overrides.set_override("search", ForcedState.DISABLED, "ops", effective_until=until)

        assert await overrides.get_override("search") is not None
        clock.advance(timedelta(hours=1))
        assert await overrides.get_override("search") is None

    @pytest.mark.asyncio
    async def test_offset_window_converted(self, overrides, clock):
        until = clock().astimezone(timezone(timedelta(hours=2))) + timedelta(hours=1)

        override = await overrides.set_override("search", ForcedState.ENABLED, "ops", effective_until=until)

        assert override.effective_until.utcoffset() == timedelta(0)
        assert override.effective_until == clock() + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_audit_trail(self, overrides):
        await overrides.set_override("search", ForcedState.DISABLED, "ops")
        await overrides.set_override("search", ForcedState.UNSET, "lead")

        audit = await overrides.list_audit()

        assert [(e.action, e.actor) for e in audit] == [("set:unset", "lead"), ("set:disabled", "ops")]
        assert audit[0].feature_keys == ["search"]


class TestPresets:
    """Test cases for maintenance presets."""

    @pytest.mark.asyncio
    async def test_development_disables_job_features(self, overrides):
        applied = await overrides.apply_preset("DEVELOPMENT", "ops")

        assert {o.feature_key for o in applied} == set(PRESETS["DEVELOPMENT"])
        for key in PRESETS["DEVELOPMENT"]:
            override = await overrides.get_override(key)
            assert override.forced_state == ForcedState.DISABLED
            assert override.message

    @pytest.mark.asyncio
    async def test_tea_compliant(self, overrides):
        await overrides.apply_preset("DEVELOPMENT", "ops")
        await overrides.apply_preset("TEA_COMPLIANT", "ops")

        assert await overrides.get_override("search") is None
        assert await overrides.get_override("jobApplications") is None
        posting = await overrides.get_override("jobPosting")
        assert posting.forced_state == ForcedState.DISABLED
        assert posting.reason == "Platform Development"

    @pytest.mark.asyncio
    async def test_single_audit_entry(self, overrides):
        await overrides.apply_preset("PREVIEW_MODE", "ops")

        audit = await overrides.list_audit()
        assert len(audit) == 1
        assert audit[0].preset == "PREVIEW_MODE"
        assert sorted(audit[0].feature_keys) == sorted(PRESETS["PREVIEW_MODE"])

    @pytest.mark.asyncio
    async def test_unknown_preset(self, overrides):
        with pytest.raises(ValidationError):
            await overrides.apply_preset("CHAOS", "ops")
        assert await overrides.list_audit() == []

    @pytest.mark.asyncio
    async def test_maintenance_info(self, overrides):
        assert (await overrides.maintenance_info("jobPosting"))["enabled"] is True

        await overrides.apply_preset("TEA_COMPLIANT", "ops")
        info = await overrides.maintenance_info("jobPosting")

        assert info == {
            "enabled": False,
            "message": "Employer job posting features are coming soon.",
            "reason": "Platform Development",
            "expected_date": "2024-07-01",
        }
