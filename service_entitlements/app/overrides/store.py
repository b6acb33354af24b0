"""
Administrator overrides: per-feature kill switches and force-enables.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from shared.errors import ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..persistence.base import EntitlementStore
from ..rules.models import ForcedState, Override, OverrideAuditEntry, as_utc, utc_now
from ..rules.registry import FeatureRegistry, validate_identifier, validate_user_id
from .presets import DEFAULT_MESSAGE, DEFAULT_REASON, PRESETS, notice_for


class OverrideStore:
    """Validated, audited access to the override table."""

    def __init__(
        self,
        store: EntitlementStore,
        registry: FeatureRegistry,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.registry = registry
        self.metrics = metrics
        self.clock = clock
        self.logger = get_logger("entitlements.overrides")

    async def get_override(self, feature_key: str, now: Optional[datetime] = None) -> Optional[Override]:
        """Override in force for ``feature_key`` at ``now``, if any."""
        override = await self.store.get_override(feature_key)
        if override is None or not override.is_effective(as_utc(now) if now is not None else self.clock()):
            return None
        return override

    async def set_override(
        self,
        feature_key: str,
        forced_state: ForcedState,
        actor: str,
        reason: str = "",
        message: Optional[str] = None,
        expected_date: Optional[str] = None,
        effective_from: Optional[datetime] = None,
        effective_until: Optional[datetime] = None,
    ) -> Override:
        """Write one override and its audit entry."""
        self._check_feature(feature_key)
        validate_user_id(actor, "actor")
        try:
            forced_state = ForcedState(forced_state)
        except ValueError:
            raise ValidationError("Unknown override state", {"forced_state": str(forced_state)})

        now = self.clock()
        effective_from = as_utc(effective_from) if effective_from is not None else now
        if effective_until is not None:
            effective_until = as_utc(effective_until)
        if effective_until is not None and effective_until <= effective_from:
            raise ValidationError(
                "effective_until must be after effective_from",
                {"feature_key": feature_key}
            )

        override = Override(
            feature_key=feature_key,
            forced_state=forced_state,
            reason=reason or "",
            effective_from=effective_from,
            effective_until=effective_until,
            message=message,
            expected_date=expected_date,
            updated_by=actor,
            updated_at=now,
        )
        audit = OverrideAuditEntry(
            action=f"set:{forced_state.value}",
            actor=actor,
            feature_keys=[feature_key],
            created_at=now,
        )
        await self.store.put_overrides([override], audit)

        self.logger.warning(
            "Override set",
            feature_key=feature_key,
            forced_state=forced_state.value,
            actor=actor,
            reason=reason
        )
        self._observe("set")
        return override

    async def apply_preset(self, name: str, actor: str) -> List[Override]:
        """Apply a named maintenance preset as one atomic write."""
        preset = PRESETS.get(name)
        if preset is None:
            raise ValidationError("Unknown preset", {"preset": name, "available": sorted(PRESETS)})
        validate_user_id(actor, "actor")

        now = self.clock()
        overrides = []
        for feature_key, available in sorted(preset.items()):
            self._check_feature(feature_key)
            notice = notice_for(feature_key)
            overrides.append(Override(
                feature_key=feature_key,
                forced_state=ForcedState.UNSET if available else ForcedState.DISABLED,
                reason="" if available else notice.reason,
                effective_from=now,
                message=None if available else notice.message,
                expected_date=None if available else notice.expected_date,
                updated_by=actor,
                updated_at=now,
            ))

        audit = OverrideAuditEntry(
            action="preset",
            actor=actor,
            feature_keys=[o.feature_key for o in overrides],
            created_at=now,
            preset=name,
        )
        await self.store.put_overrides(overrides, audit)

        self.logger.warning(
            "Override preset applied",
            preset=name,
            actor=actor,
            disabled=[o.feature_key for o in overrides if o.forced_state == ForcedState.DISABLED]
        )
        self._observe("preset")
        return overrides

    async def list_overrides(self) -> List[Override]:
        overrides = await self.store.list_overrides()
        return sorted(overrides, key=lambda o: o.feature_key)

    async def list_audit(self, limit: int = 50) -> List[OverrideAuditEntry]:
        return await self.store.list_override_audit(limit)

    async def maintenance_info(self, feature_key: str) -> Dict[str, Any]:
        """Availability and maintenance notice for a feature."""
        override = await self.get_override(feature_key)
        if override is None or override.forced_state != ForcedState.DISABLED:
            return {"enabled": True, "message": None, "reason": None, "expected_date": None}
        return {
            "enabled": False,
            "message": override.message or DEFAULT_MESSAGE,
            "reason": override.reason or DEFAULT_REASON,
            "expected_date": override.expected_date,
        }

    def _check_feature(self, feature_key: str):
        validate_identifier(feature_key, "feature_key")
        if not self.registry.has_feature_key(feature_key):
            raise ValidationError("Unknown feature key", {"feature_key": feature_key})

    def _observe(self, action: str):
        if self.metrics:
            self.metrics.increment_counter("override_writes_total", action=action)
