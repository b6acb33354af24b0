"""
Entitlements service: community unlock access decisions.
"""

import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from fastapi import Header, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import EntitlementsConfig, get_config
from shared.errors import AuthenticationError, AuthorizationError, ValidationError
from shared.logging import request_id_var

from .milestone.tracker import MilestoneTracker
from .overrides.store import OverrideStore
from .persistence import EntitlementStore, create_store
from .quota.tracker import QuotaTracker
from .referrals.ledger import ReferralLedger
from .referrals.policy import RewardPolicy
from .rules.engine import EntitlementResolver
from .rules.models import (
    DecisionResponse, FeatureRuleResponse, GrantCreateRequest, GrantResponse,
    MilestoneIncrementRequest, MilestoneStatusResponse, OverrideRequest, OverrideResponse,
    ReasonCode, ReferralRequest, ReferralResponse, ResolveRequest, TierUpdateRequest,
    UsageRequest, UsageResponse, UserEntitlementResponse, utc_now
)
from .rules.registry import FeatureRegistry, validate_identifier


class EntitlementsService(BaseService):
    """Entitlements service implementation."""

    def __init__(
        self,
        config: Optional[EntitlementsConfig] = None,
        store: Optional[EntitlementStore] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__("entitlements", 8011, config or get_config("entitlements", 8011))

        if self.config.feature_registry_file:
            self.registry = FeatureRegistry.from_file(self.config.feature_registry_file)
        else:
            self.registry = FeatureRegistry.default()

        self.store = store or create_store(self.config)
        self.milestone = MilestoneTracker(self.store, self.config.milestone_target, self.metrics)
        self.quotas = QuotaTracker(self.store, self.metrics, clock, self.config.quota_warning_threshold)
        self.overrides = OverrideStore(self.store, self.registry, self.metrics, clock)
        self.referrals = ReferralLedger(
            self.store,
            self.milestone,
            self.registry,
            RewardPolicy(
                boost=timedelta(days=self.config.referral_boost_days),
                bonus=timedelta(days=self.config.referral_bonus_days),
                bonus_threshold=self.config.referral_bonus_threshold,
            ),
            self.metrics,
            clock,
        )
        self.resolver = EntitlementResolver(
            self.registry, self.store, self.overrides, self.milestone, self.quotas, self.metrics, clock
        )

        self._setup_entitlements_routes()

    def _require_admin(self, admin_key: Optional[str], actor: Optional[str]) -> str:
        """Check the admin key and return the acting administrator."""
        if not admin_key:
            raise AuthenticationError("Admin key required")
        expected = self.config.admin_api_key
        if not expected or not secrets.compare_digest(admin_key.encode(), expected.encode()):
            raise AuthorizationError("Invalid admin key")
        return actor or "admin"

    def _setup_entitlements_routes(self):
        """Set up entitlements-specific routes."""

        @self.app.exception_handler(RequestValidationError)
        async def request_validation_handler(request: Request, exc: RequestValidationError):
            error = ValidationError("Malformed request", {"errors": jsonable_errors(exc)})
            self.metrics.record_error(error.code)
            return JSONResponse(
                status_code=error.status_code,
                content=error.to_response(request_id_var.get()).model_dump()
            )

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "entitlements",
                "message": "Community unlock entitlements service",
                "version": "1.0.0",
                "registry_version": self.registry.version,
                "storage": self.store.name
            }

        @self.app.post("/entitlements/resolve", response_model=DecisionResponse)
        async def resolve(request: ResolveRequest):
            """Decide whether a user may use a feature."""
            decision = await self.resolver.resolve(request.user_id, request.category, request.feature_key)
            body = DecisionResponse.from_decision(decision)
            if decision.reason_code == ReasonCode.STORAGE_UNAVAILABLE:
                return JSONResponse(status_code=503, content=body.model_dump(mode="json"))
            return body

        @self.app.post("/entitlements/usage", response_model=UsageResponse)
        async def record_usage(request: UsageRequest):
            """Consume one unit of a metered feature."""
            result, warning = await self.resolver.record_usage(request.user_id, request.feature_key)
            return UsageResponse(
                allowed=result.allowed,
                quota_remaining=result.remaining,
                limit=result.limit,
                resets_at=result.resets_at,
                warning=warning
            )

        @self.app.get("/entitlements/features")
        async def list_features(category: Optional[str] = Query(None, description="Filter by category")):
            """List the feature catalogue."""
            if category is not None:
                validate_identifier(category, "category")
            rules = self.registry.list_rules(category)
            return {
                "version": self.registry.version,
                "features": [FeatureRuleResponse.from_rule(r) for r in rules],
                "total": len(rules)
            }

        @self.app.get("/entitlements/features/{feature_key}/maintenance")
        async def maintenance_info(feature_key: str):
            """Maintenance notice for a feature."""
            validate_identifier(feature_key, "feature_key")
            self.registry.get_rule_by_key(feature_key)
            info = await self.overrides.maintenance_info(feature_key)
            return {"feature_key": feature_key, **info}

        @self.app.get("/entitlements/users/{user_id}", response_model=UserEntitlementResponse)
        async def describe_user(user_id: str):
            """Effective tier and active grants for a user."""
            info = await self.resolver.describe_user(user_id)
            return UserEntitlementResponse(
                user_id=info["user_id"],
                subscription_tier=info["subscription_tier"],
                effective_tier=info["effective_tier"],
                active_grants=[GrantResponse.from_grant(g) for g in info["active_grants"]]
            )

        @self.app.post("/referrals", response_model=ReferralResponse)
        async def record_referral(request: ReferralRequest, response: Response):
            """Record a referral; replays return the original grant."""
            outcome = await self.referrals.record(
                request.idempotency_key,
                request.referrer_id,
                request.referee_id,
                request.reward_tier
            )
            response.status_code = 201 if outcome.created else 200
            return ReferralResponse(
                grant=GrantResponse.from_grant(outcome.grant),
                created=outcome.created,
                referral_number=outcome.referral_number
            )

        @self.app.get("/referrals/{referrer_id}/count")
        async def referral_count(referrer_id: str):
            """Referrals credited to a user."""
            count = await self.referrals.referral_count(referrer_id)
            return {"referrer_id": referrer_id, "referral_count": count}

        @self.app.get("/milestone", response_model=MilestoneStatusResponse)
        async def milestone_status():
            """Community milestone progress."""
            status = await self.milestone.get_status()
            return MilestoneStatusResponse(**status.to_dict())

        # Admin routes

        @self.app.put("/admin/overrides/{feature_key}", response_model=OverrideResponse)
        async def set_override(
            feature_key: str,
            request: OverrideRequest,
            x_admin_key: Optional[str] = Header(None),
            x_admin_actor: Optional[str] = Header(None)
        ):
            """Force a feature on or off."""
            actor = self._require_admin(x_admin_key, x_admin_actor)
            override = await self.overrides.set_override(
                feature_key,
                request.forced_state,
                actor,
                reason=request.reason,
                message=request.message,
                expected_date=request.expected_date,
                effective_from=request.effective_from,
                effective_until=request.effective_until
            )
            return OverrideResponse.from_override(override)

        @self.app.get("/admin/overrides")
        async def list_overrides(
            x_admin_key: Optional[str] = Header(None),
            x_admin_actor: Optional[str] = Header(None)
        ):
            """List stored overrides."""
            self._require_admin(x_admin_key, x_admin_actor)
            overrides = await self.overrides.list_overrides()
            return {"overrides": [OverrideResponse.from_override(o) for o in overrides]}

        @self.app.get("/admin/overrides/audit")
        async def override_audit(
            limit: int = Query(50, ge=1, le=500, description="Entries to return"),
            x_admin_key: Optional[str] = Header(None),
            x_admin_actor: Optional[str] = Header(None)
        ):
            """Most recent override writes first."""
            self._require_admin(x_admin_key, x_admin_actor)
            entries = await self.overrides.list_audit(limit)
            return {
                "entries": [
                    {
                        "action": e.action,
                        "actor": e.actor,
                        "feature_keys": list(e.feature_keys),
                        "preset": e.preset,
                        "created_at": e.created_at.isoformat()
                    }
                    for e in entries
                ]
            }

        @self.app.post("/admin/overrides/presets/{preset}")
        async def apply_preset(
            preset: str,
            x_admin_key: Optional[str] = Header(None),
            x_admin_actor: Optional[str] = Header(None)
        ):
            """Apply a named maintenance preset."""
            actor = self._require_admin(x_admin_key, x_admin_actor)
            overrides = await self.overrides.apply_preset(preset, actor)
            return {"preset": preset, "overrides": [OverrideResponse.from_override(o) for o in overrides]}

        @self.app.put("/admin/users/{user_id}/tier", response_model=UserEntitlementResponse)
        async def set_tier(
            user_id: str,
            request: TierUpdateRequest,
            x_admin_key: Optional[str] = Header(None),
            x_admin_actor: Optional[str] = Header(None)
        ):
            """Sync a user's subscription tier from billing."""
            self._require_admin(x_admin_key, x_admin_actor)
            await self.resolver.set_subscription_tier(user_id, request.tier)
            info = await self.resolver.describe_user(user_id)
            return UserEntitlementResponse(
                user_id=info["user_id"],
                subscription_tier=info["subscription_tier"],
                effective_tier=info["effective_tier"],
                active_grants=[GrantResponse.from_grant(g) for g in info["active_grants"]]
            )

        @self.app.post("/admin/grants", response_model=GrantResponse, status_code=201)
        async def create_grant(
            request: GrantCreateRequest,
            x_admin_key: Optional[str] = Header(None),
            x_admin_actor: Optional[str] = Header(None)
        ):
            """Issue a promo or admin grant."""
            self._require_admin(x_admin_key, x_admin_actor)
            grant = await self.referrals.issue_grant(
                request.user_id,
                timedelta(days=request.duration_days),
                source=request.source,
                tier=request.tier,
                feature_key=request.feature_key
            )
            return GrantResponse.from_grant(grant)

        @self.app.post("/admin/milestone/increment", response_model=MilestoneStatusResponse)
        async def increment_milestone(
            request: MilestoneIncrementRequest,
            x_admin_key: Optional[str] = Header(None),
            x_admin_actor: Optional[str] = Header(None)
        ):
            """Count new paying subscribers toward the milestone."""
            self._require_admin(x_admin_key, x_admin_actor)
            await self.milestone.increment(request.by)
            status = await self.milestone.get_status()
            return MilestoneStatusResponse(**status.to_dict())

    async def _check_dependencies(self):
        """Check storage health."""
        healthy = await self.store.health_check()
        return {self.store.name: "ok" if healthy else "error"}

    async def start(self):
        """Start entitlements service components."""
        await self.store.start()
        status = await self.milestone.get_status()
        self.metrics.set_gauge("milestone_current_count", status.current_count)

        self.logger.info(
            "Entitlements service started",
            storage=self.store.name,
            features=len(self.registry),
            registry_version=self.registry.version,
            milestone=status.current_count
        )

    async def stop(self):
        """Stop entitlements service components."""
        await self.store.stop()
        self.logger.info("Entitlements service stopped")


def jsonable_errors(exc: RequestValidationError):
    return [
        {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg", "")}
        for error in exc.errors()
    ]


def create_app():
    """Create entitlements service application."""
    service = EntitlementsService()
    return service.app


if __name__ == "__main__":
    service = EntitlementsService()
    service.run()
