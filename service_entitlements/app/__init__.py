"""
Entitlements Service package for the community unlock access layer.

This package decides whether a user may use a gated feature. It provides:

- app.main: API surface for access decisions, referrals, the milestone and admin overrides.
- app.rules: Feature catalogue, registry and the entitlement resolver.
- app.quota: Fixed-window usage quotas for metered features.
- app.milestone: Global community subscriber counter.
- app.referrals: Idempotent referral ledger and reward grants.
- app.overrides: Administrator kill switches and maintenance presets.
- app.persistence: Memory, Redis and PostgreSQL storage backends.

Guidelines:
- Shared counters only change through the storage layer's atomic writes.
- Fail closed: a storage fault denies access rather than granting it.
"""
