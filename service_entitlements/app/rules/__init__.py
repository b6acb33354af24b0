"""
Feature rules package.

Holds the closed feature catalogue and the resolver that turns a
(user, category, feature) request into an allow/deny decision with a
reason code and a call to action.

Modules of interest:
- models: Domain dataclasses and API request/response models.
- catalog: Built-in feature catalogue.
- registry: Immutable, validated rule lookup.
- engine: Ordered resolution of overrides, rules, milestone, tier and quota.
"""
