"""
Feature registry: the static, versioned table of feature rules.

The registry is built once at process start and never mutated afterwards,
so lookups need no locking.
"""

import re
from datetime import timedelta
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import yaml

from shared.errors import UnknownFeatureError, ValidationError
from shared.logging import get_logger
from .catalog import CATALOG_VERSION, FEATURE_CATALOG
from .models import FeatureCategory, FeatureRule, Tier

IDENTIFIER_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_\-]{0,63}$")
USER_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-.:@]{0,127}$")

_TIER_NAMES = {t.value for t in Tier}


def validate_identifier(value: Any, field_name: str) -> str:
    """Check a category or feature key before it reaches any state."""
    if not isinstance(value, str) or not IDENTIFIER_RE.match(value):
        raise ValidationError(
            f"Malformed {field_name}",
            {"field": field_name, "value": value if isinstance(value, str) else repr(value)}
        )
    return value


def validate_user_id(value: Any, field_name: str = "user_id") -> str:
    """Check a user identifier."""
    if not isinstance(value, str) or not USER_ID_RE.match(value):
        raise ValidationError(
            f"Malformed {field_name}",
            {"field": field_name}
        )
    return value


class FeatureRegistry:
    """Immutable lookup table of ``(category, feature_key) -> FeatureRule``."""

    def __init__(self, rules: Iterable[FeatureRule], version: str = CATALOG_VERSION):
        self.logger = get_logger("entitlements.registry")
        self.version = version

        by_pair: Dict[Tuple[str, str], FeatureRule] = {}
        by_key: Dict[str, FeatureRule] = {}
        for rule in rules:
            self._validate_rule(rule)
            pair = (rule.category.value, rule.feature_key)
            if pair in by_pair:
                raise ValidationError("Duplicate feature rule", {"category": pair[0], "feature_key": pair[1]})
            if rule.feature_key in by_key:
                # Overrides and quota counters are keyed by feature key alone.
                raise ValidationError(
                    "Feature key registered under more than one category",
                    {"feature_key": rule.feature_key}
                )
            by_pair[pair] = rule
            by_key[rule.feature_key] = rule

        self._rules: Mapping[Tuple[str, str], FeatureRule] = MappingProxyType(by_pair)
        self._by_key: Mapping[str, FeatureRule] = MappingProxyType(by_key)

        self.logger.info("Feature registry loaded", version=version, rules=len(by_pair))

    @staticmethod
    def _validate_rule(rule: FeatureRule):
        validate_identifier(rule.feature_key, "feature_key")
        if not isinstance(rule.category, FeatureCategory):
            raise ValidationError("Unknown category", {"category": str(rule.category)})
        if not isinstance(rule.min_tier, Tier):
            raise ValidationError("Unknown tier", {"feature_key": rule.feature_key})
        if rule.feature_key in _TIER_NAMES:
            raise ValidationError("Feature key collides with a tier name", {"feature_key": rule.feature_key})
        if (rule.quota_limit is None) != (rule.quota_window is None):
            raise ValidationError(
                "quota_limit and quota_window must be set together",
                {"feature_key": rule.feature_key}
            )
        if rule.quota_limit is not None and rule.quota_limit <= 0:
            raise ValidationError("quota_limit must be positive", {"feature_key": rule.feature_key})
        if rule.quota_window is not None and rule.quota_window <= timedelta(0):
            raise ValidationError("quota_window must be positive", {"feature_key": rule.feature_key})
        if rule.quota_limits_by_tier and not rule.metered:
            raise ValidationError("Per-tier limits need a base quota", {"feature_key": rule.feature_key})
        for tier, limit in rule.quota_limits_by_tier.items():
            if not isinstance(tier, Tier) or (limit is not None and limit <= 0):
                raise ValidationError("Invalid per-tier quota", {"feature_key": rule.feature_key})

    def get_rule(self, category: str, feature_key: str) -> FeatureRule:
        """Return the rule for a pair or raise ``UnknownFeatureError``."""
        rule = self._rules.get((category, feature_key))
        if rule is None:
            raise UnknownFeatureError(category, feature_key)
        return rule

    def get_rule_by_key(self, feature_key: str) -> FeatureRule:
        rule = self._by_key.get(feature_key)
        if rule is None:
            raise UnknownFeatureError("*", feature_key)
        return rule

    def has_feature_key(self, feature_key: str) -> bool:
        return feature_key in self._by_key

    def list_rules(self, category: Optional[str] = None) -> List[FeatureRule]:
        rules = [r for r in self._rules.values() if category is None or r.category.value == category]
        return sorted(rules, key=lambda r: (r.category.value, r.feature_key))

    def __len__(self) -> int:
        return len(self._rules)

    @classmethod
    def default(cls) -> "FeatureRegistry":
        """Registry built from the built-in catalogue."""
        return cls(FEATURE_CATALOG, CATALOG_VERSION)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "FeatureRegistry":
        """Load a registry from a YAML catalogue file."""
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict) or not isinstance(data.get("features"), list):
            raise ValidationError("Feature catalogue must contain a 'features' list", {"path": str(path)})

        rules = [_rule_from_dict(entry) for entry in data["features"]]
        return cls(rules, str(data.get("version", "file")))


def _rule_from_dict(entry: Dict[str, Any]) -> FeatureRule:
    try:
        window_seconds = entry.get("quota_window_seconds")
        limits_by_tier = {
            Tier(tier): limit for tier, limit in (entry.get("quota_limits_by_tier") or {}).items()
        }
        return FeatureRule(
            category=FeatureCategory(entry["category"]),
            feature_key=entry["feature_key"],
            title=entry.get("title"),
            min_tier=Tier(entry.get("min_tier", Tier.FREE.value)),
            community_gated=bool(entry.get("community_gated", False)),
            quota_limit=entry.get("quota_limit"),
            quota_window=timedelta(seconds=window_seconds) if window_seconds is not None else None,
            quota_limits_by_tier=limits_by_tier,
        )
    except (KeyError, ValueError, TypeError) as e:
        raise ValidationError("Malformed feature catalogue entry", {"entry": repr(entry), "error": str(e)})
