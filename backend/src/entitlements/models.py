"""
Entitlement value objects.

Provides:
- CapabilitySet: resolved, enumerable snapshot of what a tenant may use now
- DenialReason: machine-readable reason for a denied consume
- ConsumeDecision: result of EntitlementResolver.check_and_consume()
- build_capability_set(): pure union of tier and add-on capabilities

All value objects are frozen dataclasses. Immutable, safe to cache and share
across threads.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from src.config.billing_config import BillingConfig
from src.entitlements.features import (
    FEATURE_CATALOG_VERSION,
    FEATURE_RULES,
    Feature,
    FeatureSource,
    tier_grants,
)



class CapabilitySource(str, Enum):
    """Where a CapabilitySet came from."""
    COMPUTED = "computed"
    CACHE = "cache"


# ---------------------------------------------------------------------------
# Value objects (frozen dataclasses)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CapabilitySet:
    """
    Fully resolved capability snapshot for one tenant.

    tier_level 0 means no active tier ownership. Add-on fields describe the
    subscription even when it is not entitled; addon_entitled says whether
    it contributes capabilities.
    """
    tenant_id: str
    tier_level: int
    tier_name: Optional[str]
    features: FrozenSet[Feature]
    limits: Mapping[Feature, Optional[int]]
    max_customers: Optional[int]
    recipe_catalog_size: int
    meal_type_count: int
    analytics_level: str
    export_formats: Tuple[str, ...]
    addon_level: Optional[int] = None
    addon_status: Optional[str] = None
    addon_entitled: bool = False
    pending_downgrade_tier: Optional[int] = None
    catalog_version: int = FEATURE_CATALOG_VERSION
    config_version: str = ""
    resolved_at: Optional[str] = None
    source: str = CapabilitySource.COMPUTED.value

    def has(self, feature: Feature) -> bool:
        return feature in self.features

    def limit_for(self, feature: Feature) -> Optional[int]:
        """Per-period limit for a metered feature; None means unlimited."""
        return self.limits.get(feature)

    def with_source(self, source: CapabilitySource) -> "CapabilitySet":
        data = self.to_dict()
        data["source"] = source.value
        return CapabilitySet.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "tier_level": self.tier_level,
            "tier_name": self.tier_name,
            "features": sorted(f.value for f in self.features),
            "limits": {f.value: v for f, v in sorted(self.limits.items(), key=lambda kv: kv[0].value)},
            "max_customers": self.max_customers,
            "recipe_catalog_size": self.recipe_catalog_size,
            "meal_type_count": self.meal_type_count,
            "analytics_level": self.analytics_level,
            "export_formats": list(self.export_formats),
            "addon_level": self.addon_level,
            "addon_status": self.addon_status,
            "addon_entitled": self.addon_entitled,
            "pending_downgrade_tier": self.pending_downgrade_tier,
            "catalog_version": self.catalog_version,
            "config_version": self.config_version,
            "resolved_at": self.resolved_at,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CapabilitySet":
        return cls(
            tenant_id=data["tenant_id"],
            tier_level=data["tier_level"],
            tier_name=data.get("tier_name"),
            features=frozenset(Feature(f) for f in data.get("features", [])),
            limits={Feature(k): v for k, v in data.get("limits", {}).items()},
            max_customers=data.get("max_customers"),
            recipe_catalog_size=data.get("recipe_catalog_size", 0),
            meal_type_count=data.get("meal_type_count", 0),
            analytics_level=data.get("analytics_level", "none"),
            export_formats=tuple(data.get("export_formats", ())),
            addon_level=data.get("addon_level"),
            addon_status=data.get("addon_status"),
            addon_entitled=data.get("addon_entitled", False),
            pending_downgrade_tier=data.get("pending_downgrade_tier"),
            catalog_version=data.get("catalog_version", FEATURE_CATALOG_VERSION),
            config_version=data.get("config_version", ""),
            resolved_at=data.get("resolved_at"),
            source=data.get("source", CapabilitySource.COMPUTED.value),
        )


class DenialReason(str, Enum):
    TIER_INSUFFICIENT = "tier_insufficient"
    USAGE_LIMIT_EXCEEDED = "usage_limit_exceeded"
    TRANSIENT_STORE_FAILURE = "transient_store_failure"


@dataclass(frozen=True)
class ConsumeDecision:
    """
    Allow/deny for one consume call.

    Denials are values, not exceptions; the HTTP layer decides how to render
    them. warning_level is the highest crossed soft-warning threshold
    (percent), computed from new_count.
    """
    allowed: bool
    feature: Feature
    reason: Optional[DenialReason] = None
    new_count: Optional[int] = None
    limit: Optional[int] = None
    warning_level: Optional[int] = None
    period: Optional[str] = None
    required_tier: Optional[int] = None
    requires_addon: bool = False
    current_tier: int = 0

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(0, self.limit - (self.new_count or 0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "feature": self.feature.value,
            "reason": self.reason.value if self.reason else None,
            "count": self.new_count,
            "limit": self.limit,
            "remaining": self.remaining,
            "warning_level": self.warning_level,
            "period": self.period,
            "required_tier": self.required_tier,
            "requires_addon": self.requires_addon,
            "current_tier": self.current_tier,
        }


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BillingSnapshot:
    """Plain copy of the billing rows a capability set is computed from."""
    tenant_id: str
    tenant_active: bool = True
    tier_level: Optional[int] = None
    tier_active: bool = False
    pending_downgrade_tier: Optional[int] = None
    addon_level: Optional[int] = None
    addon_status: Optional[str] = None
    addon_entitled: bool = False
    addon_usage_limit: Optional[int] = None


def build_capability_set(
    snapshot: BillingSnapshot,
    config: BillingConfig,
    resolved_at: Optional[datetime] = None,
) -> CapabilitySet:
    """
    Union of base-tier capabilities and entitled add-on capabilities.

    Pure: no I/O, no side effects. A non-entitled add-on contributes nothing
    and never reduces base-tier capability.
    """
    features = set()
    limits: Dict[Feature, Optional[int]] = {}

    tier_level = 0
    plan = None
    if snapshot.tenant_active and snapshot.tier_active and snapshot.tier_level:
        plan = config.get_tier(snapshot.tier_level)
        tier_level = plan.level

    if plan is not None:
        for feature, rule in FEATURE_RULES.items():
            if rule.source != FeatureSource.TIER:
                continue
            if tier_grants(plan, feature):
                features.add(feature)
                if rule.monthly_limit is not None:
                    limits[feature] = rule.monthly_limit(plan)
                elif rule.tracks_usage:
                    limits[feature] = None

    addon_entitled = bool(snapshot.tenant_active and snapshot.addon_entitled)
    if addon_entitled:
        features.add(Feature.AI_GENERATION)
        limits[Feature.AI_GENERATION] = snapshot.addon_usage_limit

    return CapabilitySet(
        tenant_id=snapshot.tenant_id,
        tier_level=tier_level,
        tier_name=plan.name if plan else None,
        features=frozenset(features),
        limits=limits,
        max_customers=plan.max_customers if plan else 0,
        recipe_catalog_size=plan.recipe_catalog_size if plan else 0,
        meal_type_count=plan.meal_type_count if plan else 0,
        analytics_level=plan.analytics_level if plan else "none",
        export_formats=plan.export_formats if plan else (),
        addon_level=snapshot.addon_level,
        addon_status=snapshot.addon_status,
        addon_entitled=addon_entitled,
        pending_downgrade_tier=snapshot.pending_downgrade_tier if plan else None,
        config_version=config.catalog_version,
        resolved_at=resolved_at.isoformat() if resolved_at else None,
    )
