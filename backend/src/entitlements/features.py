"""
Feature catalog: the closed, versioned set of gated features.

Each Feature maps to exactly one FeatureRule in FEATURE_RULES. The rule says
whether the feature is a boolean capability or a metered one, whether it
comes from the purchased tier or the add-on, and how a tier plan grants it.
Adding a feature means adding an enum member and a rule; bump
FEATURE_CATALOG_VERSION when the mapping changes so cached capability sets
from the old catalog are ignored.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from src.config.billing_config import BillingConfig, TierPlan

FEATURE_CATALOG_VERSION = 1


class Feature(str, Enum):
    """Closed enumeration of gated features."""
    # Metered
    MEAL_PLAN_GENERATION = "meal_plan_generation"
    AI_GENERATION = "ai_generation"

    # Boolean
    ANALYTICS_BASIC = "analytics_basic"
    ANALYTICS_ADVANCED = "analytics_advanced"
    EXPORT_PDF = "export_pdf"
    EXPORT_CSV = "export_csv"
    EXPORT_EXCEL = "export_excel"
    CUSTOM_BRANDING = "custom_branding"
    WHITE_LABEL = "white_label"
    API_ACCESS = "api_access"

    @classmethod
    def parse(cls, value: str) -> "Feature":
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown feature: {value}") from None


class FeatureKind(str, Enum):
    BOOLEAN = "boolean"
    METERED = "metered"


class FeatureSource(str, Enum):
    TIER = "tier"
    ADDON = "addon"


@dataclass(frozen=True)
class FeatureRule:
    """
    How a feature is granted.

    grants: predicate over a TierPlan (tier features only).
    monthly_limit: reads the per-period limit from a TierPlan (metered tier
        features). Add-on features take their limit from the add-on plan.
    tracks_usage: boolean features that still record consumption through an
        unlimited counter (exports, for analytics).
    """
    feature: Feature
    kind: FeatureKind
    source: FeatureSource
    grants: Optional[Callable[[TierPlan], bool]] = None
    monthly_limit: Optional[Callable[[TierPlan], Optional[int]]] = None
    tracks_usage: bool = False

    @property
    def is_metered(self) -> bool:
        return self.kind == FeatureKind.METERED

    @property
    def counts_usage(self) -> bool:
        return self.is_metered or self.tracks_usage


def _analytics_at_least(level: str) -> Callable[[TierPlan], bool]:
    order = ("none", "basic", "advanced")
    return lambda plan: order.index(plan.analytics_level) >= order.index(level)


def _exports(fmt: str) -> Callable[[TierPlan], bool]:
    return lambda plan: fmt in plan.export_formats


FEATURE_RULES: Dict[Feature, FeatureRule] = {
    Feature.MEAL_PLAN_GENERATION: FeatureRule(
        feature=Feature.MEAL_PLAN_GENERATION,
        kind=FeatureKind.METERED,
        source=FeatureSource.TIER,
        grants=lambda plan: plan.meal_plans_per_month is None or plan.meal_plans_per_month > 0,
        monthly_limit=lambda plan: plan.meal_plans_per_month,
    ),
    Feature.AI_GENERATION: FeatureRule(
        feature=Feature.AI_GENERATION,
        kind=FeatureKind.METERED,
        source=FeatureSource.ADDON,
    ),
    Feature.ANALYTICS_BASIC: FeatureRule(
        feature=Feature.ANALYTICS_BASIC,
        kind=FeatureKind.BOOLEAN,
        source=FeatureSource.TIER,
        grants=_analytics_at_least("basic"),
    ),
    Feature.ANALYTICS_ADVANCED: FeatureRule(
        feature=Feature.ANALYTICS_ADVANCED,
        kind=FeatureKind.BOOLEAN,
        source=FeatureSource.TIER,
        grants=_analytics_at_least("advanced"),
    ),
    Feature.EXPORT_PDF: FeatureRule(
        feature=Feature.EXPORT_PDF,
        kind=FeatureKind.BOOLEAN,
        source=FeatureSource.TIER,
        grants=_exports("pdf"),
        tracks_usage=True,
    ),
    Feature.EXPORT_CSV: FeatureRule(
        feature=Feature.EXPORT_CSV,
        kind=FeatureKind.BOOLEAN,
        source=FeatureSource.TIER,
        grants=_exports("csv"),
        tracks_usage=True,
    ),
    Feature.EXPORT_EXCEL: FeatureRule(
        feature=Feature.EXPORT_EXCEL,
        kind=FeatureKind.BOOLEAN,
        source=FeatureSource.TIER,
        grants=_exports("excel"),
        tracks_usage=True,
    ),
    Feature.CUSTOM_BRANDING: FeatureRule(
        feature=Feature.CUSTOM_BRANDING,
        kind=FeatureKind.BOOLEAN,
        source=FeatureSource.TIER,
        grants=lambda plan: plan.custom_branding,
    ),
    Feature.WHITE_LABEL: FeatureRule(
        feature=Feature.WHITE_LABEL,
        kind=FeatureKind.BOOLEAN,
        source=FeatureSource.TIER,
        grants=lambda plan: plan.white_label,
    ),
    Feature.API_ACCESS: FeatureRule(
        feature=Feature.API_ACCESS,
        kind=FeatureKind.BOOLEAN,
        source=FeatureSource.TIER,
        grants=lambda plan: plan.api_access,
    ),
}


def get_rule(feature: Feature) -> FeatureRule:
    return FEATURE_RULES[feature]


def tier_grants(plan: TierPlan, feature: Feature) -> bool:
    """Whether a tier plan grants a tier-sourced feature."""
    rule = FEATURE_RULES[feature]
    if rule.source != FeatureSource.TIER or rule.grants is None:
        return False
    return bool(rule.grants(plan))


def required_tier(config: BillingConfig, feature: Feature) -> Optional[int]:
    """Lowest tier level that grants the feature, None for add-on features."""
    for level in sorted(config.tiers):
        if tier_grants(config.tiers[level], feature):
            return level
    return None
