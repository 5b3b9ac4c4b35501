"""
Billing configuration loader.

Loads the tier price table, tier capability table, AI add-on plans, retry
schedule and warning thresholds from config/billing.yml into an immutable
BillingConfig value.

BillingConfig is passed explicitly into ProrationCalculator,
BillingStateMachine, UsageCounterStore and EntitlementResolver. Nothing in
the engine reads pricing or schedules from module globals, so tests can
inject alternate schedules with dataclasses.replace().

Usage:
    from src.config.billing_config import get_billing_config

    config = get_billing_config()
    price = config.tier_price_cents(2)
    offsets = config.retry_offsets_days
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILENAME = "billing.yml"
CONFIG_PATH_ENV = "BILLING_CONFIG_PATH"


@dataclass(frozen=True)
class TierPlan:
    """Capabilities and monthly reference price of a purchased tier (1-3)."""

    level: int
    name: str
    display_name: str
    price_cents: int
    max_customers: Optional[int]
    meal_plans_per_month: Optional[int]
    recipe_catalog_size: int
    meal_type_count: int
    analytics_level: str
    export_formats: Tuple[str, ...]
    custom_branding: bool = False
    white_label: bool = False
    api_access: bool = False


@dataclass(frozen=True)
class AddOnPlan:
    """Recurring AI generation add-on plan. usage_limit None means unlimited."""

    level: int
    name: str
    price_cents: int
    usage_limit: Optional[int]


def _default_tiers() -> Mapping[int, TierPlan]:
    tiers = {
        1: TierPlan(
            level=1,
            name="starter",
            display_name="Starter",
            price_cents=1900,
            max_customers=9,
            meal_plans_per_month=50,
            recipe_catalog_size=1000,
            meal_type_count=5,
            analytics_level="none",
            export_formats=("pdf",),
        ),
        2: TierPlan(
            level=2,
            name="professional",
            display_name="Professional",
            price_cents=4900,
            max_customers=20,
            meal_plans_per_month=200,
            recipe_catalog_size=2500,
            meal_type_count=10,
            analytics_level="basic",
            export_formats=("pdf", "csv"),
            custom_branding=True,
        ),
        3: TierPlan(
            level=3,
            name="enterprise",
            display_name="Enterprise",
            price_cents=9900,
            max_customers=None,
            meal_plans_per_month=500,
            recipe_catalog_size=4000,
            meal_type_count=17,
            analytics_level="advanced",
            export_formats=("pdf", "csv", "excel"),
            custom_branding=True,
            white_label=True,
            api_access=True,
        ),
    }
    return MappingProxyType(tiers)


def _default_addons() -> Mapping[int, AddOnPlan]:
    addons = {
        1: AddOnPlan(level=1, name="ai_starter", price_cents=1900, usage_limit=100),
        2: AddOnPlan(level=2, name="ai_professional", price_cents=3900, usage_limit=500),
        3: AddOnPlan(level=3, name="ai_enterprise", price_cents=7900, usage_limit=None),
    }
    return MappingProxyType(addons)


@dataclass(frozen=True)
class BillingConfig:
    """Immutable billing configuration."""

    tiers: Mapping[int, TierPlan] = field(default_factory=_default_tiers)
    addons: Mapping[int, AddOnPlan] = field(default_factory=_default_addons)
    currency: str = "usd"
    retry_offsets_days: Tuple[int, ...] = (3, 7, 14)
    warning_thresholds_percent: Tuple[int, ...] = (80, 90, 95)
    incomplete_window_hours: int = 23
    entitlement_cache_ttl_seconds: float = 5.0
    catalog_version: str = "2025.1"

    def __post_init__(self):
        if not self.tiers:
            raise ValueError("at least one tier must be configured")
        if sorted(self.retry_offsets_days) != list(self.retry_offsets_days):
            raise ValueError("retry_offsets_days must be ascending")
        if any(t <= 0 or t > 100 for t in self.warning_thresholds_percent):
            raise ValueError("warning thresholds must be within (0, 100]")
        if self.entitlement_cache_ttl_seconds < 0:
            raise ValueError("entitlement_cache_ttl_seconds cannot be negative")

    @property
    def max_tier_level(self) -> int:
        return max(self.tiers)

    def get_tier(self, level: int) -> TierPlan:
        try:
            return self.tiers[level]
        except KeyError:
            raise ValueError(f"Unknown tier level: {level}") from None

    def get_addon(self, level: int) -> AddOnPlan:
        try:
            return self.addons[level]
        except KeyError:
            raise ValueError(f"Unknown add-on level: {level}") from None

    def tier_price_cents(self, level: int) -> int:
        return self.get_tier(level).price_cents


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------

def _parse_tier(level: int, raw: Dict[str, Any]) -> TierPlan:
    return TierPlan(
        level=level,
        name=raw["name"],
        display_name=raw.get("display_name", raw["name"].title()),
        price_cents=int(raw["price_cents"]),
        max_customers=raw.get("max_customers"),
        meal_plans_per_month=raw.get("meal_plans_per_month"),
        recipe_catalog_size=int(raw.get("recipe_catalog_size", 0)),
        meal_type_count=int(raw.get("meal_type_count", 0)),
        analytics_level=raw.get("analytics_level", "none"),
        export_formats=tuple(raw.get("export_formats", ())),
        custom_branding=bool(raw.get("custom_branding", False)),
        white_label=bool(raw.get("white_label", False)),
        api_access=bool(raw.get("api_access", False)),
    )


def _parse_addon(level: int, raw: Dict[str, Any]) -> AddOnPlan:
    return AddOnPlan(
        level=level,
        name=raw["name"],
        price_cents=int(raw["price_cents"]),
        usage_limit=raw.get("usage_limit"),
    )


def billing_config_from_dict(raw: Dict[str, Any]) -> BillingConfig:
    """Build a BillingConfig from a parsed mapping; absent keys keep defaults."""
    kwargs: Dict[str, Any] = {}

    if raw.get("tiers"):
        kwargs["tiers"] = MappingProxyType({
            int(level): _parse_tier(int(level), body)
            for level, body in raw["tiers"].items()
        })
    if raw.get("addons"):
        kwargs["addons"] = MappingProxyType({
            int(level): _parse_addon(int(level), body)
            for level, body in raw["addons"].items()
        })

    billing = raw.get("billing", {})
    if "currency" in billing:
        kwargs["currency"] = billing["currency"]
    if "retry_offsets_days" in billing:
        kwargs["retry_offsets_days"] = tuple(int(d) for d in billing["retry_offsets_days"])
    if "warning_thresholds_percent" in billing:
        kwargs["warning_thresholds_percent"] = tuple(
            int(t) for t in billing["warning_thresholds_percent"]
        )
    if "incomplete_window_hours" in billing:
        kwargs["incomplete_window_hours"] = int(billing["incomplete_window_hours"])
    if "entitlement_cache_ttl_seconds" in billing:
        kwargs["entitlement_cache_ttl_seconds"] = float(billing["entitlement_cache_ttl_seconds"])
    if "catalog_version" in raw:
        kwargs["catalog_version"] = str(raw["catalog_version"])

    return BillingConfig(**kwargs)


def _resolve_path(config_path: Optional[str]) -> Optional[Path]:
    if config_path:
        return Path(config_path)
    env_path = os.getenv(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path)

    candidates = [
        # From backend/ directory (typical working dir)
        Path(__file__).resolve().parents[2] / "config" / DEFAULT_CONFIG_FILENAME,
        Path(os.getcwd()) / "config" / DEFAULT_CONFIG_FILENAME,
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def load_billing_config(config_path: Optional[str] = None) -> BillingConfig:
    """
    Load billing configuration from YAML.

    Falls back to the reference defaults when no file is found. A file
    that exists but fails to parse is an error, never silently ignored.
    """
    path = _resolve_path(config_path)
    if path is None:
        logger.info("No billing config file found, using reference defaults")
        return BillingConfig()

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    config = billing_config_from_dict(raw)
    logger.info("Billing config loaded", extra={
        "path": str(path),
        "tiers": len(config.tiers),
        "addons": len(config.addons),
        "catalog_version": config.catalog_version,
    })
    return config


_config: Optional[BillingConfig] = None
_config_lock = Lock()


def get_billing_config() -> BillingConfig:
    """Get the process-wide billing configuration (loaded once)."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:
                _config = load_billing_config()
    return _config


def reset_billing_config() -> None:
    """Drop the cached configuration (tests and config reloads)."""
    global _config
    with _config_lock:
        _config = None
