"""
Tests for billing configuration loading.

Covers the reference defaults, YAML overrides, validation of schedules and
thresholds, and the process-wide singleton.
"""

import dataclasses

import pytest

from src.config.billing_config import (
    BillingConfig,
    billing_config_from_dict,
    get_billing_config,
    load_billing_config,
    reset_billing_config,
)


class TestReferenceDefaults:
    """Test the built-in price table."""

    def test_tier_prices(self):
        config = BillingConfig()
        assert [config.tier_price_cents(level) for level in (1, 2, 3)] == [1900, 4900, 9900]

    def test_customer_ceilings(self):
        config = BillingConfig()
        assert config.get_tier(1).max_customers == 9
        assert config.get_tier(2).max_customers == 20
        assert config.get_tier(3).max_customers is None

    def test_addon_limits(self):
        config = BillingConfig()
        assert config.get_addon(1).usage_limit == 100
        assert config.get_addon(2).usage_limit == 500
        assert config.get_addon(3).usage_limit is None

    def test_schedules(self):
        config = BillingConfig()
        assert config.retry_offsets_days == (3, 7, 14)
        assert config.warning_thresholds_percent == (80, 90, 95)
        assert config.max_tier_level == 3

    def test_unknown_levels_raise(self):
        config = BillingConfig()
        with pytest.raises(ValueError, match="Unknown tier level"):
            config.get_tier(7)
        with pytest.raises(ValueError, match="Unknown add-on level"):
            config.get_addon(0)

    def test_config_is_immutable(self):
        config = BillingConfig()
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.currency = "eur"


class TestValidation:
    """Test that broken schedules are rejected at construction."""

    def test_descending_retry_offsets_rejected(self):
        with pytest.raises(ValueError, match="ascending"):
            BillingConfig(retry_offsets_days=(7, 3, 14))

    def test_threshold_above_100_rejected(self):
        with pytest.raises(ValueError, match="thresholds"):
            BillingConfig(warning_thresholds_percent=(80, 120))

    def test_zero_threshold_rejected(self):
        with pytest.raises(ValueError, match="thresholds"):
            BillingConfig(warning_thresholds_percent=(0,))

    def test_negative_ttl_rejected(self):
        with pytest.raises(ValueError, match="negative"):
            BillingConfig(entitlement_cache_ttl_seconds=-1)

    def test_empty_tier_table_rejected(self):
        with pytest.raises(ValueError, match="tier"):
            BillingConfig(tiers={})

    def test_replace_injects_alternate_schedule(self):
        config = dataclasses.replace(BillingConfig(), retry_offsets_days=(1, 2))
        assert config.retry_offsets_days == (1, 2)


class TestYamlLoading:
    """Test loading config/billing.yml style files."""

    def test_loads_overrides(self, make_yaml_config):
        path = make_yaml_config("billing.yml", {
            "catalog_version": "2025.2",
            "billing": {
                "currency": "eur",
                "retry_offsets_days": [2, 5],
                "warning_thresholds_percent": [75, 100],
                "entitlement_cache_ttl_seconds": 2,
            },
            "addons": {
                1: {"name": "ai_small", "price_cents": 999, "usage_limit": 25},
            },
        })

        config = load_billing_config(str(path))

        assert config.currency == "eur"
        assert config.retry_offsets_days == (2, 5)
        assert config.warning_thresholds_percent == (75, 100)
        assert config.entitlement_cache_ttl_seconds == 2.0
        assert config.catalog_version == "2025.2"
        assert list(config.addons) == [1]
        assert config.get_addon(1).usage_limit == 25
        # Tiers absent from the file keep the reference table
        assert config.tier_price_cents(2) == 4900

    def test_loads_tier_table(self, make_yaml_config):
        path = make_yaml_config("tiers.yml", {
            "tiers": {
                1: {
                    "name": "solo",
                    "price_cents": 1000,
                    "max_customers": 3,
                    "meal_plans_per_month": 10,
                    "export_formats": ["pdf"],
                },
            },
        })

        config = load_billing_config(str(path))

        plan = config.get_tier(1)
        assert plan.name == "solo"
        assert plan.display_name == "Solo"
        assert plan.max_customers == 3
        assert plan.export_formats == ("pdf",)
        assert config.max_tier_level == 1

    def test_env_path_is_used(self, make_yaml_config, monkeypatch):
        path = make_yaml_config("env.yml", {"billing": {"currency": "gbp"}})
        monkeypatch.setenv("BILLING_CONFIG_PATH", str(path))

        assert load_billing_config().currency == "gbp"

    def test_empty_file_gives_defaults(self, temp_config_dir):
        path = temp_config_dir / "empty.yml"
        path.write_text("")
        assert load_billing_config(str(path)) == BillingConfig()

    def test_invalid_schedule_in_file_raises(self, make_yaml_config):
        path = make_yaml_config("bad.yml", {"billing": {"retry_offsets_days": [14, 3]}})
        with pytest.raises(ValueError):
            load_billing_config(str(path))

    def test_from_dict_without_keys_is_default(self):
        assert billing_config_from_dict({}) == BillingConfig()


class TestSingleton:
    """Test the process-wide accessor."""

    def test_loaded_once(self, make_yaml_config, monkeypatch):
        path = make_yaml_config("one.yml", {"billing": {"currency": "cad"}})
        monkeypatch.setenv("BILLING_CONFIG_PATH", str(path))

        first = get_billing_config()
        second = get_billing_config()

        assert first is second
        assert first.currency == "cad"

    def test_reset_reloads(self, make_yaml_config, monkeypatch):
        first = make_yaml_config("a.yml", {"billing": {"currency": "cad"}})
        monkeypatch.setenv("BILLING_CONFIG_PATH", str(first))
        assert get_billing_config().currency == "cad"

        second = make_yaml_config("b.yml", {"billing": {"currency": "aud"}})
        monkeypatch.setenv("BILLING_CONFIG_PATH", str(second))
        reset_billing_config()

        assert get_billing_config().currency == "aud"
