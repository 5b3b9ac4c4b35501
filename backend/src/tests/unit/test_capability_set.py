"""
Unit tests for capability resolution value objects and the entitlement cache.

Tests cover:
- build_capability_set(): tier table mapping, add-on union, inactive states
- CapabilitySet serialization (cache payload)
- EntitlementCache: TTL expiry, explicit invalidation, invalidate-on-commit
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from src.config.billing_config import BillingConfig
from src.entitlements.cache import EntitlementCache, InMemoryCache
from src.entitlements.features import Feature, required_tier
from src.entitlements.models import (
    BillingSnapshot,
    CapabilitySet,
    CapabilitySource,
    ConsumeDecision,
    DenialReason,
    build_capability_set,
)

RESOLVED_AT = datetime(2025, 1, 9, 12, 0, tzinfo=timezone.utc)


def snapshot(**overrides) -> BillingSnapshot:
    values = {"tenant_id": "tenant-a", "tier_level": 1, "tier_active": True}
    values.update(overrides)
    return BillingSnapshot(**values)


class FakeMonotonic:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# build_capability_set
# ---------------------------------------------------------------------------

class TestBuildCapabilitySet:
    """Test the union of tier and add-on capabilities."""

    @pytest.fixture
    def config(self):
        return BillingConfig()

    def test_starter_tier(self, config):
        caps = build_capability_set(snapshot(tier_level=1), config, RESOLVED_AT)

        assert caps.tier_level == 1
        assert caps.tier_name == "starter"
        assert caps.max_customers == 9
        assert caps.has(Feature.MEAL_PLAN_GENERATION)
        assert caps.limit_for(Feature.MEAL_PLAN_GENERATION) == 50
        assert caps.has(Feature.EXPORT_PDF)
        assert not caps.has(Feature.EXPORT_CSV)
        assert not caps.has(Feature.ANALYTICS_BASIC)
        assert not caps.has(Feature.AI_GENERATION)
        assert caps.resolved_at == RESOLVED_AT.isoformat()

    def test_professional_tier(self, config):
        caps = build_capability_set(snapshot(tier_level=2), config)

        assert caps.max_customers == 20
        assert caps.has(Feature.ANALYTICS_BASIC)
        assert not caps.has(Feature.ANALYTICS_ADVANCED)
        assert caps.has(Feature.CUSTOM_BRANDING)
        assert caps.export_formats == ("pdf", "csv")

    def test_enterprise_tier_is_unlimited_roster(self, config):
        caps = build_capability_set(snapshot(tier_level=3), config)

        assert caps.max_customers is None
        assert caps.has(Feature.WHITE_LABEL)
        assert caps.has(Feature.API_ACCESS)
        assert caps.has(Feature.EXPORT_EXCEL)

    def test_exports_track_usage_without_limit(self, config):
        caps = build_capability_set(snapshot(tier_level=2), config)
        assert Feature.EXPORT_CSV in caps.limits
        assert caps.limit_for(Feature.EXPORT_CSV) is None

    def test_no_tier_has_nothing(self, config):
        caps = build_capability_set(snapshot(tier_level=None, tier_active=False), config)

        assert caps.tier_level == 0
        assert caps.features == frozenset()
        assert caps.max_customers == 0

    def test_inactive_tenant_has_nothing(self, config):
        caps = build_capability_set(
            snapshot(tenant_active=False, addon_level=1, addon_entitled=True, addon_usage_limit=100),
            config,
        )
        assert caps.tier_level == 0
        assert not caps.has(Feature.AI_GENERATION)
        assert not caps.addon_entitled

    def test_entitled_addon_adds_ai_generation(self, config):
        caps = build_capability_set(
            snapshot(addon_level=2, addon_status="active", addon_entitled=True, addon_usage_limit=500),
            config,
        )

        assert caps.has(Feature.AI_GENERATION)
        assert caps.limit_for(Feature.AI_GENERATION) == 500
        # Base tier features are untouched by the add-on
        assert caps.has(Feature.MEAL_PLAN_GENERATION)
        assert caps.max_customers == 9

    def test_unlimited_addon(self, config):
        caps = build_capability_set(
            snapshot(addon_level=3, addon_entitled=True, addon_usage_limit=None),
            config,
        )
        assert caps.has(Feature.AI_GENERATION)
        assert caps.limit_for(Feature.AI_GENERATION) is None

    def test_past_due_addon_contributes_nothing_and_keeps_tier(self, config):
        """A non-entitled add-on never reduces base-tier capability."""
        with_addon = build_capability_set(
            snapshot(tier_level=2, addon_level=1, addon_status="past_due", addon_entitled=False, addon_usage_limit=100),
            config,
        )
        without_addon = build_capability_set(snapshot(tier_level=2), config)

        assert not with_addon.has(Feature.AI_GENERATION)
        assert with_addon.features == without_addon.features
        assert with_addon.addon_status == "past_due"

    def test_addon_without_tier(self, config):
        caps = build_capability_set(
            snapshot(tier_level=None, tier_active=False, addon_level=1, addon_entitled=True, addon_usage_limit=100),
            config,
        )
        assert caps.tier_level == 0
        assert caps.features == frozenset({Feature.AI_GENERATION})

    def test_pending_downgrade_is_reported(self, config):
        caps = build_capability_set(snapshot(tier_level=3, pending_downgrade_tier=1), config)
        # Still tier 3 until the boundary
        assert caps.tier_level == 3
        assert caps.pending_downgrade_tier == 1


class TestRequiredTier:
    """Test lowest-granting tier lookup used for upgrade prompts."""

    def test_lookups(self):
        config = BillingConfig()
        assert required_tier(config, Feature.EXPORT_PDF) == 1
        assert required_tier(config, Feature.ANALYTICS_BASIC) == 2
        assert required_tier(config, Feature.API_ACCESS) == 3
        assert required_tier(config, Feature.AI_GENERATION) is None

    def test_parse_unknown_feature(self):
        with pytest.raises(ValueError, match="Unknown feature"):
            Feature.parse("teleportation")


class TestCapabilitySetSerialization:
    """Test the payload stored in the cache."""

    def test_round_trip_preserves_limits(self):
        caps = build_capability_set(
            snapshot(tier_level=2, addon_level=1, addon_entitled=True, addon_usage_limit=100),
            BillingConfig(),
            RESOLVED_AT,
        )
        restored = CapabilitySet.from_dict(caps.to_dict())
        assert restored == caps

    def test_with_source(self):
        caps = build_capability_set(snapshot(), BillingConfig())
        assert caps.source == "computed"
        assert caps.with_source(CapabilitySource.CACHE).source == "cache"

    def test_consume_decision_to_dict(self):
        decision = ConsumeDecision(
            allowed=False,
            feature=Feature.AI_GENERATION,
            reason=DenialReason.USAGE_LIMIT_EXCEEDED,
            new_count=100,
            limit=100,
            period="2025-01",
        )
        body = decision.to_dict()
        assert body["reason"] == "usage_limit_exceeded"
        assert body["remaining"] == 0
        assert body["feature"] == "ai_generation"


# ---------------------------------------------------------------------------
# EntitlementCache
# ---------------------------------------------------------------------------

class TestEntitlementCache:
    """Test TTL-bounded caching and invalidation."""

    @pytest.fixture
    def monotonic(self):
        return FakeMonotonic()

    @pytest.fixture
    def cache(self, monotonic):
        redis_client = MagicMock()
        redis_client.available = False
        return EntitlementCache(
            ttl_seconds=5,
            redis_client=redis_client,
            memory_cache=InMemoryCache(clock=monotonic),
        )

    @pytest.fixture
    def caps(self):
        return build_capability_set(snapshot(tier_level=2), BillingConfig(), RESOLVED_AT)

    def test_miss_then_hit(self, cache, caps):
        assert cache.get("tenant-a") is None
        cache.set(caps)
        assert cache.get("tenant-a") == caps

    def test_entry_expires_after_ttl(self, cache, caps, monotonic):
        cache.set(caps)
        monotonic.now += 4.9
        assert cache.get("tenant-a") is not None
        monotonic.now += 0.1
        assert cache.get("tenant-a") is None

    def test_invalidate(self, cache, caps):
        cache.set(caps)
        cache.invalidate("tenant-a", reason="tier:1->2")
        assert cache.get("tenant-a") is None

    def test_invalidate_is_per_tenant(self, cache, caps):
        other = build_capability_set(snapshot(tenant_id="tenant-b"), BillingConfig())
        cache.set(caps)
        cache.set(other)

        cache.invalidate("tenant-a")

        assert cache.get("tenant-a") is None
        assert cache.get("tenant-b") == other

    def test_zero_ttl_disables_caching(self, caps):
        redis_client = MagicMock()
        redis_client.available = False
        cache = EntitlementCache(ttl_seconds=0, redis_client=redis_client, memory_cache=InMemoryCache())
        cache.set(caps)
        assert cache.get("tenant-a") is None

    def test_config_version_isolates_entries(self, caps):
        redis_client = MagicMock()
        redis_client.available = False
        memory = InMemoryCache()
        old = EntitlementCache(ttl_seconds=5, redis_client=redis_client, memory_cache=memory, config_version="2025.1")
        new = EntitlementCache(ttl_seconds=5, redis_client=redis_client, memory_cache=memory, config_version="2025.2")

        old.set(caps)

        assert new.get("tenant-a") is None

    def test_redis_layer_used_when_available(self, caps):
        redis_client = MagicMock()
        redis_client.available = True
        redis_client.get.return_value = None
        cache = EntitlementCache(ttl_seconds=5, redis_client=redis_client, memory_cache=InMemoryCache())

        cache.set(caps)
        cache.invalidate("tenant-a", reason="test")

        redis_client.set.assert_called_once()
        redis_client.delete.assert_called_once()
        redis_client.publish.assert_not_called()

    def test_corrupt_payload_is_a_miss(self, monotonic):
        redis_client = MagicMock()
        redis_client.available = False
        memory = InMemoryCache(clock=monotonic)
        cache = EntitlementCache(ttl_seconds=5, redis_client=redis_client, memory_cache=memory)
        memory.set(cache._cache_key("tenant-a"), "{not json")

        assert cache.get("tenant-a") is None

    def test_invalidate_on_commit_drops_entry_written_before_commit(self, cache, caps, db_session):
        """An entry cached between the first invalidation and commit is dropped at commit."""
        cache.set(caps)
        cache.invalidate_on_commit(db_session, "tenant-a", reason="tier:1->2")
        assert cache.get("tenant-a") is None

        # A concurrent reader re-caches pre-commit state
        cache.set(caps)
        db_session.commit()

        assert cache.get("tenant-a") is None
