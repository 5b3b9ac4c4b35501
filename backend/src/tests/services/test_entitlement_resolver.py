"""
Tests for EntitlementResolver.

Tests cover:
- resolve(): tier + add-on union, caching, cache bypass after transitions
- require(): TierInsufficient with upgrade prompt details
- check_and_consume(): metered limits, warnings, denial audit rows
- Fail-closed: store errors deny with transient_store_failure
- Missing tenant context is rejected before any read
"""

import gc
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from src.entitlements.errors import TenantContextMissing, TierInsufficient, TransientStoreFailure
from src.entitlements.features import Feature
from src.entitlements.models import DenialReason
from src.entitlements.service import EntitlementResolver, _SingleFlightRegistry, check_and_consume, resolve
from src.models.addon_subscription import AddOnStatus
from src.models.tenant import TenantStatus
from src.models.usage import UsageCounter
from src.platform.audit import AuditAction
from src.services.tenant_guard import TenantIsolationGuard
from src.tests.helpers import audit_actions, context_for


@pytest.fixture
def make_resolver(db_session, billing_config, entitlement_cache, clock):
    def _make(tenant_or_id):
        guard = TenantIsolationGuard(db_session, context_for(tenant_or_id))
        return EntitlementResolver(guard, billing_config, cache=entitlement_cache, clock=clock)
    return _make


@pytest.fixture
def resolver(make_resolver, tenant):
    return make_resolver(tenant)


class TestContextRequired:
    """A resolver cannot exist without a tenant context."""

    def test_none_context_rejected(self, db_session):
        with pytest.raises(TenantContextMissing):
            TenantIsolationGuard(db_session, None)

    def test_unknown_tenant_rejected(self, make_resolver):
        with pytest.raises(TenantContextMissing):
            make_resolver("no-such-tenant").resolve()


class TestResolve:
    """Test capability resolution."""

    def test_no_purchase_resolves_empty(self, resolver):
        caps = resolver.resolve()
        assert caps.tier_level == 0
        assert caps.features == frozenset()

    def test_tier_and_addon_union(self, resolver, grant_tier, grant_addon, tenant):
        grant_tier(tenant.id, 2)
        grant_addon(tenant.id, level=1)

        caps = resolver.resolve()

        assert caps.tier_level == 2
        assert caps.has(Feature.ANALYTICS_BASIC)
        assert caps.has(Feature.AI_GENERATION)
        assert caps.limit_for(Feature.AI_GENERATION) == 100
        assert caps.addon_entitled

    def test_past_due_addon_not_entitled(self, resolver, grant_tier, grant_addon, tenant):
        grant_tier(tenant.id, 1)
        grant_addon(tenant.id, status=AddOnStatus.PAST_DUE)

        caps = resolver.resolve()

        assert not caps.has(Feature.AI_GENERATION)
        assert caps.has(Feature.MEAL_PLAN_GENERATION)
        assert caps.addon_status == AddOnStatus.PAST_DUE

    def test_second_resolve_served_from_cache(self, resolver, grant_tier, tenant):
        grant_tier(tenant.id, 1)
        first = resolver.resolve()
        second = resolver.resolve()

        assert first.source == "computed"
        assert second.source == "cache"
        assert second.features == first.features

    def test_invalidation_forces_recompute(self, resolver, grant_tier, tenant, entitlement_cache, db_session):
        ownership = grant_tier(tenant.id, 1)
        assert resolver.resolve().tier_level == 1

        ownership.tier_level = 3
        db_session.commit()
        entitlement_cache.invalidate(tenant.id, reason="test")

        caps = resolver.resolve()
        assert caps.tier_level == 3
        assert caps.source == "computed"

    def test_deactivated_tenant_has_nothing(self, resolver, grant_tier, tenant, db_session):
        grant_tier(tenant.id, 3)
        tenant.status = TenantStatus.DEACTIVATED
        db_session.commit()

        assert resolver.resolve().features == frozenset()

    def test_store_error_raises_transient_failure(self, resolver, db_session):
        with patch.object(
            resolver, "_compute",
            side_effect=OperationalError("SELECT", {}, Exception("db down")),
        ):
            with pytest.raises(TransientStoreFailure):
                resolver.resolve()

    def test_tenants_are_isolated(self, make_resolver, grant_tier, tenant, other_tenant):
        grant_tier(tenant.id, 3)
        grant_tier(other_tenant.id, 1)

        assert make_resolver(tenant).resolve().tier_level == 3
        assert make_resolver(other_tenant).resolve().tier_level == 1


class TestRequire:
    """Test boolean feature enforcement."""

    def test_allowed_feature(self, resolver, grant_tier, tenant):
        grant_tier(tenant.id, 3)
        assert resolver.require(Feature.API_ACCESS).tier_level == 3

    def test_missing_feature_names_required_tier(self, resolver, grant_tier, tenant):
        grant_tier(tenant.id, 1)
        with pytest.raises(TierInsufficient) as exc_info:
            resolver.require(Feature.ANALYTICS_ADVANCED)

        error = exc_info.value
        assert error.http_status == 402
        assert error.current_tier == 1
        assert error.required_tier == 3
        assert not error.requires_addon

    def test_addon_feature_requires_addon(self, resolver, grant_tier, tenant):
        grant_tier(tenant.id, 3)
        with pytest.raises(TierInsufficient) as exc_info:
            resolver.require(Feature.AI_GENERATION)
        assert exc_info.value.requires_addon
        assert exc_info.value.required_tier is None


class TestCheckAndConsume:
    """Test metered consumption."""

    def test_consumes_meal_plan(self, resolver, grant_tier, tenant, db_session):
        grant_tier(tenant.id, 1)

        decision = resolver.check_and_consume(Feature.MEAL_PLAN_GENERATION)

        assert decision.allowed
        assert decision.new_count == 1
        assert decision.limit == 50
        assert decision.period == "2025-01"
        assert db_session.query(UsageCounter).filter_by(tenant_id=tenant.id).one().count == 1

    def test_accepts_feature_string(self, resolver, grant_tier, tenant):
        grant_tier(tenant.id, 1)
        assert resolver.check_and_consume("meal_plan_generation").allowed

    def test_unknown_feature_string(self, resolver):
        with pytest.raises(ValueError):
            resolver.check_and_consume("hoverboard")

    def test_limit_reached_is_denied_and_audited(self, resolver, grant_addon, tenant, db_session):
        grant_addon(tenant.id, level=1)
        for _ in range(100):
            assert resolver.check_and_consume(Feature.AI_GENERATION).allowed

        decision = resolver.check_and_consume(Feature.AI_GENERATION)

        assert not decision.allowed
        assert decision.reason == DenialReason.USAGE_LIMIT_EXCEEDED
        assert decision.new_count == 100
        assert decision.remaining == 0
        assert AuditAction.USAGE_LIMIT_REACHED.value in audit_actions(db_session, tenant.id)

    def test_warning_at_80_percent(self, resolver, grant_addon, tenant):
        grant_addon(tenant.id, level=1)
        decisions = [resolver.check_and_consume(Feature.AI_GENERATION) for _ in range(80)]
        assert decisions[78].warning_level is None
        assert decisions[79].warning_level == 80

    def test_tier_insufficient_is_denied_and_audited(self, resolver, grant_tier, tenant, db_session):
        grant_tier(tenant.id, 1)

        decision = resolver.check_and_consume(Feature.EXPORT_EXCEL)

        assert not decision.allowed
        assert decision.reason == DenialReason.TIER_INSUFFICIENT
        assert decision.required_tier == 3
        assert db_session.query(UsageCounter).count() == 0
        assert AuditAction.ENTITLEMENT_DENIED.value in audit_actions(db_session, tenant.id)

    def test_revoked_addon_blocks_immediately(self, resolver, grant_addon, tenant, db_session):
        """Metered checks never read the capability cache."""
        sub = grant_addon(tenant.id, level=1)
        assert resolver.resolve().has(Feature.AI_GENERATION)

        sub.status = AddOnStatus.PAST_DUE
        db_session.commit()

        decision = resolver.check_and_consume(Feature.AI_GENERATION)
        assert not decision.allowed
        assert decision.reason == DenialReason.TIER_INSUFFICIENT
        assert decision.requires_addon

    def test_export_tracks_usage_without_limit(self, resolver, grant_tier, tenant):
        grant_tier(tenant.id, 2)
        for _ in range(3):
            decision = resolver.check_and_consume(Feature.EXPORT_CSV)
        assert decision.allowed
        assert decision.new_count == 3
        assert decision.limit is None

    def test_boolean_feature_has_no_counter(self, resolver, grant_tier, tenant, db_session):
        grant_tier(tenant.id, 2)
        decision = resolver.check_and_consume(Feature.CUSTOM_BRANDING)
        assert decision.allowed
        assert db_session.query(UsageCounter).count() == 0

    def test_store_failure_fails_closed(self, resolver, grant_addon, tenant):
        grant_addon(tenant.id, level=1)
        with patch.object(
            resolver._store, "increment_if_under_limit",
            side_effect=TransientStoreFailure("usage_increment"),
        ):
            decision = resolver.check_and_consume(Feature.AI_GENERATION)

        assert not decision.allowed
        assert decision.reason == DenialReason.TRANSIENT_STORE_FAILURE

    def test_snapshot_failure_fails_closed(self, resolver, grant_addon, tenant):
        grant_addon(tenant.id, level=1)
        with patch.object(
            resolver, "_compute",
            side_effect=OperationalError("SELECT", {}, Exception("db down")),
        ):
            decision = resolver.check_and_consume(Feature.AI_GENERATION)

        assert not decision.allowed
        assert decision.reason == DenialReason.TRANSIENT_STORE_FAILURE

    def test_rejects_non_positive_cost(self, resolver):
        with pytest.raises(ValueError):
            resolver.check_and_consume(Feature.AI_GENERATION, cost=0)


class TestModuleFunctions:
    """resolve()/check_and_consume() wired with the process-wide config and cache."""

    def test_resolve(self, db_session, grant_tier, tenant):
        grant_tier(tenant.id, 3)

        caps = resolve(context_for(tenant), db_session)

        assert caps.tier_level == 3
        assert caps.has(Feature.API_ACCESS)

    def test_check_and_consume(self, db_session, grant_tier, tenant):
        grant_tier(tenant.id, 1)

        decision = check_and_consume(context_for(tenant), db_session, "meal_plan_generation")

        assert decision.allowed
        assert decision.remaining == 49

    @pytest.mark.security
    def test_missing_context_mutates_nothing(self, db_session, grant_tier, tenant):
        grant_tier(tenant.id, 1)

        with pytest.raises(TenantContextMissing):
            check_and_consume(None, db_session, Feature.MEAL_PLAN_GENERATION)
        assert db_session.query(UsageCounter).count() == 0


class TestSingleFlightRegistry:
    """Per-tenant resolve locks."""

    def test_same_tenant_shares_lock_while_held(self):
        registry = _SingleFlightRegistry()
        lock = registry.get_lock("tenant-a")

        assert registry.get_lock("tenant-a") is lock
        assert registry.get_lock("tenant-b") is not lock

    def test_released_locks_are_dropped(self):
        registry = _SingleFlightRegistry()
        for i in range(100):
            lock = registry.get_lock(f"tenant-{i}")
            with lock:
                pass
        del lock
        gc.collect()

        assert len(registry) == 0
