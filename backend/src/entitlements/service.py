"""
EntitlementResolver: single entry point for capability resolution and
metered consumption.

Provides:
- resolve()                   -> CapabilitySet (cache-eligible)
- check_and_consume(feature)  -> ConsumeDecision (never served from cache)
- require(feature)            -> raises TierInsufficient for absent booleans

Architecture:
- Fail-CLOSED: store failures deny metered use and emit a support alert
- Single-flight: concurrent cache misses for the same tenant share one DB read
- Capability = base tier features UNION entitled add-on features
- check_and_consume reads tier/add-on rows (shared row locks on PostgreSQL)
  and performs the counter update in the same transaction, so a counter
  check never races an in-flight tier change

CRITICAL: Every call runs through a TenantIsolationGuard. A missing tenant
context is rejected before any read.
"""

import logging
from threading import Lock
from typing import Callable, Optional, Union
from weakref import WeakValueDictionary

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.config.billing_config import BillingConfig, get_billing_config
from src.entitlements.cache import EntitlementCache, get_entitlement_cache
from src.entitlements.errors import TierInsufficient, TransientStoreFailure
from src.entitlements.features import Feature, FeatureSource, get_rule, required_tier
from src.entitlements.models import (
    BillingSnapshot,
    CapabilitySet,
    CapabilitySource,
    ConsumeDecision,
    DenialReason,
    build_capability_set,
)
from src.models.addon_subscription import AddOnSubscription
from src.models.base import utc_now
from src.models.tier_ownership import TierOwnership
from src.models.usage import period_id_for
from src.platform.audit import AuditAction, AuditEvent, AuditOutcome, record_audit_event
from src.platform.tenant_context import TenantContext
from src.services.tenant_guard import TenantIsolationGuard
from src.services.usage_counter_store import UsageCounterStore

logger = logging.getLogger(__name__)

SINGLE_FLIGHT_TIMEOUT_SECONDS = 5.0


# ---------------------------------------------------------------------------
# Single-flight lock registry - prevents cache stampede
# ---------------------------------------------------------------------------

class _SingleFlightRegistry:
    """
    Prevents N concurrent cache misses for the same tenant from all hitting
    the database. The first caller acquires a per-tenant lock, computes the
    result, and caches it. Subsequent callers wait on the lock and read from
    cache.

    Entries are weak: a tenant's lock is dropped once no caller holds it.
    """

    def __init__(self):
        self._locks: "WeakValueDictionary[str, Lock]" = WeakValueDictionary()
        self._registry_lock = Lock()

    def get_lock(self, key: str) -> Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = Lock()
                self._locks[key] = lock
            return lock

    def __len__(self) -> int:
        return len(self._locks)


_single_flight = _SingleFlightRegistry()


class EntitlementResolver:
    """
    Entitlement resolution for one tenant context.

    One instance per request / job. Stateless between calls except for
    injected collaborators (guard, cache, store).
    """

    def __init__(
        self,
        guard: TenantIsolationGuard,
        config: Optional[BillingConfig] = None,
        cache: Optional[EntitlementCache] = None,
        store: Optional[UsageCounterStore] = None,
        clock: Callable = utc_now,
    ):
        self.guard = guard
        self.db = guard.db
        self.config = config or get_billing_config()
        self._cache = cache if cache is not None else get_entitlement_cache()
        self._clock = clock
        self._store = store or UsageCounterStore(guard, self.config, clock=clock)

    @property
    def tenant_id(self) -> str:
        return self.guard.tenant_id

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self) -> CapabilitySet:
        """
        Resolve the current capability set.

        1. Cache hit -> return
        2. Acquire single-flight lock
        3. Re-check cache (winner may have populated it)
        4. Compute from DB and cache the result

        Raises TransientStoreFailure if the store cannot be read.
        """
        cached = self._cache.get(self.tenant_id)
        if cached is not None:
            return cached.with_source(CapabilitySource.CACHE)

        lock = _single_flight.get_lock(self.tenant_id)
        if not lock.acquire(timeout=SINGLE_FLIGHT_TIMEOUT_SECONDS):
            raise TransientStoreFailure("resolve", cause="single_flight_timeout")
        try:
            cached = self._cache.get(self.tenant_id)
            if cached is not None:
                return cached.with_source(CapabilitySource.CACHE)

            try:
                capabilities = self._compute()
            except SQLAlchemyError as e:
                self.db.rollback()
                self._emit_support_alert(e)
                raise TransientStoreFailure("resolve", cause=type(e).__name__) from e

            self._cache.set(capabilities)
            return capabilities
        finally:
            lock.release()

    def _snapshot(self, lock_rows: bool = False) -> BillingSnapshot:
        tenant = self.guard.load_tenant()

        tier_query = self.guard.scoped(TierOwnership).populate_existing()
        addon_query = self.guard.scoped(AddOnSubscription).populate_existing()
        if lock_rows:
            # FOR SHARE: a concurrent tier change waits for this check to commit
            tier_query = tier_query.with_for_update(read=True)
            addon_query = addon_query.with_for_update(read=True)
        ownership = tier_query.first()
        addon = addon_query.first()

        return BillingSnapshot(
            tenant_id=self.tenant_id,
            tenant_active=tenant.is_active,
            tier_level=ownership.tier_level if ownership else None,
            tier_active=bool(ownership and ownership.is_active),
            pending_downgrade_tier=ownership.pending_downgrade_tier if ownership else None,
            addon_level=addon.addon_level if addon else None,
            addon_status=addon.status if addon else None,
            addon_entitled=bool(addon and addon.is_entitled),
            addon_usage_limit=addon.usage_limit if addon else None,
        )

    def _compute(self, lock_rows: bool = False) -> CapabilitySet:
        return build_capability_set(self._snapshot(lock_rows), self.config, self._clock())

    def resolve_uncached(self, lock_rows: bool = False) -> CapabilitySet:
        """
        Compute from the store, bypassing the cache.

        For writes that enforce a limit inside the caller's transaction.
        Raises TransientStoreFailure if the store cannot be read.
        """
        try:
            return self._compute(lock_rows=lock_rows)
        except SQLAlchemyError as e:
            self.db.rollback()
            self._emit_support_alert(e)
            raise TransientStoreFailure("resolve", cause=type(e).__name__) from e

    # ------------------------------------------------------------------
    # Enforcement
    # ------------------------------------------------------------------

    def require(self, feature: Feature) -> CapabilitySet:
        """Raise TierInsufficient unless the feature is in the resolved set."""
        capabilities = self.resolve()
        if not capabilities.has(feature):
            rule = get_rule(feature)
            raise TierInsufficient(
                feature.value,
                capabilities.tier_level,
                required_tier(self.config, feature),
                requires_addon=rule.source == FeatureSource.ADDON,
            )
        return capabilities

    def check_and_consume(self, feature: Union[Feature, str], cost: int = 1) -> ConsumeDecision:
        """
        Allow or deny one use of feature, consuming usage when metered.

        Always computed fresh inside one transaction: tier/add-on rows are
        read and the counter is updated before a single commit. Denials are
        returned, not raised.
        """
        if not isinstance(feature, Feature):
            feature = Feature.parse(feature)
        if cost <= 0:
            raise ValueError("cost must be positive")
        rule = get_rule(feature)
        period = period_id_for(self._clock())

        try:
            capabilities = self._compute(lock_rows=True)
        except SQLAlchemyError as e:
            self.db.rollback()
            self._emit_support_alert(e)
            return self._fail_closed(feature, period, e)

        if not capabilities.has(feature):
            decision = ConsumeDecision(
                allowed=False,
                feature=feature,
                reason=DenialReason.TIER_INSUFFICIENT,
                period=period,
                required_tier=required_tier(self.config, feature),
                requires_addon=rule.source == FeatureSource.ADDON,
                current_tier=capabilities.tier_level,
            )
            self._record_denial(AuditAction.ENTITLEMENT_DENIED, decision)
            return decision

        if not rule.counts_usage:
            self.db.commit()
            logger.debug("Feature allowed", extra={
                "tenant_id": self.tenant_id,
                "feature": feature.value,
            })
            return ConsumeDecision(
                allowed=True,
                feature=feature,
                period=period,
                current_tier=capabilities.tier_level,
            )

        limit = capabilities.limit_for(feature)
        try:
            result = self._store.increment_if_under_limit(feature.value, period, limit, cost)
            self.db.commit()
        except TransientStoreFailure as e:
            return self._fail_closed(feature, period, e)
        except SQLAlchemyError as e:
            self.db.rollback()
            return self._fail_closed(feature, period, e)

        decision = ConsumeDecision(
            allowed=result.allowed,
            feature=feature,
            reason=None if result.allowed else DenialReason.USAGE_LIMIT_EXCEEDED,
            new_count=result.new_count,
            limit=result.limit,
            warning_level=result.warning_level,
            period=period,
            current_tier=capabilities.tier_level,
        )
        if not result.allowed:
            self._record_denial(AuditAction.USAGE_LIMIT_REACHED, decision)
        return decision

    def _fail_closed(self, feature: Feature, period: str, exc: Exception) -> ConsumeDecision:
        logger.error("Usage check failed closed", extra={
            "tenant_id": self.tenant_id,
            "feature": feature.value,
            "period": period,
            "error_type": type(exc).__name__,
        })
        return ConsumeDecision(
            allowed=False,
            feature=feature,
            reason=DenialReason.TRANSIENT_STORE_FAILURE,
            period=period,
        )

    def _record_denial(self, action: AuditAction, decision: ConsumeDecision) -> None:
        """Audit a denial in its own commit; failures only log."""
        logger.info("Feature use denied", extra={
            "tenant_id": self.tenant_id,
            "feature": decision.feature.value,
            "reason": decision.reason.value if decision.reason else None,
            "count": decision.new_count,
            "limit": decision.limit,
        })
        ctx = self.guard.context
        try:
            record_audit_event(self.db, AuditEvent(
                tenant_id=self.tenant_id,
                action=action,
                user_id=ctx.user_id,
                resource_type="feature",
                resource_id=decision.feature.value,
                metadata=decision.to_dict(),
                correlation_id=ctx.correlation_id,
                source=ctx.source,
                outcome=AuditOutcome.DENIED,
                error_code=decision.reason.value if decision.reason else None,
            ))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("Failed to record denial audit event", extra={
                "tenant_id": self.tenant_id,
                "error": str(e),
            })

    def _emit_support_alert(self, exc: Exception) -> None:
        """
        Emit a support alert for entitlement evaluation failure.

        Logs at CRITICAL level with structured payload so monitoring can
        trigger alerts.
        """
        logger.critical(
            "ENTITLEMENT_EVAL_FAILED - support alert",
            extra={
                "alert_type": "entitlement_eval_failed",
                "tenant_id": self.tenant_id,
                "error_type": type(exc).__name__,
                "error_detail": str(exc),
                "action_required": "Investigate entitlement evaluation failure",
            },
        )


# ---------------------------------------------------------------------------
# Module-level convenience functions
# ---------------------------------------------------------------------------

def resolve(tenant_context: Optional[TenantContext], db_session: Session) -> CapabilitySet:
    """Resolve capabilities with default singletons."""
    return EntitlementResolver(TenantIsolationGuard(db_session, tenant_context)).resolve()


def check_and_consume(
    tenant_context: Optional[TenantContext],
    db_session: Session,
    feature: Union[Feature, str],
    cost: int = 1,
) -> ConsumeDecision:
    """Consume one use of feature with default singletons."""
    resolver = EntitlementResolver(TenantIsolationGuard(db_session, tenant_context))
    return resolver.check_and_consume(feature, cost)
