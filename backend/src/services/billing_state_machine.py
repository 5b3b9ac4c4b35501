"""
BillingStateMachine: owns tier ownership changes and the add-on lifecycle.

Add-on states:
    trialing, active, past_due, suspended, canceled, incomplete,
    incomplete_expired, unpaid
Entitled subset: {active, trialing}

Transitions (driven by settled PaymentTransactions):
- incomplete -> active                 first successful charge
- incomplete -> incomplete_expired     no success within the window (scheduler)
- active/trialing -> past_due          failed recurring charge; retries scheduled
                                       at +3/+7/+14 days from the ORIGINAL failure
- past_due -> active                   success on any retry; open retries canceled
- past_due -> suspended (+ canceled)   every scheduled retry failed
- suspended/canceled -> active         explicit reactivation, new billing cycle

Tier changes:
- upgrade: prorated charge now, anchor unchanged, new price from next cycle
- downgrade: no charge; pending marker applied at the next cycle boundary

SERIALIZATION:
    Every transition transaction starts with begin_transition(), a
    compare-and-update on tenants.billing_version. A concurrent transition
    for the same tenant loses with ConcurrentTransition instead of
    interleaving. Correct across service instances; no in-process locks.

The state machine never commits. Callers (BillingService, the ledger,
the scheduler) commit state, ledger rows and audit rows as one unit.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import select, update

from src.config.billing_config import BillingConfig, get_billing_config
from src.entitlements.cache import EntitlementCache, get_entitlement_cache
from src.entitlements.errors import (
    BillingActionDenied,
    ConcurrentTransition,
    CrossTenantReference,
    InvalidTransition,
)
from src.models.addon_subscription import AddOnSubscription, AddOnStatus, CancelReason
from src.models.base import ensure_utc, utc_now
from src.models.billing_retry import BillingRetry, RetryStatus, retry_attempt_id
from src.models.payment_transaction import (
    PaymentTransaction,
    TransactionPurpose,
    TransactionStatus,
)
from src.models.tenant import Tenant
from src.models.tier_ownership import TierOwnership, TierOwnershipStatus
from src.platform.audit import AuditAction, AuditEvent, AuditOutcome, record_audit_event
from src.repositories.subscription_repository import (
    AddOnSubscriptionRepository,
    BillingRetryRepository,
    PaymentTransactionRepository,
    TierOwnershipRepository,
)
from src.services.proration import ProrationCalculator, ProrationQuote, add_months
from src.services.tenant_guard import TenantIsolationGuard

logger = logging.getLogger(__name__)

# Statuses a tenant may cancel from
CANCELABLE_STATUSES = frozenset({
    AddOnStatus.ACTIVE,
    AddOnStatus.TRIALING,
    AddOnStatus.PAST_DUE,
    AddOnStatus.INCOMPLETE,
})

REACTIVATABLE_STATUSES = frozenset({AddOnStatus.SUSPENDED, AddOnStatus.CANCELED})


def new_attempt_id(purpose: str) -> str:
    return f"{purpose}:{uuid.uuid4()}"


class BillingStateMachine:
    """
    Billing transitions for one tenant.

    Construct one per unit of work with the guard of that unit.
    """

    def __init__(
        self,
        guard: TenantIsolationGuard,
        config: Optional[BillingConfig] = None,
        calculator: Optional[ProrationCalculator] = None,
        cache: Optional[EntitlementCache] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.guard = guard
        self.db = guard.db
        self.config = config or get_billing_config()
        self.calculator = calculator or ProrationCalculator(self.config)
        self.cache = cache if cache is not None else get_entitlement_cache()
        self._clock = clock

        self.tiers = TierOwnershipRepository(guard)
        self.addons = AddOnSubscriptionRepository(guard)
        self.retries = BillingRetryRepository(guard)
        self.transactions = PaymentTransactionRepository(guard)

    @property
    def tenant_id(self) -> str:
        return self.guard.tenant_id

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Serialization and bookkeeping
    # ------------------------------------------------------------------

    def begin_transition(self) -> int:
        """
        Claim the tenant's billing version for this unit of work.

        Returns the new version. Raises ConcurrentTransition when another
        transition changed the version first.
        """
        self.guard.load_tenant()
        current = self.db.execute(
            select(Tenant.billing_version).where(Tenant.id == self.tenant_id)
        ).scalar_one()
        result = self.db.execute(
            update(Tenant)
            .where(Tenant.id == self.tenant_id, Tenant.billing_version == current)
            .values(billing_version=current + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("Concurrent billing transition rejected", extra={
                "tenant_id": self.tenant_id,
                "expected_version": current,
            })
            raise ConcurrentTransition(self.tenant_id)
        return current + 1

    def _audit(
        self,
        action: AuditAction,
        resource_type: str,
        resource_id: Optional[str],
        metadata: Optional[dict] = None,
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
    ) -> None:
        ctx = self.guard.context
        record_audit_event(self.db, AuditEvent(
            tenant_id=self.tenant_id,
            action=action,
            user_id=ctx.user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            metadata=metadata or {},
            correlation_id=ctx.correlation_id,
            source=ctx.source,
            outcome=outcome,
        ))

    def _changed(self, reason: str) -> None:
        """Billing state changed: drop cached capabilities now and at commit."""
        self.cache.invalidate_on_commit(self.db, self.tenant_id, reason)

    def _set_addon_status(self, sub: AddOnSubscription, new_status: str, reason: str) -> str:
        old_status = sub.status
        sub.status = new_status
        sub.status_reason = reason
        label = f"addon:{old_status}->{new_status}"
        logger.info("Add-on status transition", extra={
            "tenant_id": self.tenant_id,
            "subscription_id": sub.id,
            "from_status": old_status,
            "to_status": new_status,
            "reason": reason,
        })
        self._changed(label)
        return label

    def open_transaction(
        self,
        purpose: str,
        amount_cents: int,
        attempt_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> PaymentTransaction:
        """Append a pending ledger row for a charge about to be submitted."""
        txn = PaymentTransaction(
            attempt_id=attempt_id or new_attempt_id(purpose),
            purpose=purpose,
            amount_cents=amount_cents,
            currency=self.config.currency,
            status=TransactionStatus.PENDING,
            extra_metadata=metadata or {},
        )
        self.transactions.add(txn)
        return txn

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def settle(
        self,
        txn: PaymentTransaction,
        succeeded: bool,
        occurred_at: Optional[datetime] = None,
        failure_code: Optional[str] = None,
    ) -> List[str]:
        """
        Record the terminal outcome of txn and apply its transition.

        No-op for an already settled transaction, so the synchronous gateway
        result and the webhook for the same attempt commute. Returns the
        transitions applied.
        """
        if txn.tenant_id != self.tenant_id:
            raise CrossTenantReference("payment_transaction", [txn.id])
        if not txn.is_pending:
            return []

        occurred_at = ensure_utc(occurred_at) or self.now()
        txn.status = TransactionStatus.COMPLETED if succeeded else TransactionStatus.FAILED
        txn.settled_at = occurred_at
        txn.failure_code = None if succeeded else (failure_code or "charge_failed")

        self._audit(
            AuditAction.PAYMENT_TRANSACTION_SETTLED,
            "payment_transaction",
            txn.id,
            {
                "attempt_id": txn.attempt_id,
                "purpose": txn.purpose,
                "status": txn.status,
                "amount_cents": txn.amount_cents,
            },
            outcome=AuditOutcome.SUCCESS if succeeded else AuditOutcome.FAILURE,
        )

        handlers = {
            TransactionPurpose.TIER_PURCHASE: self._on_tier_purchase,
            TransactionPurpose.TIER_UPGRADE: self._on_tier_upgrade,
            TransactionPurpose.TIER_RENEWAL: self._on_tier_renewal,
            TransactionPurpose.ADDON_INITIAL: self._on_addon_initial,
            TransactionPurpose.ADDON_RENEWAL: self._on_addon_renewal,
            TransactionPurpose.ADDON_RETRY: self._on_addon_retry,
            TransactionPurpose.ADDON_REACTIVATION: self._on_addon_reactivation,
        }
        self.db.flush()
        transitions = handlers[txn.purpose](txn, succeeded, occurred_at)
        logger.info("Payment transaction settled", extra={
            "tenant_id": self.tenant_id,
            "attempt_id": txn.attempt_id,
            "purpose": txn.purpose,
            "status": txn.status,
            "transitions": transitions,
        })
        return transitions

    # ------------------------------------------------------------------
    # Tier ownership
    # ------------------------------------------------------------------

    def _on_tier_purchase(self, txn: PaymentTransaction, succeeded: bool, occurred_at: datetime) -> List[str]:
        if not succeeded:
            return []
        tier_level = int((txn.extra_metadata or {}).get("tier_level", 0))
        plan = self.config.get_tier(tier_level)

        ownership = self.tiers.get_for_tenant(for_update=True)
        if ownership is not None and ownership.is_active:
            logger.warning("Tier purchase settled for a tenant that already owns a tier", extra={
                "tenant_id": self.tenant_id,
                "attempt_id": txn.attempt_id,
                "owned_tier": ownership.tier_level,
            })
            return []

        if ownership is None:
            ownership = TierOwnership(amount_paid_cents=0)
            self.tiers.add(ownership)

        ownership.tier_level = plan.level
        ownership.status = TierOwnershipStatus.ACTIVE
        ownership.purchased_at = occurred_at
        ownership.amount_paid_cents = (ownership.amount_paid_cents or 0) + txn.amount_cents
        ownership.cycle_anchor_day = occurred_at.day
        ownership.current_cycle_start = occurred_at
        ownership.next_cycle_at = add_months(occurred_at, 1)
        ownership.next_cycle_price_cents = plan.price_cents
        ownership.pending_downgrade_tier = None
        ownership.pending_upgrade_attempt_id = None
        self.db.flush()

        self._audit(AuditAction.TIER_PURCHASED, "tier_ownership", ownership.id, {
            "tier_level": plan.level,
            "amount_cents": txn.amount_cents,
        })
        self._changed("tier:purchased")
        return [f"tier:none->{plan.level}"]

    def quote_upgrade(self, to_tier: int, now: Optional[datetime] = None) -> ProrationQuote:
        """
        Validate an upgrade and price it.

        Passed cycle boundaries are applied first so the quote prices the
        current cycle.

        Raises:
            InvalidTransition: no active tier, or to_tier is not higher
            BillingActionDenied: another upgrade is awaiting its charge
        """
        self.config.get_tier(to_tier)
        ownership = self.tiers.get_for_tenant(for_update=True)
        if ownership is None or not ownership.is_active:
            raise InvalidTransition("tier", None, str(to_tier), "No active tier to upgrade")
        now = ensure_utc(now) or self.now()
        self.apply_cycle_boundary(now)
        if to_tier <= ownership.tier_level:
            raise InvalidTransition(
                "tier", str(ownership.tier_level), str(to_tier),
                "Upgrade must target a higher tier",
            )
        if ownership.pending_upgrade_attempt_id:
            raise BillingActionDenied(
                "upgrade", "upgrade_in_progress", http_status=409,
                attempt_id=ownership.pending_upgrade_attempt_id,
            )
        return self.calculator.quote(
            ownership.tier_level, to_tier, ownership.cycle_start_utc, now
        )

    def mark_upgrade_pending(self, attempt_id: str) -> None:
        ownership = self.tiers.get_for_tenant()
        ownership.pending_upgrade_attempt_id = attempt_id

    def _on_tier_upgrade(self, txn: PaymentTransaction, succeeded: bool, occurred_at: datetime) -> List[str]:
        ownership = self.tiers.get_for_tenant(for_update=True)
        if ownership is None:
            logger.error("Tier upgrade settled without tier ownership", extra={
                "tenant_id": self.tenant_id,
                "attempt_id": txn.attempt_id,
            })
            return []
        if ownership.pending_upgrade_attempt_id == txn.attempt_id:
            ownership.pending_upgrade_attempt_id = None
        if not succeeded:
            return []

        to_tier = int((txn.extra_metadata or {}).get("to_tier", 0))
        plan = self.config.get_tier(to_tier)
        if to_tier <= ownership.tier_level:
            logger.warning("Tier upgrade settled below current tier", extra={
                "tenant_id": self.tenant_id,
                "attempt_id": txn.attempt_id,
                "tier_level": ownership.tier_level,
                "to_tier": to_tier,
            })
            return []

        from_tier = ownership.tier_level
        ownership.tier_level = to_tier
        ownership.amount_paid_cents = (ownership.amount_paid_cents or 0) + txn.amount_cents
        ownership.next_cycle_price_cents = plan.price_cents
        ownership.pending_downgrade_tier = None
        ownership.last_upgraded_at = occurred_at

        self._audit(AuditAction.TIER_UPGRADED, "tier_ownership", ownership.id, {
            "from_tier": from_tier,
            "to_tier": to_tier,
            "charge_cents": txn.amount_cents,
            "next_cycle_price_cents": plan.price_cents,
        })
        self._changed(f"tier:{from_tier}->{to_tier}")
        return [f"tier:{from_tier}->{to_tier}"]

    def schedule_downgrade(self, to_tier: int) -> TierOwnership:
        """
        Record a deferred downgrade. No charge, no capability change now.

        Downgrading to the current tier cancels a pending downgrade.
        A boundary that already passed is applied before the new marker is set.
        """
        plan = self.config.get_tier(to_tier)
        ownership = self.tiers.get_for_tenant(for_update=True)
        if ownership is None or not ownership.is_active:
            raise InvalidTransition("tier", None, str(to_tier), "No active tier to downgrade")
        self.apply_cycle_boundary()
        if to_tier > ownership.tier_level:
            raise InvalidTransition(
                "tier", str(ownership.tier_level), str(to_tier),
                "Use upgrade to move to a higher tier",
            )

        if to_tier == ownership.tier_level:
            if ownership.pending_downgrade_tier is None:
                raise InvalidTransition(
                    "tier", str(ownership.tier_level), str(to_tier), "Already on this tier"
                )
            canceled = ownership.pending_downgrade_tier
            ownership.pending_downgrade_tier = None
            ownership.next_cycle_price_cents = plan.price_cents
            self._audit(AuditAction.TIER_DOWNGRADE_CANCELED, "tier_ownership", ownership.id, {
                "tier_level": ownership.tier_level,
                "canceled_downgrade_tier": canceled,
            })
        else:
            ownership.pending_downgrade_tier = to_tier
            ownership.next_cycle_price_cents = plan.price_cents
            self._audit(AuditAction.TIER_DOWNGRADE_SCHEDULED, "tier_ownership", ownership.id, {
                "from_tier": ownership.tier_level,
                "to_tier": to_tier,
                "effective_at": ownership.next_cycle_utc.isoformat(),
            })

        self._changed("tier:downgrade_marker")
        return ownership

    def apply_cycle_boundary(self, now: Optional[datetime] = None) -> List[str]:
        """
        Advance past every passed cycle boundary and apply a pending downgrade.

        Idempotent: nothing happens until the next boundary is reached.
        """
        now = ensure_utc(now) or self.now()
        ownership = self.tiers.get_for_tenant(for_update=True)
        if ownership is None or not ownership.is_active:
            return []

        transitions: List[str] = []
        advanced = False
        while ownership.next_cycle_utc <= now:
            boundary = ownership.next_cycle_utc
            ownership.current_cycle_start = boundary
            ownership.next_cycle_at = add_months(boundary, 1, ownership.cycle_anchor_day)
            advanced = True

        if not advanced:
            return transitions

        self._audit(AuditAction.TIER_CYCLE_ADVANCED, "tier_ownership", ownership.id, {
            "cycle_start": ownership.cycle_start_utc.isoformat(),
            "next_cycle_at": ownership.next_cycle_utc.isoformat(),
        })
        transitions.append("tier:cycle_advanced")

        if ownership.pending_downgrade_tier is not None:
            from_tier = ownership.tier_level
            to_tier = ownership.pending_downgrade_tier
            ownership.tier_level = to_tier
            ownership.pending_downgrade_tier = None
            ownership.next_cycle_price_cents = self.config.tier_price_cents(to_tier)
            self._audit(AuditAction.TIER_DOWNGRADE_APPLIED, "tier_ownership", ownership.id, {
                "from_tier": from_tier,
                "to_tier": to_tier,
            })
            self._changed(f"tier:{from_tier}->{to_tier}")
            transitions.append(f"tier:{from_tier}->{to_tier}")

        return transitions

    def _on_tier_renewal(self, txn: PaymentTransaction, succeeded: bool, occurred_at: datetime) -> List[str]:
        if not succeeded:
            logger.warning("Tier renewal charge failed", extra={
                "tenant_id": self.tenant_id,
                "attempt_id": txn.attempt_id,
            })
            return []
        return self.apply_cycle_boundary(occurred_at)

    # ------------------------------------------------------------------
    # Add-on lifecycle
    # ------------------------------------------------------------------

    def create_addon(self, addon_level: int, trial_days: int = 0) -> AddOnSubscription:
        """
        Create the add-on subscription in incomplete (or trialing).

        An incomplete_expired row is restarted in place; any other existing
        subscription must be reactivated or canceled instead.
        """
        plan = self.config.get_addon(addon_level)
        now = self.now()
        sub = self.addons.get_for_tenant(for_update=True)

        if sub is not None and sub.status != AddOnStatus.INCOMPLETE_EXPIRED:
            raise InvalidTransition(
                "addon", sub.status, AddOnStatus.INCOMPLETE,
                "Add-on subscription already exists",
            )
        if sub is None:
            sub = AddOnSubscription()
            self.addons.add(sub)

        sub.addon_level = plan.level
        sub.monthly_price_cents = plan.price_cents
        sub.usage_limit = plan.usage_limit
        sub.billing_anchor = now
        sub.last_payment_succeeded_at = None
        sub.past_due_since = None
        sub.canceled_at = None
        sub.cancel_reason = None
        sub.pending_attempt_id = None

        if trial_days > 0:
            sub.status = AddOnStatus.TRIALING
            sub.trial_ends_at = now + timedelta(days=trial_days)
            sub.current_period_start = now
            sub.current_period_end = sub.trial_ends_at
            sub.incomplete_expires_at = None
        else:
            sub.status = AddOnStatus.INCOMPLETE
            sub.trial_ends_at = None
            sub.current_period_start = None
            sub.current_period_end = None
            sub.incomplete_expires_at = now + timedelta(hours=self.config.incomplete_window_hours)
        sub.status_reason = "created"

        self.db.flush()
        self._audit(AuditAction.SUBSCRIPTION_CREATED, "addon_subscription", sub.id, {
            "addon_level": plan.level,
            "status": sub.status,
            "monthly_price_cents": plan.price_cents,
        })
        self._changed(f"addon:created:{sub.status}")
        return sub

    def _start_period(self, sub: AddOnSubscription, start: datetime) -> None:
        sub.billing_anchor = start
        sub.current_period_start = start
        sub.current_period_end = add_months(start, 1)

    def _record_success(self, sub: AddOnSubscription, occurred_at: datetime) -> None:
        last = sub.last_success_utc
        if last is None or occurred_at > last:
            sub.last_payment_succeeded_at = occurred_at

    def _is_stale(self, sub: AddOnSubscription, occurred_at: datetime) -> bool:
        last = sub.last_success_utc
        return last is not None and occurred_at < last

    def _cancel_open_retries(self, sub: AddOnSubscription, now: datetime) -> int:
        self.db.flush()
        open_retries = self.retries.list_open(sub.id)
        for retry in open_retries:
            retry.status = RetryStatus.CANCELED
            retry.completed_at = now
        return len(open_retries)

    def _on_addon_initial(self, txn: PaymentTransaction, succeeded: bool, occurred_at: datetime) -> List[str]:
        sub = self.addons.get_for_tenant(for_update=True)
        if sub is None:
            logger.error("Initial add-on charge settled without a subscription", extra={
                "tenant_id": self.tenant_id,
                "attempt_id": txn.attempt_id,
            })
            return []
        if sub.pending_attempt_id == txn.attempt_id:
            sub.pending_attempt_id = None

        if not succeeded:
            sub.status_reason = "initial_charge_failed"
            logger.info("Initial add-on charge failed", extra={
                "tenant_id": self.tenant_id,
                "subscription_id": sub.id,
                "status": sub.status,
            })
            return []

        if sub.status not in (AddOnStatus.INCOMPLETE, AddOnStatus.TRIALING):
            logger.warning("Initial add-on charge succeeded outside incomplete/trialing", extra={
                "tenant_id": self.tenant_id,
                "subscription_id": sub.id,
                "status": sub.status,
            })
            return []

        self._record_success(sub, occurred_at)
        self._start_period(sub, occurred_at)
        sub.incomplete_expires_at = None
        label = self._set_addon_status(sub, AddOnStatus.ACTIVE, "initial_charge_succeeded")
        self._audit(AuditAction.SUBSCRIPTION_ACTIVATED, "addon_subscription", sub.id, {
            "attempt_id": txn.attempt_id,
            "period_end": sub.period_end_utc.isoformat(),
        })
        return [label]

    def _renewal_succeeded(self, sub: AddOnSubscription, txn: PaymentTransaction, occurred_at: datetime) -> List[str]:
        transitions: List[str] = []
        if sub.status == AddOnStatus.PAST_DUE:
            self._record_success(sub, occurred_at)
            self._cancel_open_retries(sub, occurred_at)
            sub.past_due_since = None
            self._start_period(sub, occurred_at)
            transitions.append(self._set_addon_status(sub, AddOnStatus.ACTIVE, "payment_recovered"))
            self._audit(AuditAction.SUBSCRIPTION_RECOVERED, "addon_subscription", sub.id, {
                "attempt_id": txn.attempt_id,
            })
        elif sub.status in (AddOnStatus.ACTIVE, AddOnStatus.TRIALING):
            self._record_success(sub, occurred_at)
            start = sub.period_end_utc or occurred_at
            sub.current_period_start = start
            sub.current_period_end = add_months(start, 1, ensure_utc(sub.billing_anchor).day)
            if sub.status == AddOnStatus.TRIALING:
                transitions.append(self._set_addon_status(sub, AddOnStatus.ACTIVE, "trial_converted"))
            self._audit(AuditAction.SUBSCRIPTION_RENEWED, "addon_subscription", sub.id, {
                "attempt_id": txn.attempt_id,
                "period_end": sub.period_end_utc.isoformat(),
            })
            self._changed("addon:renewed")
        else:
            logger.warning("Renewal succeeded for a non-renewing subscription", extra={
                "tenant_id": self.tenant_id,
                "subscription_id": sub.id,
                "status": sub.status,
                "attempt_id": txn.attempt_id,
            })
            return transitions

        transitions.extend(self.apply_cycle_boundary(occurred_at))
        return transitions

    def _on_addon_renewal(self, txn: PaymentTransaction, succeeded: bool, occurred_at: datetime) -> List[str]:
        sub = self.addons.get_for_tenant(for_update=True)
        if sub is None:
            logger.error("Renewal settled without a subscription", extra={
                "tenant_id": self.tenant_id,
                "attempt_id": txn.attempt_id,
            })
            return []
        if succeeded:
            return self._renewal_succeeded(sub, txn, occurred_at)

        if self._is_stale(sub, occurred_at):
            logger.info("Ignoring stale renewal failure", extra={
                "tenant_id": self.tenant_id,
                "attempt_id": txn.attempt_id,
                "occurred_at": occurred_at.isoformat(),
            })
            return []
        if sub.status not in (AddOnStatus.ACTIVE, AddOnStatus.TRIALING):
            logger.info("Renewal failure ignored in current status", extra={
                "tenant_id": self.tenant_id,
                "subscription_id": sub.id,
                "status": sub.status,
            })
            return []

        label = self._set_addon_status(sub, AddOnStatus.PAST_DUE, "renewal_failed")
        sub.past_due_since = occurred_at
        self._schedule_retries(sub, txn.attempt_id, occurred_at)
        self._audit(AuditAction.SUBSCRIPTION_PAST_DUE, "addon_subscription", sub.id, {
            "attempt_id": txn.attempt_id,
            "failure_code": txn.failure_code,
        }, outcome=AuditOutcome.FAILURE)
        return [label]

    def _schedule_retries(self, sub: AddOnSubscription, failure_attempt_id: str, failed_at: datetime) -> List[BillingRetry]:
        """One retry per configured offset, each measured from the original failure."""
        retries = []
        for sequence, offset in enumerate(self.config.retry_offsets_days, start=1):
            retry = BillingRetry(
                subscription_id=sub.id,
                failure_attempt_id=failure_attempt_id,
                original_failure_at=failed_at,
                sequence=sequence,
                scheduled_for=failed_at + timedelta(days=offset),
                attempt_id=retry_attempt_id(sub.id, failure_attempt_id, sequence),
                status=RetryStatus.SCHEDULED,
            )
            self.retries.add(retry)
            retries.append(retry)
        self._audit(AuditAction.RETRY_SCHEDULED, "addon_subscription", sub.id, {
            "failure_attempt_id": failure_attempt_id,
            "scheduled_for": [r.scheduled_for.isoformat() for r in retries],
        })
        return retries

    def mark_retry_submitted(self, retry: BillingRetry) -> PaymentTransaction:
        """Scheduler hook: move a due retry to submitted and open its ledger row."""
        sub = self.addons.get_by_id(retry.subscription_id)
        retry.status = RetryStatus.SUBMITTED
        retry.submitted_at = self.now()
        txn = self.transactions.get_by_attempt_id(retry.attempt_id)
        if txn is None:
            txn = self.open_transaction(
                TransactionPurpose.ADDON_RETRY,
                sub.monthly_price_cents,
                attempt_id=retry.attempt_id,
                metadata={"sequence": retry.sequence, "failure_attempt_id": retry.failure_attempt_id},
            )
        self._audit(AuditAction.RETRY_SUBMITTED, "billing_retry", retry.id, {
            "attempt_id": retry.attempt_id,
            "sequence": retry.sequence,
        })
        return txn

    def _on_addon_retry(self, txn: PaymentTransaction, succeeded: bool, occurred_at: datetime) -> List[str]:
        sub = self.addons.get_for_tenant(for_update=True)
        if sub is None:
            logger.error("Retry settled without a subscription", extra={
                "tenant_id": self.tenant_id,
                "attempt_id": txn.attempt_id,
            })
            return []

        retry = self.retries.get_by_attempt_id(txn.attempt_id)
        if retry is None:
            # Outcome arrived before its schedule row; a success still recovers
            if succeeded:
                return self._renewal_succeeded(sub, txn, occurred_at)
            logger.warning("Retry failure for unknown retry attempt", extra={
                "tenant_id": self.tenant_id,
                "attempt_id": txn.attempt_id,
            })
            return []

        retry.completed_at = occurred_at
        if succeeded:
            retry.status = RetryStatus.SUCCEEDED
            return self._renewal_succeeded(sub, txn, occurred_at)

        retry.status = RetryStatus.FAILED
        self._audit(AuditAction.RETRY_FAILED, "billing_retry", retry.id, {
            "attempt_id": retry.attempt_id,
            "sequence": retry.sequence,
        }, outcome=AuditOutcome.FAILURE)

        if sub.status != AddOnStatus.PAST_DUE or self._is_stale(sub, occurred_at):
            return []

        schedule = self.retries.list_for_failure(sub.id, retry.failure_attempt_id)
        failed = [r for r in schedule if r.status == RetryStatus.FAILED]
        if len(failed) < len(self.config.retry_offsets_days):
            return []
        return self._suspend(sub, occurred_at, retry.failure_attempt_id)

    def _suspend(self, sub: AddOnSubscription, now: datetime, failure_attempt_id: str) -> List[str]:
        """Retries exhausted: suspended and canceled in the same unit of work."""
        label = self._set_addon_status(sub, AddOnStatus.SUSPENDED, "retries_exhausted")
        sub.canceled_at = now
        sub.cancel_reason = CancelReason.RETRIES_EXHAUSTED
        sub.pending_attempt_id = None
        self._cancel_open_retries(sub, now)
        metadata = {"failure_attempt_id": failure_attempt_id}
        self._audit(AuditAction.SUBSCRIPTION_SUSPENDED, "addon_subscription", sub.id, metadata,
                    outcome=AuditOutcome.FAILURE)
        self._audit(AuditAction.SUBSCRIPTION_CANCELED, "addon_subscription", sub.id,
                    dict(metadata, cancel_reason=CancelReason.RETRIES_EXHAUSTED))
        return [label]

    def cancel_addon(self) -> AddOnSubscription:
        """Tenant-requested cancel. TierOwnership is never touched."""
        sub = self.addons.get_for_tenant(for_update=True)
        if sub is None:
            raise InvalidTransition("addon", None, AddOnStatus.CANCELED, "No add-on subscription")
        if sub.status not in CANCELABLE_STATUSES:
            raise InvalidTransition("addon", sub.status, AddOnStatus.CANCELED)

        now = self.now()
        self._set_addon_status(sub, AddOnStatus.CANCELED, CancelReason.TENANT_REQUEST)
        sub.canceled_at = now
        sub.cancel_reason = CancelReason.TENANT_REQUEST
        sub.pending_attempt_id = None
        sub.past_due_since = None
        self._cancel_open_retries(sub, now)
        self._audit(AuditAction.SUBSCRIPTION_CANCELED, "addon_subscription", sub.id, {
            "cancel_reason": CancelReason.TENANT_REQUEST,
        })
        return sub

    def prepare_reactivation(self, attempt_id: str) -> AddOnSubscription:
        """
        Claim the reactivation slot for attempt_id.

        Raises:
            InvalidTransition: subscription is not suspended or canceled
            BillingActionDenied: a reactivation charge is already pending
        """
        sub = self.addons.get_for_tenant(for_update=True)
        if sub is None:
            raise InvalidTransition("addon", None, AddOnStatus.ACTIVE, "No add-on subscription")
        if sub.status not in REACTIVATABLE_STATUSES:
            raise InvalidTransition("addon", sub.status, AddOnStatus.ACTIVE)
        if sub.pending_attempt_id:
            raise BillingActionDenied(
                "reactivate", "reactivation_in_progress", http_status=409,
                attempt_id=sub.pending_attempt_id,
            )
        sub.pending_attempt_id = attempt_id
        return sub

    def _on_addon_reactivation(self, txn: PaymentTransaction, succeeded: bool, occurred_at: datetime) -> List[str]:
        sub = self.addons.get_for_tenant(for_update=True)
        if sub is None:
            logger.error("Reactivation settled without a subscription", extra={
                "tenant_id": self.tenant_id,
                "attempt_id": txn.attempt_id,
            })
            return []
        if sub.pending_attempt_id == txn.attempt_id:
            sub.pending_attempt_id = None

        if not succeeded:
            sub.status_reason = "reactivation_charge_failed"
            return []
        if sub.status not in REACTIVATABLE_STATUSES:
            logger.warning("Reactivation succeeded outside suspended/canceled", extra={
                "tenant_id": self.tenant_id,
                "subscription_id": sub.id,
                "status": sub.status,
            })
            return []

        self._record_success(sub, occurred_at)
        self._start_period(sub, occurred_at)
        sub.canceled_at = None
        sub.cancel_reason = None
        sub.past_due_since = None
        label = self._set_addon_status(sub, AddOnStatus.ACTIVE, "reactivated")
        self._audit(AuditAction.SUBSCRIPTION_REACTIVATED, "addon_subscription", sub.id, {
            "attempt_id": txn.attempt_id,
            "period_end": sub.period_end_utc.isoformat(),
        })
        return [label]

    def expire_incomplete(self, now: Optional[datetime] = None) -> List[str]:
        """incomplete -> incomplete_expired once the first-charge window lapsed."""
        now = ensure_utc(now) or self.now()
        sub = self.addons.get_for_tenant(for_update=True)
        if sub is None or sub.status != AddOnStatus.INCOMPLETE:
            return []
        deadline = ensure_utc(sub.incomplete_expires_at)
        if deadline is None or deadline > now:
            return []

        sub.pending_attempt_id = None
        label = self._set_addon_status(sub, AddOnStatus.INCOMPLETE_EXPIRED, "first_charge_window_lapsed")
        self._audit(AuditAction.SUBSCRIPTION_EXPIRED, "addon_subscription", sub.id, {
            "incomplete_expires_at": deadline.isoformat(),
        })
        return [label]
