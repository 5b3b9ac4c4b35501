"""
Billing service for tenant-initiated billing actions.

Orchestrates:
- Tier purchase, upgrade (prorated) and deferred downgrade
- Add-on start, cancel and reactivation
- Charge submission to the payment gateway
- Billing summary

Every charged action is two short units of work around the gateway call:

    1. begin_transition + validation + pending PaymentTransaction   COMMIT
    2. gateway.charge(attempt_id)                  (no transaction held open)
    3. begin_transition + settle(outcome)                            COMMIT

A failure between 1 and 3 leaves only the pending ledger row and its
in-progress marker; capability never changes until a terminal outcome
settles the row. An ambiguous gateway result (timeout, 5xx) is left
pending and the gateway's webhook settles it through the ledger. So is a
definite result whose settlement keeps losing to other transitions for
the tenant; the action then reports pending, never applied.

CRITICAL: All operations are tenant-scoped via the TenantContext from JWT.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.config.billing_config import BillingConfig, get_billing_config
from src.entitlements.cache import EntitlementCache, get_entitlement_cache
from src.entitlements.errors import (
    BillingActionDenied,
    ConcurrentTransition,
    EntitlementError,
    InvalidTransition,
    TransientStoreFailure,
)
from src.integrations.payment_gateway import (
    ChargeOutcome,
    ChargeRequest,
    ChargeResult,
    PaymentGatewayClient,
    PaymentGatewayError,
    get_payment_gateway,
)
from src.models.addon_subscription import AddOnStatus
from src.models.base import utc_now
from src.models.payment_transaction import PaymentTransaction, TransactionPurpose
from src.platform.tenant_context import TenantContext
from src.services.billing_state_machine import BillingStateMachine, new_attempt_id
from src.services.tenant_guard import TenantIsolationGuard

logger = logging.getLogger(__name__)

# Settlement attempts before a definite outcome is left to the webhook
SETTLE_ATTEMPTS = 3


class ActionStatus:
    """How a billing action ended."""
    APPLIED = "applied"        # Transition committed
    PENDING = "pending"        # Charge outcome ambiguous; webhook settles it
    SCHEDULED = "scheduled"    # Deferred to the next cycle boundary
    TRIALING = "trialing"      # Add-on started in trial, no charge yet


@dataclass
class BillingActionResult:
    """Result of a billing action."""
    action: str
    status: str
    attempt_id: Optional[str] = None
    charge_cents: int = 0
    transitions: List[str] = field(default_factory=list)
    quote: Optional[Dict[str, Any]] = None
    summary: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "status": self.status,
            "attempt_id": self.attempt_id,
            "charge_cents": self.charge_cents,
            "transitions": list(self.transitions),
            "quote": self.quote,
            "billing": self.summary,
        }


class BillingService:
    """
    Service for tenant billing actions.

    All methods act on the tenant of the TenantContext passed in.
    """

    def __init__(
        self,
        db_session: Session,
        tenant_context: Optional[TenantContext],
        gateway: Optional[PaymentGatewayClient] = None,
        config: Optional[BillingConfig] = None,
        cache: Optional[EntitlementCache] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize billing service.

        Args:
            db_session: Database session
            tenant_context: Verified tenant context (rejected if missing)
            gateway: Payment gateway client (default: from environment, on first charge)
            config: Billing configuration
            cache: Entitlement cache to invalidate on transitions
            clock: Time source
        """
        self.guard = TenantIsolationGuard(db_session, tenant_context)
        self.db = db_session
        self.config = config or get_billing_config()
        self.cache = cache if cache is not None else get_entitlement_cache()
        self._gateway = gateway
        self._clock = clock

    @property
    def tenant_id(self) -> str:
        return self.guard.tenant_id

    @property
    def gateway(self) -> PaymentGatewayClient:
        if self._gateway is None:
            self._gateway = get_payment_gateway()
        return self._gateway

    def _require_gateway(self) -> None:
        """Resolve the gateway before any ledger row is opened."""
        self.gateway

    def _machine(self) -> BillingStateMachine:
        return BillingStateMachine(self.guard, self.config, cache=self.cache, clock=self._clock)

    def _commit_or_fail(self, operation: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Billing action could not be recorded", extra={
                "tenant_id": self.tenant_id,
                "operation": operation,
                "error": str(e),
            })
            raise TransientStoreFailure(operation, cause=type(e).__name__) from e

    def _run(self, operation: str, work: Callable[[BillingStateMachine], Any]) -> Any:
        """Run work inside one serialized transition and commit it."""
        machine = self._machine()
        try:
            machine.begin_transition()
            result = work(machine)
        except EntitlementError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Billing transition failed", extra={
                "tenant_id": self.tenant_id,
                "operation": operation,
                "error": str(e),
            })
            raise TransientStoreFailure(operation, cause=type(e).__name__) from e
        self._commit_or_fail(operation)
        return result

    # ------------------------------------------------------------------
    # Charging
    # ------------------------------------------------------------------

    def _submit(self, action: str, txn: PaymentTransaction, quote: Optional[dict] = None) -> BillingActionResult:
        """Submit the pending charge and settle a definite outcome."""
        request = ChargeRequest(
            tenant_id=self.tenant_id,
            attempt_id=txn.attempt_id,
            amount_cents=txn.amount_cents,
            currency=txn.currency,
            purpose=txn.purpose,
            metadata=dict(txn.extra_metadata or {}),
        )
        try:
            result = self.gateway.charge(request)
        except PaymentGatewayError as e:
            # The gateway refused the request outright: no charge exists
            logger.error("Charge request rejected by gateway", extra={
                "tenant_id": self.tenant_id,
                "attempt_id": txn.attempt_id,
                "status_code": e.status_code,
            })
            self._settle(txn.attempt_id, ChargeResult(
                outcome=ChargeOutcome.FAILED,
                attempt_id=txn.attempt_id,
                failure_code=e.code or "gateway_rejected",
                status_code=e.status_code,
            ))
            raise BillingActionDenied(action, "gateway_rejected", http_status=502, attempt_id=txn.attempt_id) from e

        if result.is_ambiguous:
            logger.warning("Charge outcome ambiguous - awaiting gateway webhook", extra={
                "tenant_id": self.tenant_id,
                "attempt_id": txn.attempt_id,
                "action": action,
            })
            return self._pending(action, txn, quote)

        transitions = self._settle(txn.attempt_id, result)
        if result.failed:
            raise BillingActionDenied(
                action, "payment_failed",
                attempt_id=txn.attempt_id,
                failure_code=result.failure_code,
            )
        if transitions is None:
            return self._pending(action, txn, quote)
        return BillingActionResult(
            action=action,
            status=ActionStatus.APPLIED,
            attempt_id=txn.attempt_id,
            charge_cents=txn.amount_cents,
            transitions=transitions,
            quote=quote,
            summary=self.get_billing_summary(),
        )

    def _pending(self, action: str, txn: PaymentTransaction, quote: Optional[dict]) -> BillingActionResult:
        return BillingActionResult(
            action=action,
            status=ActionStatus.PENDING,
            attempt_id=txn.attempt_id,
            charge_cents=txn.amount_cents,
            quote=quote,
            summary=self.get_billing_summary(),
        )

    def _settle(self, attempt_id: str, result: ChargeResult) -> Optional[List[str]]:
        """
        Record a definite synchronous outcome.

        A settlement that loses to another transition for the tenant is
        retried up to SETTLE_ATTEMPTS times. Returns None when every attempt
        lost: the row stays pending and the gateway webhook settles it. If
        that webhook already settled the row, settle() is a no-op and the
        result is an empty list.
        """
        def work(machine: BillingStateMachine) -> List[str]:
            txn = machine.transactions.get_by_attempt_id(attempt_id, for_update=True)
            return machine.settle(
                txn,
                succeeded=result.succeeded,
                failure_code=result.failure_code,
            )

        for attempt in range(1, SETTLE_ATTEMPTS + 1):
            try:
                return self._run("settle_charge", work)
            except ConcurrentTransition:
                logger.info("Charge settlement lost to a concurrent transition", extra={
                    "tenant_id": self.tenant_id,
                    "attempt_id": attempt_id,
                    "try": attempt,
                })
        logger.warning("Charge settlement deferred to gateway webhook", extra={
            "tenant_id": self.tenant_id,
            "attempt_id": attempt_id,
        })
        return None

    def _settle_free(self, machine: BillingStateMachine, txn: PaymentTransaction) -> List[str]:
        """A zero-amount action needs no gateway call."""
        return machine.settle(txn, succeeded=True)

    # ------------------------------------------------------------------
    # Tier actions
    # ------------------------------------------------------------------

    def purchase_tier(self, tier_level: int) -> BillingActionResult:
        """
        One-time tier purchase. TierOwnership exists only after the charge succeeds.

        Raises:
            InvalidTransition: a tier is already owned
            BillingActionDenied: purchase already pending, or payment failed
        """
        plan = self.config.get_tier(tier_level)
        self._require_gateway()

        def work(machine: BillingStateMachine) -> PaymentTransaction:
            ownership = machine.tiers.get_for_tenant(for_update=True)
            if ownership is not None and ownership.is_active:
                raise InvalidTransition(
                    "tier", str(ownership.tier_level), str(tier_level),
                    "Tier already owned; use upgrade",
                )
            pending = machine.transactions.list_pending(TransactionPurpose.TIER_PURCHASE)
            if pending:
                raise BillingActionDenied(
                    "purchase", "purchase_in_progress", http_status=409,
                    attempt_id=pending[0].attempt_id,
                )
            return machine.open_transaction(
                TransactionPurpose.TIER_PURCHASE,
                plan.price_cents,
                metadata={"tier_level": plan.level},
            )

        txn = self._run("purchase_tier", work)
        logger.info("Tier purchase submitted", extra={
            "tenant_id": self.tenant_id,
            "tier_level": plan.level,
            "attempt_id": txn.attempt_id,
        })
        return self._submit("purchase", txn)

    def upgrade(self, to_tier: int) -> BillingActionResult:
        """
        Upgrade immediately for the prorated price delta.

        The cycle anchor is unchanged; the new tier price applies from the
        next cycle. Capability changes only when the charge succeeds.
        """
        self.config.get_tier(to_tier)
        self._require_gateway()
        state: Dict[str, Any] = {}

        def work(machine: BillingStateMachine) -> PaymentTransaction:
            quote = machine.quote_upgrade(to_tier)
            state["quote"] = quote.to_dict()
            txn = machine.open_transaction(
                TransactionPurpose.TIER_UPGRADE,
                quote.charge_cents,
                metadata={"from_tier": quote.from_tier, "to_tier": quote.to_tier, "quote": quote.to_dict()},
            )
            if quote.charge_cents == 0:
                state["transitions"] = self._settle_free(machine, txn)
            else:
                machine.mark_upgrade_pending(txn.attempt_id)
            return txn

        txn = self._run("upgrade", work)
        if "transitions" in state:
            return BillingActionResult(
                action="upgrade",
                status=ActionStatus.APPLIED,
                attempt_id=txn.attempt_id,
                transitions=state["transitions"],
                quote=state["quote"],
                summary=self.get_billing_summary(),
            )
        return self._submit("upgrade", txn, quote=state["quote"])

    def downgrade(self, to_tier: int) -> BillingActionResult:
        """Schedule a downgrade for the next cycle boundary. No charge, no refund."""
        self.config.get_tier(to_tier)
        ownership = self._run("downgrade", lambda machine: machine.schedule_downgrade(to_tier))
        return BillingActionResult(
            action="downgrade",
            status=ActionStatus.SCHEDULED if ownership.pending_downgrade_tier else ActionStatus.APPLIED,
            summary=self.get_billing_summary(),
        )

    # ------------------------------------------------------------------
    # Add-on actions
    # ------------------------------------------------------------------

    def start_addon(self, addon_level: int, trial_days: int = 0) -> BillingActionResult:
        """
        Start the recurring add-on. Requires an active tier.

        With trial_days the subscription is entitled immediately (trialing);
        otherwise it is incomplete until the initial charge succeeds.
        """
        if trial_days < 0:
            raise ValueError("trial_days must not be negative")
        self.config.get_addon(addon_level)
        if trial_days == 0:
            self._require_gateway()

        def work(machine: BillingStateMachine) -> Optional[PaymentTransaction]:
            ownership = machine.tiers.get_for_tenant()
            if ownership is None or not ownership.is_active:
                raise InvalidTransition(
                    "addon", None, AddOnStatus.INCOMPLETE, "An active tier is required for add-ons"
                )
            sub = machine.create_addon(addon_level, trial_days=trial_days)
            if sub.status == AddOnStatus.TRIALING:
                return None
            txn = machine.open_transaction(
                TransactionPurpose.ADDON_INITIAL,
                sub.monthly_price_cents,
                metadata={"addon_level": sub.addon_level},
            )
            sub.pending_attempt_id = txn.attempt_id
            return txn

        txn = self._run("start_addon", work)
        if txn is None:
            return BillingActionResult(
                action="start_addon",
                status=ActionStatus.TRIALING,
                summary=self.get_billing_summary(),
            )
        return self._submit("start_addon", txn)

    def cancel_addon(self) -> BillingActionResult:
        """Cancel the add-on. TierOwnership is never touched."""
        self._run("cancel_addon", lambda machine: machine.cancel_addon())
        return BillingActionResult(
            action="cancel_addon",
            status=ActionStatus.APPLIED,
            summary=self.get_billing_summary(),
        )

    def reactivate(self) -> BillingActionResult:
        """
        Reactivate a suspended or canceled add-on with an immediate charge.

        Starts a new billing cycle on success. Past usage is not restored.
        """
        self._require_gateway()

        def work(machine: BillingStateMachine) -> PaymentTransaction:
            attempt_id = new_attempt_id(TransactionPurpose.ADDON_REACTIVATION)
            sub = machine.prepare_reactivation(attempt_id)
            return machine.open_transaction(
                TransactionPurpose.ADDON_REACTIVATION,
                sub.monthly_price_cents,
                attempt_id=attempt_id,
                metadata={"addon_level": sub.addon_level},
            )

        txn = self._run("reactivate", work)
        return self._submit("reactivate", txn)

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def get_billing_summary(self) -> Dict[str, Any]:
        """Current tier, add-on, open retries and next cycle charge."""
        machine = self._machine()
        ownership = machine.tiers.get_for_tenant()
        sub = machine.addons.get_for_tenant()
        if ownership is not None:
            self.db.refresh(ownership)
        if sub is not None:
            self.db.refresh(sub)

        tier = None
        next_cycle_charge = 0
        if ownership is not None:
            tier = {
                "tier_level": ownership.tier_level,
                "status": ownership.status,
                "purchased_at": ownership.purchased_at.isoformat() if ownership.purchased_at else None,
                "current_cycle_start": ownership.cycle_start_utc.isoformat() if ownership.current_cycle_start else None,
                "next_cycle_at": ownership.next_cycle_utc.isoformat() if ownership.next_cycle_at else None,
                "next_cycle_price_cents": ownership.next_cycle_price_cents,
                "pending_downgrade_tier": ownership.pending_downgrade_tier,
                "upgrade_in_progress": ownership.pending_upgrade_attempt_id is not None,
            }
            if ownership.is_active:
                next_cycle_charge += ownership.next_cycle_price_cents or 0

        addon = None
        retries: List[Dict[str, Any]] = []
        if sub is not None:
            addon = {
                "addon_level": sub.addon_level,
                "status": sub.status,
                "entitled": sub.is_entitled,
                "canceled": sub.is_canceled,
                "cancel_reason": sub.cancel_reason,
                "usage_limit": sub.usage_limit,
                "monthly_price_cents": sub.monthly_price_cents,
                "current_period_end": sub.period_end_utc.isoformat() if sub.current_period_end else None,
            }
            if sub.status in (AddOnStatus.ACTIVE, AddOnStatus.TRIALING, AddOnStatus.PAST_DUE):
                next_cycle_charge += sub.monthly_price_cents or 0
            retries = [
                {
                    "sequence": retry.sequence,
                    "scheduled_for": retry.scheduled_for.isoformat(),
                    "status": retry.status,
                }
                for retry in machine.retries.list_open(sub.id)
            ]

        return {
            "tenant_id": self.tenant_id,
            "tier": tier,
            "addon": addon,
            "scheduled_retries": retries,
            "pending_charges": [txn.attempt_id for txn in machine.transactions.list_pending()],
            "next_cycle_charge_cents": next_cycle_charge,
            "currency": self.config.currency,
        }
