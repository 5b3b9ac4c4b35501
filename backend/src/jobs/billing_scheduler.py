"""
Billing scheduler job.

One sweep over time-triggered billing work:
- Submit due retries of failed recurring charges (+3/+7/+14 days from the
  original failure)
- Expire incomplete add-on subscriptions whose first-charge window lapsed
- Advance tier cycles past their boundary and apply pending downgrades

Each tenant is processed in its own session and its own serialized
transitions. Retry charges are submitted and a definite synchronous outcome
is settled; ambiguous outcomes stay pending for the gateway webhook. The job
never waits on a webhook.

Usage:
    python -m src.jobs.billing_scheduler

Deployed as a cron job.
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.config.billing_config import BillingConfig, get_billing_config
from src.database.session import get_session_factory, session_scope
from src.entitlements.cache import EntitlementCache, get_entitlement_cache
from src.entitlements.errors import ConcurrentTransition, EntitlementError
from src.integrations.payment_gateway import (
    ChargeRequest,
    PaymentGatewayClient,
    PaymentGatewayError,
    PaymentGatewayNotConfiguredError,
    get_payment_gateway,
)
from src.models.addon_subscription import AddOnStatus, AddOnSubscription
from src.models.base import utc_now
from src.models.billing_retry import BillingRetry, RetryStatus
from src.models.tier_ownership import TierOwnership, TierOwnershipStatus
from src.platform.tenant_context import ContextSource, TenantContext
from src.services.billing_state_machine import BillingStateMachine
from src.services.tenant_guard import TenantIsolationGuard

logger = logging.getLogger(__name__)

# Maximum tenants to process per run
MAX_TENANTS_PER_RUN = 500


class SchedulerStats:
    """Track scheduler run statistics."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self.tenants_processed = 0
        self.retries_submitted = 0
        self.retries_settled = 0
        self.retries_skipped = 0
        self.subscriptions_expired = 0
        self.cycles_advanced = 0
        self.downgrades_applied = 0
        self.conflicts = 0
        self.errors = 0
        self._clock = clock
        self.start_time = clock()

    def to_dict(self) -> dict:
        duration = (self._clock() - self.start_time).total_seconds()
        return {
            "tenants_processed": self.tenants_processed,
            "retries_submitted": self.retries_submitted,
            "retries_settled": self.retries_settled,
            "retries_skipped": self.retries_skipped,
            "subscriptions_expired": self.subscriptions_expired,
            "cycles_advanced": self.cycles_advanced,
            "downgrades_applied": self.downgrades_applied,
            "conflicts": self.conflicts,
            "errors": self.errors,
            "duration_seconds": duration,
        }


class BillingScheduler:
    """
    Time-triggered billing sweep.

    session_factory returns a new Session per tenant unit of work.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: Optional[PaymentGatewayClient] = None,
        config: Optional[BillingConfig] = None,
        cache: Optional[EntitlementCache] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.config = config or get_billing_config()
        self.cache = cache if cache is not None else get_entitlement_cache()
        self._clock = clock

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def _tenants_with_due_work(self, now: datetime) -> List[str]:
        """
        Tenant ids with any due work. Reads ids only; all row access happens
        through a per-tenant guard afterwards.
        """
        with session_scope(self.session_factory) as session:
            tenant_ids: Set[str] = set()
            tenant_ids.update(session.execute(
                select(BillingRetry.tenant_id).where(
                    BillingRetry.status == RetryStatus.SCHEDULED,
                    BillingRetry.scheduled_for <= now,
                ).distinct()
            ).scalars())
            tenant_ids.update(session.execute(
                select(AddOnSubscription.tenant_id).where(
                    AddOnSubscription.status == AddOnStatus.INCOMPLETE,
                    AddOnSubscription.incomplete_expires_at <= now,
                )
            ).scalars())
            tenant_ids.update(session.execute(
                select(TierOwnership.tenant_id).where(
                    TierOwnership.status == TierOwnershipStatus.ACTIVE,
                    TierOwnership.next_cycle_at <= now,
                )
            ).scalars())
            return sorted(tenant_ids)[:MAX_TENANTS_PER_RUN]

    # ------------------------------------------------------------------
    # Per-tenant work
    # ------------------------------------------------------------------

    def _machine(self, session: Session, tenant_id: str) -> BillingStateMachine:
        context = TenantContext.for_system(tenant_id, ContextSource.SCHEDULER)
        guard = TenantIsolationGuard(session, context)
        return BillingStateMachine(guard, self.config, cache=self.cache, clock=self._clock)

    def _transition(self, session: Session, tenant_id: str, work: Callable[[BillingStateMachine], object]):
        machine = self._machine(session, tenant_id)
        try:
            machine.begin_transition()
            result = work(machine)
            session.commit()
        except (EntitlementError, SQLAlchemyError):
            session.rollback()
            raise
        return result

    def _sweep_lifecycle(self, session: Session, tenant_id: str, now: datetime, stats: SchedulerStats) -> None:
        expired = self._transition(session, tenant_id, lambda m: m.expire_incomplete(now))
        stats.subscriptions_expired += len(expired)

        transitions = self._transition(session, tenant_id, lambda m: m.apply_cycle_boundary(now))
        if "tier:cycle_advanced" in transitions:
            stats.cycles_advanced += 1
        stats.downgrades_applied += len([t for t in transitions if t != "tier:cycle_advanced"])

    def _submit_retries(self, session: Session, tenant_id: str, now: datetime, stats: SchedulerStats) -> None:
        due = self._machine(session, tenant_id).retries.list_due(now)
        for retry in due:
            self._submit_retry(session, tenant_id, retry.attempt_id, stats)

    def _submit_retry(self, session: Session, tenant_id: str, attempt_id: str, stats: SchedulerStats) -> None:
        def claim(machine: BillingStateMachine):
            retry = machine.retries.get_by_attempt_id(attempt_id)
            if retry is None or retry.status != RetryStatus.SCHEDULED:
                return None
            sub = machine.addons.get_for_tenant(for_update=True)
            if sub is None or sub.status != AddOnStatus.PAST_DUE:
                retry.status = RetryStatus.CANCELED
                retry.completed_at = machine.now()
                return None
            return machine.mark_retry_submitted(retry)

        txn = self._transition(session, tenant_id, claim)
        if txn is None:
            stats.retries_skipped += 1
            return
        stats.retries_submitted += 1

        if self.gateway is None:
            logger.warning("Retry left pending - payment gateway not configured", extra={
                "tenant_id": tenant_id,
                "attempt_id": attempt_id,
            })
            return

        request = ChargeRequest(
            tenant_id=tenant_id,
            attempt_id=txn.attempt_id,
            amount_cents=txn.amount_cents,
            currency=txn.currency,
            purpose=txn.purpose,
            metadata=dict(txn.extra_metadata or {}),
        )
        try:
            result = self.gateway.charge(request)
            succeeded = result.succeeded
            failure_code = result.failure_code
            if result.is_ambiguous:
                return
        except PaymentGatewayError as e:
            logger.error("Retry charge rejected by gateway", extra={
                "tenant_id": tenant_id,
                "attempt_id": attempt_id,
                "status_code": e.status_code,
            })
            succeeded = False
            failure_code = e.code or "gateway_rejected"

        def settle(machine: BillingStateMachine) -> List[str]:
            current = machine.transactions.get_by_attempt_id(attempt_id, for_update=True)
            return machine.settle(current, succeeded=succeeded, failure_code=failure_code)

        self._transition(session, tenant_id, settle)
        stats.retries_settled += 1

    def process_tenant(self, tenant_id: str, now: datetime, stats: SchedulerStats) -> None:
        with session_scope(self.session_factory) as session:
            try:
                self._sweep_lifecycle(session, tenant_id, now, stats)
                self._submit_retries(session, tenant_id, now, stats)
            except ConcurrentTransition:
                stats.conflicts += 1
                logger.info("Tenant busy with another billing transition - deferred to next run", extra={
                    "tenant_id": tenant_id,
                })
            except (EntitlementError, SQLAlchemyError) as e:
                stats.errors += 1
                logger.error("Billing sweep failed for tenant", extra={
                    "tenant_id": tenant_id,
                    "error_type": type(e).__name__,
                    "error": str(e),
                })

    def run_once(self) -> SchedulerStats:
        """Run one sweep. Per-tenant failures are counted, not raised."""
        stats = SchedulerStats(self._clock)
        now = self._clock()
        tenant_ids = self._tenants_with_due_work(now)
        logger.info("Starting billing sweep", extra={"tenant_count": len(tenant_ids)})

        for tenant_id in tenant_ids:
            stats.tenants_processed += 1
            self.process_tenant(tenant_id, now, stats)

        logger.info("Billing sweep completed", extra=stats.to_dict())
        return stats


def run_billing_sweep() -> Dict:
    """Run the scheduler with production wiring."""
    try:
        gateway = get_payment_gateway()
    except PaymentGatewayNotConfiguredError:
        logger.warning("Payment gateway not configured - retries will be left pending")
        gateway = None

    scheduler = BillingScheduler(get_session_factory(), gateway=gateway)
    try:
        return scheduler.run_once().to_dict()
    finally:
        if gateway is not None:
            gateway.close()


def main():
    """Entry point for running the billing sweep from command line."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        result = run_billing_sweep()
        logger.info("Billing sweep finished at %s: %s", datetime.now(timezone.utc).isoformat(), result)
        sys.exit(0)
    except (SQLAlchemyError, ValueError) as e:
        logger.error("Billing sweep failed", extra={"error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()
