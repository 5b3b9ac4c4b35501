"""
Customer roster and grouping service.

Roster ceiling: the number of active customers is capped by the tier's
customer limit. The active-customer count is kept in a UsageCounterStore
counter under a fixed period key, so the ceiling check is the same atomic
conditional update used for metered features and concurrent adds can never
overshoot it.

Grouping: every id in a membership write must belong to the acting tenant.
Foreign ids are rejected with CrossTenantReference, never dropped.
"""

import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from src.config.billing_config import BillingConfig, get_billing_config
from src.entitlements.cache import EntitlementCache
from src.entitlements.errors import (
    CrossTenantReference,
    EntitlementError,
    InvalidTransition,
    TransientStoreFailure,
    UsageLimitExceeded,
)
from src.entitlements.service import EntitlementResolver
from src.models.base import utc_now
from src.models.customer_group import Customer, CustomerGroup, GroupMembership
from src.platform.audit import AuditAction, AuditEvent, AuditOutcome, write_audit_log_sync
from src.platform.tenant_context import TenantContext
from src.services.tenant_guard import TenantIsolationGuard
from src.services.usage_counter_store import UsageCounterStore

logger = logging.getLogger(__name__)

ROSTER_FEATURE = "customer_roster"
ROSTER_PERIOD = "roster"


class CustomerGroupService:
    """Tenant-scoped customers and customer groups."""

    def __init__(
        self,
        db_session: Session,
        tenant_context: Optional[TenantContext],
        config: Optional[BillingConfig] = None,
        cache: Optional[EntitlementCache] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.guard = TenantIsolationGuard(db_session, tenant_context)
        self.db = db_session
        self.config = config or get_billing_config()
        self.store = UsageCounterStore(self.guard, self.config, clock=clock)
        self.resolver = EntitlementResolver(
            self.guard, self.config, cache=cache, store=self.store, clock=clock
        )

    @property
    def tenant_id(self) -> str:
        return self.guard.tenant_id

    def _commit(self, operation: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise TransientStoreFailure(operation, cause=type(e).__name__) from e

    def _reject_cross_tenant(self, error: CrossTenantReference) -> None:
        """Roll back the write and record the violation out of band."""
        self.db.rollback()
        ctx = self.guard.context
        write_audit_log_sync(self.db, AuditEvent(
            tenant_id=self.tenant_id,
            action=AuditAction.CROSS_TENANT_REFERENCE,
            user_id=ctx.user_id,
            resource_type=error.resource_type,
            metadata={"rejected_ids": error.resource_ids},
            correlation_id=ctx.correlation_id,
            source=ctx.source,
            outcome=AuditOutcome.DENIED,
            error_code=error.code,
        ))

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def add_customer(self, name: str, email: Optional[str] = None) -> Customer:
        """
        Add an active customer.

        Raises:
            UsageLimitExceeded: the tier's customer ceiling is reached
            TransientStoreFailure: the store is unavailable (fail closed)
        """
        try:
            capabilities = self.resolver.resolve_uncached(lock_rows=True)
            limit = capabilities.max_customers
            result = self.store.increment_if_under_limit(ROSTER_FEATURE, ROSTER_PERIOD, limit)
            if not result.allowed:
                self.db.commit()
                logger.info("Customer ceiling reached", extra={
                    "tenant_id": self.tenant_id,
                    "limit": limit,
                    "count": result.new_count,
                })
                raise UsageLimitExceeded(ROSTER_FEATURE, limit, result.new_count)

            customer = self.guard.add(Customer(name=name, email=email, is_active=True))
            self.db.flush()
        except EntitlementError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            raise TransientStoreFailure("add_customer", cause=type(e).__name__) from e

        self._commit("add_customer")
        logger.info("Customer added", extra={
            "tenant_id": self.tenant_id,
            "customer_id": customer.id,
            "roster_count": result.new_count,
        })
        return customer

    def deactivate_customer(self, customer_id: str) -> Customer:
        """Deactivate a customer and free one roster slot."""
        try:
            (customer,) = self.guard.require_owned(Customer, [customer_id], "customer")
            if customer.is_active:
                customer.is_active = False
                self.store.release(ROSTER_FEATURE, ROSTER_PERIOD)
        except CrossTenantReference as e:
            self._reject_cross_tenant(e)
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            raise TransientStoreFailure("deactivate_customer", cause=type(e).__name__) from e
        self._commit("deactivate_customer")
        return customer

    def list_customers(self, include_inactive: bool = False) -> List[Customer]:
        query = self.guard.scoped(Customer)
        if not include_inactive:
            query = query.filter(Customer.is_active.is_(True))
        return query.order_by(Customer.created_at.asc()).all()

    def roster_count(self) -> int:
        return self.store.get_count(ROSTER_FEATURE, ROSTER_PERIOD)

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def create_group(self, name: str, description: Optional[str] = None) -> CustomerGroup:
        group = self.guard.add(CustomerGroup(name=name, description=description))
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            raise InvalidTransition("customer_group", None, name, f"Group '{name}' already exists")
        self._commit("create_group")
        return group

    def list_groups(self) -> List[CustomerGroup]:
        return self.guard.scoped(CustomerGroup).order_by(CustomerGroup.name.asc()).all()

    def add_members(self, group_id: str, customer_ids: Iterable[str]) -> List[GroupMembership]:
        """
        Add customers to a group.

        The group and every customer must belong to the acting tenant; a
        single foreign id rejects the whole write. Existing memberships are
        kept as-is.
        """
        customer_ids = list(customer_ids)
        try:
            (group,) = self.guard.require_owned(CustomerGroup, [group_id], "customer_group")
            customers = self.guard.require_owned(Customer, customer_ids, "customer")
        except CrossTenantReference as e:
            self._reject_cross_tenant(e)
            raise

        existing = {
            membership.customer_id
            for membership in self.guard.scoped(GroupMembership).filter(
                GroupMembership.group_id == group.id
            )
        }
        added = []
        for customer in customers:
            if customer.id in existing:
                continue
            added.append(self.guard.add(GroupMembership(group_id=group.id, customer_id=customer.id)))
            existing.add(customer.id)
        self._commit("add_members")
        logger.info("Group members added", extra={
            "tenant_id": self.tenant_id,
            "group_id": group.id,
            "added": len(added),
        })
        return added

    def list_members(self, group_id: str) -> List[Customer]:
        (group,) = self.guard.require_owned(CustomerGroup, [group_id], "customer_group")
        return (
            self.guard.scoped(Customer)
            .join(GroupMembership, GroupMembership.customer_id == Customer.id)
            .filter(GroupMembership.group_id == group.id)
            .order_by(Customer.name.asc())
            .all()
        )
