"""
TenantIsolationGuard: the only path to tenant-owned rows.

Every core operation receives the TenantContext resolved once per request
(or per webhook event / scheduler unit) and builds its storage access
through a guard. The guard:
- rejects a missing or unresolved context outright (TenantContextMissing)
- filters every query on tenant-owned models by the context tenant_id
- stamps tenant_id on new rows and refuses rows stamped for another tenant
- rejects writes that reference ids the tenant does not own
  (CrossTenantReference), instead of silently dropping them

SECURITY: There is no unscoped or all-tenants mode.

USAGE:
    guard = TenantIsolationGuard(db, tenant_context)
    groups = guard.scoped(CustomerGroup).all()
    guard.require_owned(Customer, customer_ids, "customer")
    guard.add(GroupMembership(group_id=..., customer_id=...))
"""

import logging
from typing import Iterable, List, Optional, Type

from sqlalchemy.orm import Query, Session

from src.entitlements.errors import CrossTenantReference, TenantContextMissing
from src.models.tenant import Tenant
from src.platform.tenant_context import TenantContext, require_context

logger = logging.getLogger(__name__)


class TenantIsolationGuard:
    """
    Tenant-scoped access to storage.

    Thread-safety: one guard per unit of work; it holds the caller's Session.
    """

    def __init__(self, db: Session, tenant_context: Optional[TenantContext]):
        self.context = require_context(tenant_context)
        self.db = db
        self._tenant: Optional[Tenant] = None

    @property
    def tenant_id(self) -> str:
        return self.context.tenant_id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load_tenant(self) -> Tenant:
        """
        Load the acting tenant row.

        An unknown tenant id is treated as an unresolved context.
        """
        if self._tenant is None:
            tenant = self.db.query(Tenant).filter(Tenant.id == self.tenant_id).first()
            if tenant is None:
                logger.warning(
                    "Tenant context names an unknown tenant",
                    extra={"tenant_id": self.tenant_id, "source": self.context.source},
                )
                raise TenantContextMissing("Tenant context does not resolve to a tenant")
            self._tenant = tenant
        return self._tenant

    def scoped(self, model: Type) -> Query:
        """Query over model filtered to the acting tenant."""
        tenant_column = getattr(model, "tenant_id", None)
        if tenant_column is None:
            raise TypeError(f"{model.__name__} is not tenant-scoped")
        return self.db.query(model).filter(tenant_column == self.tenant_id)

    def get(self, model: Type, entity_id: str):
        """Get by primary key, or None if absent or owned by another tenant."""
        return self.scoped(model).filter(model.id == entity_id).first()

    def require_owned(self, model: Type, entity_ids: Iterable[str], resource_type: str) -> List:
        """
        Load rows by id, all of which must belong to the acting tenant.

        Raises CrossTenantReference naming every id that is missing or owned
        elsewhere. Nothing is filtered out silently.
        """
        wanted = list(dict.fromkeys(entity_ids))
        if not wanted:
            return []
        rows = self.scoped(model).filter(model.id.in_(wanted)).all()
        found = {row.id for row in rows}
        missing = [entity_id for entity_id in wanted if entity_id not in found]
        if missing:
            logger.warning(
                "Cross-tenant reference rejected",
                extra={
                    "tenant_id": self.tenant_id,
                    "resource_type": resource_type,
                    "rejected_ids": missing,
                },
            )
            raise CrossTenantReference(resource_type, missing)
        by_id = {row.id: row for row in rows}
        return [by_id[entity_id] for entity_id in wanted]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add(self, entity):
        """
        Add a tenant-owned row to the unit of work.

        tenant_id is stamped from the context. A row already stamped with a
        different tenant is rejected.
        """
        if not hasattr(entity, "tenant_id"):
            raise TypeError(f"{type(entity).__name__} is not tenant-scoped")
        existing = getattr(entity, "tenant_id", None)
        if existing and existing != self.tenant_id:
            logger.error(
                "Tenant ID mismatch detected on write",
                extra={
                    "context_tenant_id": self.tenant_id,
                    "row_tenant_id": existing,
                    "entity_type": type(entity).__name__,
                },
            )
            raise CrossTenantReference(type(entity).__name__, [getattr(entity, "id", None)])
        entity.tenant_id = self.tenant_id
        self.db.add(entity)
        return entity
