"""Tenant context and audit lookups shared by service and route tests."""

from typing import List

from sqlalchemy.orm import Session

from src.platform.audit import AuditLog
from src.platform.tenant_context import TenantContext


def context_for(tenant_or_id, user_id: str = "user-1") -> TenantContext:
    """Build a TenantContext from a Tenant row or a raw tenant id."""
    tenant_id = tenant_or_id if isinstance(tenant_or_id, str) else tenant_or_id.id
    return TenantContext(tenant_id=tenant_id, user_id=user_id)


def audit_actions(db_session: Session, tenant_id: str) -> List[str]:
    """Audit actions recorded for a tenant, oldest first."""
    rows = (
        db_session.query(AuditLog)
        .filter(AuditLog.tenant_id == tenant_id)
        .order_by(AuditLog.timestamp.asc(), AuditLog.id.asc())
        .all()
    )
    return [row.action for row in rows]
