"""
Platform-level modules for multi-tenant enforcement and audit.

- tenant_context: tenant context resolution from the verified JWT
- audit: append-only audit trail and tenant-scoped export
"""

from src.platform.tenant_context import (
    TenantContext,
    TenantContextMiddleware,
    ContextSource,
    get_tenant_context,
    require_context,
)
from src.platform.audit import (
    AuditAction,
    AuditEvent,
    AuditOutcome,
    record_audit_event,
    write_audit_log_sync,
)

__all__ = [
    "TenantContext",
    "TenantContextMiddleware",
    "ContextSource",
    "get_tenant_context",
    "require_context",
    "AuditAction",
    "AuditEvent",
    "AuditOutcome",
    "record_audit_event",
    "write_audit_log_sync",
]
