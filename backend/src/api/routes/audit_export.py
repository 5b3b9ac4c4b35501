"""
Audit export routes for compliance tooling.

Read-only, append-only views of the acting tenant's AuditLog rows, payment
ledger rows and open payment outcome conflicts. Pages are ordered oldest
first so an exporter can resume from an offset.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from src.database.session import get_db_session
from src.platform.audit import (
    AuditAction,
    AuditEvent,
    AuditExportFormat,
    AuditExportService,
    record_audit_event,
)
from src.platform.tenant_context import get_tenant_context
from src.repositories.subscription_repository import PaymentTransactionRepository
from src.services.payment_event_ledger import PaymentEventLedger
from src.services.tenant_guard import TenantIsolationGuard

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/audit", tags=["audit"])

MAX_PAGE_SIZE = 1000


def _record_export(db: Session, guard: TenantIsolationGuard, resource_type: str, count: int) -> None:
    ctx = guard.context
    record_audit_event(db, AuditEvent(
        tenant_id=guard.tenant_id,
        action=AuditAction.AUDIT_EXPORTED,
        user_id=ctx.user_id,
        resource_type=resource_type,
        metadata={"rows": count},
        correlation_id=ctx.correlation_id,
        source=ctx.source,
    ))
    db.commit()


@router.get("/events")
def export_audit_events(
    request: Request,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    action: Optional[List[str]] = Query(None),
    limit: int = Query(100, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    fmt: AuditExportFormat = Query(AuditExportFormat.JSON, alias="format"),
    db: Session = Depends(get_db_session),
):
    """Export the tenant's audit trail as JSON or CSV."""
    guard = TenantIsolationGuard(db, get_tenant_context(request))
    service = AuditExportService(db, guard.tenant_id)
    filters = dict(start_date=start_date, end_date=end_date, actions=action, limit=limit, offset=offset)

    if fmt == AuditExportFormat.CSV:
        body = service.export(AuditExportFormat.CSV, **filters)
        _record_export(db, guard, "audit_log", body.count("\n") - 1)
        return PlainTextResponse(body, media_type="text/csv")

    rows = [log.to_dict() for log in service.query_audit_logs(**filters)]
    _record_export(db, guard, "audit_log", len(rows))
    return {"events": rows, "limit": limit, "offset": offset, "count": len(rows)}


@router.get("/transactions")
def export_transactions(
    request: Request,
    limit: int = Query(100, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db_session),
):
    """Export the tenant's payment ledger."""
    guard = TenantIsolationGuard(db, get_tenant_context(request))
    rows = [txn.to_dict() for txn in PaymentTransactionRepository(guard).list_page(limit, offset)]
    _record_export(db, guard, "payment_transaction", len(rows))
    return {"transactions": rows, "limit": limit, "offset": offset, "count": len(rows)}


@router.get("/conflicts")
def list_payment_conflicts(
    request: Request,
    include_resolved: bool = False,
    db: Session = Depends(get_db_session),
):
    """Conflicting payment outcomes awaiting manual review."""
    guard = TenantIsolationGuard(db, get_tenant_context(request))
    conflicts = PaymentEventLedger(db).list_conflicts(guard.tenant_id, include_resolved=include_resolved)
    return {"conflicts": [conflict.to_dict() for conflict in conflicts]}
