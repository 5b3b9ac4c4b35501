"""
Audit logging for the entitlement and billing engine.

CRITICAL SECURITY REQUIREMENTS:
- Audit logs MUST be append-only (no UPDATE/DELETE)
- Every ingested payment event and every billing transition writes an event
- Events must include: tenant_id, user_id, action, timestamp, source, metadata
- PII fields MUST be redacted before persistence
- Failed out-of-band logging attempts MUST fall back to secondary logger

Two write paths:
- record_audit_event(): adds the row to the caller's unit of work. Used by
  the ledger and the billing state machine so the audit row commits (or
  rolls back) together with the state change it describes.
- write_audit_log_sync(): commits on its own and never raises. Used for
  request-level security events (denials, isolation violations).

Rows carry partition_month ("YYYY-MM") so retention can drop whole months.
"""

import csv
import io
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, FrozenSet

from fastapi import Request
from sqlalchemy import Column, String, DateTime, Text, Index
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.db_base import Base
from src.models.base import JSONType

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("audit.fallback")


class AuditAction(str, Enum):
    """Auditable actions, grouped by the component that emits them."""
    # Payment ledger
    PAYMENT_EVENT_INGESTED = "payment_event.ingested"
    PAYMENT_EVENT_DUPLICATE = "payment_event.duplicate"
    PAYMENT_EVENT_REJECTED = "payment_event.rejected"
    PAYMENT_OUTCOME_CONFLICT = "payment_event.outcome_conflict"
    PAYMENT_TRANSACTION_SETTLED = "payment_transaction.settled"

    # Tier ownership
    TIER_PURCHASED = "billing.tier_purchased"
    TIER_UPGRADED = "billing.tier_upgraded"
    TIER_DOWNGRADE_SCHEDULED = "billing.tier_downgrade_scheduled"
    TIER_DOWNGRADE_CANCELED = "billing.tier_downgrade_canceled"
    TIER_DOWNGRADE_APPLIED = "billing.tier_downgrade_applied"
    TIER_CYCLE_ADVANCED = "billing.tier_cycle_advanced"

    # Add-on subscription lifecycle
    SUBSCRIPTION_CREATED = "billing.subscription_created"
    SUBSCRIPTION_ACTIVATED = "billing.subscription_activated"
    SUBSCRIPTION_RENEWED = "billing.subscription_renewed"
    SUBSCRIPTION_PAST_DUE = "billing.subscription_past_due"
    SUBSCRIPTION_RECOVERED = "billing.subscription_recovered"
    SUBSCRIPTION_SUSPENDED = "billing.subscription_suspended"
    SUBSCRIPTION_CANCELED = "billing.subscription_canceled"
    SUBSCRIPTION_REACTIVATED = "billing.subscription_reactivated"
    SUBSCRIPTION_EXPIRED = "billing.subscription_expired"
    SUBSCRIPTION_TRIAL_WILL_END = "billing.subscription_trial_will_end"

    # Retries
    RETRY_SCHEDULED = "billing.retry_scheduled"
    RETRY_SUBMITTED = "billing.retry_submitted"
    RETRY_FAILED = "billing.retry_failed"

    # Entitlements and isolation
    ENTITLEMENT_DENIED = "entitlement.denied"
    USAGE_LIMIT_REACHED = "entitlement.usage_limit_reached"
    TENANT_CONTEXT_MISSING = "security.tenant_context_missing"
    CROSS_TENANT_REFERENCE = "security.cross_tenant_reference"

    # Compliance
    AUDIT_EXPORTED = "audit.exported"


class AuditOutcome(str, Enum):
    """Outcome of the audited action."""
    SUCCESS = "success"
    FAILURE = "failure"
    DENIED = "denied"


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class PIIRedactor:
    """
    Scrubs customer PII and payment secrets from audit metadata.

    Emails keep their domain and card numbers keep their last four digits so
    support can still correlate a row with a gateway dashboard. Every other
    sensitive key is replaced wholesale.
    """

    SENSITIVE_KEYS: FrozenSet[str] = frozenset({
        "email",
        "phone",
        "phone_number",
        "token",
        "access_token",
        "api_key",
        "secret",
        "password",
        "card_number",
        "cvv",
        "bank_account",
        "payment_method_token",
    })

    MASK = "[REDACTED]"

    @classmethod
    def redact(cls, data: Any) -> Any:
        """Return a scrubbed copy; non-dict input is returned unchanged."""
        if not isinstance(data, dict):
            return data
        return {key: cls._scrub(key, value) for key, value in data.items()}

    @classmethod
    def _scrub(cls, key: str, value: Any) -> Any:
        if key.lower() in cls.SENSITIVE_KEYS:
            return cls._mask(key.lower(), value)
        if isinstance(value, dict):
            return cls.redact(value)
        if isinstance(value, list):
            return [cls.redact(item) for item in value]
        return value

    @classmethod
    def _mask(cls, key: str, value: Any) -> str:
        if not isinstance(value, str):
            return cls.MASK
        if key == "email" and "@" in value:
            return "***@" + value.rsplit("@", 1)[1]
        if key == "card_number":
            digits = "".join(ch for ch in value if ch.isdigit())
            if len(digits) >= 12:
                return "****" + digits[-4:]
        return cls.MASK


def partition_month_for(moment: datetime) -> str:
    return f"{moment.year:04d}-{moment.month:02d}"


class AuditLog(Base):
    """
    Audit log database model.

    CRITICAL: This table is append-only. No UPDATE or DELETE operations are allowed.
    """
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(255), nullable=False, index=True)
    user_id = Column(String(255), nullable=True, index=True)  # NULL for system events
    action = Column(String(100), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    partition_month = Column(String(7), nullable=False, index=True)
    ip_address = Column(String(45), nullable=True)  # IPv6 max length
    user_agent = Column(Text, nullable=True)
    resource_type = Column(String(100), nullable=True, index=True)
    resource_id = Column(String(255), nullable=True, index=True)
    event_metadata = Column(JSONType, nullable=False, default=dict)
    correlation_id = Column(String(64), nullable=False, index=True)
    source = Column(String(50), nullable=False, default="api")  # api, webhook, scheduler, system
    outcome = Column(String(20), nullable=False, default="success")  # success, failure, denied
    error_code = Column(String(50), nullable=True)

    __table_args__ = (
        Index("ix_audit_logs_tenant_timestamp", "tenant_id", "timestamp"),
        Index("ix_audit_logs_tenant_action", "tenant_id", "action"),
        Index("ix_audit_logs_partition_tenant", "partition_month", "tenant_id"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "action": self.action,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "metadata": self.event_metadata or {},
            "correlation_id": self.correlation_id,
            "source": self.source,
            "outcome": self.outcome,
            "error_code": self.error_code,
        }


@dataclass
class AuditEvent:
    """
    An audit row before it is written.

    Built by the ledger, the billing state machine and the request layer;
    metadata passes through PIIRedactor in to_dict().
    """
    tenant_id: str
    action: AuditAction
    user_id: Optional[str] = None  # NULL for system events
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = "api"
    outcome: AuditOutcome = AuditOutcome.SUCCESS
    error_code: Optional[str] = None

    _PLAIN_FIELDS = (
        "tenant_id", "user_id", "timestamp", "ip_address", "user_agent",
        "resource_type", "resource_id", "source", "error_code",
    )

    def to_dict(self) -> dict[str, Any]:
        """Column values for an AuditLog row. Metadata is scrubbed here."""
        row = {name: getattr(self, name) for name in self._PLAIN_FIELDS}
        row.update(
            action=_enum_value(self.action),
            outcome=_enum_value(self.outcome),
            partition_month=partition_month_for(self.timestamp),
            event_metadata=PIIRedactor.redact(self.metadata),
            correlation_id=self.correlation_id or str(uuid.uuid4()),
        )
        return row


def extract_client_info(request: Request) -> tuple[Optional[str], Optional[str]]:
    """Client IP (first X-Forwarded-For hop, else the peer) and user agent."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        ip_address = forwarded_for.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else None
    return ip_address, request.headers.get("User-Agent")


def record_audit_event(db: Session, event: AuditEvent) -> AuditLog:
    """
    Add an audit row to the caller's unit of work.

    Does NOT commit. The row becomes durable with the caller's commit and
    disappears with the caller's rollback, so an audit trail never claims a
    transition that was not recorded.
    """
    audit_log = AuditLog(id=str(uuid.uuid4()), **event.to_dict())
    db.add(audit_log)
    return audit_log


def write_audit_log_sync(
    db: Session,
    event: AuditEvent,
) -> Optional[AuditLog]:
    """
    Write an audit event to the database in its own commit.

    On failure, writes to fallback logger and returns None (never crashes
    request flow).
    """
    audit_id = str(uuid.uuid4())
    try:
        audit_log = AuditLog(id=audit_id, **event.to_dict())
        db.add(audit_log)
        db.commit()

        logger.info(
            "Audit event recorded",
            extra={
                "audit_id": audit_log.id,
                "tenant_id": event.tenant_id,
                "user_id": event.user_id,
                "action": audit_log.action,
                "correlation_id": audit_log.correlation_id,
                "source": event.source,
                "outcome": audit_log.outcome,
            }
        )
        return audit_log

    except SQLAlchemyError as e:
        db.rollback()
        _write_fallback_log(event, audit_id, str(e))
        return None


def _write_fallback_log(event: AuditEvent, audit_id: str, error_reason: str) -> None:
    """Emit the row that could not be stored as one JSON line on audit.fallback."""
    entry = event.to_dict()
    entry["metadata"] = entry.pop("event_metadata")
    entry.update(event_id=audit_id, fallback_reason=error_reason)
    fallback_logger.error(
        "Audit log fallback",
        extra={"audit_entry": json.dumps(entry, default=str)},
    )


# =============================================================================
# Export (read-only)
# =============================================================================

class AuditExportFormat(str, Enum):
    """Supported export formats for audit logs."""
    CSV = "csv"
    JSON = "json"


class AuditExportService:
    """
    Read-only export of a tenant's audit trail for compliance tooling.

    Every query is filtered by the tenant_id of the caller's verified
    context. Nothing here mutates audit rows.
    """

    CSV_COLUMNS = [
        "id", "timestamp", "action", "user_id", "resource_type",
        "resource_id", "source", "outcome", "error_code", "correlation_id",
        "metadata",
    ]

    MAX_PAGE_SIZE = 1000

    def __init__(self, db: Session, tenant_id: str):
        if not tenant_id:
            raise ValueError("tenant_id is required")
        self.db = db
        self.tenant_id = tenant_id

    def query_audit_logs(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        actions: Optional[list[str]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AuditLog]:
        limit = max(1, min(limit, self.MAX_PAGE_SIZE))
        query = self.db.query(AuditLog).filter(AuditLog.tenant_id == self.tenant_id)
        if start_date:
            query = query.filter(AuditLog.timestamp >= start_date)
        if end_date:
            query = query.filter(AuditLog.timestamp <= end_date)
        if actions:
            query = query.filter(AuditLog.action.in_(actions))
        return (
            query.order_by(AuditLog.timestamp.asc(), AuditLog.id.asc())
            .offset(max(0, offset))
            .limit(limit)
            .all()
        )

    def export(
        self,
        fmt: AuditExportFormat = AuditExportFormat.JSON,
        **filters: Any,
    ) -> str:
        rows = [log.to_dict() for log in self.query_audit_logs(**filters)]
        if fmt == AuditExportFormat.JSON:
            return json.dumps(rows, default=str)

        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=self.CSV_COLUMNS, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            row["metadata"] = json.dumps(row["metadata"], default=str)
            writer.writerow(row)
        return buffer.getvalue()
