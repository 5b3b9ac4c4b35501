"""
PaymentEventLedger: idempotent ingestion of payment gateway events.

Processes gateway webhooks with:
- Event deduplication on sha256(external event id), retained indefinitely
- Out-of-order tolerance (settlement is a no-op once an attempt is terminal)
- Conflict capture: a second, different terminal outcome for one attempt is
  recorded for manual review and never applied
- Audit rows for every ingested event, applied or duplicate

Ingestion of one event is one unit of work: dedupe row, ledger row, state
transition and audit rows commit together. Any store failure rolls back
and raises TransientStoreFailure so the webhook is answered non-2xx and the
gateway redelivers.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from src.config.billing_config import BillingConfig, get_billing_config
from src.entitlements.cache import EntitlementCache, get_entitlement_cache
from src.entitlements.errors import (
    ConflictingPaymentOutcome,
    CrossTenantReference,
    EntitlementError,
    InvalidPaymentEvent,
    TenantContextMissing,
    TransientStoreFailure,
)
from src.models.base import ensure_utc, utc_now
from src.models.payment_event import PaymentOutcomeConflict, ProcessedPaymentEvent
from src.models.payment_transaction import (
    ALL_PURPOSES,
    PaymentTransaction,
    TransactionPurpose,
    TransactionStatus,
)
from src.platform.audit import AuditAction, AuditEvent, AuditOutcome, record_audit_event
from src.platform.tenant_context import ContextSource, TenantContext
from src.services.billing_state_machine import BillingStateMachine
from src.services.tenant_guard import TenantIsolationGuard

logger = logging.getLogger(__name__)


class PaymentEventType:
    """Gateway event types understood by the ledger."""
    CHARGE_SUCCEEDED = "charge.succeeded"
    CHARGE_FAILED = "charge.failed"
    CHARGE_PENDING = "charge.pending"
    TRIAL_WILL_END = "subscription.trial_will_end"


CHARGE_EVENT_TYPES = frozenset({
    PaymentEventType.CHARGE_SUCCEEDED,
    PaymentEventType.CHARGE_FAILED,
    PaymentEventType.CHARGE_PENDING,
})

# Metadata key naming the tier a tier charge settles into
TIER_METADATA_KEYS = {
    TransactionPurpose.TIER_PURCHASE: "tier_level",
    TransactionPurpose.TIER_UPGRADE: "to_tier",
}


def event_fingerprint(event_id: str) -> str:
    """Stable idempotency key; the raw gateway id is never stored."""
    return hashlib.sha256(event_id.encode("utf-8")).hexdigest()


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        try:
            return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            raise InvalidPaymentEvent(f"Invalid timestamp: {value}") from None
    raise InvalidPaymentEvent(f"Invalid timestamp: {value!r}")


@dataclass(frozen=True)
class ExternalPaymentEvent:
    """
    Normalized gateway event.

    Payload shape:
        {"id": "evt_...", "type": "charge.succeeded", "created": <iso|epoch>,
         "data": {"tenant_id", "attempt_id", "amount", "currency", "status",
                  "terminal", "failure_code", "metadata": {"purpose", ...}}}
    """
    id: str
    type: str
    tenant_id: str
    attempt_id: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    terminal: bool = False
    failure_code: Optional[str] = None
    occurred_at: Optional[datetime] = None
    purpose: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    payload_hash: Optional[str] = None

    @property
    def fingerprint(self) -> str:
        return event_fingerprint(self.id)

    @property
    def is_charge(self) -> bool:
        return self.type in CHARGE_EVENT_TYPES

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ExternalPaymentEvent":
        """
        Validate and normalize a webhook payload.

        Raises:
            InvalidPaymentEvent: required fields missing or malformed
        """
        if not isinstance(payload, dict):
            raise InvalidPaymentEvent("Payload must be a JSON object")
        event_id = payload.get("id")
        event_type = payload.get("type")
        data = payload.get("data") or {}
        if not event_id or not isinstance(event_id, str):
            raise InvalidPaymentEvent("Event id is required")
        if not event_type or not isinstance(event_type, str):
            raise InvalidPaymentEvent("Event type is required")
        if not isinstance(data, dict):
            raise InvalidPaymentEvent("Event data must be an object")

        tenant_id = data.get("tenant_id")
        if not tenant_id:
            raise InvalidPaymentEvent("Event data.tenant_id is required")

        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise InvalidPaymentEvent("Event data.metadata must be an object")

        status = data.get("status")
        if event_type == PaymentEventType.CHARGE_SUCCEEDED:
            status = status or "succeeded"
        elif event_type == PaymentEventType.CHARGE_FAILED:
            status = status or "failed"
        elif event_type == PaymentEventType.CHARGE_PENDING:
            status = status or "pending"

        terminal = data.get("terminal")
        if terminal is None:
            terminal = status in ("succeeded", "failed")

        amount = data.get("amount")
        if event_type in CHARGE_EVENT_TYPES:
            if not data.get("attempt_id"):
                raise InvalidPaymentEvent("Charge events require data.attempt_id")
            if status not in ("succeeded", "failed", "pending"):
                raise InvalidPaymentEvent(f"Unknown charge status: {status}")
            if amount is not None and (not isinstance(amount, int) or amount < 0):
                raise InvalidPaymentEvent("data.amount must be a non-negative integer (minor units)")

        purpose = metadata.get("purpose")
        if purpose is not None and purpose not in ALL_PURPOSES:
            raise InvalidPaymentEvent(f"Unknown charge purpose: {purpose}")

        return cls(
            id=event_id,
            type=event_type,
            tenant_id=str(tenant_id),
            attempt_id=data.get("attempt_id"),
            amount_cents=amount,
            currency=data.get("currency"),
            status=status,
            terminal=bool(terminal),
            failure_code=data.get("failure_code"),
            occurred_at=_parse_timestamp(payload.get("created")),
            purpose=purpose,
            metadata=metadata,
            payload_hash=hashlib.sha256(
                json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
            ).hexdigest(),
        )


@dataclass
class IngestResult:
    """Result of ingesting one event."""
    applied: bool
    event_id: str
    fingerprint: str
    duplicate: bool = False
    transaction_status: Optional[str] = None
    transitions: List[str] = field(default_factory=list)
    conflict: bool = False
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "duplicate": self.duplicate,
            "event_id": self.event_id,
            "transaction_status": self.transaction_status,
            "transitions": list(self.transitions),
            "conflict": self.conflict,
            "reason": self.reason,
        }


class PaymentEventLedger:
    """
    Ingests gateway events exactly once per event id.

    Each event derives a webhook-sourced system context for the tenant named
    in the (signature-verified) payload.
    """

    def __init__(
        self,
        db_session: Session,
        config: Optional[BillingConfig] = None,
        cache: Optional[EntitlementCache] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db_session
        self.config = config or get_billing_config()
        self.cache = cache if cache is not None else get_entitlement_cache()
        self._clock = clock

    def _audit(
        self,
        event: ExternalPaymentEvent,
        action: AuditAction,
        metadata: Optional[dict] = None,
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
        error_code: Optional[str] = None,
    ) -> None:
        record_audit_event(self.db, AuditEvent(
            tenant_id=event.tenant_id,
            action=action,
            resource_type="payment_event",
            resource_id=event.fingerprint,
            metadata=dict(
                {"event_type": event.type, "attempt_id": event.attempt_id, "status": event.status},
                **(metadata or {}),
            ),
            correlation_id=event.fingerprint[:36],
            source=ContextSource.WEBHOOK,
            outcome=outcome,
            error_code=error_code,
        ))

    def _is_duplicate(self, fingerprint: str) -> bool:
        return self.db.query(ProcessedPaymentEvent.id).filter(
            ProcessedPaymentEvent.fingerprint == fingerprint
        ).first() is not None

    def _attempt_exists(self, attempt_id: str) -> bool:
        return self.db.query(PaymentTransaction.id).filter(
            PaymentTransaction.attempt_id == attempt_id
        ).first() is not None

    def _check_purpose_metadata(self, event: ExternalPaymentEvent) -> None:
        """A ledger row opened from an event must carry the tier its settlement reads."""
        key = TIER_METADATA_KEYS.get(event.purpose)
        if key is None:
            return
        try:
            self.config.get_tier(int(event.metadata.get(key)))
        except (TypeError, ValueError):
            raise InvalidPaymentEvent(
                f"metadata.{key} must name a configured tier",
                attempt_id=event.attempt_id,
                purpose=event.purpose,
            ) from None

    def _record_duplicate(self, event: ExternalPaymentEvent) -> IngestResult:
        logger.info("Duplicate payment event ignored", extra={
            "tenant_id": event.tenant_id,
            "fingerprint": event.fingerprint,
            "event_type": event.type,
        })
        self._audit(event, AuditAction.PAYMENT_EVENT_DUPLICATE)
        self.db.commit()
        return IngestResult(
            applied=False,
            duplicate=True,
            event_id=event.id,
            fingerprint=event.fingerprint,
            reason="duplicate",
        )

    def ingest(self, event: ExternalPaymentEvent) -> IngestResult:
        """
        Ingest one event.

        Returns applied=True only when this call settled a transaction.
        Duplicates, non-terminal events, repeated outcomes and conflicts all
        return applied=False and are still acknowledged.

        Raises:
            TransientStoreFailure: nothing was recorded; redeliver
            ConcurrentTransition: another transition for the tenant won; redeliver
            InvalidPaymentEvent: the event cannot create its ledger row
        """
        try:
            if self._is_duplicate(event.fingerprint):
                return self._record_duplicate(event)
            try:
                result = self._apply(event)
            except IntegrityError:
                # Concurrent delivery of the same event inserted first
                self.db.rollback()
                if not self._is_duplicate(event.fingerprint):
                    raise
                return self._record_duplicate(event)
        except EntitlementError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Payment event ingestion failed - gateway will redeliver", extra={
                "tenant_id": event.tenant_id,
                "fingerprint": event.fingerprint,
                "event_type": event.type,
                "error": str(e),
            })
            raise TransientStoreFailure("payment_event_ingest", cause=type(e).__name__) from e
        return result

    def _apply(self, event: ExternalPaymentEvent) -> IngestResult:
        context = TenantContext.for_system(
            event.tenant_id, ContextSource.WEBHOOK, correlation_id=event.fingerprint[:36]
        )
        guard = TenantIsolationGuard(self.db, context)
        processed = ProcessedPaymentEvent(
            fingerprint=event.fingerprint,
            event_type=event.type,
            tenant_id=event.tenant_id,
            attempt_id=event.attempt_id,
            payload_hash=event.payload_hash,
            applied=False,
            processed_at=self._clock(),
        )

        try:
            guard.load_tenant()
        except TenantContextMissing:
            logger.warning("Payment event for unknown tenant rejected", extra={
                "tenant_id": event.tenant_id,
                "fingerprint": event.fingerprint,
            })
            self.db.add(processed)
            self._audit(event, AuditAction.PAYMENT_EVENT_REJECTED, {"reason": "unknown_tenant"},
                        outcome=AuditOutcome.DENIED, error_code=TenantContextMissing.code)
            self.db.commit()
            return IngestResult(
                applied=False, event_id=event.id, fingerprint=event.fingerprint, reason="unknown_tenant"
            )

        machine = BillingStateMachine(guard, self.config, cache=self.cache, clock=self._clock)
        machine.begin_transition()

        self.db.add(processed)
        self.db.flush()
        self._audit(event, AuditAction.PAYMENT_EVENT_INGESTED)

        if event.type == PaymentEventType.TRIAL_WILL_END:
            self._audit(event, AuditAction.SUBSCRIPTION_TRIAL_WILL_END)
            self.db.commit()
            return IngestResult(
                applied=False, event_id=event.id, fingerprint=event.fingerprint, reason="informational"
            )
        if not event.is_charge:
            logger.info("Unhandled payment event type acknowledged", extra={
                "tenant_id": event.tenant_id,
                "event_type": event.type,
            })
            self.db.commit()
            return IngestResult(
                applied=False, event_id=event.id, fingerprint=event.fingerprint, reason="unhandled_type"
            )

        txn = machine.transactions.get_by_attempt_id(event.attempt_id, for_update=True)
        if txn is None and self._attempt_exists(event.attempt_id):
            logger.warning("Payment event references another tenant's attempt", extra={
                "tenant_id": event.tenant_id,
                "attempt_id": event.attempt_id,
                "fingerprint": event.fingerprint,
            })
            self._audit(event, AuditAction.PAYMENT_EVENT_REJECTED, {"reason": "cross_tenant_attempt"},
                        outcome=AuditOutcome.DENIED, error_code=CrossTenantReference.code)
            self.db.commit()
            return IngestResult(
                applied=False, event_id=event.id, fingerprint=event.fingerprint, reason="cross_tenant_attempt"
            )
        if txn is None:
            if event.purpose is None or event.amount_cents is None:
                raise InvalidPaymentEvent(
                    "Unknown attempt requires data.amount and metadata.purpose",
                    attempt_id=event.attempt_id,
                )
            self._check_purpose_metadata(event)
            txn = machine.open_transaction(
                event.purpose,
                event.amount_cents,
                attempt_id=event.attempt_id,
                metadata=event.metadata,
            )
            txn.currency = (event.currency or self.config.currency).lower()
            txn.event_fingerprint = event.fingerprint

        if not event.terminal:
            self.db.commit()
            return IngestResult(
                applied=False,
                event_id=event.id,
                fingerprint=event.fingerprint,
                transaction_status=txn.status,
                reason="non_terminal",
            )

        reported = TransactionStatus.COMPLETED if event.succeeded else TransactionStatus.FAILED
        if txn.is_terminal:
            if txn.status == reported:
                self.db.commit()
                return IngestResult(
                    applied=False,
                    event_id=event.id,
                    fingerprint=event.fingerprint,
                    transaction_status=txn.status,
                    reason="already_settled",
                )
            return self._record_conflict(event, txn.tenant_id, txn.attempt_id, txn.status, reported)

        transitions = machine.settle(
            txn,
            succeeded=event.succeeded,
            occurred_at=event.occurred_at,
            failure_code=event.failure_code,
        )
        txn.event_fingerprint = event.fingerprint
        processed.applied = True
        self.db.commit()

        logger.info("Payment event applied", extra={
            "tenant_id": event.tenant_id,
            "attempt_id": event.attempt_id,
            "status": txn.status,
            "transitions": transitions,
        })
        return IngestResult(
            applied=True,
            event_id=event.id,
            fingerprint=event.fingerprint,
            transaction_status=txn.status,
            transitions=transitions,
        )

    def _record_conflict(
        self,
        event: ExternalPaymentEvent,
        tenant_id: str,
        attempt_id: str,
        recorded: str,
        conflicting: str,
    ) -> IngestResult:
        """The first terminal outcome stands; the second goes to manual review."""
        error = ConflictingPaymentOutcome(attempt_id, recorded, conflicting)
        logger.error("Conflicting payment outcome - manual review required", extra={
            "tenant_id": tenant_id,
            "attempt_id": attempt_id,
            "recorded_status": recorded,
            "conflicting_status": conflicting,
            "fingerprint": event.fingerprint,
        })
        self.db.add(PaymentOutcomeConflict(
            tenant_id=tenant_id,
            attempt_id=attempt_id,
            recorded_status=recorded,
            conflicting_status=conflicting,
            event_fingerprint=event.fingerprint,
            details={"event_type": event.type, "failure_code": event.failure_code},
        ))
        self._audit(event, AuditAction.PAYMENT_OUTCOME_CONFLICT, error.details,
                    outcome=AuditOutcome.FAILURE, error_code=error.code)
        self.db.commit()
        return IngestResult(
            applied=False,
            event_id=event.id,
            fingerprint=event.fingerprint,
            transaction_status=recorded,
            conflict=True,
            reason=error.code,
        )

    def list_conflicts(self, tenant_id: str, include_resolved: bool = False) -> List[PaymentOutcomeConflict]:
        query = self.db.query(PaymentOutcomeConflict).filter(PaymentOutcomeConflict.tenant_id == tenant_id)
        if not include_resolved:
            query = query.filter(PaymentOutcomeConflict.status == "open")
        return query.order_by(PaymentOutcomeConflict.detected_at.desc()).all()
