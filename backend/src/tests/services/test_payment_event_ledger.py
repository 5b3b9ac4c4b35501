"""
Tests for PaymentEventLedger.

Tests cover:
- Payload normalization and validation
- Settlement of pending attempts opened by billing actions
- Exactly-once ingestion per event id
- Repeated and conflicting terminal outcomes
- Unknown tenants and attempts owned by another tenant
- Store failures rolled back for redelivery
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from src.entitlements.errors import InvalidPaymentEvent, TransientStoreFailure
from src.models.base import ensure_utc
from src.models.payment_event import PaymentOutcomeConflict, ProcessedPaymentEvent
from src.models.payment_transaction import PaymentTransaction, TransactionPurpose, TransactionStatus
from src.models.tier_ownership import TierOwnership
from src.platform.audit import AuditAction
from src.services.billing_state_machine import BillingStateMachine
from src.services.payment_event_ledger import (
    ExternalPaymentEvent,
    PaymentEventLedger,
    PaymentEventType,
    event_fingerprint,
)
from src.services.tenant_guard import TenantIsolationGuard
from src.tests.helpers import audit_actions, context_for

SETTLED_AT = "2025-01-09T12:00:00Z"


def charge_payload(tenant_id, attempt_id, event_id="evt_1", event_type=PaymentEventType.CHARGE_SUCCEEDED,
                   **data):
    payload = {
        "id": event_id,
        "type": event_type,
        "created": SETTLED_AT,
        "data": dict({"tenant_id": tenant_id, "attempt_id": attempt_id}, **data),
    }
    return payload


def charge_event(tenant_id, attempt_id, **kwargs):
    return ExternalPaymentEvent.from_payload(charge_payload(tenant_id, attempt_id, **kwargs))


@pytest.fixture
def ledger(db_session, billing_config, entitlement_cache, clock):
    return PaymentEventLedger(db_session, billing_config, cache=entitlement_cache, clock=clock)


@pytest.fixture
def open_purchase(db_session, billing_config, entitlement_cache, clock):
    """Open a pending tier purchase the way BillingService does."""
    def _open(tenant, tier_level=1):
        guard = TenantIsolationGuard(db_session, context_for(tenant))
        machine = BillingStateMachine(guard, billing_config, cache=entitlement_cache, clock=clock)
        machine.begin_transition()
        txn = machine.open_transaction(
            TransactionPurpose.TIER_PURCHASE,
            billing_config.get_tier(tier_level).price_cents,
            metadata={"tier_level": tier_level},
        )
        db_session.commit()
        return txn
    return _open


# =============================================================================
# Payload normalization
# =============================================================================

class TestExternalPaymentEvent:
    """Test webhook payload validation."""

    def test_status_defaults_from_type(self):
        succeeded = charge_event("t1", "a1")
        failed = charge_event("t1", "a1", event_type=PaymentEventType.CHARGE_FAILED)
        pending = charge_event("t1", "a1", event_type=PaymentEventType.CHARGE_PENDING)

        assert succeeded.status == "succeeded" and succeeded.terminal
        assert failed.status == "failed" and failed.terminal
        assert pending.status == "pending" and not pending.terminal

    def test_explicit_terminal_flag_wins(self):
        event = charge_event("t1", "a1", terminal=False)
        assert event.terminal is False

    def test_timestamps(self):
        iso = charge_event("t1", "a1")
        assert iso.occurred_at == datetime(2025, 1, 9, 12, 0, tzinfo=timezone.utc)

        payload = charge_payload("t1", "a1")
        payload["created"] = 1736424000
        epoch = ExternalPaymentEvent.from_payload(payload)
        assert epoch.occurred_at == datetime(2025, 1, 9, 12, 0, tzinfo=timezone.utc)

    def test_fingerprint_is_sha256_of_event_id(self):
        event = charge_event("t1", "a1", event_id="evt_abc")
        assert event.fingerprint == event_fingerprint("evt_abc")
        assert len(event.fingerprint) == 64
        assert "evt_abc" not in event.fingerprint

    @pytest.mark.parametrize("mutate,message", [
        (lambda p: p.pop("id"), "Event id"),
        (lambda p: p.pop("type"), "Event type"),
        (lambda p: p["data"].pop("tenant_id"), "tenant_id"),
        (lambda p: p["data"].pop("attempt_id"), "attempt_id"),
        (lambda p: p["data"].update(amount=-5), "amount"),
        (lambda p: p["data"].update(amount="19.00"), "amount"),
        (lambda p: p["data"].update(status="refunded"), "Unknown charge status"),
        (lambda p: p["data"].update(metadata={"purpose": "donation"}), "purpose"),
        (lambda p: p.update(created="yesterday"), "timestamp"),
    ])
    def test_invalid_payloads(self, mutate, message):
        payload = charge_payload("t1", "a1")
        mutate(payload)
        with pytest.raises(InvalidPaymentEvent) as exc_info:
            ExternalPaymentEvent.from_payload(payload)
        assert message in exc_info.value.message

    def test_non_object_payload(self):
        with pytest.raises(InvalidPaymentEvent):
            ExternalPaymentEvent.from_payload(["not", "a", "dict"])

    def test_informational_event_needs_no_attempt(self):
        event = ExternalPaymentEvent.from_payload({
            "id": "evt_trial",
            "type": PaymentEventType.TRIAL_WILL_END,
            "data": {"tenant_id": "t1"},
        })
        assert not event.is_charge
        assert event.attempt_id is None


# =============================================================================
# Settlement
# =============================================================================

class TestSettlement:
    """Test events settling ledger rows."""

    def test_settles_pending_purchase(self, ledger, open_purchase, db_session, tenant):
        txn = open_purchase(tenant)

        result = ledger.ingest(charge_event(tenant.id, txn.attempt_id))

        assert result.applied is True
        assert result.transitions == ["tier:none->1"]
        assert result.transaction_status == TransactionStatus.COMPLETED

        db_session.refresh(txn)
        assert txn.status == TransactionStatus.COMPLETED
        assert txn.event_fingerprint == event_fingerprint("evt_1")

        ownership = db_session.query(TierOwnership).filter_by(tenant_id=tenant.id).one()
        assert ensure_utc(ownership.purchased_at) == datetime(2025, 1, 9, 12, 0, tzinfo=timezone.utc)

        processed = db_session.query(ProcessedPaymentEvent).one()
        assert processed.applied is True
        assert processed.tenant_id == tenant.id

    def test_failed_charge_grants_nothing(self, ledger, open_purchase, db_session, tenant):
        txn = open_purchase(tenant)

        result = ledger.ingest(charge_event(
            tenant.id, txn.attempt_id,
            event_type=PaymentEventType.CHARGE_FAILED, failure_code="insufficient_funds",
        ))

        assert result.applied is True
        assert result.transitions == []
        db_session.refresh(txn)
        assert txn.status == TransactionStatus.FAILED
        assert txn.failure_code == "insufficient_funds"
        assert db_session.query(TierOwnership).count() == 0

    def test_unknown_attempt_opens_ledger_row(self, ledger, db_session, tenant):
        """An event for an attempt never seen locally carries its own amount and purpose."""
        result = ledger.ingest(charge_event(
            tenant.id, "external-attempt-1",
            amount=4900, currency="USD",
            metadata={"purpose": TransactionPurpose.TIER_PURCHASE, "tier_level": 2},
        ))

        assert result.applied is True
        assert result.transitions == ["tier:none->2"]
        txn = db_session.query(PaymentTransaction).filter_by(attempt_id="external-attempt-1").one()
        assert txn.tenant_id == tenant.id
        assert txn.amount_cents == 4900
        assert txn.currency == "usd"

    def test_unknown_attempt_without_amount_rejected(self, ledger, db_session, tenant):
        with pytest.raises(InvalidPaymentEvent):
            ledger.ingest(charge_event(tenant.id, "external-attempt-2"))

        assert db_session.query(ProcessedPaymentEvent).count() == 0
        assert db_session.query(PaymentTransaction).count() == 0

    @pytest.mark.parametrize("metadata", [
        {"purpose": TransactionPurpose.TIER_PURCHASE},
        {"purpose": TransactionPurpose.TIER_PURCHASE, "tier_level": 9},
        {"purpose": TransactionPurpose.TIER_PURCHASE, "tier_level": "gold"},
        {"purpose": TransactionPurpose.TIER_UPGRADE, "from_tier": 1},
    ])
    def test_unknown_attempt_with_bad_tier_metadata_rejected(self, ledger, db_session, tenant, metadata):
        with pytest.raises(InvalidPaymentEvent) as exc_info:
            ledger.ingest(charge_event(tenant.id, "external-attempt-3", amount=4900, metadata=metadata))

        assert exc_info.value.http_status == 400
        assert not db_session.in_transaction()
        assert db_session.query(ProcessedPaymentEvent).count() == 0
        assert db_session.query(PaymentTransaction).count() == 0
        assert db_session.query(TierOwnership).count() == 0

    def test_non_terminal_event_leaves_pending(self, ledger, open_purchase, db_session, tenant):
        txn = open_purchase(tenant)

        result = ledger.ingest(charge_event(
            tenant.id, txn.attempt_id, event_type=PaymentEventType.CHARGE_PENDING,
        ))

        assert result.applied is False
        assert result.reason == "non_terminal"
        assert result.transaction_status == TransactionStatus.PENDING
        assert db_session.query(TierOwnership).count() == 0

        # The terminal event that follows still applies
        later = ledger.ingest(charge_event(tenant.id, txn.attempt_id, event_id="evt_2"))
        assert later.applied is True


# =============================================================================
# Idempotency
# =============================================================================

class TestIdempotency:
    """Test exactly-once application."""

    def test_duplicate_event_applied_once(self, ledger, open_purchase, db_session, tenant):
        txn = open_purchase(tenant)
        event = charge_event(tenant.id, txn.attempt_id)

        first = ledger.ingest(event)
        second = ledger.ingest(event)

        assert first.applied is True
        assert second.applied is False
        assert second.duplicate is True
        assert second.reason == "duplicate"
        assert db_session.query(ProcessedPaymentEvent).count() == 1
        assert db_session.query(TierOwnership).count() == 1

        ownership = db_session.query(TierOwnership).one()
        assert ownership.amount_paid_cents == 1900

        actions = audit_actions(db_session, tenant.id)
        assert actions.count(AuditAction.PAYMENT_EVENT_INGESTED.value) == 1
        assert actions.count(AuditAction.PAYMENT_EVENT_DUPLICATE.value) == 1

    def test_same_outcome_from_second_event_is_noop(self, ledger, open_purchase, db_session, tenant):
        txn = open_purchase(tenant)
        ledger.ingest(charge_event(tenant.id, txn.attempt_id, event_id="evt_1"))

        result = ledger.ingest(charge_event(tenant.id, txn.attempt_id, event_id="evt_2"))

        assert result.applied is False
        assert result.duplicate is False
        assert result.reason == "already_settled"
        assert db_session.query(ProcessedPaymentEvent).count() == 2
        assert db_session.query(PaymentOutcomeConflict).count() == 0

    def test_conflicting_outcome_recorded_not_applied(self, ledger, open_purchase, db_session, tenant):
        txn = open_purchase(tenant)
        ledger.ingest(charge_event(tenant.id, txn.attempt_id, event_id="evt_1"))

        result = ledger.ingest(charge_event(
            tenant.id, txn.attempt_id, event_id="evt_2", event_type=PaymentEventType.CHARGE_FAILED,
        ))

        assert result.conflict is True
        assert result.applied is False
        assert result.reason == "conflicting_payment_outcome"
        assert result.transaction_status == TransactionStatus.COMPLETED

        db_session.refresh(txn)
        assert txn.status == TransactionStatus.COMPLETED
        assert db_session.query(TierOwnership).count() == 1

        conflicts = ledger.list_conflicts(tenant.id)
        assert len(conflicts) == 1
        assert conflicts[0].recorded_status == TransactionStatus.COMPLETED
        assert conflicts[0].conflicting_status == TransactionStatus.FAILED
        assert conflicts[0].event_fingerprint == event_fingerprint("evt_2")
        assert AuditAction.PAYMENT_OUTCOME_CONFLICT.value in audit_actions(db_session, tenant.id)

    def test_conflicts_listed_per_tenant(self, ledger, open_purchase, tenant, other_tenant):
        txn = open_purchase(tenant)
        ledger.ingest(charge_event(tenant.id, txn.attempt_id, event_id="evt_1"))
        ledger.ingest(charge_event(
            tenant.id, txn.attempt_id, event_id="evt_2", event_type=PaymentEventType.CHARGE_FAILED,
        ))

        assert ledger.list_conflicts(other_tenant.id) == []
        assert len(ledger.list_conflicts(tenant.id)) == 1


# =============================================================================
# Rejections
# =============================================================================

class TestRejections:
    """Test events that are acknowledged without touching billing state."""

    def test_unknown_tenant(self, ledger, db_session):
        result = ledger.ingest(charge_event("ghost-tenant", "attempt-x", amount=1900,
                                            metadata={"purpose": TransactionPurpose.TIER_PURCHASE}))

        assert result.applied is False
        assert result.reason == "unknown_tenant"
        assert db_session.query(ProcessedPaymentEvent).count() == 1
        assert db_session.query(PaymentTransaction).count() == 0
        assert audit_actions(db_session, "ghost-tenant") == [AuditAction.PAYMENT_EVENT_REJECTED.value]

    @pytest.mark.security
    def test_attempt_owned_by_another_tenant(self, ledger, open_purchase, db_session, tenant, other_tenant):
        txn = open_purchase(other_tenant)

        result = ledger.ingest(charge_event(tenant.id, txn.attempt_id))

        assert result.applied is False
        assert result.reason == "cross_tenant_attempt"
        db_session.refresh(txn)
        assert txn.status == TransactionStatus.PENDING
        assert db_session.query(TierOwnership).count() == 0
        assert AuditAction.PAYMENT_EVENT_REJECTED.value in audit_actions(db_session, tenant.id)

    def test_trial_will_end_is_informational(self, ledger, db_session, tenant):
        result = ledger.ingest(ExternalPaymentEvent.from_payload({
            "id": "evt_trial",
            "type": PaymentEventType.TRIAL_WILL_END,
            "data": {"tenant_id": tenant.id},
        }))

        assert result.applied is False
        assert result.reason == "informational"
        assert AuditAction.SUBSCRIPTION_TRIAL_WILL_END.value in audit_actions(db_session, tenant.id)

    def test_unhandled_type_acknowledged(self, ledger, tenant):
        result = ledger.ingest(ExternalPaymentEvent.from_payload({
            "id": "evt_other",
            "type": "customer.updated",
            "data": {"tenant_id": tenant.id},
        }))
        assert result.reason == "unhandled_type"


# =============================================================================
# Store failures
# =============================================================================

class TestStoreFailure:
    """Test rollback and redelivery on store errors."""

    def test_store_error_raises_transient_failure(self, ledger, open_purchase, db_session, tenant, monkeypatch):
        txn = open_purchase(tenant)

        def failing_commit():
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

        monkeypatch.setattr(db_session, "commit", failing_commit)

        with pytest.raises(TransientStoreFailure) as exc_info:
            ledger.ingest(charge_event(tenant.id, txn.attempt_id))

        assert exc_info.value.http_status == 503
        monkeypatch.undo()
        assert db_session.query(ProcessedPaymentEvent).count() == 0
        db_session.refresh(txn)
        assert txn.status == TransactionStatus.PENDING

    def test_redelivery_after_failure_applies(self, ledger, open_purchase, db_session, tenant, monkeypatch):
        txn = open_purchase(tenant)
        event = charge_event(tenant.id, txn.attempt_id)

        def failing_commit():
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

        monkeypatch.setattr(db_session, "commit", failing_commit)
        with pytest.raises(TransientStoreFailure):
            ledger.ingest(event)
        monkeypatch.undo()

        result = ledger.ingest(event)
        assert result.applied is True
        assert db_session.query(TierOwnership).count() == 1
