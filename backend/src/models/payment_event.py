"""
Models for payment webhook deduplication and conflict review.

ProcessedPaymentEvent: one row per external event id (hashed). Used for
idempotency - each unique event is applied at most once. Fingerprints are
retained indefinitely.

PaymentOutcomeConflict: a second terminal outcome for an attempt that
disagrees with the first. Never auto-resolved; listed for manual review.
"""

from sqlalchemy import Column, String, Integer, DateTime, Boolean, Index

from src.models.base import Base, JSONType, generate_uuid, utc_now


class ProcessedPaymentEvent(Base):
    """
    Tracks ingested payment gateway events for deduplication.

    The gateway delivers webhooks at least once. The unique fingerprint
    guarantees each event reaches the billing state machine once.
    """

    __tablename__ = "processed_payment_events"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    fingerprint = Column(
        String(64),
        nullable=False,
        unique=True,
        comment="sha256 of the gateway event id"
    )

    event_type = Column(
        String(100),
        nullable=False,
        index=True,
        comment="Gateway event type, e.g. charge.succeeded"
    )

    tenant_id = Column(
        String(36),
        nullable=True,
        index=True,
        comment="Tenant named by the event (NULL if unresolvable)"
    )

    attempt_id = Column(
        String(255),
        nullable=True,
        index=True
    )

    payload_hash = Column(
        String(64),
        nullable=True,
        comment="SHA-256 hash of payload for debugging"
    )

    applied = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Whether the event changed billing state"
    )

    processed_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        comment="When the event was ingested"
    )

    __table_args__ = (
        Index("ix_processed_payment_events_tenant_time", "tenant_id", "processed_at"),
    )

    def __repr__(self) -> str:
        return f"<ProcessedPaymentEvent(fingerprint={self.fingerprint[:12]}, type={self.event_type})>"


class ConflictStatus(str):
    OPEN = "open"
    RESOLVED = "resolved"


class PaymentOutcomeConflict(Base):
    """Conflicting terminal outcomes for one attempt, awaiting manual review."""

    __tablename__ = "payment_outcome_conflicts"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    tenant_id = Column(String(36), nullable=False, index=True)
    attempt_id = Column(String(255), nullable=False, index=True)

    recorded_status = Column(
        String(20),
        nullable=False,
        comment="Terminal status already applied to the transaction"
    )
    conflicting_status = Column(
        String(20),
        nullable=False,
        comment="Terminal status reported by the later event (not applied)"
    )
    event_fingerprint = Column(
        String(64),
        nullable=False,
        comment="Fingerprint of the conflicting event"
    )

    status = Column(
        String(20),
        nullable=False,
        default=ConflictStatus.OPEN,
        index=True
    )

    details = Column(JSONType, nullable=True)

    detected_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentOutcomeConflict(attempt_id={self.attempt_id}, "
            f"recorded={self.recorded_status}, conflicting={self.conflicting_status})>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "attempt_id": self.attempt_id,
            "recorded_status": self.recorded_status,
            "conflicting_status": self.conflicting_status,
            "status": self.status,
            "details": self.details or {},
            "detected_at": self.detected_at.isoformat() if self.detected_at else None,
        }
