"""
PaymentTransaction model: the payment ledger.

CRITICAL: This table is APPEND-ONLY for finance audit compliance.
amount_cents and currency are never updated. status moves
pending -> completed | failed exactly once; corrections are new rows.
"""

from sqlalchemy import Column, String, Integer, DateTime, Enum, Index

from src.models.base import Base, TimestampMixin, JSONType, generate_uuid


class TransactionStatus(str):
    """Payment transaction status values."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_TRANSACTION_STATUSES = (TransactionStatus.COMPLETED, TransactionStatus.FAILED)


class TransactionPurpose(str):
    """What a charge pays for; selects the billing transition on settlement."""
    TIER_PURCHASE = "tier_purchase"
    TIER_UPGRADE = "tier_upgrade"
    TIER_RENEWAL = "tier_renewal"
    ADDON_INITIAL = "addon_initial"
    ADDON_RENEWAL = "addon_renewal"
    ADDON_RETRY = "addon_retry"
    ADDON_REACTIVATION = "addon_reactivation"


ALL_PURPOSES = (
    TransactionPurpose.TIER_PURCHASE,
    TransactionPurpose.TIER_UPGRADE,
    TransactionPurpose.TIER_RENEWAL,
    TransactionPurpose.ADDON_INITIAL,
    TransactionPurpose.ADDON_RENEWAL,
    TransactionPurpose.ADDON_RETRY,
    TransactionPurpose.ADDON_REACTIVATION,
)


class PaymentTransaction(Base, TimestampMixin):
    """
    One charge attempt.

    attempt_id is the gateway-facing identifier (also sent as the gateway
    idempotency key). event_fingerprint is the sha256 of the external event
    that created or settled the row; raw gateway tokens are never stored.

    NOTE: tenant_id is a plain indexed column. Transactions are retained for
    finance even if tenant-owned rows are later deactivated.
    """

    __tablename__ = "payment_transactions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    tenant_id = Column(
        String(36),
        nullable=False,
        index=True,
        comment="Tenant charged"
    )

    attempt_id = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Gateway attempt identifier"
    )
    event_fingerprint = Column(
        String(64),
        nullable=True,
        index=True,
        comment="sha256 of the external event id that settled this row"
    )

    purpose = Column(
        Enum(*ALL_PURPOSES, name="payment_transaction_purpose"),
        nullable=False,
        comment="What the charge pays for"
    )

    amount_cents = Column(
        Integer,
        nullable=False,
        comment="Amount in minor units"
    )
    currency = Column(
        String(3),
        nullable=False,
        default="usd"
    )

    status = Column(
        Enum("pending", "completed", "failed", name="payment_transaction_status"),
        nullable=False,
        default=TransactionStatus.PENDING,
        index=True
    )
    settled_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the terminal outcome was recorded"
    )
    failure_code = Column(
        String(100),
        nullable=True,
        comment="Gateway decline code for failed charges"
    )

    extra_metadata = Column(
        "metadata",
        JSONType,
        nullable=True,
        comment="Arbitrary context (tier levels, retry sequence, proration quote)"
    )

    __table_args__ = (
        Index("ix_payment_transactions_tenant_created", "tenant_id", "created_at"),
        Index("ix_payment_transactions_tenant_status", "tenant_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentTransaction(attempt_id={self.attempt_id}, purpose={self.purpose}, "
            f"amount={self.amount_cents}, status={self.status})>"
        )

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TRANSACTION_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "attempt_id": self.attempt_id,
            "purpose": self.purpose,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "status": self.status,
            "failure_code": self.failure_code,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "settled_at": self.settled_at.isoformat() if self.settled_at else None,
            "metadata": self.extra_metadata or {},
        }
