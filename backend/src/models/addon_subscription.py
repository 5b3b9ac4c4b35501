"""
AddOnSubscription model for the recurring AI generation add-on.

CRITICAL: One add-on subscription per tenant. Status is owned by the
BillingStateMachine; nothing else writes it.
"""

from sqlalchemy import (
    Column, String, Integer, DateTime, Enum, Text,
    Index, UniqueConstraint
)

from src.models.base import Base, TimestampMixin, TenantScopedMixin, generate_uuid, ensure_utc


class AddOnStatus(str):
    """Add-on subscription status values."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"                      # Recurring charge failed, retries scheduled
    SUSPENDED = "suspended"                    # Retries exhausted (also canceled)
    CANCELED = "canceled"                      # Explicitly canceled
    INCOMPLETE = "incomplete"                  # Awaiting first successful charge
    INCOMPLETE_EXPIRED = "incomplete_expired"  # First charge window lapsed, terminal
    UNPAID = "unpaid"                          # Gateway-reported, never entered locally


ALL_ADDON_STATUSES = (
    AddOnStatus.TRIALING,
    AddOnStatus.ACTIVE,
    AddOnStatus.PAST_DUE,
    AddOnStatus.SUSPENDED,
    AddOnStatus.CANCELED,
    AddOnStatus.INCOMPLETE,
    AddOnStatus.INCOMPLETE_EXPIRED,
    AddOnStatus.UNPAID,
)

# Statuses that contribute add-on capabilities
ENTITLED_STATUSES = frozenset({AddOnStatus.ACTIVE, AddOnStatus.TRIALING})


class CancelReason(str):
    """Why an add-on subscription stopped billing."""
    TENANT_REQUEST = "tenant_request"
    RETRIES_EXHAUSTED = "retries_exhausted"


class AddOnSubscription(Base, TimestampMixin, TenantScopedMixin):
    """
    Recurring add-on layered on top of a tier.

    Independently billed and independently revocable: canceling or
    suspending it never touches TierOwnership.
    """

    __tablename__ = "addon_subscriptions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    addon_level = Column(
        Integer,
        nullable=False,
        comment="Add-on plan level (1-3)"
    )
    monthly_price_cents = Column(
        Integer,
        nullable=False,
        comment="Recurring monthly price, minor units"
    )
    usage_limit = Column(
        Integer,
        nullable=True,
        comment="Generations per period; NULL means unlimited"
    )

    status = Column(
        Enum(*ALL_ADDON_STATUSES, name="addon_subscription_status"),
        nullable=False,
        default=AddOnStatus.INCOMPLETE,
        index=True,
        comment="Current lifecycle status"
    )

    # Billing cycle
    billing_anchor = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="Anchor of the current billing cycle"
    )
    current_period_start = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Start of the paid period"
    )
    current_period_end = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="End of the paid period"
    )
    trial_ends_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Trial expiration"
    )
    incomplete_expires_at = Column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
        comment="Deadline for the first successful charge"
    )

    # Payment tracking
    last_payment_succeeded_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="occurred_at of the latest successful charge"
    )
    past_due_since = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="occurred_at of the original failure that opened the retry schedule"
    )
    pending_attempt_id = Column(
        String(100),
        nullable=True,
        comment="Initial or reactivation charge awaiting its outcome"
    )

    # Cancellation
    canceled_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When recurring billing stopped"
    )
    cancel_reason = Column(
        String(50),
        nullable=True,
        comment="tenant_request or retries_exhausted"
    )
    status_reason = Column(
        Text,
        nullable=True,
        comment="Free-form context for the latest transition"
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_addon_subscriptions_tenant"),
        Index("ix_addon_subscriptions_status_expiry", "status", "incomplete_expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<AddOnSubscription(tenant_id={self.tenant_id}, level={self.addon_level}, "
            f"status={self.status})>"
        )

    @property
    def is_entitled(self) -> bool:
        """Check if the add-on currently grants its capabilities."""
        return self.status in ENTITLED_STATUSES

    @property
    def is_canceled(self) -> bool:
        """Recurring billing has stopped (explicit cancel or retries exhausted)."""
        return self.canceled_at is not None

    @property
    def last_success_utc(self):
        return ensure_utc(self.last_payment_succeeded_at)

    @property
    def period_end_utc(self):
        return ensure_utc(self.current_period_end)
