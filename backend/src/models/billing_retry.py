"""
BillingRetry model: the +3/+7/+14 day retry schedule after a failed charge.

Every retry is scheduled from the ORIGINAL failure. Rows are independent of
each other; the scheduler submits whichever are due.
"""

from sqlalchemy import (
    Column, String, Integer, DateTime, Enum, ForeignKey,
    Index, UniqueConstraint
)

from src.models.base import Base, TimestampMixin, TenantScopedMixin, generate_uuid


class RetryStatus(str):
    """Retry attempt status values."""
    SCHEDULED = "scheduled"
    SUBMITTED = "submitted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


OPEN_RETRY_STATUSES = (RetryStatus.SCHEDULED, RetryStatus.SUBMITTED)


def retry_attempt_id(subscription_id: str, failure_attempt_id: str, sequence: int) -> str:
    """Deterministic attempt id so resubmission is idempotent at the gateway."""
    return f"retry:{subscription_id}:{failure_attempt_id}:{sequence}"


class BillingRetry(Base, TimestampMixin, TenantScopedMixin):
    """One scheduled retry of a failed recurring charge."""

    __tablename__ = "billing_retries"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    subscription_id = Column(
        String(36),
        ForeignKey("addon_subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    failure_attempt_id = Column(
        String(255),
        nullable=False,
        comment="Attempt id of the original failed charge"
    )
    original_failure_at = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="When the original charge failed (offsets are measured from here)"
    )

    sequence = Column(
        Integer,
        nullable=False,
        comment="1-based retry number"
    )
    scheduled_for = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="original_failure_at + offset"
    )
    attempt_id = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Gateway attempt id used when submitted"
    )

    status = Column(
        Enum(
            "scheduled", "submitted", "succeeded", "failed", "canceled",
            name="billing_retry_status"
        ),
        nullable=False,
        default=RetryStatus.SCHEDULED,
        index=True
    )
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "failure_attempt_id", "sequence",
            name="uq_billing_retries_failure_sequence"
        ),
        Index("ix_billing_retries_status_due", "status", "scheduled_for"),
    )

    def __repr__(self) -> str:
        return (
            f"<BillingRetry(subscription_id={self.subscription_id}, sequence={self.sequence}, "
            f"status={self.status})>"
        )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_RETRY_STATUSES
