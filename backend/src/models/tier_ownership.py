"""
TierOwnership model.

Records the single tier purchase of a tenant. The purchase itself is a
one-time payment; upgrades raise tier_level on the same row through a paid
prorated delta, downgrades are deferred to the next cycle boundary through
pending_downgrade_tier.

CRITICAL: At most one ownership row per tenant (unique tenant_id).
"""

from sqlalchemy import (
    Column, String, Integer, DateTime, Enum, UniqueConstraint, Index
)

from src.models.base import Base, TimestampMixin, TenantScopedMixin, generate_uuid, ensure_utc


class TierOwnershipStatus(str):
    """Tier ownership status values."""
    ACTIVE = "active"
    INACTIVE = "inactive"


class TierOwnership(Base, TimestampMixin, TenantScopedMixin):
    """
    A tenant's purchased tier.

    Cycle fields:
    - cycle_anchor_day: day of month the billing cycle restarts on
    - current_cycle_start: start of the cycle used for proration
    - next_cycle_at: next cycle boundary (pending downgrades apply here)
    - next_cycle_price_cents: steady-state price from the next cycle on
    """

    __tablename__ = "tier_ownerships"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    tier_level = Column(
        Integer,
        nullable=False,
        comment="Effective tier level (1-3)"
    )

    status = Column(
        Enum("active", "inactive", name="tier_ownership_status"),
        nullable=False,
        default=TierOwnershipStatus.ACTIVE,
        index=True,
        comment="Ownership status"
    )

    purchased_at = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="When the tier was first purchased"
    )

    amount_paid_cents = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Total paid for the tier (purchase + upgrade deltas), minor units"
    )

    cycle_anchor_day = Column(
        Integer,
        nullable=False,
        comment="Day of month the billing cycle restarts on (1-31)"
    )

    current_cycle_start = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="Start of the current billing cycle"
    )

    next_cycle_at = Column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
        comment="Next cycle boundary"
    )

    next_cycle_price_cents = Column(
        Integer,
        nullable=False,
        comment="Price charged from the next cycle on, minor units"
    )

    pending_downgrade_tier = Column(
        Integer,
        nullable=True,
        comment="Tier applied at the next cycle boundary (deferred downgrade)"
    )

    pending_upgrade_attempt_id = Column(
        String(100),
        nullable=True,
        comment="Attempt id of an upgrade charge awaiting its outcome"
    )

    last_upgraded_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When tier_level was last raised"
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_tier_ownerships_tenant"),
        Index("ix_tier_ownerships_status_next_cycle", "status", "next_cycle_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<TierOwnership(tenant_id={self.tenant_id}, tier_level={self.tier_level}, "
            f"status={self.status})>"
        )

    @property
    def is_active(self) -> bool:
        return self.status == TierOwnershipStatus.ACTIVE

    @property
    def has_pending_downgrade(self) -> bool:
        return self.pending_downgrade_tier is not None

    @property
    def cycle_start_utc(self):
        return ensure_utc(self.current_cycle_start)

    @property
    def next_cycle_utc(self):
        return ensure_utc(self.next_cycle_at)
