"""
Usage counter model for metered features.

UsageCounter: one row per (tenant, feature, period). A new period creates a
fresh row; existing rows are never reset in place, so past periods remain
auditable. Standing counters (the customer roster) use a non-month period
key and are the only rows that may be decremented.
"""

import re

from sqlalchemy import Column, String, Integer, DateTime, Index, UniqueConstraint

from src.models.base import Base, TimestampMixin, TenantScopedMixin, generate_uuid

MONTHLY_PERIOD_RE = re.compile(r"^\d{4}-\d{2}$")


def period_id_for(moment) -> str:
    """Calendar-month period identifier, e.g. '2025-02'."""
    return f"{moment.year:04d}-{moment.month:02d}"


def is_monthly_period(period_id: str) -> bool:
    return bool(MONTHLY_PERIOD_RE.match(period_id))


class UsageCounter(Base, TimestampMixin, TenantScopedMixin):
    """
    Per-tenant, per-feature, per-period counter.

    count only moves through conditional UPDATEs issued by
    UsageCounterStore; it is monotonically non-decreasing within a period.
    """

    __tablename__ = "usage_counters"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    feature = Column(
        String(100),
        nullable=False,
        comment="Feature identifier (Feature enum value)"
    )
    period_id = Column(
        String(7),
        nullable=False,
        comment="Calendar month, e.g. 2025-02"
    )

    count = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Units consumed in the period"
    )
    limit_value = Column(
        Integer,
        nullable=True,
        comment="Limit in force at the latest check; NULL means unlimited"
    )

    # Blocked history
    blocked_count = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Requests denied at the limit this period"
    )
    last_blocked_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Most recent denial at the limit"
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "feature", "period_id", name="uq_usage_counters_key"),
        Index("ix_usage_counters_tenant_period", "tenant_id", "period_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<UsageCounter(tenant_id={self.tenant_id}, feature={self.feature}, "
            f"period={self.period_id}, count={self.count})>"
        )
