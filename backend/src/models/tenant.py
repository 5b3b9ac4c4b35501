"""
Tenant model for the per-trainer billing boundary.

Tenant represents a trainer account. This is the core entity that tenant_id
references across all tenant-scoped models.

The Tenant.id becomes the tenant_id used throughout the application for:
- Data isolation (TenantScopedMixin, TenantIsolationGuard)
- Tier ownership and add-on billing
- Metered usage counters

Tenants are never deleted, only deactivated.

SECURITY: tenant_id is ONLY extracted from JWT (or a verified webhook),
never from client input.
"""

from sqlalchemy import Column, String, Integer, DateTime, Enum, Index

from src.models.base import Base, TimestampMixin, generate_uuid


class TenantStatus(str):
    """Tenant lifecycle status values."""
    ACTIVE = "active"
    DEACTIVATED = "deactivated"  # Permanently disabled, rows retained


class Tenant(Base, TimestampMixin):
    """
    Tenant represents a single trainer account.

    Key concepts:
    - Tenant.id IS the tenant_id used across all tenant-scoped models
    - Owns at most one TierOwnership and zero-or-one AddOnSubscription
    - billing_version is the compare-and-update token that serializes
      billing transitions for this tenant across service instances
    """

    __tablename__ = "tenants"

    # Primary Key - THIS IS THE tenant_id USED EVERYWHERE
    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key - this IS the tenant_id used across all models"
    )

    name = Column(
        String(255),
        nullable=False,
        comment="Display name of the trainer account"
    )

    email = Column(
        String(255),
        nullable=True,
        comment="Billing contact email"
    )

    status = Column(
        Enum("active", "deactivated", name="tenant_status"),
        nullable=False,
        default=TenantStatus.ACTIVE,
        index=True,
        comment="Tenant lifecycle status"
    )

    deactivated_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the tenant was deactivated"
    )

    billing_version = Column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        comment="Incremented by every billing transition (single-writer token)"
    )

    __table_args__ = (
        Index("ix_tenants_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, name={self.name}, status={self.status})>"

    @property
    def is_active(self) -> bool:
        """Check if tenant is currently active."""
        return self.status == TenantStatus.ACTIVE
