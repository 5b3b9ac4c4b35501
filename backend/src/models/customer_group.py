"""
Customer roster and grouping models.

All three tables are tenant-scoped. GroupMembership is unique on
(customer_id, group_id); TenantIsolationGuard checks that both ends belong
to the acting tenant before a membership row is written.
"""

from sqlalchemy import Column, String, Boolean, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship

from src.models.base import Base, TimestampMixin, TenantScopedMixin, generate_uuid


class Customer(Base, TimestampMixin, TenantScopedMixin):
    """A trainer's own client."""

    __tablename__ = "customers"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="Inactive customers do not count against the roster ceiling"
    )

    memberships = relationship(
        "GroupMembership",
        back_populates="customer",
        lazy="dynamic"
    )

    __table_args__ = (
        Index("ix_customers_tenant_active", "tenant_id", "is_active"),
    )

    def __repr__(self) -> str:
        return f"<Customer(id={self.id}, tenant_id={self.tenant_id})>"


class CustomerGroup(Base, TimestampMixin, TenantScopedMixin):
    """Named grouping of a trainer's customers."""

    __tablename__ = "customer_groups"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    name = Column(String(255), nullable=False)
    description = Column(String(1000), nullable=True)

    memberships = relationship(
        "GroupMembership",
        back_populates="group",
        lazy="dynamic",
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_customer_groups_tenant_name"),
    )

    def __repr__(self) -> str:
        return f"<CustomerGroup(id={self.id}, name={self.name})>"


class GroupMembership(Base, TimestampMixin, TenantScopedMixin):
    """Customer in a group. Both sides must belong to tenant_id."""

    __tablename__ = "group_memberships"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    group_id = Column(
        String(36),
        ForeignKey("customer_groups.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    customer_id = Column(
        String(36),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    group = relationship("CustomerGroup", back_populates="memberships")
    customer = relationship("Customer", back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("customer_id", "group_id", name="uq_group_memberships_customer_group"),
    )

    def __repr__(self) -> str:
        return f"<GroupMembership(group_id={self.group_id}, customer_id={self.customer_id})>"
