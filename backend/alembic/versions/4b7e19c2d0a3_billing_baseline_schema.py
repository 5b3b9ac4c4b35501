"""billing_baseline_schema

Revision ID: 4b7e19c2d0a3
Revises: 
Create Date: 2026-10-16 09:42:11.318204

Creates tenants, tier_ownerships, addon_subscriptions, billing_retries,
usage_counters, payment_transactions, processed_payment_events,
payment_outcome_conflicts, customers, customer_groups, group_memberships
and audit_logs.
"""
from typing import Sequence, Union

from alembic import op

from src.db_base import Base
import src.models  # noqa: F401 - required to register all model metadata
import src.platform.audit  # noqa: F401 - registers the audit_logs table


# revision identifiers, used by Alembic.
revision: str = '4b7e19c2d0a3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    Base.metadata.create_all(bind=bind)


def downgrade() -> None:
    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind)
