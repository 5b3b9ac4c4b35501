"""
Database models for tier ownership, add-on billing, usage and the payment ledger.

All models follow strict tenant isolation patterns.
Tenant-scoped models inherit from TenantScopedMixin.
"""

from src.models.base import TimestampMixin, TenantScopedMixin
from src.models.tenant import Tenant, TenantStatus
from src.models.tier_ownership import TierOwnership, TierOwnershipStatus
from src.models.addon_subscription import AddOnSubscription, AddOnStatus, CancelReason
from src.models.billing_retry import BillingRetry, RetryStatus
from src.models.usage import UsageCounter, period_id_for
from src.models.payment_transaction import (
    PaymentTransaction,
    TransactionStatus,
    TransactionPurpose,
)
from src.models.payment_event import ProcessedPaymentEvent, PaymentOutcomeConflict, ConflictStatus
from src.models.customer_group import Customer, CustomerGroup, GroupMembership

__all__ = [
    "TimestampMixin",
    "TenantScopedMixin",
    "Tenant",
    "TenantStatus",
    "TierOwnership",
    "TierOwnershipStatus",
    "AddOnSubscription",
    "AddOnStatus",
    "CancelReason",
    "BillingRetry",
    "RetryStatus",
    "UsageCounter",
    "period_id_for",
    "PaymentTransaction",
    "TransactionStatus",
    "TransactionPurpose",
    "ProcessedPaymentEvent",
    "PaymentOutcomeConflict",
    "ConflictStatus",
    "Customer",
    "CustomerGroup",
    "GroupMembership",
]
