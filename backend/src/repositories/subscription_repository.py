"""
Billing repositories for data access operations.

Encapsulates all database operations for tier ownership, add-on
subscriptions, retries and payment transactions with:
- Tenant isolation enforcement (every query built through the guard)
- Consistent query patterns
- Row locks where a transition reads-then-writes
"""

import logging
from datetime import datetime
from typing import List, Optional

from src.models.addon_subscription import AddOnSubscription
from src.models.billing_retry import BillingRetry, RetryStatus, OPEN_RETRY_STATUSES
from src.models.payment_transaction import PaymentTransaction, TransactionStatus
from src.models.tier_ownership import TierOwnership
from src.repositories.base_repo import BaseRepository

logger = logging.getLogger(__name__)


class TierOwnershipRepository(BaseRepository[TierOwnership]):
    """Repository for the tenant's tier ownership row."""

    def _get_model_class(self):
        return TierOwnership

    def get_for_tenant(self, for_update: bool = False) -> Optional[TierOwnership]:
        """
        Get the tenant's tier ownership.

        Args:
            for_update: lock the row until the caller commits
        """
        query = self._scoped()
        if for_update:
            query = self._locked(query)
        return query.first()


class AddOnSubscriptionRepository(BaseRepository[AddOnSubscription]):
    """Repository for the tenant's add-on subscription."""

    def _get_model_class(self):
        return AddOnSubscription

    def get_for_tenant(self, for_update: bool = False) -> Optional[AddOnSubscription]:
        query = self._scoped()
        if for_update:
            query = self._locked(query)
        return query.first()


class BillingRetryRepository(BaseRepository[BillingRetry]):
    """Repository for scheduled retries of failed recurring charges."""

    def _get_model_class(self):
        return BillingRetry

    def get_by_attempt_id(self, attempt_id: str) -> Optional[BillingRetry]:
        return self._scoped().filter(BillingRetry.attempt_id == attempt_id).first()

    def list_for_failure(self, subscription_id: str, failure_attempt_id: str) -> List[BillingRetry]:
        """All retries opened by one original failure, in schedule order."""
        return self._scoped().filter(
            BillingRetry.subscription_id == subscription_id,
            BillingRetry.failure_attempt_id == failure_attempt_id,
        ).order_by(BillingRetry.sequence.asc()).all()

    def list_open(self, subscription_id: str) -> List[BillingRetry]:
        return self._scoped().filter(
            BillingRetry.subscription_id == subscription_id,
            BillingRetry.status.in_(OPEN_RETRY_STATUSES),
        ).order_by(BillingRetry.scheduled_for.asc()).all()

    def list_due(self, now: datetime) -> List[BillingRetry]:
        """Scheduled retries whose time has come."""
        return self._scoped().filter(
            BillingRetry.status == RetryStatus.SCHEDULED,
            BillingRetry.scheduled_for <= now,
        ).order_by(BillingRetry.scheduled_for.asc()).all()


class PaymentTransactionRepository(BaseRepository[PaymentTransaction]):
    """
    Repository for the payment ledger.

    Append-only: rows are added and settled once, never deleted.
    """

    def _get_model_class(self):
        return PaymentTransaction

    def get_by_attempt_id(self, attempt_id: str, for_update: bool = False) -> Optional[PaymentTransaction]:
        query = self._scoped().filter(PaymentTransaction.attempt_id == attempt_id)
        if for_update:
            query = self._locked(query)
        return query.first()

    def list_pending(self, purpose: Optional[str] = None) -> List[PaymentTransaction]:
        query = self._scoped().filter(PaymentTransaction.status == TransactionStatus.PENDING)
        if purpose:
            query = query.filter(PaymentTransaction.purpose == purpose)
        return query.order_by(PaymentTransaction.created_at.asc()).all()

    def list_page(self, limit: int = 100, offset: int = 0) -> List[PaymentTransaction]:
        """Oldest first, for append-only export."""
        return self._scoped().order_by(
            PaymentTransaction.created_at.asc(), PaymentTransaction.id.asc()
        ).offset(offset).limit(limit).all()
