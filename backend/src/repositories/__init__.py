"""Repository layer with tenant isolation enforcement."""

from src.repositories.base_repo import BaseRepository
from src.repositories.subscription_repository import (
    TierOwnershipRepository,
    AddOnSubscriptionRepository,
    BillingRetryRepository,
    PaymentTransactionRepository,
)

__all__ = [
    "BaseRepository",
    "TierOwnershipRepository",
    "AddOnSubscriptionRepository",
    "BillingRetryRepository",
    "PaymentTransactionRepository",
]
