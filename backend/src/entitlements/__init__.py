"""
Entitlement enforcement for the per-trainer billing engine.

This package provides:
- Feature / FEATURE_RULES: the closed, versioned feature catalog
- CapabilitySet: resolved snapshot of what a tenant may use now
- ConsumeDecision: allow/deny result of a metered consume
- EntitlementCache: bounded-staleness cache with commit-time invalidation
- EntitlementResolver (entitlements.service): resolution and consumption

Capability = base tier features UNION entitled add-on features.
"""

from src.entitlements.errors import (
    EntitlementError,
    TierInsufficient,
    UsageLimitExceeded,
    TenantContextMissing,
    CrossTenantReference,
    DuplicateEvent,
    ConflictingPaymentOutcome,
    TransientStoreFailure,
    InvalidPaymentEvent,
    InvalidTransition,
    ConcurrentTransition,
    BillingActionDenied,
)
from src.entitlements.features import Feature, FeatureKind, FeatureSource, FEATURE_RULES
from src.entitlements.models import (
    CapabilitySet,
    CapabilitySource,
    ConsumeDecision,
    DenialReason,
    BillingSnapshot,
    build_capability_set,
)

__all__ = [
    "EntitlementError",
    "TierInsufficient",
    "UsageLimitExceeded",
    "TenantContextMissing",
    "CrossTenantReference",
    "DuplicateEvent",
    "ConflictingPaymentOutcome",
    "TransientStoreFailure",
    "InvalidPaymentEvent",
    "InvalidTransition",
    "ConcurrentTransition",
    "BillingActionDenied",
    "Feature",
    "FeatureKind",
    "FeatureSource",
    "FEATURE_RULES",
    "CapabilitySet",
    "CapabilitySource",
    "ConsumeDecision",
    "DenialReason",
    "BillingSnapshot",
    "build_capability_set",
]
