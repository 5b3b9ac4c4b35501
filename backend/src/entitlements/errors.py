"""
Structured error classes for entitlement enforcement and billing.

Every error carries a machine-readable code, the HTTP status it maps to and
a to_dict() used verbatim as the JSON response body.
"""

from typing import Optional

from fastapi import status


class EntitlementError(Exception):
    """Base exception for entitlement and billing errors."""

    code = "entitlement_error"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, **details):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        body = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


# =============================================================================
# Entitlement denials (recoverable, user-facing)
# =============================================================================

class TierInsufficient(EntitlementError):
    """
    The resolved capability set does not contain the feature.

    Carries enough detail to render an upgrade prompt.
    """

    code = "tier_insufficient"
    http_status = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(
        self,
        feature: str,
        current_tier: int,
        required_tier: Optional[int] = None,
        requires_addon: bool = False,
    ):
        self.feature = feature
        self.current_tier = current_tier
        self.required_tier = required_tier
        self.requires_addon = requires_addon
        super().__init__(
            f"Feature '{feature}' is not available on tier {current_tier}",
            feature=feature,
            current_tier=current_tier,
            required_tier=required_tier,
            requires_addon=requires_addon,
        )


class UsageLimitExceeded(EntitlementError):
    """Metered feature (or roster) is at its limit for the period."""

    code = "usage_limit_exceeded"
    http_status = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, feature: str, limit: int, current: int, period: Optional[str] = None):
        self.feature = feature
        self.limit = limit
        self.current = current
        self.period = period
        super().__init__(
            f"Usage limit reached for '{feature}' ({current}/{limit})",
            feature=feature,
            limit=limit,
            current=current,
            period=period,
        )


# =============================================================================
# Isolation violations (always fatal to the request)
# =============================================================================

class TenantContextMissing(EntitlementError):
    """No verified tenant context. Never defaulted to an all-tenants view."""

    code = "tenant_context_missing"
    http_status = status.HTTP_403_FORBIDDEN

    def __init__(self, message: str = "Tenant context is missing or unresolved"):
        super().__init__(message)


class CrossTenantReference(EntitlementError):
    """A write referenced a row owned by a different tenant (or no tenant)."""

    code = "cross_tenant_reference"
    http_status = status.HTTP_403_FORBIDDEN

    def __init__(self, resource_type: str, resource_ids: list):
        self.resource_type = resource_type
        self.resource_ids = list(resource_ids)
        super().__init__(
            f"{resource_type} not owned by the acting tenant",
            resource_type=resource_type,
            resource_ids=self.resource_ids,
        )


# =============================================================================
# Ledger and store
# =============================================================================

class DuplicateEvent(EntitlementError):
    """
    The payment event was already ingested.

    Not an error to the caller: the ledger converts it into a successful
    no-op result.
    """

    code = "duplicate_event"
    http_status = status.HTTP_200_OK

    def __init__(self, fingerprint: str):
        self.fingerprint = fingerprint
        super().__init__("Payment event already processed", fingerprint=fingerprint)


class ConflictingPaymentOutcome(EntitlementError):
    """Two different terminal outcomes reported for one attempt."""

    code = "conflicting_payment_outcome"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, attempt_id: str, recorded_status: str, conflicting_status: str):
        self.attempt_id = attempt_id
        self.recorded_status = recorded_status
        self.conflicting_status = conflicting_status
        super().__init__(
            f"Attempt {attempt_id} already {recorded_status}; refusing {conflicting_status}",
            attempt_id=attempt_id,
            recorded_status=recorded_status,
            conflicting_status=conflicting_status,
        )


class TransientStoreFailure(EntitlementError):
    """The persistent store is unavailable. Usage checks fail closed."""

    code = "transient_store_failure"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, operation: str, cause: Optional[str] = None):
        self.operation = operation
        super().__init__(f"Store unavailable during {operation}", operation=operation, cause=cause)


class InvalidPaymentEvent(EntitlementError):
    """Webhook payload is malformed."""

    code = "invalid_payment_event"
    http_status = status.HTTP_400_BAD_REQUEST


# =============================================================================
# Billing actions
# =============================================================================

class InvalidTransition(EntitlementError):
    """Requested billing transition is not allowed from the current state."""

    code = "invalid_transition"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, subject: str, from_state: Optional[str], to_state: str, reason: str = ""):
        self.subject = subject
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            reason or f"Cannot move {subject} from {from_state} to {to_state}",
            subject=subject,
            from_state=from_state,
            to_state=to_state,
        )


class ConcurrentTransition(EntitlementError):
    """Another billing transition for the tenant committed first."""

    code = "concurrent_transition"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__("Another billing change is in progress; retry", tenant_id=tenant_id)


class BillingActionDenied(EntitlementError):
    """Billing action refused (payment declined, action already in progress)."""

    code = "billing_action_denied"
    http_status = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, action: str, reason: str, http_status: Optional[int] = None, **details):
        self.action = action
        self.reason = reason
        if http_status is not None:
            self.http_status = http_status
        super().__init__(f"{action} denied: {reason}", action=action, reason=reason, **details)
