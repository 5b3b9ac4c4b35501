"""
Payment gateway integration.

The gateway is an opaque external service reached by contract: charges are
submitted synchronously and authoritative outcomes arrive via webhook.
"""

from src.integrations.payment_gateway.client import (
    PaymentGatewayClient,
    get_payment_gateway,
)
from src.integrations.payment_gateway.exceptions import (
    PaymentGatewayError,
    PaymentGatewayAuthenticationError,
    PaymentGatewayNotConfiguredError,
)
from src.integrations.payment_gateway.models import (
    ChargeOutcome,
    ChargeRequest,
    ChargeResult,
)

__all__ = [
    # Client
    "PaymentGatewayClient",
    "get_payment_gateway",
    # Exceptions
    "PaymentGatewayError",
    "PaymentGatewayAuthenticationError",
    "PaymentGatewayNotConfiguredError",
    # Models
    "ChargeOutcome",
    "ChargeRequest",
    "ChargeResult",
]
