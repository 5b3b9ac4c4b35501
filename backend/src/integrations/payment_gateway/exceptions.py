"""
Payment gateway exceptions.

Only definite client-side errors raise; timeouts and server errors are
returned as AMBIGUOUS charge outcomes instead.
"""

from typing import Optional, Dict, Any


class PaymentGatewayError(Exception):
    """Base exception for payment gateway errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        response: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.response = response or {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, status_code={self.status_code})"


class PaymentGatewayAuthenticationError(PaymentGatewayError):
    """Raised when gateway authentication fails (401/403)."""

    def __init__(
        self,
        message: str = "Authentication failed - gateway API key may be invalid or missing",
        status_code: int = 401,
        **kwargs,
    ):
        super().__init__(message, status_code=status_code, **kwargs)


class PaymentGatewayNotConfiguredError(PaymentGatewayError):
    """Raised when PAYMENT_GATEWAY_URL / PAYMENT_GATEWAY_API_KEY are missing."""

    def __init__(self, message: str = "Payment gateway is not configured"):
        super().__init__(message)
