"""
Payment gateway HTTP client.

This client handles:
- Submitting charges (POST /v1/charges) with an Idempotency-Key header
- Mapping synchronous responses to SUCCEEDED / FAILED / AMBIGUOUS

A timeout is never read as success or failure. The caller leaves the
ledger row pending and the gateway's webhook settles it.

SECURITY:
- API key must be stored securely and never logged
- Card data never passes through this service
"""

import logging
import os
from typing import Any, Dict, Optional

import httpx

from src.integrations.payment_gateway.exceptions import (
    PaymentGatewayAuthenticationError,
    PaymentGatewayError,
    PaymentGatewayNotConfiguredError,
)
from src.integrations.payment_gateway.models import ChargeOutcome, ChargeRequest, ChargeResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 5.0


class PaymentGatewayClient:
    """
    Synchronous client for the external payment gateway.

    Billing actions run inside synchronous database units of work, so the
    client is synchronous too.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize gateway client.

        Args:
            base_url: Gateway base URL (default: from PAYMENT_GATEWAY_URL env)
            api_key: Gateway API key (default: from PAYMENT_GATEWAY_API_KEY env)
            timeout: Request timeout in seconds
            connect_timeout: Connection timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = (base_url or os.getenv("PAYMENT_GATEWAY_URL") or "").rstrip("/")
        self.api_key = api_key or os.getenv("PAYMENT_GATEWAY_API_KEY")

        if not self.base_url or not self.api_key:
            raise PaymentGatewayNotConfiguredError()

        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.api_key}",
            },
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "PaymentGatewayClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def charge(self, request: ChargeRequest) -> ChargeResult:
        """
        Submit a charge.

        Returns:
            ChargeResult; AMBIGUOUS on timeouts, transport errors and 5xx

        Raises:
            PaymentGatewayAuthenticationError: 401/403
            PaymentGatewayError: any other 4xx except 402
        """
        log_extra = {
            "tenant_id": request.tenant_id,
            "attempt_id": request.attempt_id,
            "purpose": request.purpose,
            "amount_cents": request.amount_cents,
        }

        try:
            response = self._client.post(
                "/v1/charges",
                json=request.to_dict(),
                headers={"Idempotency-Key": request.attempt_id},
            )
        except httpx.TimeoutException:
            logger.warning("Payment gateway timeout - outcome ambiguous", extra=log_extra)
            return ChargeResult(outcome=ChargeOutcome.AMBIGUOUS, attempt_id=request.attempt_id)
        except httpx.RequestError as e:
            logger.warning(
                "Payment gateway unreachable - outcome ambiguous",
                extra=dict(log_extra, error=str(e)),
            )
            return ChargeResult(outcome=ChargeOutcome.AMBIGUOUS, attempt_id=request.attempt_id)

        status_code = response.status_code
        body = self._json_body(response)

        if status_code in (401, 403):
            logger.error("Payment gateway authentication failed", extra=dict(log_extra, status_code=status_code))
            raise PaymentGatewayAuthenticationError(status_code=status_code, response=body)

        if status_code == 402:
            logger.info("Payment gateway declined charge", extra=log_extra)
            return ChargeResult(
                outcome=ChargeOutcome.FAILED,
                attempt_id=request.attempt_id,
                gateway_charge_id=body.get("id"),
                failure_code=body.get("failure_code") or "card_declined",
                status_code=status_code,
            )

        if status_code >= 500:
            logger.warning("Payment gateway server error - outcome ambiguous", extra=dict(
                log_extra, status_code=status_code
            ))
            return ChargeResult(
                outcome=ChargeOutcome.AMBIGUOUS,
                attempt_id=request.attempt_id,
                status_code=status_code,
            )

        if status_code >= 400:
            error = body.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else str(error)
            logger.error("Payment gateway rejected charge request", extra=dict(
                log_extra, status_code=status_code
            ))
            raise PaymentGatewayError(
                message or f"Gateway rejected charge ({status_code})",
                status_code=status_code,
                response=body,
            )

        result = ChargeResult.from_response(request.attempt_id, status_code, body)
        logger.info("Payment gateway charge submitted", extra=dict(log_extra, outcome=result.outcome.value))
        return result

    @staticmethod
    def _json_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}


def get_payment_gateway() -> PaymentGatewayClient:
    """
    Factory function to create a gateway client from environment.

    Raises PaymentGatewayNotConfiguredError when the environment is incomplete.
    """
    return PaymentGatewayClient()
