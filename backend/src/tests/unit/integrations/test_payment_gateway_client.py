"""
Unit tests for the payment gateway client.

Tests cover:
- Client initialization and validation
- Charge submission (body, idempotency key, auth header)
- Mapping of HTTP statuses to charge outcomes
- Timeout and connection errors reported as ambiguous
"""

import json

import httpx
import pytest

from src.integrations.payment_gateway import (
    ChargeOutcome,
    ChargeRequest,
    PaymentGatewayAuthenticationError,
    PaymentGatewayClient,
    PaymentGatewayError,
    PaymentGatewayNotConfiguredError,
    get_payment_gateway,
)

BASE_URL = "https://gateway.test"


@pytest.fixture
def mock_env(monkeypatch):
    """Set up mock environment variables."""
    monkeypatch.setenv("PAYMENT_GATEWAY_URL", BASE_URL + "/")
    monkeypatch.setenv("PAYMENT_GATEWAY_API_KEY", "gw-test-key-12345")


@pytest.fixture
def charge_request():
    return ChargeRequest(
        tenant_id="tenant-1",
        attempt_id="tier_purchase:abc",
        amount_cents=1900,
        currency="usd",
        purpose="tier_purchase",
        metadata={"tier_level": 1},
    )


def client_with(handler):
    return PaymentGatewayClient(
        base_url=BASE_URL,
        api_key="gw-test-key-12345",
        transport=httpx.MockTransport(handler),
    )


def respond(status_code, body=None):
    def handler(request):
        return httpx.Response(status_code, json=body if body is not None else {})
    return handler


class TestPaymentGatewayClientInitialization:
    """Tests for client initialization."""

    def test_init_with_env_vars(self, mock_env):
        client = PaymentGatewayClient()
        assert client.base_url == BASE_URL
        assert client.api_key == "gw-test-key-12345"
        client.close()

    def test_explicit_params_win(self, mock_env):
        client = PaymentGatewayClient(base_url="https://other.test", api_key="other-key")
        assert client.base_url == "https://other.test"
        assert client.api_key == "other-key"
        client.close()

    def test_missing_config_raises(self, monkeypatch):
        monkeypatch.delenv("PAYMENT_GATEWAY_URL", raising=False)
        monkeypatch.delenv("PAYMENT_GATEWAY_API_KEY", raising=False)

        with pytest.raises(PaymentGatewayNotConfiguredError):
            PaymentGatewayClient()
        with pytest.raises(PaymentGatewayNotConfiguredError):
            get_payment_gateway()

    def test_missing_key_raises(self, monkeypatch):
        monkeypatch.setenv("PAYMENT_GATEWAY_URL", BASE_URL)
        monkeypatch.delenv("PAYMENT_GATEWAY_API_KEY", raising=False)

        with pytest.raises(PaymentGatewayNotConfiguredError):
            PaymentGatewayClient()

    def test_context_manager_closes(self, mock_env):
        with PaymentGatewayClient() as client:
            assert client.api_key
        assert client._client.is_closed


class TestCharge:
    """Tests for charge submission."""

    def test_request_shape(self, charge_request):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"id": "ch_1", "status": "succeeded"})

        with client_with(handler) as client:
            client.charge(charge_request)

        request = seen[0]
        assert request.method == "POST"
        assert request.url == httpx.URL(BASE_URL + "/v1/charges")
        assert request.headers["Idempotency-Key"] == "tier_purchase:abc"
        assert request.headers["Authorization"] == "Bearer gw-test-key-12345"

        body = json.loads(request.content)
        assert body["amount"] == 1900
        assert body["currency"] == "usd"
        assert body["metadata"] == {
            "tier_level": 1,
            "tenant_id": "tenant-1",
            "attempt_id": "tier_purchase:abc",
            "purpose": "tier_purchase",
        }

    def test_succeeded(self, charge_request):
        with client_with(respond(200, {"id": "ch_1", "status": "succeeded"})) as client:
            result = client.charge(charge_request)

        assert result.outcome == ChargeOutcome.SUCCEEDED
        assert result.succeeded
        assert result.gateway_charge_id == "ch_1"
        assert result.attempt_id == "tier_purchase:abc"
        assert result.status_code == 200

    def test_failed_status_in_body(self, charge_request):
        body = {"id": "ch_2", "status": "failed", "failure_code": "expired_card"}
        with client_with(respond(200, body)) as client:
            result = client.charge(charge_request)

        assert result.failed
        assert result.failure_code == "expired_card"

    def test_processing_status_is_ambiguous(self, charge_request):
        with client_with(respond(202, {"id": "ch_3", "status": "processing"})) as client:
            result = client.charge(charge_request)

        assert result.is_ambiguous

    def test_402_is_decline(self, charge_request):
        with client_with(respond(402, {"id": "ch_4"})) as client:
            result = client.charge(charge_request)

        assert result.outcome == ChargeOutcome.FAILED
        assert result.failure_code == "card_declined"
        assert result.status_code == 402

    @pytest.mark.parametrize("status_code", [500, 502, 503])
    def test_server_error_is_ambiguous(self, charge_request, status_code):
        with client_with(respond(status_code)) as client:
            result = client.charge(charge_request)

        assert result.is_ambiguous
        assert result.status_code == status_code

    def test_non_json_body_tolerated(self, charge_request):
        def handler(request):
            return httpx.Response(502, content=b"<html>bad gateway</html>")

        with client_with(handler) as client:
            assert client.charge(charge_request).is_ambiguous

    @pytest.mark.parametrize("status_code", [401, 403])
    def test_auth_errors_raise(self, charge_request, status_code):
        with client_with(respond(status_code)) as client:
            with pytest.raises(PaymentGatewayAuthenticationError) as exc_info:
                client.charge(charge_request)

        assert exc_info.value.status_code == status_code

    def test_bad_request_raises(self, charge_request):
        body = {"error": {"message": "amount must be positive"}}
        with client_with(respond(400, body)) as client:
            with pytest.raises(PaymentGatewayError) as exc_info:
                client.charge(charge_request)

        assert exc_info.value.status_code == 400
        assert exc_info.value.message == "amount must be positive"
        assert not isinstance(exc_info.value, PaymentGatewayAuthenticationError)


class TestTransportErrors:
    """A charge whose response never arrived is never read as success or failure."""

    def test_timeout_is_ambiguous(self, charge_request):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with client_with(handler) as client:
            result = client.charge(charge_request)

        assert result.is_ambiguous
        assert result.status_code is None

    def test_connection_error_is_ambiguous(self, charge_request):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with client_with(handler) as client:
            assert client.charge(charge_request).is_ambiguous
