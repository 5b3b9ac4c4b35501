"""Test helper utilities for billing and entitlement tests."""

from .fake_gateway import FakeGateway, FrozenClock
from .signing import create_invalid_signature, make_tenant_token, sign_payment_payload
from .tenants import audit_actions, context_for

__all__ = [
    "FakeGateway",
    "FrozenClock",
    "audit_actions",
    "context_for",
    "create_invalid_signature",
    "make_tenant_token",
    "sign_payment_payload",
]
