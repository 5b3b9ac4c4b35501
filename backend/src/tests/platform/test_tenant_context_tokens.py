"""
Tests for tenant context construction and bearer token decoding.

SECURITY: A context object must never exist without a tenant, and tokens
without a verified tenant claim must be rejected.
"""

import time

import jwt
import pytest

from src.entitlements.errors import TenantContextMissing
from src.platform.tenant_context import (
    ContextSource,
    TenantContext,
    TenantContextMiddleware,
    decode_tenant_token,
    require_context,
)

SECRET = "token-secret"


def make_token(claims, secret=SECRET):
    return jwt.encode(claims, secret, algorithm="HS256")


class TestTenantContext:

    @pytest.mark.parametrize("tenant_id", ["", None])
    def test_empty_tenant_rejected(self, tenant_id):
        with pytest.raises(ValueError):
            TenantContext(tenant_id=tenant_id)

    def test_api_context(self):
        ctx = TenantContext(tenant_id="t-1", user_id="u-1", roles=["owner"])

        assert ctx.tenant_id == "t-1"
        assert ctx.roles == ("owner",)
        assert ctx.source == ContextSource.API
        assert not ctx.is_system
        assert ctx.correlation_id

    def test_system_context(self):
        ctx = TenantContext.for_system("t-1", ContextSource.WEBHOOK, correlation_id="corr-1")

        assert ctx.is_system
        assert ctx.user_id is None
        assert ctx.correlation_id == "corr-1"

    def test_require_context(self):
        ctx = TenantContext(tenant_id="t-1")
        assert require_context(ctx) is ctx
        with pytest.raises(TenantContextMissing):
            require_context(None)


@pytest.mark.security
class TestDecodeTenantToken:

    def test_valid_token(self):
        ctx = decode_tenant_token(
            make_token({"tenant_id": "t-1", "sub": "u-9", "roles": ["owner"]}),
            SECRET,
        )

        assert ctx.tenant_id == "t-1"
        assert ctx.user_id == "u-9"
        assert ctx.roles == ("owner",)

    def test_org_id_claim_accepted(self):
        ctx = decode_tenant_token(make_token({"org_id": "org-5"}), SECRET)
        assert ctx.tenant_id == "org-5"

    def test_expired_token(self):
        token = make_token({"tenant_id": "t-1", "exp": int(time.time()) - 60})
        with pytest.raises(TenantContextMissing):
            decode_tenant_token(token, SECRET)

    def test_wrong_secret(self):
        with pytest.raises(TenantContextMissing):
            decode_tenant_token(make_token({"tenant_id": "t-1"}, secret="other"), SECRET)

    def test_missing_tenant_claim(self):
        with pytest.raises(TenantContextMissing, match="no tenant claim"):
            decode_tenant_token(make_token({"sub": "u-1"}), SECRET)


class TestMiddlewareSettings:

    @pytest.mark.parametrize("path,exempt", [
        ("/health", True),
        ("/api/webhooks/payments", True),
        ("/docs", True),
        ("/api/billing/summary", False),
        ("/api/entitlements", False),
    ])
    def test_exempt_paths(self, path, exempt):
        assert TenantContextMiddleware.is_exempt(path) is exempt

    def test_secret_from_env(self, monkeypatch):
        monkeypatch.setenv("AUTH_JWT_SECRET", "from-env")
        monkeypatch.delenv("AUTH_JWT_ALGORITHM", raising=False)

        middleware = TenantContextMiddleware()

        assert middleware.secret == "from-env"
        assert middleware.algorithm == "HS256"
        assert TenantContextMiddleware(secret="explicit").secret == "explicit"
