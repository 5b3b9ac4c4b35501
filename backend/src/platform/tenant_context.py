"""
Tenant context enforcement for the entitlement and billing API.

CRITICAL SECURITY REQUIREMENTS:
- tenant_id is ALWAYS extracted from the verified JWT, NEVER from request body/query
- All requests without valid tenant context are rejected with 403
- Context is resolved once per request and passed explicitly into every
  core call (TenantIsolationGuard enforces it on storage access)
- There is no admin / all-tenants fallback

Webhook intake and /health are exempt: webhooks authenticate with an HMAC
signature and derive a system context per event.

AUDIT LOGGING:
- Missing or invalid tokens are logged and, when an audit session factory
  is configured on the app, written to the audit trail
"""

import logging
import os
import uuid
from typing import Callable, Optional, Sequence

import jwt
from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jwt.exceptions import InvalidTokenError

from src.database.session import session_scope
from src.entitlements.errors import TenantContextMissing
from src.platform.audit import (
    AuditAction,
    AuditEvent,
    AuditOutcome,
    extract_client_info,
    write_audit_log_sync,
)

logger = logging.getLogger(__name__)

# Security scheme for extracting Bearer token
security = HTTPBearer(auto_error=False)

PUBLIC_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}
EXEMPT_PREFIXES = ("/api/webhooks/",)


class ContextSource:
    """Where a tenant context was established."""
    API = "api"
    WEBHOOK = "webhook"
    SCHEDULER = "scheduler"


class TenantContext:
    """
    Immutable tenant context for one request or one background unit of work.

    Raises ValueError on an empty tenant_id so a context object can never
    exist without a tenant.
    """

    __slots__ = ("_tenant_id", "_user_id", "_roles", "_source", "_correlation_id")

    def __init__(
        self,
        tenant_id: str,
        user_id: Optional[str] = None,
        roles: Sequence[str] = (),
        source: str = ContextSource.API,
        correlation_id: Optional[str] = None,
    ):
        if not tenant_id or not isinstance(tenant_id, str):
            raise ValueError("tenant_id cannot be empty")
        self._tenant_id = tenant_id
        self._user_id = user_id
        self._roles = tuple(roles)
        self._source = source
        self._correlation_id = correlation_id or str(uuid.uuid4())

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def roles(self) -> tuple:
        return self._roles

    @property
    def source(self) -> str:
        return self._source

    @property
    def correlation_id(self) -> str:
        return self._correlation_id

    @property
    def is_system(self) -> bool:
        return self._source != ContextSource.API

    def __repr__(self) -> str:
        return f"TenantContext(tenant_id={self._tenant_id}, user_id={self._user_id}, source={self._source})"

    @classmethod
    def for_system(cls, tenant_id: str, source: str, correlation_id: Optional[str] = None) -> "TenantContext":
        """Context for webhook and scheduler work on one specific tenant."""
        return cls(tenant_id=tenant_id, user_id=None, source=source, correlation_id=correlation_id)


def require_context(tenant_context: Optional[TenantContext]) -> TenantContext:
    """Fail closed on a missing or unresolved context."""
    if tenant_context is None or not isinstance(tenant_context, TenantContext):
        raise TenantContextMissing()
    return tenant_context


def decode_tenant_token(token: str, secret: str, algorithm: str = "HS256") -> TenantContext:
    """
    Verify a bearer token and build the tenant context from its claims.

    Claims:
    - tenant_id (or org_id): the trainer account
    - sub: user id
    - roles: optional list of role names
    """
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[algorithm],
            options={"verify_signature": True, "verify_exp": True, "verify_aud": False},
        )
    except InvalidTokenError as e:
        raise TenantContextMissing(f"Invalid authorization token: {e}") from e

    tenant_id = payload.get("tenant_id") or payload.get("org_id")
    if not tenant_id:
        raise TenantContextMissing("Token carries no tenant claim")

    return TenantContext(
        tenant_id=str(tenant_id),
        user_id=payload.get("sub"),
        roles=payload.get("roles") or (),
        source=ContextSource.API,
    )


def _emit_tenant_violation_audit_log(request: Request, reason: str) -> str:
    """
    Log (and, if configured, audit) a rejected request.

    Never fails the request path: audit write failures go to the fallback
    logger inside write_audit_log_sync.
    """
    correlation_id = str(uuid.uuid4())
    logger.warning(
        "Tenant context violation",
        extra={
            "correlation_id": correlation_id,
            "reason": reason,
            "path": request.url.path,
            "method": request.method,
        }
    )

    session_factory: Optional[Callable] = getattr(request.app.state, "audit_session_factory", None)
    if session_factory is None:
        return correlation_id

    ip_address, user_agent = extract_client_info(request)
    with session_scope(session_factory) as db:
        write_audit_log_sync(db, AuditEvent(
            tenant_id="UNKNOWN",
            action=AuditAction.TENANT_CONTEXT_MISSING,
            ip_address=ip_address,
            user_agent=user_agent,
            resource_type="tenant_context",
            metadata={"reason": reason, "path": request.url.path, "method": request.method},
            correlation_id=correlation_id,
            outcome=AuditOutcome.DENIED,
            error_code=TenantContextMissing.code,
        ))
    return correlation_id


def _reject(request: Request, reason: str, status_code: int = status.HTTP_403_FORBIDDEN) -> JSONResponse:
    correlation_id = _emit_tenant_violation_audit_log(request, reason)
    body = TenantContextMissing(reason).to_dict()
    body["correlation_id"] = correlation_id
    return JSONResponse(status_code=status_code, content=body)


class TenantContextMiddleware:
    """
    HTTP middleware that resolves the tenant context from the bearer JWT.

    Attaches TenantContext to request.state.tenant_context. Rejects every
    non-exempt /api/ request without a valid context.

    Environment:
    - AUTH_JWT_SECRET: HMAC key for token verification (required)
    - AUTH_JWT_ALGORITHM: defaults to HS256
    """

    def __init__(self, secret: Optional[str] = None, algorithm: Optional[str] = None):
        self._secret = secret
        self._algorithm = algorithm

    @property
    def secret(self) -> Optional[str]:
        return self._secret or os.getenv("AUTH_JWT_SECRET")

    @property
    def algorithm(self) -> str:
        return self._algorithm or os.getenv("AUTH_JWT_ALGORITHM", "HS256")

    @staticmethod
    def is_exempt(path: str) -> bool:
        return (
            path in PUBLIC_PATHS
            or path.startswith(EXEMPT_PREFIXES)
            or not path.startswith("/api/")
        )

    async def __call__(self, request: Request, call_next):
        """
        Process request and extract tenant context from JWT.

        SECURITY: tenant_id is ONLY extracted from JWT, never from request body/query.
        """
        if self.is_exempt(request.url.path):
            return await call_next(request)

        secret = self.secret
        if not secret:
            logger.error(
                "Authentication not configured - protected endpoint accessed",
                extra={"path": request.url.path, "method": request.method}
            )
            return _reject(request, "Authentication not configured", status.HTTP_503_SERVICE_UNAVAILABLE)

        credentials: Optional[HTTPAuthorizationCredentials] = await security(request)
        if not credentials or not credentials.credentials:
            return _reject(request, "Missing authorization token")

        try:
            tenant_context = decode_tenant_token(credentials.credentials, secret, self.algorithm)
        except TenantContextMissing as e:
            return _reject(request, e.message)

        request.state.tenant_context = tenant_context
        response = await call_next(request)
        response.headers["X-Tenant-ID"] = tenant_context.tenant_id
        return response


def get_tenant_context(request: Request) -> TenantContext:
    """
    Extract tenant context from request state.

    FastAPI dependency. Raises TenantContextMissing (403) if absent.
    """
    tenant_context = getattr(request.state, "tenant_context", None)
    if tenant_context is None:
        logger.error("Route handler accessed without tenant context", extra={
            "path": request.url.path
        })
    return require_context(tenant_context)
