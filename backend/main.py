"""
FastAPI application entry point for the billing and entitlement API.

Multi-tenant enforcement is enabled via TenantContextMiddleware.
All /api/ routes except payment webhooks require a valid JWT with tenant context.
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from src.database.session import get_session_factory
from src.entitlements.errors import EntitlementError
from src.integrations.payment_gateway import (
    PaymentGatewayClient,
    PaymentGatewayNotConfiguredError,
)
from src.platform.tenant_context import TenantContextMiddleware
from src.api.routes import health
from src.api.routes import billing
from src.api.routes import entitlements
from src.api.routes import webhooks_payments
from src.api.routes import audit_export
from src.api.routes import customer_groups

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting billing API")

    required_vars = ["DATABASE_URL", "AUTH_JWT_SECRET", "PAYMENT_WEBHOOK_SECRET"]
    env_status = {var: "set" if os.getenv(var) else "missing" for var in required_vars}
    missing_vars = [var for var, state in env_status.items() if state == "missing"]
    if missing_vars:
        logger.warning(
            f"Billing API not fully configured (missing: {missing_vars}). "
            "Affected endpoints will return 503.",
            extra={"env_status": env_status},
        )
    else:
        logger.info("Billing API configured", extra={"env_status": env_status})

    if os.getenv("DATABASE_URL") and getattr(app.state, "audit_session_factory", None) is None:
        app.state.audit_session_factory = get_session_factory()

    gateway_configured = bool(os.getenv("PAYMENT_GATEWAY_URL") and os.getenv("PAYMENT_GATEWAY_API_KEY"))
    if getattr(app.state, "payment_gateway", None) is None and not gateway_configured:
        logger.warning("Payment gateway not configured; charged billing actions will return 503")

    yield

    # Shutdown
    gateway = getattr(app.state, "payment_gateway", None)
    if gateway is not None:
        gateway.close()
    logger.info("Shutting down billing API")


async def entitlement_error_handler(request: Request, exc: EntitlementError) -> JSONResponse:
    """Render every entitlement/billing denial as its structured JSON body."""
    if exc.http_status >= 500:
        logger.error("Request failed closed", extra={"path": request.url.path, **exc.to_dict()})
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def gateway_not_configured_handler(request: Request, exc: PaymentGatewayNotConfiguredError) -> JSONResponse:
    logger.error("Payment gateway not configured", extra={"path": request.url.path})
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "payment_gateway_unavailable", "message": exc.message},
    )


def create_app(
    payment_gateway: Optional[PaymentGatewayClient] = None,
    tenant_middleware: Optional[TenantContextMiddleware] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        payment_gateway: Gateway client shared by all requests. When None,
            a client is created lazily from PAYMENT_GATEWAY_URL/API_KEY.
        tenant_middleware: Override for the JWT middleware (tests pass one
            with an explicit secret).
    """
    app = FastAPI(
        title="Billing & Entitlements API",
        description="Per-trainer tier ownership, add-on billing and usage entitlements with strict tenant isolation",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.payment_gateway = payment_gateway
    app.state.audit_session_factory = None

    cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # CRITICAL: tenant context middleware
    app.middleware("http")(tenant_middleware or TenantContextMiddleware())

    app.add_exception_handler(EntitlementError, entitlement_error_handler)
    app.add_exception_handler(PaymentGatewayNotConfiguredError, gateway_not_configured_handler)

    # Include health route (bypasses authentication)
    app.include_router(health.router)
    # Include billing routes (requires authentication)
    app.include_router(billing.router)
    # Include entitlement and usage routes (requires authentication)
    app.include_router(entitlements.router)
    # Include payment webhook routes (uses HMAC verification, not JWT)
    app.include_router(webhooks_payments.router)
    # Include audit export routes (requires authentication)
    app.include_router(audit_export.router)
    # Include customer roster routes (requires authentication)
    app.include_router(customer_groups.router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
