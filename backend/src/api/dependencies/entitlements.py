"""
Entitlement dependencies.

Provides reusable FastAPI dependencies that build tenant-scoped services
from the request's TenantContext and gate routes on features.
"""

import logging
from typing import Callable, Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from src.database.session import get_db_session
from src.entitlements.features import Feature
from src.entitlements.service import EntitlementResolver
from src.integrations.payment_gateway import PaymentGatewayClient
from src.platform.tenant_context import get_tenant_context
from src.services.tenant_guard import TenantIsolationGuard

logger = logging.getLogger(__name__)


def get_guard(request: Request, db_session: Session = Depends(get_db_session)) -> TenantIsolationGuard:
    """Guard for the request's tenant. Raises TenantContextMissing (403) without one."""
    return TenantIsolationGuard(db_session, get_tenant_context(request))


def get_resolver(guard: TenantIsolationGuard = Depends(get_guard)) -> EntitlementResolver:
    return EntitlementResolver(guard)


def get_payment_gateway_client(request: Request) -> Optional[PaymentGatewayClient]:
    """
    Gateway configured on the app, if any.

    None lets services build one from the environment on first charge.
    """
    return getattr(request.app.state, "payment_gateway", None)


def require_feature(feature: Feature) -> Callable:
    """
    Factory for a dependency that rejects tenants without feature.

    Raises TierInsufficient (402, with upgrade detail) when the resolved
    capability set lacks the feature. Returns the db session otherwise.
    """

    def check_entitlement(
        request: Request,
        db_session: Session = Depends(get_db_session),
    ) -> Session:
        guard = TenantIsolationGuard(db_session, get_tenant_context(request))
        EntitlementResolver(guard).require(feature)
        return db_session

    return check_entitlement

