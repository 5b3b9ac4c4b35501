"""
Billing API routes for tier and add-on management.

All routes require JWT authentication with tenant context. Each action is
synchronous and returns the resulting billing state or a structured denial
(EntitlementError JSON body).
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from src.api.dependencies.entitlements import get_payment_gateway_client
from src.database.session import get_db_session
from src.integrations.payment_gateway import PaymentGatewayClient
from src.platform.tenant_context import get_tenant_context
from src.services.billing_service import BillingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing"])


# Request/Response models
class TierRequest(BaseModel):
    """Target tier for purchase, upgrade or downgrade."""
    tier_level: int = Field(..., ge=1, description="Tier level (1-3)")


class AddOnRequest(BaseModel):
    """Start the recurring add-on."""
    addon_level: int = Field(..., ge=1, description="Add-on plan level (1-3)")
    trial_days: int = Field(0, ge=0, le=90, description="Trial length; 0 charges immediately")


class BillingActionResponse(BaseModel):
    """Outcome of a billing action."""
    action: str
    status: str
    attempt_id: Optional[str] = None
    charge_cents: int = 0
    transitions: List[str] = []
    quote: Optional[Dict[str, Any]] = None
    billing: Dict[str, Any]


def get_billing_service(
    request: Request,
    db_session: Session = Depends(get_db_session),
    gateway: Optional[PaymentGatewayClient] = Depends(get_payment_gateway_client),
) -> BillingService:
    """Get billing service with tenant context."""
    return BillingService(db_session, get_tenant_context(request), gateway=gateway)


@router.post("/purchase", response_model=BillingActionResponse)
def purchase_tier(body: TierRequest, service: BillingService = Depends(get_billing_service)):
    """Buy a tier (one-time). Ownership exists once the charge succeeds."""
    logger.info("Tier purchase requested", extra={
        "tenant_id": service.tenant_id,
        "tier_level": body.tier_level,
    })
    try:
        return service.purchase_tier(body.tier_level).to_dict()
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/upgrade", response_model=BillingActionResponse)
def upgrade_tier(body: TierRequest, service: BillingService = Depends(get_billing_service)):
    """Upgrade now for the prorated delta; new price from the next cycle."""
    logger.info("Tier upgrade requested", extra={
        "tenant_id": service.tenant_id,
        "tier_level": body.tier_level,
    })
    try:
        return service.upgrade(body.tier_level).to_dict()
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/downgrade", response_model=BillingActionResponse)
def downgrade_tier(body: TierRequest, service: BillingService = Depends(get_billing_service)):
    """Schedule a downgrade at the next cycle boundary."""
    try:
        return service.downgrade(body.tier_level).to_dict()
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/reactivate", response_model=BillingActionResponse)
def reactivate_addon(service: BillingService = Depends(get_billing_service)):
    """Reactivate a suspended or canceled add-on with an immediate charge."""
    return service.reactivate().to_dict()


@router.post("/addon", response_model=BillingActionResponse)
def start_addon(body: AddOnRequest, service: BillingService = Depends(get_billing_service)):
    """Start the recurring add-on."""
    try:
        return service.start_addon(body.addon_level, trial_days=body.trial_days).to_dict()
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/addon/cancel", response_model=BillingActionResponse)
def cancel_addon(service: BillingService = Depends(get_billing_service)):
    """Cancel the add-on. The owned tier is unaffected."""
    return service.cancel_addon().to_dict()


@router.get("/subscription")
def get_subscription(service: BillingService = Depends(get_billing_service)) -> Dict[str, Any]:
    """Current tier, add-on, scheduled retries and next cycle charge."""
    return service.get_billing_summary()
