"""
Entitlement API routes.

- GET  /api/entitlements/capabilities   resolved capability set (cache-eligible)
- POST /api/entitlements/usage/consume  one metered use, never served from cache

All routes require JWT authentication with tenant context.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from src.api.dependencies.entitlements import get_resolver
from src.entitlements.features import Feature
from src.entitlements.service import EntitlementResolver

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


class ConsumeRequest(BaseModel):
    """Request to consume one use of a feature."""
    feature: str = Field(..., description="Feature name, e.g. ai_generation")
    cost: int = Field(1, ge=1, le=1000, description="Units to consume")


class ConsumeResponse(BaseModel):
    """Allow/deny decision with advisory warning level."""
    allowed: bool
    feature: str
    reason: Optional[str] = None
    count: Optional[int] = None
    limit: Optional[int] = None
    remaining: Optional[int] = None
    warning_level: Optional[int] = None
    period: Optional[str] = None
    required_tier: Optional[int] = None
    requires_addon: bool = False
    current_tier: int = 0


class CapabilitiesResponse(BaseModel):
    """Resolved capability set."""
    tenant_id: str
    tier_level: int
    tier_name: Optional[str]
    features: List[str]
    limits: Dict[str, Optional[int]]
    max_customers: Optional[int]
    recipe_catalog_size: int
    meal_type_count: int
    analytics_level: str
    export_formats: List[str]
    addon_level: Optional[int] = None
    addon_status: Optional[str] = None
    addon_entitled: bool = False
    pending_downgrade_tier: Optional[int] = None
    catalog_version: int
    source: str
    resolved_at: Optional[str] = None


@router.get("/capabilities", response_model=CapabilitiesResponse)
def get_capabilities(resolver: EntitlementResolver = Depends(get_resolver)) -> Dict[str, Any]:
    """Resolve the acting tenant's capabilities."""
    return resolver.resolve().to_dict()


@router.post("/usage/consume", response_model=ConsumeResponse)
def consume_usage(
    body: ConsumeRequest,
    resolver: EntitlementResolver = Depends(get_resolver),
) -> Dict[str, Any]:
    """
    Consume usage for a feature.

    Denials are returned as allowed=false with a reason; they are not errors.
    """
    try:
        feature = Feature.parse(body.feature)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    decision = resolver.check_and_consume(feature, body.cost)
    return decision.to_dict()
