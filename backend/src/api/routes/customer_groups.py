"""
Customer roster and grouping routes.

All routes require JWT authentication with tenant context. Membership
writes naming customers or groups of another tenant are rejected with 403
(CrossTenantReference), never partially applied.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from src.database.session import get_db_session
from src.platform.tenant_context import get_tenant_context
from src.services.customer_group_service import CustomerGroupService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["customers"])


class CreateCustomerRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: Optional[str] = Field(None, max_length=255)


class CustomerResponse(BaseModel):
    id: str
    name: str
    email: Optional[str] = None
    is_active: bool


class CreateGroupRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)


class GroupResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None


class AddMembersRequest(BaseModel):
    customer_ids: List[str] = Field(..., min_length=1, max_length=500)


class AddMembersResponse(BaseModel):
    group_id: str
    added: int
    customer_ids: List[str]


def get_customer_group_service(
    request: Request,
    db_session: Session = Depends(get_db_session),
) -> CustomerGroupService:
    return CustomerGroupService(db_session, get_tenant_context(request))


def _customer(customer) -> dict:
    return {
        "id": customer.id,
        "name": customer.name,
        "email": customer.email,
        "is_active": customer.is_active,
    }


@router.post("/customers", response_model=CustomerResponse, status_code=status.HTTP_201_CREATED)
def create_customer(
    body: CreateCustomerRequest,
    service: CustomerGroupService = Depends(get_customer_group_service),
):
    """Add a customer; 402 once the tier's customer ceiling is reached."""
    return _customer(service.add_customer(body.name, body.email))


@router.get("/customers", response_model=List[CustomerResponse])
def list_customers(
    include_inactive: bool = False,
    service: CustomerGroupService = Depends(get_customer_group_service),
):
    return [_customer(c) for c in service.list_customers(include_inactive=include_inactive)]


@router.post("/customers/{customer_id}/deactivate", response_model=CustomerResponse)
def deactivate_customer(
    customer_id: str,
    service: CustomerGroupService = Depends(get_customer_group_service),
):
    return _customer(service.deactivate_customer(customer_id))


@router.post("/customer-groups", response_model=GroupResponse, status_code=status.HTTP_201_CREATED)
def create_group(
    body: CreateGroupRequest,
    service: CustomerGroupService = Depends(get_customer_group_service),
):
    group = service.create_group(body.name, body.description)
    return {"id": group.id, "name": group.name, "description": group.description}


@router.get("/customer-groups", response_model=List[GroupResponse])
def list_groups(service: CustomerGroupService = Depends(get_customer_group_service)):
    return [
        {"id": g.id, "name": g.name, "description": g.description}
        for g in service.list_groups()
    ]


@router.post("/customer-groups/{group_id}/members", response_model=AddMembersResponse)
def add_group_members(
    group_id: str,
    body: AddMembersRequest,
    service: CustomerGroupService = Depends(get_customer_group_service),
):
    """Add customers to a group. Every id must belong to the acting tenant."""
    added = service.add_members(group_id, body.customer_ids)
    return {
        "group_id": group_id,
        "added": len(added),
        "customer_ids": [m.customer_id for m in added],
    }


@router.get("/customer-groups/{group_id}/members", response_model=List[CustomerResponse])
def list_group_members(
    group_id: str,
    service: CustomerGroupService = Depends(get_customer_group_service),
):
    return [_customer(c) for c in service.list_members(group_id)]
