"""
Payment gateway webhook intake.

SECURITY: Every webhook MUST verify its HMAC signature before processing.
The gateway signs the raw body with HMAC-SHA256 using the shared webhook
secret and sends the hex digest in X-Payment-Signature.

Delivery contract:
- 2xx only after the event is durably and idempotently ingested
- Any store failure answers 503 so the gateway redelivers
- Redelivery of an ingested event is a harmless duplicate (applied=false)
"""

import hashlib
import hmac
import json
import logging
import os
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from src.database.session import get_db_session
from src.entitlements.errors import (
    ConcurrentTransition,
    InvalidPaymentEvent,
    TransientStoreFailure,
)
from src.services.payment_event_ledger import ExternalPaymentEvent, PaymentEventLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks/payments", tags=["webhooks"])

SIGNATURE_HEADER = "X-Payment-Signature"


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    applied: bool = False
    duplicate: bool = False
    conflict: bool = False
    reason: Optional[str] = None


def compute_signature(data: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), data, hashlib.sha256).hexdigest()


def verify_payment_webhook(data: bytes, signature: str, secret: str) -> bool:
    """
    Verify a gateway webhook signature.

    Args:
        data: Raw request body bytes
        signature: X-Payment-Signature header value (hex digest)
        secret: Shared webhook secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not secret:
        return False
    # Constant-time comparison to prevent timing attacks
    return hmac.compare_digest(compute_signature(data, secret), signature.strip().lower())


async def get_verified_webhook_body(request: Request) -> dict:
    """
    Read and verify the webhook body.

    Raises:
        HTTPException: 503 when no secret is configured, 401 on a bad
            signature, 400 on a body that is not JSON
    """
    secret = os.getenv("PAYMENT_WEBHOOK_SECRET")
    if not secret:
        logger.error("PAYMENT_WEBHOOK_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook verification not configured"
        )

    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        logger.warning("Missing signature header in payment webhook")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing webhook signature"
        )

    body = await request.body()
    if not verify_payment_webhook(body, signature, secret):
        logger.warning("Invalid payment webhook signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature"
        )

    try:
        return json.loads(body)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook body is not valid JSON"
        )


@router.post("", response_model=WebhookResponse)
async def receive_payment_event(
    request: Request,
    db: Session = Depends(get_db_session),
):
    """
    Ingest one payment gateway event.

    Returns 200 for applied, duplicate, non-terminal and conflicting events.
    Returns 503 when ingestion could not be recorded (the gateway retries).
    """
    payload = await get_verified_webhook_body(request)

    try:
        event = ExternalPaymentEvent.from_payload(payload)
    except InvalidPaymentEvent as e:
        logger.warning("Rejected malformed payment event", extra={"error": e.message})
        return JSONResponse(status_code=e.http_status, content=e.to_dict())

    ledger = PaymentEventLedger(db)
    try:
        result = await run_in_threadpool(ledger.ingest, event)
    except InvalidPaymentEvent as e:
        logger.warning("Payment event cannot be applied", extra={
            "tenant_id": event.tenant_id,
            "error": e.message,
        })
        return JSONResponse(status_code=e.http_status, content=e.to_dict())
    except (TransientStoreFailure, ConcurrentTransition) as e:
        logger.warning("Payment event not recorded - requesting redelivery", extra={
            "tenant_id": event.tenant_id,
            "error_code": e.code,
        })
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=e.to_dict())

    return WebhookResponse(
        applied=result.applied,
        duplicate=result.duplicate,
        conflict=result.conflict,
        reason=result.reason,
    )
