"""
Checkout session lookup for the success page.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from services.errors import UpstreamError, ValidationError
from services.payments import PaymentGateway, get_gateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Checkout"])


def get_payment_gateway() -> PaymentGateway:
    return get_gateway()


@router.get("/session")
async def get_session(
    id: Optional[str] = Query(None),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> Dict[str, Any]:
    if not id:
        raise ValidationError("Missing id", code="MISSING_SESSION_ID")
    try:
        session = await gateway.retrieve_session(id)
    except UpstreamError as exc:
        raise UpstreamError(exc.message, public_message="Failed to load checkout session") from exc
    return {
        "id": session.id,
        "giftIntent": session.metadata.get("giftIntent") == "true",
        "walletAddress": session.metadata.get("walletAddress") or None,
        "paymentStatus": session.payment_status,
    }
