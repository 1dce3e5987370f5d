"""
Payment processor webhook
Verifies the signature, then hands the event to the fulfillment pipeline.
"""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from services.fulfillment import WebhookFulfillmentProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Webhooks"])


@lru_cache(maxsize=1)
def get_fulfillment_processor() -> WebhookFulfillmentProcessor:
    return WebhookFulfillmentProcessor()


@router.post("/stripe-webhook")
async def stripe_webhook(
    request: Request,
    processor: WebhookFulfillmentProcessor = Depends(get_fulfillment_processor),
) -> Dict[str, Any]:
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    # A bad signature raises WebhookSignatureError and is rendered as 400
    event = processor.verify(payload, signature)

    try:
        await processor.process_event(event)
    except Exception:
        # Verified events are always acknowledged; redelivery cannot fix a downstream fault
        logger.exception("Unhandled fulfillment error for event %s", event.get("id"))
    return {"received": True}
