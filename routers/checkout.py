"""
Checkout endpoint
Builds a hosted checkout session from the storefront cart.
"""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, List, Optional, Union

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from services.cart import parse_cart_line
from services.checkout import CheckoutRequest, CheckoutSessionBuilder
from services.errors import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Checkout"])


class CartItemIn(BaseModel):
    product_ref: Optional[str] = Field(None, alias="productRef")
    price_id: Optional[str] = Field(None, alias="priceId")
    # Checked by parse_cart_line so bad quantities get a specific error code
    quantity: Any = None
    token_id: Optional[Union[str, int]] = Field(None, alias="tokenId")
    variant: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class CreateCheckoutSessionRequest(BaseModel):
    items: List[CartItemIn] = Field(default_factory=list)
    gift_eligible: bool = Field(False, alias="giftEligible")
    wallet_address: Optional[str] = Field(None, alias="walletAddress")
    shipping_region: Optional[str] = Field("domestic", alias="shippingRegion")

    model_config = ConfigDict(populate_by_name=True)


class CreateCheckoutSessionResponse(BaseModel):
    url: Optional[str]


@lru_cache(maxsize=1)
def get_checkout_builder() -> CheckoutSessionBuilder:
    return CheckoutSessionBuilder()


@router.post("/create-checkout-session", response_model=CreateCheckoutSessionResponse)
async def create_checkout_session(
    body: CreateCheckoutSessionRequest,
    request: Request,
    builder: CheckoutSessionBuilder = Depends(get_checkout_builder),
) -> CreateCheckoutSessionResponse:
    if not body.items:
        raise ValidationError("No items passed to checkout.", code="EMPTY_CART")

    lines = [parse_cart_line(item.model_dump(by_alias=True)) for item in body.items]
    result = await builder.create_session(
        CheckoutRequest(
            lines=lines,
            wallet=body.wallet_address,
            shipping_region=body.shipping_region or "domestic",
            gift_requested=body.gift_eligible,
            origin=request.headers.get("origin"),
        )
    )
    return CreateCheckoutSessionResponse(url=result.url)
