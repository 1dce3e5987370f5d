"""
Holder status endpoint
Tells the storefront whether a wallet holds the collection and can still claim a gift.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from services.chain import HolderChecker, holder_checker
from services.gift import GiftEligibilityService, gift_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Gifts"])


class HolderStatusRequest(BaseModel):
    address: Optional[str] = None


class HolderStatusResponse(BaseModel):
    is_holder: bool = Field(..., alias="isHolder")
    has_claimed_gift: bool = Field(..., alias="hasClaimedGift")
    remaining_gifts: int = Field(..., alias="remainingGifts")
    reason: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


def get_holder_checker() -> HolderChecker:
    return holder_checker


def get_gift_service() -> GiftEligibilityService:
    return gift_service


@router.post("/holder-status", response_model=HolderStatusResponse)
async def holder_status(
    body: HolderStatusRequest,
    holders: HolderChecker = Depends(get_holder_checker),
    gifts: GiftEligibilityService = Depends(get_gift_service),
) -> HolderStatusResponse:
    address = (body.address or "").strip()
    holder = await holders.check(address)
    status = await gifts.status(address.lower() if holder.is_holder else None)
    return HolderStatusResponse(
        is_holder=holder.is_holder,
        has_claimed_gift=status.has_claimed,
        remaining_gifts=status.remaining,
        reason=holder.reason,
    )
