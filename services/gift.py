"""
Holder gift eligibility and claim bookkeeping.

``evaluate`` is advisory and runs at checkout; ``finalize_claim`` is the
authoritative write and runs once payment is confirmed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from services.feature_flags import FeatureFlagsManager, feature_flags as default_flags
from services.kv_store import KeyValueStore, kv_store
from settings import ShopSettings, settings as default_settings

logger = logging.getLogger(__name__)

GIFT_COUNT_KEY = "gift_count"


def claim_key(wallet: str) -> str:
    return f"gift_claimed:{wallet.lower()}"


@dataclass(frozen=True)
class GiftDecision:
    eligible: bool
    reason: str


@dataclass(frozen=True)
class GiftStatus:
    has_claimed: bool
    claimed_count: int
    remaining: int
    available: bool = True


class GiftEligibilityService:
    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        config: Optional[ShopSettings] = None,
        flags: Optional[FeatureFlagsManager] = None,
    ):
        self.store = store or kv_store
        self.config = config or default_settings
        self.flags = flags or default_flags

    async def has_claimed(self, wallet: str) -> bool:
        return await self.store.exists(claim_key(wallet))

    async def claimed_count(self) -> int:
        return await self.store.get_counter(GIFT_COUNT_KEY)

    async def status(self, wallet: Optional[str]) -> GiftStatus:
        """Claim flag and remaining gifts for display. Lookup failures show nothing left."""
        try:
            count = await self.claimed_count()
            claimed = await self.has_claimed(wallet) if wallet else False
        except Exception:
            logger.exception("Gift status lookup failed for %s", wallet)
            return GiftStatus(has_claimed=False, claimed_count=0, remaining=0, available=False)
        return GiftStatus(
            has_claimed=claimed,
            claimed_count=count,
            remaining=max(self.config.gift_cap - count, 0),
        )

    async def evaluate(self, wallet: Optional[str], subtotal: Decimal, is_holder: bool) -> GiftDecision:
        if not self.flags.gifts_enabled():
            return GiftDecision(False, "gifts_disabled")
        if not self.config.gift_configured:
            return GiftDecision(False, "not_configured")
        if not wallet:
            return GiftDecision(False, "no_wallet")
        if not is_holder:
            return GiftDecision(False, "not_holder")
        if subtotal < self.config.gift_min_subtotal:
            return GiftDecision(False, "below_threshold")
        try:
            if await self.has_claimed(wallet):
                return GiftDecision(False, "already_claimed")
            if await self.claimed_count() >= self.config.gift_cap:
                return GiftDecision(False, "cap_reached")
        except Exception:
            logger.exception("Gift eligibility lookup failed for %s; denying gift", wallet)
            return GiftDecision(False, "lookup_failed")
        return GiftDecision(True, "eligible")

    async def finalize_claim(self, wallet: str, session_id: str) -> bool:
        """Record the wallet's claim and count it. True only for the winning delivery."""
        claimed = await self.store.claim_and_increment(claim_key(wallet), session_id, GIFT_COUNT_KEY)
        if claimed:
            logger.info("Gift claim recorded for wallet %s (session %s)", wallet, session_id)
        else:
            logger.info("Wallet %s already claimed gift; counter untouched", wallet)
        return claimed


gift_service = GiftEligibilityService()
