"""
Checkout Session Builder
Turns a priced cart into processor line items, picks shipping, stores the
customization breakdown and applies the holder gift or promotion codes.
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from services.cart import CartAggregate, CartLine, aggregate_cart
from services.catalog import ProductCatalog, default_catalog
from services.chain import HolderChecker, holder_checker as default_holder_checker
from services.errors import (
    CheckoutDisabledError,
    SecurityGuardError,
    UpstreamError,
    ValidationError,
)
from services.feature_flags import FeatureFlagsManager, feature_flags as default_flags
from services.gift import GiftDecision, GiftEligibilityService, gift_service as default_gift_service
from services.kv_store import KeyValueStore, kv_store
from services.obs.metrics import metrics_collector
from services.payments import PaymentGateway, get_gateway
from services.pricing import PricedCart, TierPricingEngine
from settings import (
    DOMESTIC_COUNTRIES,
    INTERNATIONAL_COUNTRIES,
    ShopSettings,
    settings as default_settings,
)

logger = logging.getLogger(__name__)

DOMESTIC = "domestic"
INTERNATIONAL = "international"


def customization_key(ref: str) -> str:
    return f"customizations:{ref}"


def normalize_region(region: Optional[str]) -> str:
    return INTERNATIONAL if (region or "").strip().lower() == INTERNATIONAL else DOMESTIC


@dataclass
class CheckoutRequest:
    lines: Sequence[CartLine]
    wallet: Optional[str] = None
    shipping_region: str = DOMESTIC
    gift_requested: bool = False
    origin: Optional[str] = None


@dataclass
class CheckoutResult:
    session_id: str
    url: Optional[str]
    gift_granted: bool = False
    custom_ref: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)


class CheckoutSessionBuilder:
    def __init__(
        self,
        catalog: Optional[ProductCatalog] = None,
        config: Optional[ShopSettings] = None,
        gateway: Optional[PaymentGateway] = None,
        store: Optional[KeyValueStore] = None,
        gifts: Optional[GiftEligibilityService] = None,
        holders: Optional[HolderChecker] = None,
        flags: Optional[FeatureFlagsManager] = None,
    ):
        self.catalog = catalog or default_catalog()
        self.config = config or default_settings
        self._gateway = gateway
        self.store = store or kv_store
        self.gifts = gifts or default_gift_service
        self.holders = holders or default_holder_checker
        self.flags = flags or default_flags
        self.pricing = TierPricingEngine(min_custom_qty=self.config.min_custom_qty)

    @property
    def gateway(self) -> PaymentGateway:
        return self._gateway or get_gateway()

    # ---------- pure pieces ----------

    def guard_origin(self, origin: str, test_mode: bool) -> None:
        if test_mode and self.config.is_production_origin(origin):
            raise SecurityGuardError(
                "Refusing to run STRIPE_MODE=test on the live domain.",
                code="TEST_MODE_ON_LIVE_ORIGIN",
            )

    def line_items(self, priced: PricedCart, test_mode: bool) -> List[Dict[str, Any]]:
        """Processor line items, one per pricing group.

        Variant groups are billed inline so the processor keeps them as
        separate lines.
        """
        items: List[Dict[str, Any]] = []
        for group in priced.groups:
            product = group.product
            if product is None:
                logger.warning(
                    "Catalog miss for %s; billing client-supplied reference", group.group.product_ref
                )
                items.append({"price": group.group.product_ref, "quantity": group.quantity})
                continue

            if group.group.variant:
                items.append({
                    "price_data": {
                        "currency": self.config.currency,
                        "unit_amount": group.unit_amount_cents,
                        "product_data": {
                            "name": f"{product.name} ({group.group.variant})",
                            "metadata": {"product_ref": product.id},
                        },
                    },
                    "quantity": group.quantity,
                })
                continue

            if test_mode:
                # Test prices exist only for base price ids
                price = self.config.map_test_price(product.price_ref)
            elif group.tier is None or group.tier.unit_price == product.unit_price:
                price = product.price_ref
            else:
                price = group.tier.price_ref
            items.append({"price": price, "quantity": group.quantity})
        return items

    def shipping_rate(self, total_qty: int, region: str, test_mode: bool) -> Optional[str]:
        rates = self.config.shipping_rates
        large = total_qty > self.config.large_order_threshold
        if region == INTERNATIONAL:
            rate = rates.large_international if large else rates.small_international
        else:
            rate = rates.large_domestic if large else rates.small_domestic
        rate = rate or rates.legacy
        if rate and test_mode:
            rate = self.config.map_test_shipping_rate(rate)
        return rate

    @staticmethod
    def allowed_countries(region: str) -> List[str]:
        return list(DOMESTIC_COUNTRIES if region == DOMESTIC else INTERNATIONAL_COUNTRIES)

    def build_params(
        self,
        line_items: List[Dict[str, Any]],
        origin: str,
        region: str,
        shipping_rate: Optional[str],
        wallet: Optional[str],
        custom_ref: Optional[str],
        custom_count: int,
        gift: GiftDecision,
        item_count: int,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": list(line_items),
            "success_url": f"{origin}/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{origin}/shop",
            "shipping_address_collection": {"allowed_countries": self.allowed_countries(region)},
            "metadata": {"itemCount": str(item_count)},
        }
        if shipping_rate:
            params["shipping_options"] = [{"shipping_rate": shipping_rate}]
        if custom_ref:
            params["metadata"]["customRef"] = custom_ref
            params["metadata"]["customCount"] = str(custom_count)
        if wallet:
            params["metadata"]["walletAddress"] = wallet

        # Coupons and promotion codes are mutually exclusive on a session
        if gift.eligible:
            params["line_items"].append({"price": self.config.gift_price_id, "quantity": 1})
            params["discounts"] = [{"coupon": self.config.gift_coupon_id}]
            params["metadata"]["giftIntent"] = "true"
        else:
            params["allow_promotion_codes"] = True
            params["metadata"]["giftIntent"] = "false"
        return params

    def check_test_prices(self, line_items: List[Dict[str, Any]]) -> None:
        for item in line_items:
            price = item.get("price")
            if price and not price.startswith("price_"):
                raise SecurityGuardError(
                    f"Invalid test price detected: {price}", code="INVALID_TEST_PRICE"
                )

    # ---------- I/O ----------

    async def decide_gift(self, wallet: Optional[str], priced: PricedCart, requested: bool) -> GiftDecision:
        if not requested or not wallet:
            return GiftDecision(False, "not_requested")
        holder = await self.holders.check(wallet)
        decision = await self.gifts.evaluate(wallet, priced.subtotal, holder.is_holder)
        if not decision.eligible:
            logger.info("Gift blocked for %s: %s", wallet, decision.reason)
        return decision

    async def persist_customizations(self, aggregate: CartAggregate, wallet: Optional[str]) -> Optional[str]:
        if not aggregate.customizations:
            return None
        ref = str(uuid.uuid4())
        record = {
            "customizations": [entry.to_dict() for entry in aggregate.customizations],
            "wallet": wallet,
            "createdAt": int(time.time() * 1000),
        }
        try:
            await self.store.set_json(
                customization_key(ref), record, ttl=self.config.customization_ttl_seconds
            )
        except Exception as exc:
            logger.exception("Failed to store customizations %s", ref)
            raise UpstreamError(f"Could not store customizations: {exc}") from exc
        return ref

    async def create_session(self, request: CheckoutRequest) -> CheckoutResult:
        if not self.flags.checkout_enabled():
            metrics_collector.record_checkout("rejected")
            raise CheckoutDisabledError("Checkout is temporarily disabled.")

        gateway = self.gateway
        test_mode = gateway.is_test_mode
        origin = request.origin or self.config.site_url
        self.guard_origin(origin, test_mode)

        aggregate = aggregate_cart(request.lines, self.catalog)
        priced = self.pricing.price_cart(aggregate)
        line_items = self.line_items(priced, test_mode)
        if not line_items:
            raise ValidationError("Cart is empty.", code="EMPTY_CART")

        wallet = (request.wallet or "").strip().lower() or None
        region = normalize_region(request.shipping_region)
        gift = await self.decide_gift(wallet, priced, request.gift_requested)
        custom_ref = await self.persist_customizations(aggregate, wallet)

        params = self.build_params(
            line_items=line_items,
            origin=origin,
            region=region,
            shipping_rate=self.shipping_rate(aggregate.total_quantity, region, test_mode),
            wallet=wallet,
            custom_ref=custom_ref,
            custom_count=len(aggregate.customizations),
            gift=gift,
            item_count=aggregate.total_quantity,
        )
        if test_mode:
            self.check_test_prices(params["line_items"])

        session = await gateway.create_checkout_session(params)
        metrics_collector.record_checkout("sessions_created")
        if gift.eligible:
            metrics_collector.record_checkout("gift_offered")
        logger.info(
            "Checkout session %s created | groups=%s qty=%s subtotal=%s gift=%s region=%s",
            session.id, len(priced.groups), aggregate.total_quantity, priced.subtotal,
            gift.eligible, region,
        )
        return CheckoutResult(
            session_id=session.id,
            url=session.url,
            gift_granted=gift.eligible,
            custom_ref=custom_ref,
            params=params,
        )
