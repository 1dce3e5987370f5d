"""
Tier Pricing Engine
Resolves effective unit prices from quantity tiers, pooling every custom product
in an order into one pricing quantity.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Sequence

from services.cart import CartAggregate, PricingGroup
from services.catalog import PriceTier, Product
from services.errors import BusinessRuleError
from services.obs.metrics import metrics_collector

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class TierResolution:
    tier: Optional[PriceTier]
    exact: bool

    @property
    def is_fallback(self) -> bool:
        return self.tier is not None and not self.exact


def resolve_tier(tiers: Sequence[PriceTier], qty: int) -> TierResolution:
    """Pick the tier for ``qty``.

    The tier with the greatest ``min_qty`` whose closed interval contains
    ``qty`` wins. When no interval contains it (a gap in the table) the tier
    with the greatest ``min_qty <= qty`` is used regardless of ``max_qty``.
    No qualifying tier means base price.
    """
    if qty <= 0 or not tiers:
        return TierResolution(tier=None, exact=False)

    ordered = sorted(tiers, key=lambda t: t.min_qty)
    exact: Optional[PriceTier] = None
    nearest_lower: Optional[PriceTier] = None
    for tier in ordered:
        if tier.min_qty > qty:
            break
        nearest_lower = tier
        if tier.contains(qty):
            exact = tier

    if exact is not None:
        return TierResolution(tier=exact, exact=True)
    return TierResolution(tier=nearest_lower, exact=False)


def enforce_custom_minimum(total_custom_qty: int, min_custom_qty: int) -> None:
    if 0 < total_custom_qty < min_custom_qty:
        raise BusinessRuleError(
            f"Custom stickers require a minimum of {min_custom_qty} total (mix & match).",
            code="CUSTOM_MIN_NOT_MET",
            context={
                "totalCustomQty": total_custom_qty,
                "minCustomQty": min_custom_qty,
                "deficit": min_custom_qty - total_custom_qty,
            },
        )


@dataclass
class PricedGroup:
    group: PricingGroup
    pricing_qty: int
    unit_price: Optional[Decimal]
    tier: Optional[PriceTier] = None

    @property
    def product(self) -> Optional[Product]:
        return self.group.product

    @property
    def quantity(self) -> int:
        return self.group.quantity

    @property
    def line_total(self) -> Decimal:
        if self.unit_price is None:
            return Decimal("0.00")
        return (self.unit_price * self.quantity).quantize(CENTS)

    @property
    def unit_amount_cents(self) -> int:
        return to_cents(self.unit_price or Decimal("0"))


@dataclass
class PricedCart:
    groups: List[PricedGroup] = field(default_factory=list)
    aggregate: CartAggregate = field(default_factory=CartAggregate)

    @property
    def subtotal(self) -> Decimal:
        """Known-product subtotal. Catalog misses are priced by the processor."""
        return sum((g.line_total for g in self.groups), Decimal("0.00")).quantize(CENTS)

    @property
    def total_quantity(self) -> int:
        return self.aggregate.total_quantity


class TierPricingEngine:
    """Prices pricing groups against product tier tables."""

    def __init__(self, min_custom_qty: int = 5):
        self.min_custom_qty = min_custom_qty

    def pricing_quantity(self, group: PricingGroup, aggregate: CartAggregate) -> int:
        if group.is_custom_pool:
            return aggregate.custom_pool_quantity
        return group.quantity

    def unit_price_for(self, product: Product, qty: int) -> tuple[Decimal, Optional[PriceTier]]:
        resolution = resolve_tier(product.tiers, qty)
        if resolution.is_fallback:
            logger.warning(
                "Tier table gap for %s at qty=%s; using nearest lower tier min_qty=%s",
                product.id, qty, resolution.tier.min_qty,
            )
            metrics_collector.record_tier_fallback(product.id, qty)
        if resolution.tier is None:
            return product.unit_price, None
        return resolution.tier.unit_price, resolution.tier

    def price_cart(self, aggregate: CartAggregate) -> PricedCart:
        enforce_custom_minimum(aggregate.custom_pool_quantity, self.min_custom_qty)

        priced: List[PricedGroup] = []
        for group in aggregate.groups:
            if group.product is None:
                priced.append(PricedGroup(group=group, pricing_qty=group.quantity, unit_price=None))
                continue
            pricing_qty = self.pricing_quantity(group, aggregate)
            unit_price, tier = self.unit_price_for(group.product, pricing_qty)
            priced.append(
                PricedGroup(group=group, pricing_qty=pricing_qty, unit_price=unit_price, tier=tier)
            )

        cart = PricedCart(groups=priced, aggregate=aggregate)
        logger.info(
            "Priced cart: groups=%s total_qty=%s custom_qty=%s subtotal=%s",
            [(g.group.key, g.quantity, str(g.unit_price)) for g in priced],
            aggregate.total_quantity,
            aggregate.custom_pool_quantity,
            cart.subtotal,
        )
        return cart
