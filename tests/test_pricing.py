from decimal import Decimal

import pytest

from services.cart import CustomLine, CustomVariantLine, PlainLine, aggregate_cart
from services.catalog import PriceTier, Product, ProductCatalog, default_catalog
from services.errors import BusinessRuleError
from services.obs.metrics import metrics_collector
from services.pricing import TierPricingEngine, resolve_tier, to_cents


CATALOG = default_catalog()


def _tier(min_qty, price, max_qty=None):
    return PriceTier(min_qty=min_qty, max_qty=max_qty, unit_price=Decimal(price), price_ref=f"t{min_qty}")


def test_resolve_tier_prefers_exact_interval():
    tiers = [_tier(1, "1.50", 9), _tier(10, "1.25", 19), _tier(20, "1.00")]
    assert resolve_tier(tiers, 1).tier.min_qty == 1
    assert resolve_tier(tiers, 10).tier.min_qty == 10
    assert resolve_tier(tiers, 19).tier.min_qty == 10
    assert resolve_tier(tiers, 500).tier.min_qty == 20
    assert resolve_tier(tiers, 12).exact


def test_resolve_tier_overlap_takes_greatest_min():
    tiers = [_tier(1, "2.00", 10), _tier(5, "1.50", 10)]
    assert resolve_tier(tiers, 7).tier.min_qty == 5


def test_resolve_tier_gap_falls_back_to_nearest_lower():
    tiers = [_tier(1, "2.00", 5), _tier(10, "1.00")]
    resolution = resolve_tier(tiers, 7)
    assert resolution.tier.min_qty == 1
    assert resolution.is_fallback


def test_resolve_tier_below_every_tier_is_base_price():
    tiers = [_tier(5, "2.00")]
    assert resolve_tier(tiers, 3).tier is None
    assert resolve_tier(tiers, 0).tier is None
    assert resolve_tier([], 3).tier is None


def test_scenario_plain_and_untiered_products():
    # logo-sticker x2 at $3.50, birb-euro-sticker x3 at $5.00
    aggregate = aggregate_cart(
        [PlainLine("logo-sticker", 2), PlainLine("birb-euro-sticker", 3)], CATALOG
    )
    priced = TierPricingEngine().price_cart(aggregate)
    prices = {g.group.product_ref: g.unit_price for g in priced.groups}
    assert prices == {"logo-sticker": Decimal("3.50"), "birb-euro-sticker": Decimal("5.00")}
    assert priced.subtotal == Decimal("22.00")


def test_scenario_custom_pool_prices_every_line_at_pool_tier():
    lines = [
        CustomVariantLine("my-other-birb", 4, "1", "pixel"),
        CustomLine("my-other-birb", 3, "2"),
        CustomLine("square-moonbird", 5, "3"),
    ]
    priced = TierPricingEngine().price_cart(aggregate_cart(lines, CATALOG))
    assert {g.pricing_qty for g in priced.groups} == {12}
    assert {g.unit_price for g in priced.groups} == {Decimal("1.25")}
    assert priced.subtotal == Decimal("15.00")


def test_custom_quantities_pool_across_products():
    lines = [CustomLine("my-other-birb", 3, "1"), CustomLine("square-moonbird", 4, "2")]
    priced = TierPricingEngine().price_cart(aggregate_cart(lines, CATALOG))
    assert [g.pricing_qty for g in priced.groups] == [7, 7]
    assert all(g.unit_price == Decimal("1.50") for g in priced.groups)


def test_custom_minimum_reports_deficit():
    lines = [CustomLine("my-other-birb", 4, "1")]
    with pytest.raises(BusinessRuleError) as exc:
        TierPricingEngine(min_custom_qty=5).price_cart(aggregate_cart(lines, CATALOG))
    assert exc.value.code == "CUSTOM_MIN_NOT_MET"
    assert exc.value.context == {"totalCustomQty": 4, "minCustomQty": 5, "deficit": 1}


def test_custom_minimum_met_exactly():
    lines = [CustomLine("my-other-birb", 2, "1"), CustomLine("square-moonbird", 3, "2")]
    priced = TierPricingEngine(min_custom_qty=5).price_cart(aggregate_cart(lines, CATALOG))
    assert priced.total_quantity == 5


def test_standard_tier_drops_price_above_five():
    priced = TierPricingEngine().price_cart(aggregate_cart([PlainLine("birb-sticker", 6)], CATALOG))
    group = priced.groups[0]
    assert group.unit_price == Decimal("3.00")
    assert group.tier.price_ref == "price_birb_sticker_t6"
    assert group.unit_amount_cents == 300


def test_tier_gap_records_fallback_metric():
    gappy = Product(
        id="gappy", name="Gappy", unit_price=Decimal("4.00"), price_ref="price_gappy",
        tiers=(_tier(1, "4.00", 5), _tier(10, "3.00")),
    )
    catalog = ProductCatalog([gappy])
    priced = TierPricingEngine().price_cart(aggregate_cart([PlainLine("gappy", 7)], catalog))
    assert priced.groups[0].unit_price == Decimal("4.00")
    assert metrics_collector.tier_fallbacks["gappy"] == 1


def test_catalog_miss_is_left_unpriced():
    priced = TierPricingEngine().price_cart(aggregate_cart([PlainLine("price_mystery", 2)], CATALOG))
    assert priced.groups[0].unit_price is None
    assert priced.subtotal == Decimal("0.00")


def test_to_cents_rounds_half_up():
    assert to_cents(Decimal("1.005")) == 101
    assert to_cents(Decimal("3.5")) == 350
