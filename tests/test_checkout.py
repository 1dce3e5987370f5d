import asyncio
from decimal import Decimal

import pytest

from fakes import InMemoryKeyValueStore, rpc_transport
from services.cart import CustomLine, CustomVariantLine, PlainLine
from services.catalog import Product, ProductCatalog, default_catalog
from services.chain import HolderChecker
from services.checkout import CheckoutRequest, CheckoutSessionBuilder, customization_key
from services.errors import (
    BusinessRuleError,
    CheckoutDisabledError,
    SecurityGuardError,
    UpstreamError,
    ValidationError,
)
from services.feature_flags import FeatureFlagsManager
from services.gift import GiftEligibilityService
from services.obs.metrics import metrics_collector
from services.payments import FakeGateway
from settings import ShippingRates, ShopSettings


WALLET = "0x" + "AB" * 20

RATES = ShippingRates(
    small_domestic="shr_small_us",
    large_domestic="shr_large_us",
    small_international="shr_small_intl",
    large_international="shr_large_intl",
    legacy="shr_legacy",
)


def make_builder(config=None, test_mode=False, balance=1, catalog=None):
    config = config or ShopSettings(
        gift_price_id="price_gift",
        gift_coupon_id="coupon_gift",
        eth_rpc_url="https://rpc.test",
    )
    store = InMemoryKeyValueStore()
    flags = FeatureFlagsManager(store=store)
    builder = CheckoutSessionBuilder(
        catalog=catalog or default_catalog(),
        config=config,
        gateway=FakeGateway(test_mode=test_mode),
        store=store,
        gifts=GiftEligibilityService(store=store, config=config, flags=flags),
        holders=HolderChecker(config, transport=rpc_transport(balance=balance)),
        flags=flags,
    )
    return builder


def run(builder, lines, **kwargs):
    return asyncio.run(builder.create_session(CheckoutRequest(lines=lines, **kwargs)))


def test_plain_cart_bills_base_prices_and_allows_promotion_codes():
    builder = make_builder()
    result = run(builder, [PlainLine("logo-sticker", 2), PlainLine("birb-euro-sticker", 3)])

    params = result.params
    assert params["line_items"] == [
        {"price": "price_logo_sticker", "quantity": 2},
        {"price": "price_birb_euro_sticker", "quantity": 3},
    ]
    assert params["mode"] == "payment"
    assert params["success_url"] == "http://localhost:3000/success?session_id={CHECKOUT_SESSION_ID}"
    assert params["cancel_url"] == "http://localhost:3000/shop"
    assert params["allow_promotion_codes"] is True
    assert "discounts" not in params
    assert params["metadata"] == {"itemCount": "5", "giftIntent": "false"}
    assert params["shipping_address_collection"] == {"allowed_countries": ["US"]}
    assert result.url == f"https://checkout.test/{result.session_id}"
    assert metrics_collector.checkout_counters["sessions_created"] == 1


def test_tier_price_reference_used_when_tier_differs_from_base():
    result = run(make_builder(), [PlainLine("birb-sticker", 6)])
    assert result.params["line_items"] == [{"price": "price_birb_sticker_t6", "quantity": 6}]


def test_variant_lines_are_billed_inline_and_customizations_stored():
    builder = make_builder()
    result = run(
        builder,
        [
            CustomVariantLine("my-other-birb", 3, "7", "pixel"),
            CustomLine("square-moonbird", 2, "8"),
        ],
        origin="https://preview.test",
    )
    inline = result.params["line_items"][0]
    assert inline == {
        "price_data": {
            "currency": "usd",
            "unit_amount": 150,
            "product_data": {
                "name": "Custom 'My Other Birb...' Sticker (pixel)",
                "metadata": {"product_ref": "my-other-birb"},
            },
        },
        "quantity": 3,
    }
    assert result.params["line_items"][1] == {"price": "price_square_moonbird", "quantity": 2}
    assert result.params["cancel_url"] == "https://preview.test/shop"

    metadata = result.params["metadata"]
    assert metadata["customRef"] == result.custom_ref
    assert metadata["customCount"] == "2"
    stored = asyncio.run(builder.store.get_json(customization_key(result.custom_ref)))
    assert [c["tokenId"] for c in stored["customizations"]] == ["7", "8"]


def test_plain_variant_lines_bill_one_inline_item_per_variant():
    holo = Product(
        id="holo-birb", name="Holo Birb Sticker", unit_price=Decimal("2.00"),
        price_ref="price_holo_birb", supports_variants=True,
    )
    builder = make_builder(catalog=ProductCatalog([holo]))
    result = run(builder, [PlainLine("holo-birb", 3, "x"), PlainLine("holo-birb", 1, "y")])

    items = result.params["line_items"]
    assert [item["quantity"] for item in items] == [3, 1]
    assert [item["price_data"]["product_data"]["name"] for item in items] == [
        "Holo Birb Sticker (x)",
        "Holo Birb Sticker (y)",
    ]
    assert all(item["price_data"]["unit_amount"] == 200 for item in items)
    assert "customRef" not in result.params["metadata"]


def test_custom_minimum_blocks_checkout():
    with pytest.raises(BusinessRuleError) as exc:
        run(make_builder(), [CustomLine("my-other-birb", 4, "1")])
    assert exc.value.context["deficit"] == 1


def test_shipping_rate_follows_region_and_size():
    builder = make_builder(config=ShopSettings(shipping_rates=RATES))
    assert builder.shipping_rate(10, "domestic", False) == "shr_small_us"
    assert builder.shipping_rate(11, "domestic", False) == "shr_large_us"
    assert builder.shipping_rate(11, "international", False) == "shr_large_intl"

    legacy_only = make_builder(config=ShopSettings(shipping_rates=ShippingRates(legacy="shr_legacy")))
    assert legacy_only.shipping_rate(3, "international", False) == "shr_legacy"

    mapped = make_builder(
        config=ShopSettings(shipping_rates=RATES, test_shipping_rate_map={"shr_small_us": "shr_test"})
    )
    assert mapped.shipping_rate(1, "domestic", True) == "shr_test"


def test_international_region_sets_countries_and_shipping_option():
    builder = make_builder(config=ShopSettings(shipping_rates=RATES))
    result = run(builder, [PlainLine("logo-sticker", 1)], shipping_region="International")
    assert result.params["shipping_options"] == [{"shipping_rate": "shr_small_intl"}]
    assert "US" not in result.params["shipping_address_collection"]["allowed_countries"]


def test_test_mode_refuses_live_origin():
    builder = make_builder(test_mode=True)
    with pytest.raises(SecurityGuardError) as exc:
        run(builder, [PlainLine("logo-sticker", 1)], origin="https://genmerch.xyz")
    assert exc.value.code == "TEST_MODE_ON_LIVE_ORIGIN"


def test_test_mode_maps_prices_and_rejects_unknown_ones():
    config = ShopSettings(test_price_map={"price_logo_sticker": "price_test_logo"})
    builder = make_builder(config=config, test_mode=True)
    result = run(builder, [PlainLine("logo-sticker", 1)], origin="http://localhost:3000")
    assert result.params["line_items"] == [{"price": "price_test_logo", "quantity": 1}]

    with pytest.raises(SecurityGuardError) as exc:
        run(builder, [PlainLine("bogus-ref", 1)], origin="http://localhost:3000")
    assert exc.value.code == "INVALID_TEST_PRICE"


def test_eligible_holder_gets_gift_line_and_coupon():
    builder = make_builder()
    result = run(
        builder,
        [PlainLine("logo-sticker", 2), PlainLine("birb-euro-sticker", 3)],
        wallet=WALLET,
        gift_requested=True,
    )
    params = result.params
    assert result.gift_granted
    assert params["line_items"][-1] == {"price": "price_gift", "quantity": 1}
    assert params["discounts"] == [{"coupon": "coupon_gift"}]
    assert "allow_promotion_codes" not in params
    assert params["metadata"]["giftIntent"] == "true"
    assert params["metadata"]["walletAddress"] == WALLET.lower()
    assert builder.gifts.store.counters == {}


def test_non_holder_and_small_orders_fall_back_to_promotion_codes():
    not_holder = run(
        make_builder(balance=0), [PlainLine("birb-euro-sticker", 3)], wallet=WALLET, gift_requested=True
    )
    assert not not_holder.gift_granted
    assert not_holder.params["metadata"]["giftIntent"] == "false"

    too_small = run(make_builder(), [PlainLine("logo-sticker", 1)], wallet=WALLET, gift_requested=True)
    assert not too_small.gift_granted
    assert too_small.params["allow_promotion_codes"] is True


def test_disabled_checkout_is_refused():
    builder = make_builder()
    asyncio.run(builder.flags.set_flag("checkout.enabled", False))
    with pytest.raises(CheckoutDisabledError):
        run(builder, [PlainLine("logo-sticker", 1)])
    assert metrics_collector.checkout_counters["rejected"] == 1


def test_all_zero_cart_is_empty():
    with pytest.raises(ValidationError) as exc:
        run(make_builder(), [PlainLine("logo-sticker", 0)])
    assert exc.value.code == "EMPTY_CART"


def test_processor_failure_surfaces_as_upstream_error():
    builder = make_builder()
    builder.gateway.configure(should_succeed=False)
    with pytest.raises(UpstreamError) as exc:
        run(builder, [PlainLine("logo-sticker", 1)])
    assert exc.value.to_payload()["error"] == "Unexpected error creating checkout session"
