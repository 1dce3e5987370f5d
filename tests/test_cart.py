from decimal import Decimal

import pytest

from services.cart import (
    CustomLine,
    CustomVariantLine,
    PlainLine,
    aggregate_cart,
    parse_cart_line,
)
from services.catalog import Product, ProductCatalog, default_catalog
from services.errors import BusinessRuleError, ValidationError


CATALOG = default_catalog()


def test_parse_cart_line_tags_by_token_and_variant():
    assert parse_cart_line({"productRef": "logo-sticker", "quantity": 2}) == PlainLine("logo-sticker", 2)
    assert parse_cart_line({"priceId": "price_logo_sticker", "quantity": 1}) == PlainLine("price_logo_sticker", 1)
    assert parse_cart_line(
        {"productRef": "my-other-birb", "quantity": 3, "tokenId": 42}
    ) == CustomLine("my-other-birb", 3, "42")
    assert parse_cart_line(
        {"productRef": "my-other-birb", "quantity": 3, "tokenId": "42", "variant": "pixel"}
    ) == CustomVariantLine("my-other-birb", 3, "42", "pixel")


def test_variant_without_token_is_plain():
    line = parse_cart_line({"productRef": "logo-sticker", "quantity": 1, "variant": "pixel"})
    assert line == PlainLine("logo-sticker", 1, "pixel")
    assert line.token_id is None


def test_plain_variants_split_only_for_variant_products():
    holo = Product(
        id="holo-birb", name="Holo Birb Sticker", unit_price=Decimal("2.00"),
        price_ref="price_holo_birb", supports_variants=True,
    )
    catalog = ProductCatalog([holo, CATALOG.get("logo-sticker")])
    lines = [
        PlainLine("holo-birb", 3, "x"),
        PlainLine("holo-birb", 1, "y"),
        PlainLine("logo-sticker", 1, "x"),
        PlainLine("logo-sticker", 2, "y"),
    ]
    aggregate = aggregate_cart(lines, catalog)

    by_key = {g.key: g.quantity for g in aggregate.groups}
    assert by_key == {("holo-birb", "x"): 3, ("holo-birb", "y"): 1, ("logo-sticker", None): 3}
    assert aggregate.customizations == []


@pytest.mark.parametrize("quantity", [None, "2", 1.5, True, -1])
def test_parse_cart_line_rejects_bad_quantity(quantity):
    with pytest.raises(ValidationError) as exc:
        parse_cart_line({"productRef": "logo-sticker", "quantity": quantity})
    assert exc.value.code == "INVALID_QUANTITY"


def test_parse_cart_line_requires_product_ref():
    with pytest.raises(ValidationError) as exc:
        parse_cart_line({"quantity": 1})
    assert exc.value.code == "MISSING_PRODUCT_REF"


def test_aggregate_groups_same_product_across_refs():
    lines = [
        PlainLine("logo-sticker", 2),
        PlainLine("price_logo_sticker", 3),
    ]
    aggregate = aggregate_cart(lines, CATALOG)
    assert len(aggregate.groups) == 1
    assert aggregate.groups[0].product_ref == "logo-sticker"
    assert aggregate.groups[0].quantity == 5


def test_aggregate_splits_variants_and_records_customizations():
    lines = [
        CustomVariantLine("my-other-birb", 2, "1", "pixel"),
        CustomVariantLine("my-other-birb", 3, "2", "pixel"),
        CustomLine("my-other-birb", 1, "3"),
    ]
    aggregate = aggregate_cart(lines, CATALOG)

    by_key = {g.key: g.quantity for g in aggregate.groups}
    assert by_key == {("my-other-birb", "pixel"): 5, ("my-other-birb", None): 1}
    assert aggregate.custom_pool_quantity == 6
    assert [c.token_id for c in aggregate.customizations] == ["1", "2", "3"]
    assert aggregate.customizations[2].variant == "illustrated"
    assert aggregate.customizations[0].collection == "moonbirds"


def test_zero_quantity_lines_are_dropped():
    aggregate = aggregate_cart([PlainLine("logo-sticker", 0)], CATALOG)
    assert aggregate.groups == []
    assert aggregate.total_quantity == 0


def test_custom_product_without_token_is_rejected():
    with pytest.raises(BusinessRuleError) as exc:
        aggregate_cart([PlainLine("square-moonbird", 5)], CATALOG)
    assert exc.value.code == "CUSTOM_TOKEN_REQUIRED"


def test_unknown_product_keeps_its_reference():
    aggregate = aggregate_cart([PlainLine("price_mystery", 2)], CATALOG)
    assert aggregate.groups[0].product is None
    assert aggregate.groups[0].product_ref == "price_mystery"
