import asyncio

import pytest

from services.errors import UpstreamError
from services.payments import (
    FakeGateway,
    _line_item_from_stripe,
    get_gateway,
    reset_gateway,
    set_gateway,
)


def test_line_item_reads_inline_product_ref():
    item = {
        "quantity": 3,
        "description": "Custom sticker (pixel)",
        "amount_total": 450,
        "price": {"id": "price_inline", "product": {"metadata": {"product_ref": "my-other-birb"}}},
    }
    line = _line_item_from_stripe(item)
    assert line.price_ref == "price_inline"
    assert line.product_ref == "my-other-birb"
    assert line.quantity == 3


def test_line_item_with_unexpanded_product():
    line = _line_item_from_stripe({"quantity": 1, "price": {"id": "price_logo_sticker", "product": "prod_1"}})
    assert line.price_ref == "price_logo_sticker"
    assert line.product_ref is None


def test_fake_gateway_records_calls_and_fails_on_demand():
    gateway = FakeGateway()
    created = asyncio.run(gateway.create_checkout_session({"metadata": {"giftIntent": "false"}}))
    summary = asyncio.run(gateway.retrieve_session(created.id))
    assert summary.metadata == {"giftIntent": "false"}
    assert summary.payment_status == "unpaid"
    assert [c["method"] for c in gateway.calls] == ["create_checkout_session", "retrieve_session"]

    gateway.configure(should_succeed=False)
    with pytest.raises(UpstreamError):
        asyncio.run(gateway.list_line_items(created.id))


def test_gateway_registry_swaps_implementation():
    fake = FakeGateway()
    set_gateway(fake)
    try:
        assert get_gateway() is fake
    finally:
        reset_gateway()
