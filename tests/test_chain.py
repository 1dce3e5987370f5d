import asyncio

import httpx
import pytest

from fakes import rpc_transport
from services.chain import HolderChecker, balance_of_calldata, is_valid_address
from settings import ShopSettings


ADDRESS = "0x" + "Ab" * 20
RPC = ShopSettings(eth_rpc_url="https://rpc.test")


def test_address_validation():
    assert is_valid_address(ADDRESS)
    assert not is_valid_address("0x123")
    assert not is_valid_address(None)


def test_calldata_pads_lowercased_address():
    data = balance_of_calldata(ADDRESS)
    assert data.startswith("0x70a08231")
    assert data.endswith("ab" * 20)
    assert len(data) == 10 + 64


def test_holder_with_balance():
    seen = []
    checker = HolderChecker(RPC, transport=rpc_transport(balance=3, seen=seen))
    status = asyncio.run(checker.check(ADDRESS))
    assert status.is_holder
    assert status.reason == "owns_token"
    assert seen[0]["method"] == "eth_call"
    assert seen[0]["params"][0]["to"] == RPC.holder_contract


def test_zero_balance_is_not_holder():
    checker = HolderChecker(RPC, transport=rpc_transport(balance=0))
    status = asyncio.run(checker.check(ADDRESS))
    assert not status.is_holder
    assert status.reason == "zero_balance"


def test_rpc_failure_fails_closed():
    checker = HolderChecker(RPC, transport=rpc_transport(status_code=502))
    assert asyncio.run(checker.check(ADDRESS)).reason == "rpc_error"


@pytest.mark.parametrize("body", [[], ["0x1"], "0x1", 7, None, {"result": 5}])
def test_non_object_rpc_body_fails_closed(body):
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=body))
    status = asyncio.run(HolderChecker(RPC, transport=transport).check(ADDRESS))
    assert not status.is_holder
    assert status.reason == "rpc_error"


def test_missing_config_and_bad_address():
    assert asyncio.run(HolderChecker(ShopSettings()).check(ADDRESS)).reason == "no_rpc_env"
    assert asyncio.run(HolderChecker(RPC).check("nope")).reason == "bad_address"


def test_force_holder_short_circuits():
    checker = HolderChecker(ShopSettings(force_holder=True))
    status = asyncio.run(checker.check("anything"))
    assert status.is_holder
    assert status.reason == "forced"
