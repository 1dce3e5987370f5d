import asyncio
from decimal import Decimal

from fakes import InMemoryKeyValueStore, fresh_session_factory
from services.feature_flags import FeatureFlagsManager
from services.gift import GIFT_COUNT_KEY, GiftEligibilityService, claim_key
from services.kv_store import KeyValueStore
from settings import ShopSettings


WALLET = "0x" + "ab" * 20
CONFIG = ShopSettings(gift_price_id="price_gift", gift_coupon_id="coupon_gift", gift_cap=2)


def _service(store=None, config=CONFIG):
    store = store or InMemoryKeyValueStore()
    return GiftEligibilityService(store=store, config=config, flags=FeatureFlagsManager(store=store))


def test_eligible_holder_above_threshold():
    decision = asyncio.run(_service().evaluate(WALLET, Decimal("10.00"), True))
    assert decision.eligible
    assert decision.reason == "eligible"


def test_denials_in_order():
    service = _service()
    assert asyncio.run(service.evaluate(None, Decimal("50"), True)).reason == "no_wallet"
    assert asyncio.run(service.evaluate(WALLET, Decimal("50"), False)).reason == "not_holder"
    assert asyncio.run(service.evaluate(WALLET, Decimal("9.99"), True)).reason == "below_threshold"

    unconfigured = _service(config=ShopSettings())
    assert asyncio.run(unconfigured.evaluate(WALLET, Decimal("50"), True)).reason == "not_configured"


def test_existing_claim_and_cap_block_gift():
    store = InMemoryKeyValueStore()
    service = _service(store)
    store.entries[claim_key(WALLET)] = "cs_old"
    assert asyncio.run(service.evaluate(WALLET, Decimal("50"), True)).reason == "already_claimed"

    other = "0x" + "cd" * 20
    store.counters[GIFT_COUNT_KEY] = 2
    assert asyncio.run(service.evaluate(other, Decimal("50"), True)).reason == "cap_reached"


def test_store_failure_denies_gift():
    store = InMemoryKeyValueStore()
    service = _service(store)
    store.fail = True
    assert asyncio.run(service.evaluate(WALLET, Decimal("50"), True)).reason == "lookup_failed"

    status = asyncio.run(service.status(WALLET))
    assert status.remaining == 0
    assert not status.available


def test_gift_kill_switch_denies_gift():
    store = InMemoryKeyValueStore()
    service = _service(store)
    asyncio.run(service.flags.activate_kill_switch("emergency.disable_gifts"))
    assert asyncio.run(service.evaluate(WALLET, Decimal("50"), True)).reason == "gifts_disabled"


def test_finalize_claim_is_idempotent_per_wallet():
    async def scenario():
        store = KeyValueStore(await fresh_session_factory())
        service = _service(store)
        first = await service.finalize_claim(WALLET, "cs_1")
        second = await service.finalize_claim(WALLET.upper().replace("0X", "0x"), "cs_2")
        status = await service.status(WALLET)
        return first, second, status

    first, second, status = asyncio.run(scenario())
    assert first is True
    assert second is False
    assert status.has_claimed
    assert status.claimed_count == 1
    assert status.remaining == 1
