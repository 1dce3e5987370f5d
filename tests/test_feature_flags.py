import asyncio

from fakes import InMemoryKeyValueStore
from services.feature_flags import FLAGS_KEY, FeatureFlagsManager


def test_defaults_enable_checkout_and_gifts():
    flags = FeatureFlagsManager(store=InMemoryKeyValueStore())
    assert flags.checkout_enabled()
    assert flags.gifts_enabled()
    assert "inventory.bundle_decomposition" not in flags.get_all_flags()


def test_maintenance_mode_disables_checkout():
    flags = FeatureFlagsManager(store=InMemoryKeyValueStore())
    asyncio.run(flags.set_flag("maintenance.mode", True))
    assert not flags.checkout_enabled()
    assert flags.get_flag_diagnostics()["system_status"] == "maintenance"


def test_kill_switch_overrides_flag():
    flags = FeatureFlagsManager(store=InMemoryKeyValueStore())
    asyncio.run(flags.activate_kill_switch("emergency.disable_gifts", "ops"))
    assert not flags.gifts_enabled()
    assert flags.get_all_flags()["gifts.enabled"] is False
    asyncio.run(flags.deactivate_kill_switch("emergency.disable_gifts", "ops"))
    assert flags.gifts_enabled()


def test_unknown_keys_are_rejected():
    flags = FeatureFlagsManager(store=InMemoryKeyValueStore())
    assert asyncio.run(flags.set_flag("nope", True)) is False
    assert asyncio.run(flags.activate_kill_switch("emergency.nope")) is False


def test_overrides_survive_reload():
    store = InMemoryKeyValueStore()
    asyncio.run(FeatureFlagsManager(store=store).set_flag("checkout.enabled", False))
    assert FLAGS_KEY in store.entries

    reloaded = FeatureFlagsManager(store=store)
    asyncio.run(reloaded.initialize_flags())
    assert not reloaded.checkout_enabled()


def test_store_outage_keeps_defaults():
    store = InMemoryKeyValueStore()
    store.fail = True
    flags = FeatureFlagsManager(store=store)
    asyncio.run(flags.initialize_flags())
    assert flags.checkout_enabled()


def test_stale_override_for_removed_flag_is_ignored():
    store = InMemoryKeyValueStore()
    asyncio.run(store.set_json(FLAGS_KEY, {"flags": {"inventory.bundle_decomposition": False}}))
    flags = FeatureFlagsManager(store=store)
    asyncio.run(flags.initialize_flags())
    assert "inventory.bundle_decomposition" not in flags.get_all_flags()
    assert asyncio.run(flags.set_flag("inventory.bundle_decomposition", False)) is False
