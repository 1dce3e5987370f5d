import asyncio

from fakes import fresh_session_factory
from services.catalog import default_catalog
from services.storage import InventoryStore, inventory_view


CATALOG = default_catalog()


def test_seed_skips_bundle_stock_and_keeps_existing_levels():
    async def scenario():
        store = InventoryStore(await fresh_session_factory())
        first = await store.seed(CATALOG, default_quantity=10)
        again = await store.seed(CATALOG, default_quantity=99)
        return (
            first,
            again,
            await store.get_quantity("logo-sticker"),
            await store.get_quantity("gm-stickerpack"),
        )

    seeded, again, logo, bundle = asyncio.run(scenario())
    assert seeded == len(CATALOG) - len(CATALOG.bundles())
    assert again == 0
    assert logo == 10
    assert bundle is None


def test_decrement_may_go_negative_and_reports_missing_rows():
    async def scenario():
        store = InventoryStore(await fresh_session_factory())
        await store.seed(CATALOG, quantities={"birb-sticker": 1})
        ok = await store.decrement("birb-sticker", 3)
        missing = await store.decrement("no-such-product", 1)
        return ok, missing, await store.get_quantity("birb-sticker")

    assert asyncio.run(scenario()) == (True, False, -2)


def test_inventory_view_reports_bundle_as_scarcest_component():
    async def scenario():
        store = InventoryStore(await fresh_session_factory())
        await store.seed(
            CATALOG,
            quantities={"logo-sticker": 4, "toobins-sticker": 2},
            default_quantity=10,
        )
        return await inventory_view(store, CATALOG)

    rows = {row["productId"]: row for row in asyncio.run(scenario())}
    assert rows["gm-stickerpack"]["quantity"] == 2
    assert rows["logo-sticker"]["quantity"] == 4
    assert "isBundle" not in rows["logo-sticker"]
    assert set(rows["logo-sticker"]) == {"productId", "slug", "name", "priceRef", "quantity"}
