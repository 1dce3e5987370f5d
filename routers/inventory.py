"""
Inventory endpoint
Stock per product; a bundle reports the stock of its scarcest component.
"""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Dict

from fastapi import APIRouter, Depends

from services.catalog import ProductCatalog, default_catalog
from services.errors import UpstreamError
from services.storage import InventoryStore, inventory_store, inventory_view

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Inventory"])


def get_inventory_store() -> InventoryStore:
    return inventory_store


@lru_cache(maxsize=1)
def get_catalog() -> ProductCatalog:
    return default_catalog()


@router.get("/inventory")
async def get_inventory(
    store: InventoryStore = Depends(get_inventory_store),
    catalog: ProductCatalog = Depends(get_catalog),
) -> Dict[str, Any]:
    try:
        items = await inventory_view(store, catalog)
    except Exception as exc:
        logger.exception("Inventory lookup failed")
        raise UpstreamError(
            f"Inventory lookup failed: {exc}", public_message="Failed to load inventory"
        ) from exc
    return {"items": items}
