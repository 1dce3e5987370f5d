"""
Storage Service Layer
Product and inventory rows in the relational store.
"""
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy import select, update, func
from typing import List, Optional, Dict, Any, Iterable
import logging

from database import AsyncSessionLocal, Product, InventoryRecord
from services.catalog import ProductCatalog, Product as CatalogProduct

logger = logging.getLogger(__name__)


class InventoryStore:
    """Inventory reads and the per-product decrement used by fulfillment"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory or AsyncSessionLocal

    def get_session(self) -> AsyncSession:
        """Get database session context manager"""
        return self._session_factory()

    async def decrement(self, product_id: str, quantity: int) -> bool:
        """Subtract ``quantity`` from one product's stock in its own transaction.

        Returns False when the product has no inventory row. Stock is allowed
        to go negative so an oversell shows up during reconciliation.
        """
        async with self.get_session() as session:
            async with session.begin():
                result = await session.execute(
                    update(InventoryRecord)
                    .where(InventoryRecord.product_id == product_id)
                    .values(quantity=InventoryRecord.quantity - quantity, updated_at=func.now())
                )
                updated = result.rowcount == 1
        if updated:
            logger.info("Decremented inventory | product=%s qty=%s", product_id, quantity)
        else:
            logger.warning("No inventory row to decrement | product=%s qty=%s", product_id, quantity)
        return updated

    async def get_quantity(self, product_id: str) -> Optional[int]:
        async with self.get_session() as session:
            record = await session.get(InventoryRecord, product_id)
            return record.quantity if record else None

    async def list_inventory(self) -> List[Dict[str, Any]]:
        """Products joined with their stock, in slug order."""
        async with self.get_session() as session:
            result = await session.execute(
                select(Product, InventoryRecord.quantity)
                .outerjoin(InventoryRecord, InventoryRecord.product_id == Product.id)
                .order_by(Product.slug)
            )
            return [
                {
                    "productId": product.id,
                    "slug": product.slug,
                    "name": product.name,
                    "priceRef": product.price_ref,
                    "quantity": quantity,
                    "isBundle": product.is_bundle,
                }
                for product, quantity in result.all()
            ]

    async def seed(
        self,
        products: Iterable[CatalogProduct],
        quantities: Optional[Dict[str, int]] = None,
        default_quantity: int = 0,
        overwrite: bool = False,
    ) -> int:
        """Create product rows and stock for catalog products.

        Bundles get a product row but never an inventory row; their stock is
        derived from their components. Existing stock is left alone unless
        ``overwrite`` is set.
        """
        quantities = quantities or {}
        seeded = 0
        async with self.get_session() as session:
            async with session.begin():
                for item in products:
                    row = await session.get(Product, item.id)
                    if row is None:
                        row = Product(id=item.id, slug=item.id)
                        session.add(row)
                    row.name = item.name
                    row.price_ref = item.price_ref
                    row.unit_price = item.unit_price
                    row.is_bundle = item.is_bundle
                    if item.is_bundle:
                        continue

                    await session.flush()
                    stock = await session.get(InventoryRecord, item.id)
                    qty = quantities.get(item.id, default_quantity)
                    if stock is None:
                        session.add(InventoryRecord(product_id=item.id, quantity=qty))
                        seeded += 1
                    elif overwrite:
                        stock.quantity = qty
                        seeded += 1
        logger.info("Seeded inventory rows: %s", seeded)
        return seeded


async def inventory_view(store: InventoryStore, catalog: ProductCatalog) -> List[Dict[str, Any]]:
    """Inventory listing where a bundle's quantity is the minimum of its components."""
    rows = await store.list_inventory()
    by_id = {row["productId"]: row for row in rows}
    for row in rows:
        product = catalog.get(row["productId"])
        if product is None or not product.is_bundle:
            continue
        component_qtys = [
            by_id[c]["quantity"] for c in product.components
            if c in by_id and by_id[c]["quantity"] is not None
        ]
        row["quantity"] = min(component_qtys) if len(component_qtys) == len(product.components) else 0
    for row in rows:
        row.pop("isBundle", None)
        if row["quantity"] is None:
            row["quantity"] = 0
    return rows


inventory_store = InventoryStore()
