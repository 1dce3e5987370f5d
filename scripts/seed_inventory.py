#!/usr/bin/env python3
"""
Seed the products and inventory tables from the built-in catalog.

Usage:
  python scripts/seed_inventory.py
  python scripts/seed_inventory.py --quantity 50
  python scripts/seed_inventory.py --quantity 50 --overwrite
  python scripts/seed_inventory.py --dry-run
"""

import argparse
import asyncio
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Load .env file if it exists
from dotenv import load_dotenv
load_dotenv()

from database import init_db
from services.catalog import default_catalog
from services.storage import InventoryStore, inventory_view


async def seed(quantity: int, overwrite: bool, dry_run: bool):
    catalog = default_catalog()
    stocked = [p for p in catalog if not p.is_bundle]

    print(f"\n📦 Catalog: {len(catalog)} products ({len(catalog.bundles())} bundles)")
    if dry_run:
        for product in stocked:
            print(f"   - {product.id}: {quantity}")
        print(f"\n🔸 DRY RUN - No changes made")
        return

    await init_db()
    store = InventoryStore()
    seeded = await store.seed(catalog, default_quantity=quantity, overwrite=overwrite)
    print(f"   ✓ Seeded {seeded} inventory rows")

    for row in await inventory_view(store, catalog):
        print(f"   - {row['productId']}: {row['quantity']}")
    print(f"\n✅ Inventory ready.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed storefront inventory")
    parser.add_argument("--quantity", type=int, default=0, help="stock level for new rows")
    parser.add_argument("--overwrite", action="store_true", help="reset existing stock levels")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    asyncio.run(seed(args.quantity, args.overwrite, args.dry_run))
