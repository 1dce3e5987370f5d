"""
Product Catalog
Static product definitions: base prices, price tiers, custom-pool and bundle flags.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceTier:
    """Quantity range (inclusive on both ends) mapped to a unit price."""
    min_qty: int
    unit_price: Decimal
    price_ref: str
    max_qty: Optional[int] = None

    def contains(self, qty: int) -> bool:
        return self.min_qty <= qty and (self.max_qty is None or qty <= self.max_qty)


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    unit_price: Decimal
    price_ref: str
    tiers: Tuple[PriceTier, ...] = ()
    is_custom_pool: bool = False
    is_bundle: bool = False
    components: Tuple[str, ...] = ()
    supports_variants: bool = False
    collection: Optional[str] = None
    gift_only: bool = False

    def __post_init__(self):
        # Tiers are always kept sorted ascending by min_qty
        ordered = tuple(sorted(self.tiers, key=lambda t: t.min_qty))
        object.__setattr__(self, "tiers", ordered)
        if self.is_bundle and not self.components:
            raise ValueError(f"Bundle product {self.id} has no components")

    @property
    def requires_token(self) -> bool:
        return self.is_custom_pool

    @property
    def price_refs(self) -> Tuple[str, ...]:
        refs = [self.price_ref]
        refs.extend(t.price_ref for t in self.tiers if t.price_ref not in refs)
        return tuple(refs)


def _tier_from_dict(raw: Mapping[str, Any]) -> PriceTier:
    return PriceTier(
        min_qty=int(raw["min_qty"]),
        max_qty=int(raw["max_qty"]) if raw.get("max_qty") is not None else None,
        unit_price=Decimal(str(raw["unit_price"])),
        price_ref=str(raw["price_ref"]),
    )


def product_from_dict(raw: Mapping[str, Any]) -> Product:
    return Product(
        id=str(raw["id"]),
        name=str(raw["name"]),
        unit_price=Decimal(str(raw["unit_price"])),
        price_ref=str(raw["price_ref"]),
        tiers=tuple(_tier_from_dict(t) for t in raw.get("tiers") or ()),
        is_custom_pool=bool(raw.get("is_custom_pool", False)),
        is_bundle=bool(raw.get("is_bundle", False)),
        components=tuple(raw.get("components") or ()),
        supports_variants=bool(raw.get("supports_variants", False)),
        collection=raw.get("collection"),
        gift_only=bool(raw.get("gift_only", False)),
    )


class ProductCatalog:
    """Read-only lookup over product definitions.

    Products are addressable by id, by base price reference and by any tier
    price reference, since carts and processor line items refer to products
    by whichever price they were billed at.
    """

    def __init__(self, products: Iterable[Product]):
        self._by_id: Dict[str, Product] = {}
        self._by_price_ref: Dict[str, Product] = {}
        for product in products:
            if product.id in self._by_id:
                raise ValueError(f"Duplicate product id: {product.id}")
            self._by_id[product.id] = product
            for ref in product.price_refs:
                existing = self._by_price_ref.get(ref)
                if existing is not None and existing.id != product.id:
                    logger.warning(
                        "Price ref %s shared by %s and %s; keeping %s",
                        ref, existing.id, product.id, existing.id,
                    )
                    continue
                self._by_price_ref[ref] = product

        for product in self._by_id.values():
            missing = [c for c in product.components if c not in self._by_id]
            if missing:
                raise ValueError(f"Bundle {product.id} references unknown components: {missing}")

    @classmethod
    def from_dicts(cls, rows: Iterable[Mapping[str, Any]]) -> "ProductCatalog":
        return cls(product_from_dict(row) for row in rows)

    def __iter__(self):
        return iter(self._by_id.values())

    def __len__(self) -> int:
        return len(self._by_id)

    def get(self, product_id: str) -> Optional[Product]:
        return self._by_id.get(product_id)

    def by_price_ref(self, price_ref: str) -> Optional[Product]:
        return self._by_price_ref.get(price_ref)

    def lookup(self, ref: Optional[str]) -> Optional[Product]:
        """Resolve a client or processor reference (product id or any price ref)."""
        if not ref:
            return None
        return self._by_id.get(ref) or self._by_price_ref.get(ref)

    def custom_pool(self) -> List[Product]:
        return [p for p in self._by_id.values() if p.is_custom_pool]

    def bundles(self) -> List[Product]:
        return [p for p in self._by_id.values() if p.is_bundle]

    def expand(self, product: Product, quantity: int) -> List[Tuple[Product, int]]:
        """Decompose a product into the (product, quantity) pairs that hold stock.

        Each bundle component loses the full bundle quantity.
        """
        if not product.is_bundle:
            return [(product, quantity)]
        return [(self._by_id[component], quantity) for component in product.components]


_STANDARD_TIERS = (
    {"min_qty": 1, "max_qty": 5, "unit_price": "3.50"},
    {"min_qty": 6, "unit_price": "3.00"},
)

_CUSTOM_TIERS = (
    {"min_qty": 1, "max_qty": 9, "unit_price": "1.50"},
    {"min_qty": 10, "max_qty": 19, "unit_price": "1.25"},
    {"min_qty": 20, "unit_price": "1.00"},
)


def _tiers(product_id: str, template) -> List[Dict[str, Any]]:
    return [
        {**tier, "price_ref": f"price_{product_id.replace('-', '_')}_t{tier['min_qty']}"}
        for tier in template
    ]


DEFAULT_PRODUCTS: List[Dict[str, Any]] = [
    {"id": "logo-sticker", "name": "birb Logo Sticker", "unit_price": "3.50",
     "price_ref": "price_logo_sticker", "tiers": _tiers("logo-sticker", _STANDARD_TIERS)},
    {"id": "birb-sticker", "name": "birb. Sticker", "unit_price": "3.50",
     "price_ref": "price_birb_sticker", "tiers": _tiers("birb-sticker", _STANDARD_TIERS)},
    {"id": "head-birb-sticker-mustard", "name": "Head birb Sticker - Mustard", "unit_price": "3.50",
     "price_ref": "price_head_birb_mustard",
     "tiers": _tiers("head-birb-sticker-mustard", _STANDARD_TIERS)},
    {"id": "i-love-mb-sticker", "name": "I Love MB Sticker", "unit_price": "3.50",
     "price_ref": "price_i_love_mb_sticker"},
    {"id": "toobins-sticker", "name": "Toobins Sticker", "unit_price": "3.50",
     "price_ref": "price_toobins_sticker", "tiers": _tiers("toobins-sticker", _STANDARD_TIERS)},
    {"id": "droobins-sticker", "name": "Droobins Sticker", "unit_price": "3.50",
     "price_ref": "price_droobins_sticker"},
    {"id": "gm-stickerpack", "name": "birb Sticker Pack 1", "unit_price": "15.00",
     "price_ref": "price_gm_stickerpack", "is_bundle": True,
     "components": [
         "logo-sticker", "birb-sticker", "head-birb-sticker-mustard",
         "i-love-mb-sticker", "toobins-sticker",
     ]},
    {"id": "birb-euro-sticker", "name": "birb. Euro Sticker", "unit_price": "5.00",
     "price_ref": "price_birb_euro_sticker"},
    {"id": "birb-sticker-holo", "name": "Holographic birb Logo Sticker", "unit_price": "5.00",
     "price_ref": "price_birb_sticker_holo", "gift_only": True},
    {"id": "birblogodecal", "name": "birb Logo Transfer Sticker", "unit_price": "6.50",
     "price_ref": "price_birblogodecal"},
    {"id": "my-other-birb", "name": "Custom 'My Other Birb...' Sticker", "unit_price": "1.50",
     "price_ref": "price_my_other_birb", "is_custom_pool": True, "supports_variants": True,
     "collection": "moonbirds", "tiers": _tiers("my-other-birb", _CUSTOM_TIERS)},
    {"id": "square-moonbird", "name": "Custom Moonbird Square Sticker", "unit_price": "1.50",
     "price_ref": "price_square_moonbird", "is_custom_pool": True, "supports_variants": True,
     "collection": "moonbirds", "tiers": _tiers("square-moonbird", _CUSTOM_TIERS)},
]


def default_catalog() -> ProductCatalog:
    return ProductCatalog.from_dicts(DEFAULT_PRODUCTS)
