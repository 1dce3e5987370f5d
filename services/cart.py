"""
Cart aggregation.

Raw cart lines are parsed once at the request boundary into a tagged line
type, then grouped into pricing groups keyed by (product, variant).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from services.catalog import Product, ProductCatalog
from services.errors import BusinessRuleError, ValidationError


@dataclass(frozen=True)
class PlainLine:
    """Line without a token. ``variant`` only matters for products that display variants."""
    product_ref: str
    quantity: int
    variant: Optional[str] = None

    @property
    def token_id(self) -> Optional[str]:
        return None

    @property
    def key(self) -> Tuple[str, ...]:
        return ("plain", self.product_ref, self.variant or "")


@dataclass(frozen=True)
class CustomLine:
    """Customized line without a display variant."""
    product_ref: str
    quantity: int
    token_id: str

    @property
    def variant(self) -> Optional[str]:
        return None

    @property
    def key(self) -> Tuple[str, ...]:
        return ("custom", self.product_ref, self.token_id)


@dataclass(frozen=True)
class CustomVariantLine:
    product_ref: str
    quantity: int
    token_id: str
    variant: str

    @property
    def key(self) -> Tuple[str, ...]:
        return ("custom_variant", self.product_ref, self.token_id, self.variant)


CartLine = Union[PlainLine, CustomLine, CustomVariantLine]


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_cart_line(item: Mapping[str, Any]) -> CartLine:
    """Turn one client-supplied cart item into a tagged cart line.

    Accepts ``productRef`` (or the legacy ``priceId``), ``quantity``,
    optional ``tokenId`` and ``variant``.
    """
    product_ref = _clean(item.get("productRef")) or _clean(item.get("priceId"))
    if not product_ref:
        raise ValidationError("Cart item is missing productRef.", code="MISSING_PRODUCT_REF")

    quantity = item.get("quantity")
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError(
            f"Cart item {product_ref} has a non-integer quantity.",
            code="INVALID_QUANTITY",
        )
    if quantity < 0:
        raise ValidationError(
            f"Cart item {product_ref} has a negative quantity.",
            code="INVALID_QUANTITY",
        )

    token_id = _clean(item.get("tokenId"))
    variant = _clean(item.get("variant"))
    if token_id is None:
        return PlainLine(product_ref=product_ref, quantity=quantity, variant=variant)
    if variant is None:
        return CustomLine(product_ref=product_ref, quantity=quantity, token_id=token_id)
    return CustomVariantLine(
        product_ref=product_ref, quantity=quantity, token_id=token_id, variant=variant
    )


@dataclass
class PricingGroup:
    product_ref: str
    product: Optional[Product]
    variant: Optional[str] = None
    quantity: int = 0

    @property
    def key(self) -> Tuple[str, Optional[str]]:
        return (self.product_ref, self.variant)

    @property
    def is_custom_pool(self) -> bool:
        return bool(self.product and self.product.is_custom_pool)


@dataclass(frozen=True)
class CustomizationEntry:
    product_ref: str
    token_id: str
    variant: str
    quantity: int
    collection: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "productRef": self.product_ref,
            "tokenId": self.token_id,
            "variant": self.variant,
            "quantity": self.quantity,
            "collection": self.collection,
        }


@dataclass
class CartAggregate:
    groups: List[PricingGroup] = field(default_factory=list)
    customizations: List[CustomizationEntry] = field(default_factory=list)

    @property
    def total_quantity(self) -> int:
        return sum(g.quantity for g in self.groups)

    @property
    def custom_pool_quantity(self) -> int:
        return sum(g.quantity for g in self.groups if g.is_custom_pool)


DEFAULT_VARIANT = "illustrated"


def aggregate_cart(lines: Sequence[CartLine], catalog: ProductCatalog) -> CartAggregate:
    """Group cart lines by (product, variant) and collect the per-token breakdown.

    Variant is only part of the key for products that display variants; for
    everything else quantities roll up by product alone. Pooling across
    different custom products is the pricing engine's job, not this one.
    """
    groups: Dict[Tuple[str, Optional[str]], PricingGroup] = {}
    customizations: List[CustomizationEntry] = []

    for line in lines:
        if line.quantity == 0:
            continue

        product = catalog.lookup(line.product_ref)
        if product is not None and product.requires_token and line.token_id is None:
            raise BusinessRuleError(
                "Custom sticker items must include tokenId.",
                code="CUSTOM_TOKEN_REQUIRED",
                context={"productRef": line.product_ref},
            )

        group_variant = line.variant if (product and product.supports_variants) else None
        # Group under the canonical product id so a product referenced by id and
        # by price ref in the same cart still prices as one group
        group_ref = product.id if product else line.product_ref
        key = (group_ref, group_variant)

        group = groups.get(key)
        if group is None:
            group = PricingGroup(product_ref=group_ref, product=product, variant=group_variant)
            groups[key] = group
        group.quantity += line.quantity

        if line.token_id is not None:
            customizations.append(
                CustomizationEntry(
                    product_ref=group_ref,
                    token_id=line.token_id,
                    variant=line.variant or DEFAULT_VARIANT,
                    quantity=line.quantity,
                    collection=product.collection if product else None,
                )
            )

    return CartAggregate(groups=list(groups.values()), customizations=customizations)
