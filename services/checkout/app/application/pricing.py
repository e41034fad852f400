from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Sequence

from app.application.schemas import LineItemIn
from app.domain.errors import NotFoundError, ValidationError
from app.infrastructure.clients import ProductCatalogClient
from shared.core import get_logger

logger = get_logger(__name__)

CENTS = Decimal("0.01")
SNAPSHOT_FIELDS = ("name", "category", "brand", "sku", "image", "images", "description")


@dataclass
class PricedItem:
    product: str
    quantity: int
    size: str
    color: str
    price: Decimal
    product_name: Optional[str] = None
    product_snapshot: Dict[str, Any] = field(default_factory=dict)

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity


@dataclass
class PricedOrder:
    items: List[PricedItem]
    total: Decimal


def effective_price(product: Dict[str, Any]) -> Decimal:
    """Discounted ``finalPrice`` when the catalog has one, else ``price``."""
    raw = product.get("finalPrice")
    if raw is None:
        raw = product.get("final_price")
    if raw is None:
        raw = product.get("price")
    try:
        price = Decimal(str(raw)).quantize(CENTS, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Product {product.get('id')} has no valid price") from None
    if price < 0:
        raise ValidationError(f"Product {product.get('id')} has a negative price")
    return price


class PriceAggregator:
    """Prices line items from the catalog's current data; client prices are never trusted."""

    def __init__(self, catalog: ProductCatalogClient):
        self.catalog = catalog

    def price(self, items: Sequence[LineItemIn]) -> PricedOrder:
        priced = []
        for item in items:
            product = self.catalog.find_by_id(item.product)
            if not product:
                raise NotFoundError(f"Product not found: {item.product}")
            if product.get("is_active") is False or product.get("isActive") is False:
                raise ValidationError(f"Product {item.product} is no longer available")

            priced.append(PricedItem(
                product=str(item.product),
                quantity=item.quantity,
                size=item.size,
                color=item.color,
                price=effective_price(product),
                product_name=product.get("name"),
                product_snapshot={k: product[k] for k in SNAPSHOT_FIELDS if product.get(k) is not None},
            ))

        total = sum((p.subtotal for p in priced), Decimal("0")).quantize(CENTS)
        if total <= 0:
            raise ValidationError("Invalid total amount")
        logger.debug(f"Priced {len(priced)} line item(s), total {total}")
        return PricedOrder(items=priced, total=total)
