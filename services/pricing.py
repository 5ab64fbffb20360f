"""
Bundle Price Allocation Engine
Computes total, discount and final price for a bundle, with a per-item breakdown
whose discounts always sum exactly to the bundle discount.
"""
from typing import List, Optional, Sequence, Any, Tuple
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP

from schemas.bundle_schemas import (
    DISCOUNT_FIXED,
    DISCOUNT_PERCENTAGE,
    DiscountRule,
    to_decimal,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


class PricingError(ValueError):
    """Raised only when a required pricing input is missing altogether."""


@dataclass
class ItemAllocation:
    id: str
    price: Decimal
    discount_amount: Decimal
    final_price: Decimal


@dataclass
class PriceBreakdown:
    total: Decimal
    total_discount: Decimal
    final_price: Decimal
    items: List[ItemAllocation] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total": float(self.total),
            "totalDiscount": float(self.total_discount),
            "finalPrice": float(self.final_price),
            "items": [
                {
                    "id": a.id,
                    "price": float(a.price),
                    "discountAmount": float(a.discount_amount),
                    "finalPrice": float(a.final_price),
                }
                for a in self.items
            ],
        }


def _round(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _item_price(item: Any) -> Decimal:
    price = item.get("price") if isinstance(item, dict) else getattr(item, "price", None)
    if price is None:
        raise PricingError(f"Bundle item {_item_id(item)!r} has no price")
    return to_decimal(price)


def _item_id(item: Any) -> str:
    if isinstance(item, dict):
        return str(item.get("id") or item.get("productId") or "")
    return str(getattr(item, "id", "") or getattr(item, "product_id", ""))


def calculate_total(items: Sequence[Any]) -> Decimal:
    if items is None:
        raise PricingError("Bundle items are required")
    return sum((_item_price(item) for item in items), Decimal("0"))


def _no_discount(items: Sequence[Any], total: Decimal) -> PriceBreakdown:
    allocations = [
        ItemAllocation(id=_item_id(item), price=_item_price(item), discount_amount=Decimal("0.00"),
                       final_price=_round(_item_price(item)))
        for item in items
    ]
    return PriceBreakdown(total=_round(total), total_discount=Decimal("0.00"),
                          final_price=_round(total), items=allocations)


def distribute_discounts(items: Sequence[Any], discount_type: Optional[str], discount_value: Any) -> PriceBreakdown:
    """
    Allocate a bundle discount across its items.

    percentage: the total discount is rounded once; each item gets its
        price-proportional share rounded to cents and the last item takes
        the residual, so the breakdown sums exactly to the total discount.
    fixed: the value applies to every item, capped at the item price.

    Malformed or non-positive values and unknown discount kinds yield a zero discount.
    """
    total = calculate_total(items)
    value = to_decimal(discount_value, default=None)

    if not items or value is None or value <= 0 or total <= 0:
        return _no_discount(items, total)

    if discount_type == DISCOUNT_PERCENTAGE:
        pct = min(value, HUNDRED)
        total_discount = _round(total * pct / HUNDRED)

        allocations: List[ItemAllocation] = []
        allocated = Decimal("0")
        last_index = len(items) - 1
        for index, item in enumerate(items):
            price = _item_price(item)
            if index == last_index:
                share = total_discount - allocated
            else:
                # never allocate past the total, so the residual stays >= 0
                share = min(_round(price / total * total_discount), total_discount - allocated)
                allocated += share
            allocations.append(ItemAllocation(
                id=_item_id(item),
                price=price,
                discount_amount=share,
                final_price=_round(price - share),
            ))

        return PriceBreakdown(
            total=_round(total),
            total_discount=total_discount,
            final_price=_round(total - total_discount),
            items=allocations,
        )

    if discount_type == DISCOUNT_FIXED:
        per_item = _round(value)
        allocations = []
        for item in items:
            price = _item_price(item)
            share = min(per_item, _round(price))
            allocations.append(ItemAllocation(
                id=_item_id(item),
                price=price,
                discount_amount=share,
                final_price=_round(price - share),
            ))
        total_discount = sum((a.discount_amount for a in allocations), Decimal("0"))
        return PriceBreakdown(
            total=_round(total),
            total_discount=_round(total_discount),
            final_price=max(Decimal("0.00"), _round(total - total_discount)),
            items=allocations,
        )

    logger.debug(f"Unknown discount type {discount_type!r}; pricing without discount")
    return _no_discount(items, total)


def calculate_discount(items: Sequence[Any], discount_type: Optional[str], discount_value: Any) -> Decimal:
    return distribute_discounts(items, discount_type, discount_value).total_discount


def calculate_final_price(items: Sequence[Any], discount_type: Optional[str], discount_value: Any) -> Decimal:
    return distribute_discounts(items, discount_type, discount_value).final_price


def bundle_price(items: Sequence[Any], rule: Optional[DiscountRule]) -> Tuple[Decimal, Decimal]:
    """(original total, bundle price) for the published snapshot."""
    rule = rule or DiscountRule(kind=None)
    breakdown = distribute_discounts(items, rule.kind, rule.value)
    return breakdown.total, breakdown.final_price
