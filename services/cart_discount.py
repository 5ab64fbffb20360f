"""
Cart Discount Function
Stateless procedure run once per cart pricing evaluation. It sees only the cart
snapshot (each line carries its product's published bundle metadata) and returns
per-line discount instructions.

Contract:
- never performs I/O
- never raises: malformed metadata means "not part of any bundle", and any
  unexpected failure or an exhausted time budget yields the empty result
- a bundle discounts its lines only when the cart holds the complete set

Input:
{
    "cart": {"lines": [{
        "id": "gid://shopify/CartLine/1",
        "quantity": 2,
        "merchandise": {
            "id": "gid://shopify/ProductVariant/11",
            "product": {"id": "gid://shopify/Product/1"},
            "metafield": {"value": "<related_bundles JSON>"}
        }
    }]},
    "shop": {"localTime": {"dateTime": "2025-06-01T12:00:00"}}   # optional
}

Output:
{
    "discounts": [{"targets": [{"cartLine": {"id": ...}}],
                   "value": {"percentage": {"value": 10.0}} | {"fixedAmount": {"amount": "6.00"}},
                   "message": "<bundle name>"}],
    "discountApplicationStrategy": "ALL"
}
"""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from schemas.bundle_schemas import (
    DISCOUNT_FIXED,
    PublishedBundleEntry,
    PublishedProductMetadata,
    parse_datetime,
    to_decimal,
)
from services.deadlines import Deadline
from settings import CART_DISCOUNT_ALLOW_STACKING, CART_FUNCTION_BUDGET_MS

logger = logging.getLogger(__name__)

APPLICATION_STRATEGY_ALL = "ALL"


def empty_result() -> Dict[str, Any]:
    return {"discounts": [], "discountApplicationStrategy": APPLICATION_STRATEGY_ALL}


class BudgetExceeded(Exception):
    pass


@dataclass
class CartLine:
    id: str
    quantity: int
    product_id: Optional[str]
    metadata: PublishedProductMetadata


@dataclass
class BundleGroup:
    entry: PublishedBundleEntry
    lines: Dict[str, CartLine] = field(default_factory=dict)

    @property
    def required_count(self) -> int:
        return len(self.entry.items)

    @property
    def is_complete(self) -> bool:
        return self.required_count > 0 and len(self.lines) >= self.required_count


def _get(mapping: Any, *path: str) -> Any:
    current = mapping
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def parse_line(raw: Any) -> Optional[CartLine]:
    if not isinstance(raw, Mapping) or not raw.get("id"):
        return None

    quantity = to_decimal(raw.get("quantity"), default=Decimal("1"))
    merchandise = raw.get("merchandise")
    product_id = _get(merchandise, "product", "id")
    metafield = _get(merchandise, "metafield", "value")
    if metafield is None:
        metafield = _get(merchandise, "product", "metafield", "value")

    return CartLine(
        id=str(raw["id"]),
        quantity=max(int(quantity), 0),
        product_id=str(product_id) if product_id else None,
        metadata=PublishedProductMetadata.parse(metafield),
    )


def group_lines(lines: List[CartLine], now: Optional[datetime], deadline: Optional[Deadline] = None) -> List[BundleGroup]:
    """Associate every line with each live bundle that lists its product as a member."""
    groups: Dict[str, BundleGroup] = {}
    for line in lines:
        if deadline is not None and deadline.expired:
            raise BudgetExceeded()
        if not line.product_id:
            continue
        for entry in line.metadata.entries:
            if not entry.active or not entry.in_window(now):
                continue
            if line.product_id not in entry.member_item_ids:
                continue
            group = groups.setdefault(entry.bundle_id, BundleGroup(entry=entry))
            group.lines.setdefault(line.id, line)
    return list(groups.values())


def _instruction(group: BundleGroup, line: CartLine) -> Optional[Dict[str, Any]]:
    value = to_decimal(group.entry.discount_value, default=Decimal("0"))
    if value <= 0:
        return None

    if group.entry.discount_type == DISCOUNT_FIXED:
        amount = value * line.quantity
        if amount <= 0:
            return None
        discount_value = {"fixedAmount": {"amount": f"{amount:.2f}"}}
    else:
        discount_value = {"percentage": {"value": float(min(value, Decimal("100")))}}

    return {
        "targets": [{"cartLine": {"id": line.id}}],
        "value": discount_value,
        "message": group.entry.bundle_name or None,
    }


def assign_lines(groups: List[BundleGroup], allow_stacking: bool) -> List[tuple]:
    """
    Pair complete bundles with their lines.

    Without stacking, bundles claim lines from the highest priority down (the
    first enumerated bundle wins ties). A bundle whose unclaimed lines no longer
    cover every member gets nothing and leaves those lines to the rest.
    """
    complete = [g for g in groups if g.is_complete]
    if allow_stacking:
        return [(g, line) for g in complete for line in g.lines.values()]

    claimed: Dict[str, BundleGroup] = {}
    for group in sorted(complete, key=lambda g: -g.entry.priority):
        free = {line_id: line for line_id, line in group.lines.items() if line_id not in claimed}
        if len(free) < group.required_count:
            continue
        for line_id in free:
            claimed[line_id] = group

    return [
        (group, line)
        for group in complete
        for line_id, line in group.lines.items()
        if claimed.get(line_id) is group
    ]


def run(
    payload: Any,
    *,
    allow_stacking: Optional[bool] = None,
    budget_ms: Optional[float] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Evaluate bundle discounts for one cart. Always returns a well-formed result."""
    if allow_stacking is None:
        allow_stacking = CART_DISCOUNT_ALLOW_STACKING
    if budget_ms is None:
        budget_ms = CART_FUNCTION_BUDGET_MS
    deadline = Deadline.from_ms(budget_ms) if budget_ms and budget_ms > 0 else None

    try:
        raw_lines = _get(payload, "cart", "lines")
        if not isinstance(raw_lines, list) or not raw_lines:
            return empty_result()

        if now is None:
            now = parse_datetime(_get(payload, "shop", "localTime", "dateTime"))

        lines = [line for line in (parse_line(raw) for raw in raw_lines) if line is not None]
        groups = group_lines(lines, now, deadline)

        discounts = []
        for group, line in assign_lines(groups, allow_stacking):
            instruction = _instruction(group, line)
            if instruction is not None:
                discounts.append(instruction)

        return {"discounts": discounts, "discountApplicationStrategy": APPLICATION_STRATEGY_ALL}
    except BudgetExceeded:
        logger.warning("Cart discount function exceeded its %.1fms budget; no discounts applied", budget_ms)
        return empty_result()
    except Exception as e:
        logger.error(f"Cart discount function failed; no discounts applied: {e}", exc_info=True)
        return empty_result()
