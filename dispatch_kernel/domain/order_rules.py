"""
Pure order arithmetic: line normalization, totals, stock requests.

No I/O.  Raises ValidationError for malformed input so that the boundary
(orchestrator / services) never has to re-check.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping
from decimal import Decimal, InvalidOperation
from typing import Any

from dispatch_kernel.db.types import MONEY_DECIMAL_PLACES, round_money
from dispatch_kernel.domain.dtos import OrderLine, StockRequest
from dispatch_kernel.exceptions import ValidationError


def _coerce_line(raw: OrderLine | Mapping[str, Any]) -> OrderLine:
    if isinstance(raw, OrderLine):
        product_id, quantity, unit_price = raw.product_id, raw.quantity, raw.unit_price
    else:
        try:
            product_id = raw.get("product_id", raw.get("sku"))
            quantity = raw.get("quantity", raw.get("qty"))
            unit_price = raw.get("unit_price", raw.get("price"))
        except AttributeError:
            raise ValidationError(f"Order line must be a mapping, got {type(raw).__name__}", field="items")

    if not isinstance(product_id, str) or not product_id.strip():
        raise ValidationError("Order line requires a product id", field="product_id")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError(
            f"Quantity for {product_id} must be a positive integer", field="quantity"
        )
    try:
        price = Decimal(str(unit_price))
    except (InvalidOperation, TypeError):
        raise ValidationError(f"Unit price for {product_id} is not a number", field="unit_price")
    if not price.is_finite() or price < 0:
        raise ValidationError(f"Unit price for {product_id} must be >= 0", field="unit_price")
    if price != round_money(price):
        raise ValidationError(
            f"Unit price for {product_id} has more than {MONEY_DECIMAL_PLACES} decimal places",
            field="unit_price",
        )

    return OrderLine(product_id=product_id.strip(), quantity=quantity, unit_price=round_money(price))


def normalize_order_lines(items: Iterable[OrderLine | Mapping[str, Any]]) -> tuple[OrderLine, ...]:
    """Validate and coerce raw order lines.  At least one line is required."""
    if items is None or isinstance(items, (str, bytes, Mapping)):
        raise ValidationError("items must be a list of order lines", field="items")
    lines = tuple(_coerce_line(raw) for raw in items)
    if not lines:
        raise ValidationError("An order needs at least one item", field="items")
    return lines


def compute_total(lines: Iterable[OrderLine]) -> Decimal:
    """total_amount == sum(quantity * unit_price)."""
    return round_money(sum((line.line_total for line in lines), Decimal("0")))


def stock_requests(lines: Iterable[OrderLine | StockRequest]) -> tuple[StockRequest, ...]:
    """
    Collapse lines into one request per product, sorted by product id.

    Sorting fixes the lock acquisition order for multi-item reservations.
    """
    totals: dict[str, int] = defaultdict(int)
    for line in lines:
        totals[line.product_id] += line.quantity
    return tuple(StockRequest(product_id=p, quantity=q) for p, q in sorted(totals.items()))
