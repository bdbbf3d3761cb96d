# Overview: Stock Guard; simulates a posting against current stock before anything is written.

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass

from ..extensions import db
from ..models import Product
from ..errors import StockWouldGoNegativeError
from .stock_service import display_qty, display_unit, get_base_stock


@dataclass(frozen=True)
class GuardLine:
    """A signed stock effect in base units (qty * sign * unit_factor)."""
    product_id: int
    unit_id: int
    base_delta: int


def simulate(lines, existing_items=None) -> dict[int, int]:
    """
    Check that applying `lines` (after reversing `existing_items`) leaves no
    product below zero.

    Figures are aggregated per product in base units:
        resulting = current - SUM(old) + SUM(new)
    so several lines for one product, in different units, are judged together.

    Must run after the caller has locked the affected products; the caller's
    write then happens in the same unit of work.

    Returns resulting base stock per product. Raises StockWouldGoNegativeError
    for the first product (in line order) that would go negative; its figures
    are reported in the product's default sale unit.
    """
    existing_items = existing_items or []

    old_by_product: OrderedDict[int, int] = OrderedDict()
    new_by_product: OrderedDict[int, int] = OrderedDict()
    last_unit: dict[int, int] = {}

    for line in existing_items:
        old_by_product[line.product_id] = old_by_product.get(line.product_id, 0) + line.base_delta
        last_unit.setdefault(line.product_id, line.unit_id)
    for line in lines:
        new_by_product[line.product_id] = new_by_product.get(line.product_id, 0) + line.base_delta
        last_unit[line.product_id] = line.unit_id

    product_ids = list(new_by_product) + [pid for pid in old_by_product if pid not in new_by_product]

    results: dict[int, int] = {}
    for product_id in product_ids:
        current = get_base_stock(product_id)
        old = old_by_product.get(product_id, 0)
        new = new_by_product.get(product_id, 0)
        resulting = current - old + new
        results[product_id] = resulting

        if resulting >= 0:
            continue

        product = db.session.get(Product, product_id)
        unit_id, unit_name, factor = display_unit(product)
        raise StockWouldGoNegativeError(
            product_id=product_id,
            product_name=product.name,
            unit_id=unit_id if unit_id is not None else last_unit.get(product_id),
            unit_name=unit_name,
            current=display_qty(current, factor),
            old=display_qty(old, factor),
            new=display_qty(new, factor),
            resulting=display_qty(resulting, factor),
        )

    return results
