# Overview: Service-layer operations for the stock ledger; movement writes and ledger-derived stock figures.

from __future__ import annotations

from sqlalchemy import func, or_

from ..extensions import db
from ..models import Product, StockEntry
from ..errors import NotFoundError, ValidationError
from stockledger.time_utils import to_utc_z, utcnow
from .conversion_service import get_default_conversion
from .pagination import clamp_page, page_meta
"""
Stock Ledger Invariants (authoritative)

- Stock is ledger-derived: never stored as a mutable quantity on Product.
- Movements are append-only; corrections are negated rows (is_reversal=True).
- Each movement records the factor in force when written (unit_factor) and
  base_qty = qty * unit_factor.
- Current stock = SUM(base_qty) / factor of the CURRENT default sale unit.
  Only the display unit comes from live configuration.
- Without a default sale unit, stock is reported in base units.
"""


TYPE_LABELS = {
    "purchase": "Purchase",
    "sale": "Sale",
    "adjustment": "Adjustment",
}

STOCK_SORT_FIELDS = ("name", "sku", "stock")


def display_qty(base_qty: int, factor: int):
    """Base units -> display units; int when exact, else rounded to 4 places."""
    if factor == 1:
        return base_qty
    quotient, remainder = divmod(base_qty, factor)
    if remainder == 0:
        return quotient
    return round(base_qty / factor, 4)


def append_stock_entry(
    *,
    product_id: int,
    unit_id: int,
    qty: int,
    unit_factor: int,
    type: str,
    transaction_id: int | None = None,
    is_reversal: bool = False,
    description: str | None = None,
    actor_user_id: int | None = None,
) -> StockEntry:
    """
    Append one immutable ledger movement in the caller's unit of work.

    qty is signed (already in the ledger's direction). Does not commit.
    """
    if qty == 0:
        raise ValidationError("movement quantity must be non-zero")
    if unit_factor <= 0:
        raise ValidationError("unit_factor must be positive")

    entry = StockEntry(
        product_id=product_id,
        transaction_id=transaction_id,
        type=type,
        qty=qty,
        unit_id=unit_id,
        unit_factor=unit_factor,
        base_qty=qty * unit_factor,
        is_reversal=is_reversal,
        description=description,
        created_at=utcnow(),
        created_by=actor_user_id,
    )
    db.session.add(entry)
    return entry


def get_base_stock(product_id: int) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(StockEntry.base_qty), 0))
        .filter(StockEntry.product_id == product_id)
        .scalar()
    )
    return int(total or 0)


def display_unit(product: Product) -> tuple[int | None, str | None, int]:
    """(unit_id, unit_name, factor) stock figures for `product` are shown in."""
    conversion = get_default_conversion(product.id, "sale")
    if conversion is not None:
        return conversion.unit_id, conversion.unit.name if conversion.unit else None, conversion.unit_qty
    if product.base_unit is not None:
        return product.base_unit_id, product.base_unit.name, 1
    return None, None, 1


def _get_product(product_id: int) -> Product:
    product = db.session.query(Product).filter_by(id=product_id).first()
    if product is None:
        raise NotFoundError("Product not found", details={"product_id": product_id})
    return product


def get_current_stock(product_id: int) -> dict:
    product = _get_product(product_id)
    unit_id, unit_name, factor = display_unit(product)
    base = get_base_stock(product_id)
    return {
        "product_id": product.id,
        "product_name": product.name,
        "quantity": display_qty(base, factor),
        "unit_id": unit_id,
        "unit": unit_name,
        "base_quantity": base,
    }


def get_stock_history(product_id: int, *, page: int | None = None, limit: int | None = None) -> dict:
    """Movements of one product, newest first."""
    product = _get_product(product_id)
    page, limit = clamp_page(page, limit)

    q = db.session.query(StockEntry).filter(StockEntry.product_id == product_id)
    total = q.count()
    rows = (
        q.order_by(StockEntry.created_at.desc(), StockEntry.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    data = []
    for row in rows:
        item = row.to_dict()
        item["type_label"] = TYPE_LABELS.get(row.type, row.type)
        data.append(item)

    return {
        "product": {"id": product.id, "name": product.name},
        "data": data,
        "pagination": page_meta(page, limit, total),
    }


def list_stock(
    *,
    search: str | None = None,
    page: int | None = None,
    limit: int | None = None,
    sort_by: str = "name",
    sort_order: str = "asc",
) -> dict:
    """
    Active products with current stock and last movement time.

    sort_by=stock orders by the displayed quantity, which depends on each
    product's own default sale unit, so it is sorted after aggregation.
    """
    if sort_by not in STOCK_SORT_FIELDS:
        raise ValidationError(f"sort_by must be one of {', '.join(STOCK_SORT_FIELDS)}")
    if sort_order not in ("asc", "desc"):
        raise ValidationError("sort_order must be asc or desc")
    page, limit = clamp_page(page, limit)
    descending = sort_order == "desc"

    totals = (
        db.session.query(
            StockEntry.product_id.label("product_id"),
            func.sum(StockEntry.base_qty).label("base_qty"),
            func.max(StockEntry.created_at).label("last_movement_at"),
        )
        .group_by(StockEntry.product_id)
        .subquery()
    )

    q = (
        db.session.query(Product, totals.c.base_qty, totals.c.last_movement_at)
        .outerjoin(totals, totals.c.product_id == Product.id)
        .filter(Product.is_active.is_(True))
    )
    if search:
        like = f"%{search.strip()}%"
        q = q.filter(or_(Product.name.ilike(like), Product.sku.ilike(like), Product.barcode.ilike(like)))

    total = q.count()

    def _row(product, base_qty, last_movement_at) -> dict:
        unit_id, unit_name, factor = display_unit(product)
        base = int(base_qty or 0)
        return {
            "product_id": product.id,
            "product_name": product.name,
            "sku": product.sku,
            "barcode": product.barcode,
            "quantity": display_qty(base, factor),
            "unit_id": unit_id,
            "unit": unit_name,
            "base_quantity": base,
            "last_movement_at": to_utc_z(last_movement_at) if last_movement_at else None,
        }

    if sort_by == "stock":
        rows = [_row(*r) for r in q.all()]
        rows.sort(key=lambda r: (r["quantity"], r["product_id"]), reverse=descending)
        data = rows[(page - 1) * limit:(page - 1) * limit + limit]
    else:
        column = Product.name if sort_by == "name" else Product.sku
        order = column.desc() if descending else column.asc()
        q = q.order_by(order, Product.id.asc()).offset((page - 1) * limit).limit(limit)
        data = [_row(*r) for r in q.all()]

    return {"data": data, "pagination": page_meta(page, limit, total)}
