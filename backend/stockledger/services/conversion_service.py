# Overview: Service-layer operations for the unit conversion registry; encapsulates business logic and database work.

from __future__ import annotations

from sqlalchemy import case, or_, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Conversion, ConversionLog, Product, Unit
from ..errors import DuplicateError, NotConfiguredError, NotFoundError, ValidationError
from stockledger.time_utils import to_utc_z, utcnow
from .concurrency import run_with_retry, unit_of_work
from .pagination import clamp_page, page_meta
"""
Conversion Registry Invariants (authoritative)

- A conversion ties (product, unit, type) to a factor (unit_qty, base units per
  unit) and a price (unit_price_cents, per unit).
- At most one ACTIVE conversion per (product, unit, type); create/update
  collisions are DuplicateError (409).
- At most one ACTIVE default per (product, type). The flip is a single
  conditional UPDATE, so no statement boundary ever observes zero or two
  defaults.
- Price history is append-only. Exactly one open row (valid_to IS NULL) per
  conversion; the open row is closed before the next one opens.
- Conversions are deactivated, never deleted.
"""


# Lookup order for lines whose transaction type has no conversion type of its own
_LOOKUP_ORDER = {
    "purchase": ("purchase",),
    "sale": ("sale",),
    "adjustment": ("sale", "purchase"),
}


def _ensure_product(product_id: int, *, require_active: bool = True) -> Product:
    product = db.session.query(Product).filter_by(id=product_id).first()
    if product is None:
        raise NotFoundError("Product not found", details={"product_id": product_id})
    if require_active and not product.is_active:
        raise ValidationError(f'Product "{product.name}" (ID: {product_id}) is inactive')
    return product


def _ensure_unit(unit_id: int) -> Unit:
    unit = db.session.query(Unit).filter_by(id=unit_id).first()
    if unit is None:
        raise ValidationError(f"Unit with ID {unit_id} not found")
    return unit


def find_active_conversion(product_id: int, unit_id: int, conv_type: str) -> Conversion | None:
    return (
        db.session.query(Conversion)
        .filter_by(product_id=product_id, unit_id=unit_id, type=conv_type, is_active=True)
        .first()
    )


def get_active_conversion(product_id: int, unit_id: int, txn_type: str) -> Conversion:
    """
    Resolve the conversion a transaction line of `txn_type` is priced and
    counted with.

    purchase -> purchase conversion, sale -> sale conversion, adjustment ->
    sale conversion, falling back to the purchase conversion.

    Raises NotConfiguredError when nothing active matches.
    """
    for conv_type in _LOOKUP_ORDER.get(txn_type, (txn_type,)):
        conversion = find_active_conversion(product_id, unit_id, conv_type)
        if conversion is not None:
            return conversion

    product = db.session.query(Product).filter_by(id=product_id).first()
    unit = db.session.query(Unit).filter_by(id=unit_id).first()
    product_name = product.name if product else f"ID {product_id}"
    unit_name = unit.name if unit else f"ID {unit_id}"
    raise NotConfiguredError(
        f'Unit "{unit_name}" is not configured for product "{product_name}". '
        "Please configure a conversion for this product-unit combination first.",
        details={"product_id": product_id, "unit_id": unit_id, "type": txn_type},
    )


def get_default_conversion(product_id: int, conv_type: str) -> Conversion | None:
    return (
        db.session.query(Conversion)
        .filter_by(product_id=product_id, type=conv_type, is_default=True, is_active=True)
        .order_by(Conversion.id.asc())
        .first()
    )


def set_default(product_id: int, conv_type: str, conversion_id: int) -> None:
    """
    Make `conversion_id` the only default among the active conversions of
    (product, type).

    Runs in the caller's unit of work. One statement sets the flag on the target
    and clears it on every sibling.
    """
    target = (
        db.session.query(Conversion)
        .filter_by(id=conversion_id, is_active=True)
        .first()
    )
    if target is None:
        raise NotFoundError("Conversion not found", details={"conversion_id": conversion_id})
    if target.product_id != product_id or target.type != conv_type:
        raise ValidationError("Conversion does not belong to the given product and type")

    db.session.execute(
        update(Conversion)
        .where(
            Conversion.product_id == product_id,
            Conversion.type == conv_type,
            Conversion.is_active.is_(True),
        )
        .values(is_default=case((Conversion.id == conversion_id, True), else_=False))
        .execution_options(synchronize_session="fetch")
    )


def _open_price_log(
    conversion_id: int,
    *,
    old_price_cents: int | None,
    new_price_cents: int,
    note: str | None,
    actor_user_id: int | None,
    now=None,
) -> ConversionLog:
    log = ConversionLog(
        conversion_id=conversion_id,
        old_price_cents=old_price_cents,
        new_price_cents=new_price_cents,
        note=note,
        valid_from=now or utcnow(),
        valid_to=None,
        created_by=actor_user_id,
    )
    db.session.add(log)
    db.session.flush()
    return log


def record_price_change(
    conversion_id: int,
    old_price_cents: int | None,
    new_price_cents: int,
    note: str | None = None,
    actor_user_id: int | None = None,
) -> ConversionLog:
    """
    Append a price-history row: close the open row, then open a new one.

    Both rows share the same timestamp so the history has no gap or overlap.
    """
    now = utcnow()
    db.session.execute(
        update(ConversionLog)
        .where(
            ConversionLog.conversion_id == conversion_id,
            ConversionLog.valid_to.is_(None),
        )
        .values(valid_to=now)
        .execution_options(synchronize_session="fetch")
    )
    return _open_price_log(
        conversion_id,
        old_price_cents=old_price_cents,
        new_price_cents=new_price_cents,
        note=note,
        actor_user_id=actor_user_id,
        now=now,
    )


def reprice_conversion(
    conversion: Conversion,
    new_price_cents: int,
    *,
    note: str | None = None,
    actor_user_id: int | None = None,
) -> bool:
    """
    Set a new price on an active conversion, logging the change.

    Returns False (and writes nothing) when the price is unchanged.
    """
    old_price = conversion.unit_price_cents
    if old_price == new_price_cents:
        return False

    conversion.unit_price_cents = new_price_cents
    conversion.updated_by = actor_user_id
    record_price_change(conversion.id, old_price, new_price_cents, note, actor_user_id)
    return True


def _check_duplicate(product_id: int, unit_id: int, conv_type: str, exclude_id: int | None = None) -> None:
    q = db.session.query(Conversion.id).filter_by(
        product_id=product_id,
        unit_id=unit_id,
        type=conv_type,
        is_active=True,
    )
    if exclude_id is not None:
        q = q.filter(Conversion.id != exclude_id)
    if q.first() is not None:
        raise DuplicateError(
            "Conversion with this combination already exists",
            details={"product_id": product_id, "unit_id": unit_id, "type": conv_type},
        )


def create_conversion(
    *,
    product_id: int,
    unit_id: int,
    unit_qty: int,
    unit_price_cents: int,
    type: str,
    is_default: bool = False,
    note: str | None = None,
    actor_user_id: int | None = None,
) -> Conversion:
    """
    Create a conversion and its opening price-history row.

    Raises DuplicateError if an active (product, unit, type) already exists.
    """
    def _op():
        with unit_of_work():
            _ensure_product(product_id)
            _ensure_unit(unit_id)
            _check_duplicate(product_id, unit_id, type)

            conversion = Conversion(
                product_id=product_id,
                unit_id=unit_id,
                unit_qty=unit_qty,
                unit_price_cents=unit_price_cents,
                type=type,
                is_default=False,
                is_active=True,
                created_by=actor_user_id,
                updated_by=actor_user_id,
            )
            db.session.add(conversion)
            try:
                db.session.flush()
            except IntegrityError:
                raise DuplicateError("Conversion with this combination already exists")

            if is_default:
                set_default(product_id, type, conversion.id)

            _open_price_log(
                conversion.id,
                old_price_cents=None,
                new_price_cents=unit_price_cents,
                note=note,
                actor_user_id=actor_user_id,
            )
        db.session.refresh(conversion)
        return conversion

    return run_with_retry(_op)


def update_conversion(
    conversion_id: int,
    *,
    product_id: int,
    unit_id: int,
    unit_qty: int,
    unit_price_cents: int,
    type: str,
    is_default: bool = False,
    note: str | None = None,
    actor_user_id: int | None = None,
) -> Conversion:
    """
    Replace an active conversion's configuration.

    - Duplicate check excludes the conversion itself.
    - is_default=True makes it the sole default; False clears its flag.
    - A changed price appends price history; an unchanged price writes none.
    """
    def _op():
        with unit_of_work():
            conversion = (
                db.session.query(Conversion)
                .filter_by(id=conversion_id, is_active=True)
                .first()
            )
            if conversion is None:
                raise NotFoundError("Conversion not found", details={"conversion_id": conversion_id})

            _ensure_product(product_id)
            _ensure_unit(unit_id)
            _check_duplicate(product_id, unit_id, type, exclude_id=conversion_id)

            old_price = conversion.unit_price_cents

            conversion.product_id = product_id
            conversion.unit_id = unit_id
            conversion.unit_qty = unit_qty
            conversion.unit_price_cents = unit_price_cents
            conversion.type = type
            conversion.updated_by = actor_user_id
            if not is_default:
                conversion.is_default = False
            try:
                db.session.flush()
            except IntegrityError:
                raise DuplicateError("Conversion with this combination already exists")

            if is_default:
                set_default(product_id, type, conversion.id)

            if old_price != unit_price_cents:
                record_price_change(conversion.id, old_price, unit_price_cents, note, actor_user_id)
        db.session.refresh(conversion)
        return conversion

    return run_with_retry(_op)


def deactivate_conversion(conversion_id: int, *, actor_user_id: int | None = None) -> Conversion:
    """
    Soft-delete a conversion.

    Ledger rows written in this unit keep their recorded factor, so stock
    figures are unaffected. The open price row is closed.
    """
    def _op():
        with unit_of_work():
            conversion = (
                db.session.query(Conversion)
                .filter_by(id=conversion_id, is_active=True)
                .first()
            )
            if conversion is None:
                raise NotFoundError("Conversion not found", details={"conversion_id": conversion_id})

            conversion.is_active = False
            conversion.is_default = False
            conversion.updated_by = actor_user_id
            db.session.execute(
                update(ConversionLog)
                .where(
                    ConversionLog.conversion_id == conversion_id,
                    ConversionLog.valid_to.is_(None),
                )
                .values(valid_to=utcnow())
                .execution_options(synchronize_session="fetch")
            )
        return conversion

    return run_with_retry(_op)


def get_conversion(conversion_id: int) -> Conversion:
    conversion = (
        db.session.query(Conversion)
        .filter_by(id=conversion_id, is_active=True)
        .first()
    )
    if conversion is None:
        raise NotFoundError("Conversion not found", details={"conversion_id": conversion_id})
    return conversion


def _unit_summary(conversion: Conversion | None) -> dict | None:
    if conversion is None:
        return None
    return {
        "conversion_id": conversion.id,
        "unit_id": conversion.unit_id,
        "unit": conversion.unit.name if conversion.unit else None,
        "qty": conversion.unit_qty,
        "price_cents": conversion.unit_price_cents,
    }


def get_default_conversions(product_id: int) -> dict:
    _ensure_product(product_id, require_active=False)
    return {
        "sale": _unit_summary(get_default_conversion(product_id, "sale")),
        "purchase": _unit_summary(get_default_conversion(product_id, "purchase")),
    }


def _conversion_row(conversion: Conversion) -> dict:
    return {
        "id": conversion.id,
        "unit_id": conversion.unit_id,
        "unit": conversion.unit.name if conversion.unit else None,
        "qty": conversion.unit_qty,
        "price_cents": conversion.unit_price_cents,
        "is_default": conversion.is_default,
        "is_active": conversion.is_active,
    }


def get_conversions_by_product(product_id: int, conv_type: str = "all") -> list[dict]:
    """
    Active conversions of a product for one type, or for both.

    With conv_type="all" rows are merged per unit: the purchase row is listed
    first and the sale row's is_default wins on a shared unit.
    """
    _ensure_product(product_id, require_active=False)

    def _rows(t: str) -> list[Conversion]:
        return (
            db.session.query(Conversion)
            .filter_by(product_id=product_id, type=t, is_active=True)
            .order_by(Conversion.unit_price_cents.asc(), Conversion.id.asc())
            .all()
        )

    if conv_type != "all":
        return [_conversion_row(c) for c in _rows(conv_type)]

    merged: dict[int, dict] = {}
    for conversion in _rows("purchase"):
        merged.setdefault(conversion.unit_id, _conversion_row(conversion))
    for conversion in _rows("sale"):
        if conversion.unit_id in merged:
            merged[conversion.unit_id]["is_default"] = conversion.is_default
        else:
            merged[conversion.unit_id] = _conversion_row(conversion)
    return list(merged.values())


def list_conversions(*, search: str | None = None, page: int | None = None, limit: int | None = None) -> dict:
    """Active products with their default sale and purchase units, paginated by product."""
    page, limit = clamp_page(page, limit)

    q = db.session.query(Product).filter(Product.is_active.is_(True))
    if search:
        like = f"%{search.strip()}%"
        q = q.filter(or_(Product.name.ilike(like), Product.sku.ilike(like), Product.barcode.ilike(like)))

    total = q.count()
    products = q.order_by(Product.name.asc(), Product.id.asc()).offset((page - 1) * limit).limit(limit).all()

    data = []
    for product in products:
        data.append({
            "product_id": product.id,
            "product_name": product.name,
            "product_barcode": product.barcode,
            "sale": _unit_summary(get_default_conversion(product.id, "sale")),
            "purchase": _unit_summary(get_default_conversion(product.id, "purchase")),
        })

    return {"data": data, "pagination": page_meta(page, limit, total)}


def get_product_conversion_detail(product_id: int) -> dict:
    """
    Everything configured for one product: conversions, default units, and
    price history grouped per conversion (oldest entry first).
    """
    product = _ensure_product(product_id, require_active=False)

    conversions = (
        db.session.query(Conversion)
        .filter_by(product_id=product_id, is_active=True)
        .order_by(Conversion.type.asc(), Conversion.unit_price_cents.asc(), Conversion.id.asc())
        .all()
    )

    history_rows = (
        db.session.query(ConversionLog)
        .join(Conversion, ConversionLog.conversion_id == Conversion.id)
        .filter(Conversion.product_id == product_id, Conversion.is_active.is_(True))
        .order_by(ConversionLog.conversion_id.asc(), ConversionLog.valid_from.asc(), ConversionLog.id.asc())
        .all()
    )

    by_conversion = {c.id: c for c in conversions}
    grouped: dict[int, dict] = {}
    for row in history_rows:
        conversion = by_conversion[row.conversion_id]
        entry = grouped.setdefault(row.conversion_id, {
            "conversion_id": row.conversion_id,
            "unit": conversion.unit.name if conversion.unit else None,
            "type": conversion.type,
            "history": [],
        })
        entry["history"].append({
            "old_price_cents": row.old_price_cents,
            "new_price_cents": row.new_price_cents,
            "note": row.note,
            "valid_from": to_utc_z(row.valid_from),
            "valid_to": to_utc_z(row.valid_to) if row.valid_to else None,
        })

    return {
        "product": product.to_dict(),
        "conversions": [
            {
                "id": c.id,
                "unit_id": c.unit_id,
                "unit": c.unit.name if c.unit else None,
                "qty": c.unit_qty,
                "price_cents": c.unit_price_cents,
                "type": c.type,
                "is_default": c.is_default,
                "is_active": c.is_active,
            }
            for c in conversions
        ],
        "default_units": {
            "purchase": _unit_summary(get_default_conversion(product_id, "purchase")),
            "sale": _unit_summary(get_default_conversion(product_id, "sale")),
        },
        "price_history": list(grouped.values()),
    }
