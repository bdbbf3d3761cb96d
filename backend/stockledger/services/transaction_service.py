# Overview: Service-layer operations for the transaction engine; purchase, sale and adjustment postings.

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy import or_

from ..extensions import db
from ..models import Conversion, Product, Transaction, TransactionItem, Unit, User
from ..errors import InsufficientPaymentError, NotFoundError, ValidationError
from ..validation import LineInput, TransactionInput
from stockledger.time_utils import utcnow
from .concurrency import lock_for_update, lock_products, run_with_retry, unit_of_work
from .conversion_service import get_active_conversion, reprice_conversion
from .pagination import clamp_page, page_meta
from .sequence_service import next_transaction_no
from .stock_guard import GuardLine, simulate
from .stock_service import append_stock_entry
"""
Transaction Engine Invariants (authoritative)

- One request = one unit of work: header, items, ledger movements, price
  history and the sequence increment commit together or not at all.
- Every check (lines, payment, Stock Guard) runs before the first write.
- The Guard runs with the affected products locked, so no other writer can
  change their stock between the simulation and the ledger write.
- Transactions are never deleted. An update appends one reversal movement per
  existing item, replaces the items, and appends forward movements; the
  transaction keeps its id and number.
- Numbers are PREFIX-YYYYMMDD-NNN, counted per type per creation day.
"""


@dataclass(frozen=True)
class TypeProfile:
    label: str
    # Ledger direction of a positive line qty (adjustment qty is already signed)
    sign: int
    priced: bool
    guard_on_create: bool
    payment: bool


PROFILES = {
    "purchase": TypeProfile(label="Purchase", sign=1, priced=True, guard_on_create=False, payment=False),
    "sale": TypeProfile(label="Sale", sign=-1, priced=True, guard_on_create=True, payment=True),
    "adjustment": TypeProfile(label="Adjustment", sign=1, priced=False, guard_on_create=True, payment=False),
}

TRANSACTION_SORT_FIELDS = ("time", "no", "type", "user")


@dataclass
class ResolvedLine:
    line: LineInput
    product: Product
    unit: Unit
    conversion: Conversion
    unit_price_cents: int | None
    line_total_cents: int | None

    @property
    def factor(self) -> int:
        return self.conversion.unit_qty


def _profile(txn_type: str) -> TypeProfile:
    profile = PROFILES.get(txn_type)
    if profile is None:
        raise ValidationError(f"Unknown transaction type: {txn_type}")
    return profile


def _signed_qty(profile: TypeProfile, qty: int) -> int:
    return qty * profile.sign


def _resolve_lines(txn_type: str, profile: TypeProfile, lines: list[LineInput]) -> list[ResolvedLine]:
    """Check every line against master data and conversions; nothing is written."""
    resolved = []
    for index, line in enumerate(lines):
        product = db.session.query(Product).filter_by(id=line.product_id).first()
        if product is None:
            raise ValidationError(
                f"Product with ID {line.product_id} not found",
                details={"line": index, "product_id": line.product_id},
            )
        if not product.is_active:
            raise ValidationError(
                f'Product "{product.name}" (ID: {product.id}) is inactive',
                details={"line": index, "product_id": product.id},
            )

        unit = db.session.query(Unit).filter_by(id=line.unit_id).first()
        if unit is None:
            raise ValidationError(
                f"Unit with ID {line.unit_id} not found",
                details={"line": index, "unit_id": line.unit_id},
            )

        conversion = get_active_conversion(product.id, unit.id, txn_type)

        price = None
        line_total = None
        if profile.priced:
            price = conversion.unit_price_cents
            if txn_type == "purchase" and line.unit_price_cents is not None:
                price = line.unit_price_cents
            line_total = line.qty * price

        resolved.append(ResolvedLine(
            line=line,
            product=product,
            unit=unit,
            conversion=conversion,
            unit_price_cents=price,
            line_total_cents=line_total,
        ))
    return resolved


def _total(profile: TypeProfile, resolved: list[ResolvedLine]) -> int | None:
    if not profile.priced:
        return None
    return sum(r.line_total_cents for r in resolved)


def _check_payment(profile: TypeProfile, data: TransactionInput, total: int | None) -> None:
    if not profile.payment:
        return
    if data.amount_paid_cents is None:
        raise ValidationError(f"amount_paid_cents is required for {data.type}")
    if data.amount_paid_cents < total:
        raise InsufficientPaymentError(total, data.amount_paid_cents)


def _new_guard_lines(profile: TypeProfile, resolved: list[ResolvedLine]) -> list[GuardLine]:
    return [
        GuardLine(
            product_id=r.product.id,
            unit_id=r.unit.id,
            base_delta=_signed_qty(profile, r.line.qty) * r.factor,
        )
        for r in resolved
    ]


def _old_guard_lines(profile: TypeProfile, items: list[TransactionItem]) -> list[GuardLine]:
    return [
        GuardLine(
            product_id=item.product_id,
            unit_id=item.unit_id,
            base_delta=_signed_qty(profile, item.qty) * item.unit_factor,
        )
        for item in items
    ]


def _post_lines(
    txn: Transaction,
    profile: TypeProfile,
    resolved: list[ResolvedLine],
    actor_user_id: int | None,
) -> None:
    """Insert items and their forward movements; reprice purchase conversions on override."""
    for r in resolved:
        item = TransactionItem(
            transaction_id=txn.id,
            product_id=r.product.id,
            unit_id=r.unit.id,
            qty=r.line.qty,
            unit_factor=r.factor,
            unit_price_cents=r.unit_price_cents,
            line_total_cents=r.line_total_cents,
            description=r.line.description or f"{profile.label} of {r.line.qty} {r.unit.name}",
        )
        db.session.add(item)
        db.session.flush()

        append_stock_entry(
            product_id=r.product.id,
            unit_id=r.unit.id,
            qty=_signed_qty(profile, r.line.qty),
            unit_factor=r.factor,
            type=txn.type,
            transaction_id=txn.id,
            description=f"{profile.label} transaction {txn.no}",
            actor_user_id=actor_user_id,
        )

        if txn.type == "purchase" and r.line.unit_price_cents is not None:
            reprice_conversion(
                r.conversion,
                r.line.unit_price_cents,
                note=f"Price updated from purchase {txn.no}",
                actor_user_id=actor_user_id,
            )


def create_transaction(data: TransactionInput, *, actor_user_id: int | None = None) -> Transaction:
    """
    Post a new purchase, sale or adjustment.

    Order: line checks, total, payment, lock + Stock Guard, number, writes.
    Any failure rolls the whole unit of work back; no number is consumed.
    """
    profile = _profile(data.type)

    def _op():
        with unit_of_work():
            resolved = _resolve_lines(data.type, profile, data.lines)
            total = _total(profile, resolved)
            _check_payment(profile, data, total)

            lock_products(r.product.id for r in resolved)
            if profile.guard_on_create:
                simulate(_new_guard_lines(profile, resolved))

            txn = Transaction(
                no=next_transaction_no(data.type),
                type=data.type,
                date=data.date,
                description=data.description,
                total_amount_cents=total,
                amount_paid_cents=data.amount_paid_cents,
                payment_method=data.payment_method,
                created_by=actor_user_id,
            )
            db.session.add(txn)
            db.session.flush()

            _post_lines(txn, profile, resolved, actor_user_id)
            txn_id, txn_no = txn.id, txn.no

        current_app.logger.info(
            "Posted %s %s with %d line(s)", data.type, txn_no, len(resolved),
        )
        return db.session.get(Transaction, txn_id)

    return run_with_retry(_op)


def update_transaction(
    txn_type: str,
    transaction_id: int,
    data: TransactionInput,
    *,
    actor_user_id: int | None = None,
) -> Transaction:
    """
    Replace the lines of an existing transaction.

    The Guard judges the net effect (current - old + new), so resubmitting the
    same lines always passes and changes nothing. Purchase updates are guarded
    too: removing purchased stock can push a product below zero.
    """
    profile = _profile(txn_type)
    if data.type != txn_type:
        raise ValidationError("Payload type does not match transaction type")

    def _op():
        with unit_of_work():
            txn = lock_for_update(
                db.session.query(Transaction).filter_by(id=transaction_id, type=txn_type)
            ).first()
            if txn is None:
                raise NotFoundError(
                    f"{profile.label} transaction not found",
                    details={"transaction_id": transaction_id, "type": txn_type},
                )

            resolved = _resolve_lines(txn_type, profile, data.lines)
            total = _total(profile, resolved)
            _check_payment(profile, data, total)

            existing = list(txn.items)
            lock_products([r.product.id for r in resolved] + [item.product_id for item in existing])
            simulate(_new_guard_lines(profile, resolved), existing_items=_old_guard_lines(profile, existing))

            for item in existing:
                append_stock_entry(
                    product_id=item.product_id,
                    unit_id=item.unit_id,
                    qty=-_signed_qty(profile, item.qty),
                    unit_factor=item.unit_factor,
                    type=txn.type,
                    transaction_id=txn.id,
                    is_reversal=True,
                    description=f"Reversal for updated {txn.type}: {txn.no}",
                    actor_user_id=actor_user_id,
                )

            db.session.query(TransactionItem).filter_by(transaction_id=txn.id).delete(synchronize_session=False)
            db.session.expire(txn, ["items"])

            txn.date = data.date
            txn.description = data.description
            txn.total_amount_cents = total
            txn.amount_paid_cents = data.amount_paid_cents
            txn.payment_method = data.payment_method
            txn.updated_at = utcnow()
            txn.updated_by = actor_user_id
            db.session.flush()

            _post_lines(txn, profile, resolved, actor_user_id)
            txn_no = txn.no

        current_app.logger.info(
            "Updated %s %s: reversed %d line(s), posted %d line(s)",
            txn_type, txn_no, len(existing), len(resolved),
        )
        return db.session.get(Transaction, transaction_id)

    return run_with_retry(_op)


def get_transaction(txn_type: str, transaction_id: int) -> Transaction:
    profile = _profile(txn_type)
    txn = db.session.query(Transaction).filter_by(id=transaction_id, type=txn_type).first()
    if txn is None:
        raise NotFoundError(
            f"{profile.label} transaction not found",
            details={"transaction_id": transaction_id, "type": txn_type},
        )
    return txn


def _items_summary(txn: Transaction) -> str:
    return ", ".join(f"{item.product.name} ({item.qty} {item.unit.name})" for item in txn.items)


def list_transactions(
    *,
    page: int | None = None,
    limit: int | None = None,
    search: str | None = None,
    type: str | None = None,
    sort_by: str = "time",
    sort_order: str = "desc",
) -> dict:
    """Transactions of all types, with per-transaction item summaries."""
    if type is not None and type not in PROFILES:
        raise ValidationError(f"type must be one of {', '.join(PROFILES)}")
    if sort_by not in TRANSACTION_SORT_FIELDS:
        raise ValidationError(f"sort_by must be one of {', '.join(TRANSACTION_SORT_FIELDS)}")
    if sort_order not in ("asc", "desc"):
        raise ValidationError("sort_order must be asc or desc")
    page, limit = clamp_page(page, limit)

    q = db.session.query(Transaction).outerjoin(User, Transaction.created_by == User.id)
    if type:
        q = q.filter(Transaction.type == type)
    if search:
        like = f"%{search.strip()}%"
        q = q.filter(or_(Transaction.no.ilike(like), Transaction.description.ilike(like)))

    column = {
        "time": Transaction.created_at,
        "no": Transaction.no,
        "type": Transaction.type,
        "user": User.name,
    }[sort_by]
    order = column.desc() if sort_order == "desc" else column.asc()
    tiebreak = Transaction.id.desc() if sort_order == "desc" else Transaction.id.asc()

    total = q.count()
    rows = q.order_by(order, tiebreak).offset((page - 1) * limit).limit(limit).all()

    data = []
    for txn in rows:
        item = txn.to_dict(include_items=False)
        item["item_count"] = len(txn.items)
        item["items_summary"] = _items_summary(txn)
        data.append(item)

    return {"data": data, "pagination": page_meta(page, limit, total)}
