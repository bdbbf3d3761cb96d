from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_iso_date, to_utc_z


TRANSACTION_TYPES = ("purchase", "sale", "adjustment")
PAYMENT_METHODS = ("cash", "card", "transfer")


class Transaction(db.Model):
    """
    Transaction header (purchase, sale or adjustment).

    Identity and number are immutable once created; an edit replaces items and
    totals on the same row. There is no delete or cancel state.

    change is never stored: amount_paid_cents - total_amount_cents.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        db.UniqueConstraint("no", name="uq_transactions_no"),
        db.Index("ix_transactions_type_created", "type", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable number, e.g. "SAL-20260101-001"
    no = db.Column(db.String(32), nullable=False)
    type = db.Column(db.String(16), nullable=False, index=True)

    # Business date (may be earlier than created_at, never in the future)
    date = db.Column(db.Date, nullable=False, index=True)
    description = db.Column(db.Text, nullable=True)

    # Purchase / sale only
    total_amount_cents = db.Column(db.Integer, nullable=True)

    # Sale only
    amount_paid_cents = db.Column(db.Integer, nullable=True)
    payment_method = db.Column(db.String(16), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    updated_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    items = db.relationship(
        "TransactionItem",
        backref="transaction",
        lazy=True,
        order_by="TransactionItem.id",
    )
    creator = db.relationship("User", foreign_keys=[created_by])

    @property
    def change_cents(self) -> int | None:
        if self.type != "sale" or self.amount_paid_cents is None:
            return None
        return self.amount_paid_cents - (self.total_amount_cents or 0)

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "no": self.no,
            "type": self.type,
            "date": to_iso_date(self.date),
            "description": self.description,
            "total_amount_cents": self.total_amount_cents,
            "amount_paid_cents": self.amount_paid_cents,
            "payment_method": self.payment_method,
            "change_cents": self.change_cents,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at) if self.updated_at else None,
            "created_by": self.created_by,
            "created_by_name": self.creator.name if self.creator else None,
            "updated_by": self.updated_by,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class TransactionItem(db.Model):
    """
    One line of a transaction. Replaced wholesale on update (not versioned).

    qty is always as entered: positive for purchase/sale, signed for adjustment.
    """
    __tablename__ = "transaction_items"
    __table_args__ = (
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    unit_id = db.Column(db.Integer, db.ForeignKey("units.id"), nullable=False)

    qty = db.Column(db.Integer, nullable=False)

    # Conversion factor the line was posted with; reversal negates qty * unit_factor
    unit_factor = db.Column(db.Integer, nullable=False)

    # Price per unit at posting time (purchase / sale only)
    unit_price_cents = db.Column(db.Integer, nullable=True)
    line_total_cents = db.Column(db.Integer, nullable=True)

    description = db.Column(db.String(255), nullable=True)

    product = db.relationship("Product")
    unit = db.relationship("Unit")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "sku": self.product.sku if self.product else None,
            "barcode": self.product.barcode if self.product else None,
            "unit_id": self.unit_id,
            "unit_name": self.unit.name if self.unit else None,
            "qty": self.qty,
            "unit_factor": self.unit_factor,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "description": self.description,
        }


class TransactionSequence(db.Model):
    """
    Atomic per-type, per-day transaction number sequences.

    WHY: Counting today's rows to derive the next number races under
    concurrent writers; a counter row updated in the same unit of work does not.
    """
    __tablename__ = "transaction_sequences"
    __table_args__ = (
        db.UniqueConstraint("type", "day", name="uq_transaction_sequences_type_day"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(16), nullable=False)
    day = db.Column(db.Date, nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "day": to_iso_date(self.day),
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
