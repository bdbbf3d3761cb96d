from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z, utcnow


CONVERSION_TYPES = ("purchase", "sale")


class Conversion(db.Model):
    """
    Per-product unit configuration for one transaction type.

    unit_qty is the number of base units one `unit` represents for this
    product and type; unit_price_cents is the price of one `unit`.

    INVARIANTS:
    - At most one ACTIVE row per (product_id, unit_id, type)  (partial unique index)
    - At most one ACTIVE row per (product_id, type) with is_default = True
      (maintained by conversion_service.set_default)
    - Rows are deactivated, never deleted; ledger movements keep the factor
      they were written with.
    """
    __tablename__ = "conversions"
    __table_args__ = (
        db.Index(
            "uq_conversions_active_product_unit_type",
            "product_id",
            "unit_id",
            "type",
            unique=True,
            sqlite_where=db.text("is_active = 1"),
            postgresql_where=db.text("is_active"),
        ),
        db.Index("ix_conversions_product_type_active", "product_id", "type", "is_active"),
        db.CheckConstraint("unit_qty > 0", name="ck_conversions_unit_qty_positive"),
        db.CheckConstraint("unit_price_cents >= 0", name="ck_conversions_price_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    unit_id = db.Column(db.Integer, db.ForeignKey("units.id"), nullable=False, index=True)

    # "purchase" | "sale"
    type = db.Column(db.String(16), nullable=False)

    unit_qty = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)

    is_default = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    updated_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    product = db.relationship("Product", backref=db.backref("conversions", lazy=True))
    unit = db.relationship("Unit")

    def __repr__(self) -> str:
        return (
            f"<Conversion id={self.id} product_id={self.product_id} unit_id={self.unit_id} "
            f"type={self.type} qty={self.unit_qty} default={self.is_default}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "unit_id": self.unit_id,
            "unit_name": self.unit.name if self.unit else None,
            "type": self.type,
            "unit_qty": self.unit_qty,
            "unit_price_cents": self.unit_price_cents,
            "is_default": self.is_default,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "created_by": self.created_by,
            "updated_by": self.updated_by,
        }


class ConversionLog(db.Model):
    """
    Append-only price history for a conversion.

    The open entry (valid_to IS NULL) is the price currently in force; it is
    closed before the next one opens, so each conversion has at most one.
    """
    __tablename__ = "conversion_logs"
    __table_args__ = (
        db.Index("ix_conversion_logs_conversion_open", "conversion_id", "valid_to"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    conversion_id = db.Column(db.Integer, db.ForeignKey("conversions.id"), nullable=False, index=True)

    # NULL on the row written when the conversion is created
    old_price_cents = db.Column(db.Integer, nullable=True)
    new_price_cents = db.Column(db.Integer, nullable=False)
    note = db.Column(db.String(255), nullable=True)

    valid_from = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    valid_to = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    conversion = db.relationship("Conversion", backref=db.backref("logs", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversion_id": self.conversion_id,
            "old_price_cents": self.old_price_cents,
            "new_price_cents": self.new_price_cents,
            "note": self.note,
            "valid_from": to_utc_z(self.valid_from),
            "valid_to": to_utc_z(self.valid_to) if self.valid_to else None,
            "created_by": self.created_by,
        }


class StockEntry(db.Model):
    """
    Ledger movement: the system of record for quantity.

    APPEND-ONLY: rows are never updated or deleted. A correction is a new row
    with the negated quantity (is_reversal = True).

    qty is signed and expressed in unit_id. unit_factor is the conversion
    factor in force when the row was written and base_qty = qty * unit_factor,
    so aggregation never depends on later factor changes.
    """
    __tablename__ = "stocks"
    __table_args__ = (
        db.Index("ix_stocks_product_created", "product_id", "created_at"),
        db.Index("ix_stocks_transaction", "transaction_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=True)

    # "purchase" | "sale" | "adjustment" (the originating transaction's type)
    type = db.Column(db.String(16), nullable=False, index=True)

    qty = db.Column(db.Integer, nullable=False)
    unit_id = db.Column(db.Integer, db.ForeignKey("units.id"), nullable=False)
    unit_factor = db.Column(db.Integer, nullable=False)
    base_qty = db.Column(db.Integer, nullable=False)

    is_reversal = db.Column(db.Boolean, nullable=False, default=False)

    description = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    unit = db.relationship("Unit")
    creator = db.relationship("User", foreign_keys=[created_by])
    transaction = db.relationship("Transaction", backref=db.backref("stock_entries", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "transaction_id": self.transaction_id,
            "transaction_no": self.transaction.no if self.transaction else None,
            "type": self.type,
            "qty": self.qty,
            "unit_id": self.unit_id,
            "unit_name": self.unit.name if self.unit else None,
            "unit_factor": self.unit_factor,
            "base_qty": self.base_qty,
            "is_reversal": self.is_reversal,
            "description": self.description,
            "created_at": to_utc_z(self.created_at),
            "created_by": self.created_by,
            "created_by_name": self.creator.name if self.creator else None,
        }
