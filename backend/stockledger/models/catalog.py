from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z


class Unit(db.Model):
    """
    Unit of measure master data (e.g. "pcs", "box").

    A unit carries no conversion factor of its own; factors are configured per
    product and type on Conversion.
    """
    __tablename__ = "units"
    __table_args__ = (
        db.UniqueConstraint("name", name="uq_units_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Unit id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "is_active": self.is_active,
        }


class Product(db.Model):
    """
    Product master data, read-only from the ledger's point of view.

    base_unit_id is the unit a conversion factor of 1 stands for; it is only
    used for display when a product has no default sale unit configured.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_name", "name"),
        db.Index("ix_products_active", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=True, index=True)
    barcode = db.Column(db.String(64), nullable=True, index=True)
    description = db.Column(db.Text, nullable=True)

    base_unit_id = db.Column(db.Integer, db.ForeignKey("units.id"), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Bumped by every stock-changing unit of work; the UPDATE doubles as the
    # per-product write lock.
    stock_version = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    base_unit = db.relationship("Unit", foreign_keys=[base_unit_id])

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "sku": self.sku,
            "barcode": self.barcode,
            "description": self.description,
            "base_unit_id": self.base_unit_id,
            "base_unit_name": self.base_unit.name if self.base_unit else None,
            "is_active": self.is_active,
            "stock_version": self.stock_version,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
