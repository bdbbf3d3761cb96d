# Overview: Engine error taxonomy; each error knows the HTTP status the request layer answers with.

from __future__ import annotations


class LedgerError(Exception):
    """Base class for expected, client-facing engine failures."""

    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(LedgerError, ValueError):
    """400-level input problem."""


class NotConfiguredError(LedgerError):
    """A (product, unit, type) used in a line has no active conversion."""


class InsufficientPaymentError(LedgerError):
    """Sale amount paid is below the computed total."""

    def __init__(self, total_cents: int, paid_cents: int):
        shortfall = total_cents - paid_cents
        super().__init__(
            f"Insufficient payment. Total amount: {total_cents}, paid: {paid_cents}, shortfall: {shortfall}",
            details={
                "total_amount_cents": total_cents,
                "amount_paid_cents": paid_cents,
                "shortfall_cents": shortfall,
            },
        )
        self.shortfall = shortfall


class StockWouldGoNegativeError(LedgerError):
    """Stock Guard rejection; carries the simulated figures for diagnostics."""

    def __init__(
        self,
        *,
        product_id: int,
        product_name: str,
        unit_id: int | None,
        unit_name: str | None,
        current,
        old,
        new,
        resulting,
    ):
        unit_label = unit_name or "base unit"
        super().__init__(
            f'Stock for product "{product_name}" with unit "{unit_label}" would become negative '
            f"(current: {current}, old: {old}, new: {new}, resulting: {resulting}). Operation rejected.",
            details={
                "product_id": product_id,
                "product_name": product_name,
                "unit_id": unit_id,
                "unit_name": unit_name,
                "current": current,
                "old": old,
                "delta": new,
                "resulting": resulting,
            },
        )
        self.product_id = product_id
        self.unit_id = unit_id
        self.current = current
        self.old = old
        self.delta = new
        self.resulting = resulting


class DuplicateError(LedgerError):
    """409-level business rule conflict (e.g., duplicate active conversion)."""

    status_code = 409


class NotFoundError(LedgerError):
    status_code = 404
