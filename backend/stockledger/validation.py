from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import DeclarativeMeta

from .errors import ValidationError
from .models import CONVERSION_TYPES, PAYMENT_METHODS, TRANSACTION_TYPES
from stockledger.time_utils import parse_business_date, today


# Maximum price: 9,999,999.99 (999,999,999 cents)
MAX_PRICE_CENTS = 999_999_999

# Largest factor one unit may represent in base units
MAX_UNIT_QTY = 1_000_000


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


CONVERSION_POLICY = ModelValidationPolicy(
    writable_fields={"product_id", "unit_id", "unit_qty", "unit_price_cents", "type", "is_default"},
    required_on_create={"product_id", "unit_id", "unit_qty", "unit_price_cents", "type"},
)


def coerce_int(key: str, value: Any) -> int:
    """Strict integer coercion: rejects bools, floats, decimals and scientific notation."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{key} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{key} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{key} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{key} must be an integer, not a decimal")
    raise ValidationError(f"{key} must be an integer")


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_int(col.key, value)

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{col.key} must be a boolean")

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned dict with only writable fields.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def _check_price(key: str, price: int) -> None:
    if price < 0:
        raise ValidationError(f"{key} must be >= 0")
    if price > MAX_PRICE_CENTS:
        raise ValidationError(f"{key} cannot exceed {MAX_PRICE_CENTS}")


def enforce_rules_conversion(patch: dict) -> None:
    """Business rules for conversions not captured by column metadata."""
    if patch.get("type") not in CONVERSION_TYPES:
        raise ValidationError(f"type must be one of {', '.join(CONVERSION_TYPES)}")

    unit_qty = patch.get("unit_qty")
    if unit_qty is None or unit_qty <= 0:
        raise ValidationError("unit_qty must be > 0")
    if unit_qty > MAX_UNIT_QTY:
        raise ValidationError(f"unit_qty cannot exceed {MAX_UNIT_QTY}")

    _check_price("unit_price_cents", patch["unit_price_cents"])


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LineInput:
    product_id: int
    unit_id: int
    qty: int
    unit_price_cents: int | None = None
    description: str | None = None


@dataclass(frozen=True)
class TransactionInput:
    type: str
    date: date
    lines: list[LineInput] = field(default_factory=list)
    description: str | None = None
    amount_paid_cents: int | None = None
    payment_method: str | None = None


_LINE_FIELDS = {
    "purchase": {"product_id", "unit_id", "qty", "unit_price_cents", "description"},
    "sale": {"product_id", "unit_id", "qty", "description"},
    "adjustment": {"product_id", "unit_id", "qty", "description"},
}

_HEADER_FIELDS = {
    "purchase": {"date", "description", "items"},
    "sale": {"date", "description", "items", "amount_paid_cents", "payment_method"},
    "adjustment": {"date", "description", "items"},
}


def _optional_text(key: str, value: Any, max_length: int | None = None) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    value = value.strip()
    if max_length and len(value) > max_length:
        raise ValidationError(f"{key} exceeds max length {max_length}")
    return value or None


def _parse_line(txn_type: str, index: int, raw: Any) -> LineInput:
    where = f"items[{index}]"
    if not isinstance(raw, dict):
        raise ValidationError(f"{where} must be an object")

    for k in raw.keys():
        if k not in _LINE_FIELDS[txn_type]:
            raise ValidationError(f"Field not allowed: {where}.{k}")

    missing = [k for k in ("product_id", "unit_id", "qty") if raw.get(k) is None]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(f'{where}.{k}' for k in missing)}")

    product_id = coerce_int(f"{where}.product_id", raw["product_id"])
    unit_id = coerce_int(f"{where}.unit_id", raw["unit_id"])
    qty = coerce_int(f"{where}.qty", raw["qty"])

    if txn_type == "adjustment":
        if qty == 0:
            raise ValidationError(f"{where}.qty must not be 0 for adjustment")
    elif qty <= 0:
        raise ValidationError(f"{where}.qty must be > 0 for {txn_type}")

    price = None
    if raw.get("unit_price_cents") is not None:
        price = coerce_int(f"{where}.unit_price_cents", raw["unit_price_cents"])
        _check_price(f"{where}.unit_price_cents", price)

    return LineInput(
        product_id=product_id,
        unit_id=unit_id,
        qty=qty,
        unit_price_cents=price,
        description=_optional_text(f"{where}.description", raw.get("description"), 255),
    )


def parse_transaction_payload(txn_type: str, payload: Any) -> TransactionInput:
    """
    Validate a create/update payload for one transaction type.

    All checks here are structural; product, unit and conversion checks need the
    database and happen in the engine.
    """
    if txn_type not in TRANSACTION_TYPES:
        raise ValidationError(f"type must be one of {', '.join(TRANSACTION_TYPES)}")
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    for k in payload.keys():
        if k not in _HEADER_FIELDS[txn_type]:
            raise ValidationError(f"Field not allowed: {k}")

    raw_date = payload.get("date")
    if raw_date in (None, ""):
        business_date = today()
    else:
        try:
            business_date = parse_business_date(raw_date)
        except ValueError:
            raise ValidationError("date must be an ISO-8601 date (YYYY-MM-DD)")
        business_date = business_date or today()
    if business_date > today():
        raise ValidationError("date cannot be in the future")

    description = _optional_text("description", payload.get("description"))
    if txn_type == "adjustment" and not description:
        raise ValidationError("description is required for adjustment")

    items = payload.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")
    lines = [_parse_line(txn_type, i, raw) for i, raw in enumerate(items)]

    amount_paid = None
    payment_method = None
    if txn_type == "sale":
        if payload.get("amount_paid_cents") is None:
            raise ValidationError("amount_paid_cents is required for sale")
        amount_paid = coerce_int("amount_paid_cents", payload["amount_paid_cents"])
        _check_price("amount_paid_cents", amount_paid)

        payment_method = payload.get("payment_method")
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"payment_method must be one of {', '.join(PAYMENT_METHODS)}")

    return TransactionInput(
        type=txn_type,
        date=business_date,
        lines=lines,
        description=description,
        amount_paid_cents=amount_paid,
        payment_method=payment_method,
    )
