# backend/stockledger/routes/conversions.py
"""
Unit conversion registry routes.

SECURITY: All routes require authentication.

Prices are integer cents per unit; unit_qty is the number of base units one
unit represents for the product and type.
"""
from flask import Blueprint, request, g

from ..models import Conversion
from ..errors import LedgerError, ValidationError
from ..validation import CONVERSION_POLICY, validate_payload, enforce_rules_conversion
from ..decorators import require_auth
from ..responses import error_response, internal_error_response
from ..services import conversion_service


conversions_bp = Blueprint("conversions", __name__, url_prefix="/api/conversions")


def _conversion_payload() -> tuple[dict, str | None]:
    payload = dict(request.get_json(silent=True) or {})
    note = payload.pop("note", None)
    if note is not None and not isinstance(note, str):
        raise ValidationError("note must be a string")

    patch = validate_payload(
        model=Conversion,
        payload=payload,
        policy=CONVERSION_POLICY,
        partial=False,
    )
    enforce_rules_conversion(patch)
    patch.setdefault("is_default", False)
    return patch, note


@conversions_bp.post("")
@require_auth
def create_conversion_route():
    try:
        patch, note = _conversion_payload()
        conversion = conversion_service.create_conversion(
            **patch,
            note=note,
            actor_user_id=g.current_user.id,
        )
        return {"conversion": conversion.to_dict()}, 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error_response("Failed to create conversion")


@conversions_bp.get("")
@require_auth
def list_conversions_route():
    try:
        result = conversion_service.list_conversions(
            search=request.args.get("search"),
            page=request.args.get("page", type=int),
            limit=request.args.get("limit", type=int),
        )
        return result, 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error_response("Failed to list conversions")


@conversions_bp.get("/<int:conversion_id>")
@require_auth
def get_conversion_route(conversion_id: int):
    try:
        conversion = conversion_service.get_conversion(conversion_id)
        return {"conversion": conversion.to_dict()}, 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error_response("Failed to get conversion")


@conversions_bp.put("/<int:conversion_id>")
@require_auth
def update_conversion_route(conversion_id: int):
    """Full replacement; a changed price appends price history."""
    try:
        patch, note = _conversion_payload()
        conversion = conversion_service.update_conversion(
            conversion_id,
            **patch,
            note=note,
            actor_user_id=g.current_user.id,
        )
        return {"conversion": conversion.to_dict()}, 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error_response("Failed to update conversion")


@conversions_bp.delete("/<int:conversion_id>")
@require_auth
def deactivate_conversion_route(conversion_id: int):
    """Soft delete: the conversion stops resolving, ledger rows are untouched."""
    try:
        conversion = conversion_service.deactivate_conversion(
            conversion_id,
            actor_user_id=g.current_user.id,
        )
        return {"conversion": conversion.to_dict()}, 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error_response("Failed to deactivate conversion")


@conversions_bp.get("/products/<int:product_id>")
@require_auth
def conversions_by_product_route(product_id: int):
    try:
        conv_type = request.args.get("type", "all")
        if conv_type not in ("purchase", "sale", "all"):
            raise ValidationError("type must be one of purchase, sale, all")
        return {"data": conversion_service.get_conversions_by_product(product_id, conv_type)}, 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error_response("Failed to list product conversions")


@conversions_bp.get("/products/<int:product_id>/defaults")
@require_auth
def default_conversions_route(product_id: int):
    try:
        return conversion_service.get_default_conversions(product_id), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error_response("Failed to get default conversions")


@conversions_bp.get("/products/<int:product_id>/detail")
@require_auth
def conversion_detail_route(product_id: int):
    try:
        return conversion_service.get_product_conversion_detail(product_id), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error_response("Failed to get conversion detail")
