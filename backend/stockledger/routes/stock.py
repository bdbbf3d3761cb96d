# backend/stockledger/routes/stock.py
"""
Stock routes (read-only).

Stock is derived from the ledger; it is shown in each product's default sale
unit, or in base units when none is configured.

SECURITY: All routes require authentication.
"""
from flask import Blueprint, request

from ..errors import LedgerError
from ..decorators import require_auth
from ..responses import error_response, internal_error_response
from ..services import stock_service


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


@stock_bp.get("")
@require_auth
def list_stock_route():
    try:
        result = stock_service.list_stock(
            search=request.args.get("search"),
            page=request.args.get("page", type=int),
            limit=request.args.get("limit", type=int),
            sort_by=request.args.get("sort_by", "name"),
            sort_order=request.args.get("sort_order", "asc"),
        )
        return result, 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error_response("Failed to list stock")


@stock_bp.get("/<int:product_id>")
@require_auth
def current_stock_route(product_id: int):
    try:
        return stock_service.get_current_stock(product_id), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error_response("Failed to get current stock")


@stock_bp.get("/<int:product_id>/history")
@require_auth
def stock_history_route(product_id: int):
    try:
        result = stock_service.get_stock_history(
            product_id,
            page=request.args.get("page", type=int),
            limit=request.args.get("limit", type=int),
        )
        return result, 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error_response("Failed to get stock history")
