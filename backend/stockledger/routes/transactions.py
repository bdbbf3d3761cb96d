# backend/stockledger/routes/transactions.py
"""
Transaction routes: purchases, sales and adjustments.

Each POST/PUT is one unit of work: on any error nothing is written and no
transaction number is consumed.

SECURITY: All routes require authentication; the caller is recorded as
created_by / updated_by.
"""
from flask import Blueprint, request, g

from ..errors import LedgerError, NotFoundError
from ..validation import parse_transaction_payload
from ..decorators import require_auth
from ..responses import error_response, internal_error_response
from ..services import transaction_service


transactions_bp = Blueprint("transactions", __name__, url_prefix="/api/transactions")

# URL segment -> transaction type
KINDS = {
    "purchases": "purchase",
    "sales": "sale",
    "adjustments": "adjustment",
}


def _txn_type(kind: str) -> str:
    txn_type = KINDS.get(kind)
    if txn_type is None:
        raise NotFoundError(f"Unknown transaction kind: {kind}")
    return txn_type


@transactions_bp.get("")
@require_auth
def list_transactions_route():
    try:
        result = transaction_service.list_transactions(
            page=request.args.get("page", type=int),
            limit=request.args.get("limit", type=int),
            search=request.args.get("search"),
            type=request.args.get("type") or None,
            sort_by=request.args.get("sort_by", "time"),
            sort_order=request.args.get("sort_order", "desc"),
        )
        return result, 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error_response("Failed to list transactions")


@transactions_bp.post("/<kind>")
@require_auth
def create_transaction_route(kind: str):
    try:
        data = parse_transaction_payload(_txn_type(kind), request.get_json(silent=True))
        txn = transaction_service.create_transaction(data, actor_user_id=g.current_user.id)
        return {"transaction": txn.to_dict()}, 201
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error_response(f"Failed to create {kind}")


@transactions_bp.get("/<kind>/<int:transaction_id>")
@require_auth
def get_transaction_route(kind: str, transaction_id: int):
    try:
        txn = transaction_service.get_transaction(_txn_type(kind), transaction_id)
        return {"transaction": txn.to_dict()}, 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error_response(f"Failed to get {kind}")


@transactions_bp.put("/<kind>/<int:transaction_id>")
@require_auth
def update_transaction_route(kind: str, transaction_id: int):
    try:
        txn_type = _txn_type(kind)
        data = parse_transaction_payload(txn_type, request.get_json(silent=True))
        txn = transaction_service.update_transaction(
            txn_type,
            transaction_id,
            data,
            actor_user_id=g.current_user.id,
        )
        return {"transaction": txn.to_dict()}, 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error_response(f"Failed to update {kind}")
