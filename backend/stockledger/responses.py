# Overview: JSON error responses shared by the API routes.

import traceback

from flask import current_app, jsonify

from .errors import LedgerError


def _with_trace(body: dict) -> dict:
    if current_app.config.get("INCLUDE_ERROR_TRACE"):
        body["trace"] = traceback.format_exc().splitlines()
    return body


def error_response(exc: LedgerError):
    """{"error": ..., "details": ...} with the status the error carries."""
    return jsonify(_with_trace(exc.to_dict())), exc.status_code


def internal_error_response(log_message: str):
    """Log the active exception and answer 500."""
    current_app.logger.exception(log_message)
    return jsonify(_with_trace({"error": "Internal server error"})), 500
