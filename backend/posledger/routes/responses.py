# Overview: Shared JSON error rendering for API routes.

from flask import current_app, jsonify

from ..validation import LedgerError


def error_response(exc: LedgerError):
    return jsonify(exc.to_dict()), exc.status_code


def internal_error(message: str):
    """Log the active exception and render a generic 500."""
    current_app.logger.exception(message)
    return jsonify({"error": "Internal server error", "kind": "InternalError", "details": []}), 500
