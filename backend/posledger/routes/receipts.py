# Overview: Flask API routes for receipts; read-only views of non-voided checkouts.

from flask import Blueprint, g, jsonify, request

from ..decorators import require_auth
from ..services import reporting_service
from ..validation import LedgerError
from .responses import error_response, internal_error

receipts_bp = Blueprint("receipts", __name__, url_prefix="/api/receipts")


@receipts_bp.get("")
@require_auth
def list_receipts_route():
    """
    Query params: date_from, date_to, transaction_no, user_id (admins only).
    Staff only see receipts they rang up.
    """
    try:
        transactions = reporting_service.list_receipts(
            g.current_user,
            date_from=request.args.get("date_from"),
            date_to=request.args.get("date_to"),
            transaction_no=request.args.get("transaction_no"),
            user_id=request.args.get("user_id"),
        )
        return jsonify({"transactions": transactions}), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to fetch receipts")


@receipts_bp.get("/<transaction_no>")
@require_auth
def get_receipt_route(transaction_no: str):
    try:
        receipt = reporting_service.get_receipt(transaction_no, g.current_user)
        return jsonify({"receipt": receipt}), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to fetch receipt")
