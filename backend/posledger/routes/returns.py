# Overview: Flask API routes for returns; parses input and returns JSON responses.

from flask import Blueprint, g, jsonify, request

from ..decorators import require_auth
from ..services import transaction_service
from ..validation import LedgerError, require_json_object
from .responses import error_response, internal_error

returns_bp = Blueprint("returns", __name__, url_prefix="/api/returns")


@returns_bp.post("")
@require_auth
def process_return_route():
    """
    Return units from earlier checkout lines.

    Request body:
    {
        "items": [{"sale_id": 12, "product_id": 3, "quantity": 1, "reason": "Damaged"}],
        "threshold": 5  (optional)
    }

    Returns:
        200: {success, action, transaction_nos, summary, message}
        400: invalid input, over-return, or voided original
        404: sale not found
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        result = transaction_service.process_return(
            data.get("items"),
            threshold=data.get("threshold"),
            acting_user_id=g.current_user.id,
        )
        return jsonify(result), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to process return")
