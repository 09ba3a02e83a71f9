# Overview: Flask API routes for manual inventory adjustments.

from flask import Blueprint, g, jsonify, request

from ..decorators import require_admin, require_auth
from ..services import transaction_service
from ..validation import LedgerError, require_json_object
from .responses import error_response, internal_error

inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.post("/adjust")
@require_auth
@require_admin
def adjust_inventory_route():
    """
    Manual stock correction.

    Request body:
    {
        "product_id": 1,
        "quantity_delta": -3,
        "reason": "Damaged in storage",
        "threshold": 5  (optional)
    }
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        result = transaction_service.adjust_stock(
            data.get("product_id"),
            data.get("quantity_delta"),
            data.get("reason"),
            acting_user_id=g.current_user.id,
            threshold=data.get("threshold"),
        )
        return jsonify(result), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to adjust inventory")
