# Overview: Flask API routes for checkout; sales and direct voids through the transaction engine.

"""
Checkout API

POST /api/checkout
{
    "items": [{"product_id": 1, "quantity": 2}, ...],
    "action": "sale" | "void",          (optional, default: sale)
    "threshold": 5,                       (optional low-stock threshold)
    "original_transaction_no": "checkout-1718000000000",   (voids)
    "requested_by_user_id": 7,            (voids on behalf of staff)
    "approved_by": 1                      (voids; must be the caller if given)
}

Voids require the Admin role; staff go through /api/void-requests.
"""

from flask import Blueprint, g, jsonify, request

from ..decorators import require_auth
from ..services import transaction_service
from ..validation import ForbiddenError, InvalidInputError, LedgerError, coerce_id, require_json_object
from .responses import error_response, internal_error

checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")


@checkout_bp.post("")
@require_auth
def checkout_route():
    try:
        data = require_json_object(request.get_json(silent=True))
        action = data.get("action", "sale")
        user = g.current_user

        requested_by = None
        approved_by = None
        if action == "void":
            if not user.is_admin:
                raise ForbiddenError("Only admins can void transactions; submit a void request instead")
            raw_requester = data.get("requested_by_user_id")
            requested_by = coerce_id(raw_requester)
            if raw_requester not in (None, "") and requested_by is None:
                raise InvalidInputError("requested_by_user_id must be a user id")
            claimed = data.get("approved_by")
            if claimed not in (None, "") and coerce_id(claimed) != user.id:
                raise ForbiddenError("A void can only be approved by the admin submitting it")
            approved_by = user.id

        result = transaction_service.checkout(
            data.get("items"),
            action=action,
            threshold=data.get("threshold"),
            acting_user_id=user.id,
            requested_by_user_id=requested_by,
            approved_by_user_id=approved_by,
            original_transaction_no=data.get("original_transaction_no"),
        )
        return jsonify(result), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to process checkout")
