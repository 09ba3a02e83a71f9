# Overview: Flask API routes for void requests; staff submit, admins list and resolve.

from flask import Blueprint, g, jsonify, request

from ..decorators import require_admin, require_auth
from ..services import void_request_service
from ..validation import ForbiddenError, LedgerError, require_json_object
from .responses import error_response, internal_error

void_requests_bp = Blueprint("void_requests", __name__, url_prefix="/api/void-requests")


@void_requests_bp.post("")
@require_auth
def create_void_request_route():
    """
    Request a void of a whole checkout.

    Request body:
    {
        "transaction_no": "checkout-1718000000000",
        "reason": "Customer changed mind",
        "transaction_data": {"items": [{"product_id": 1, "quantity": 2}]}
    }
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        void_request = void_request_service.create_void_request(
            data.get("transaction_no"),
            data.get("reason"),
            data.get("transaction_data"),
            g.current_user,
        )
        return jsonify({"success": True, "void_request": void_request.to_dict()}), 201

    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to create void request")


@void_requests_bp.get("")
@require_auth
@require_admin
def list_void_requests_route():
    try:
        status = request.args.get("status") or None
        void_requests = void_request_service.list_void_requests(status)
        return jsonify({"void_requests": [vr.to_dict() for vr in void_requests]}), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to list void requests")


@void_requests_bp.get("/<int:void_request_id>")
@require_auth
def get_void_request_route(void_request_id: int):
    """Admins see any request; staff only their own."""
    try:
        void_request = void_request_service.get_void_request(void_request_id)
        user = g.current_user
        if not user.is_admin and void_request.requested_by_user_id != user.id:
            raise ForbiddenError("You can only view your own void requests")
        return jsonify({"void_request": void_request.to_dict()}), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to fetch void request")


@void_requests_bp.patch("/<int:void_request_id>")
@require_auth
def resolve_void_request_route(void_request_id: int):
    """
    Approve or reject a pending void request.

    Request body:
    {
        "action": "approve" | "reject",
        "admin_password": "..."  (optional re-confirmation)
    }

    Returns:
        200: {success, void_request}
        400: invalid action or already processed
        401: admin password mismatch
        403: caller is not an admin
        404: void request not found
        500: void could not be posted; request left pending
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        void_request = void_request_service.resolve_void_request(
            void_request_id,
            data.get("action"),
            g.current_user,
            admin_password=data.get("admin_password"),
        )
        return jsonify({"success": True, "void_request": void_request.to_dict()}), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to resolve void request")
