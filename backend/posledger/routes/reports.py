# Overview: Flask API routes for reports; admin-only analytics over the ledger.

from flask import Blueprint, jsonify, request

from ..decorators import require_admin, require_auth
from ..services import reporting_service
from ..validation import LedgerError
from .responses import error_response, internal_error

reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")


def _date_args():
    return request.args.get("date_from"), request.args.get("date_to")


@reports_bp.get("/top-products")
@require_auth
@require_admin
def top_products_route():
    try:
        report = reporting_service.top_products(
            period=request.args.get("period", "30days"),
            limit=request.args.get("limit", 10),
        )
        return jsonify(report), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to build top products report")


@reports_bp.get("/revenue-trends")
@require_auth
@require_admin
def revenue_trends_route():
    try:
        report = reporting_service.revenue_trends(
            group_by=request.args.get("group_by", "day"),
            start=request.args.get("start") or request.args.get("date_from"),
            end=request.args.get("end") or request.args.get("date_to"),
        )
        return jsonify(report), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to build revenue trends report")


@reports_bp.get("/profit-margin")
@require_auth
@require_admin
def profit_margin_route():
    try:
        date_from, date_to = _date_args()
        return jsonify(reporting_service.profit_margin(date_from, date_to)), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to build profit margin report")


@reports_bp.get("/sales-performance")
@require_auth
@require_admin
def sales_performance_route():
    try:
        report = reporting_service.sales_performance(period=request.args.get("period", "6months"))
        return jsonify(report), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to build sales performance report")


@reports_bp.get("/stock-movements")
@require_auth
@require_admin
def stock_movements_route():
    try:
        date_from, date_to = _date_args()
        report = reporting_service.stock_movements(
            page=request.args.get("page", 1),
            page_size=request.args.get("page_size", 50),
            movement_type=request.args.get("type") or None,
            product_id=request.args.get("product_id"),
            date_from=date_from,
            date_to=date_to,
        )
        return jsonify(report), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to build stock movements report")


@reports_bp.get("/returned-items")
@require_auth
@require_admin
def returned_items_route():
    try:
        date_from, date_to = _date_args()
        return jsonify(reporting_service.returned_items(date_from, date_to)), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to build returned items report")


@reports_bp.get("/void-items")
@require_auth
@require_admin
def void_items_route():
    try:
        date_from, date_to = _date_args()
        return jsonify(reporting_service.void_items(date_from, date_to)), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to build void items report")


@reports_bp.get("/stock-alerts")
@require_auth
@require_admin
def stock_alerts_route():
    """threshold query param overrides the configured default for products without their own."""
    try:
        threshold = request.args.get("threshold", type=int)
        return jsonify(reporting_service.stock_alerts(threshold)), 200
    except LedgerError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to build stock alerts report")
