# Overview: Read-only projections over the ledger; receipts, sales analytics and stock reports.

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import func
from sqlalchemy.orm import aliased

from ..extensions import db
from ..models import LedgerTransaction, Product, Sale, StockMovement, User, VoidRequest
from ..time_utils import parse_iso_datetime, parse_range_end, to_utc_z, utcnow
from ..validation import ForbiddenError, InvalidInputError, NotFoundError, coerce_int
from . import stock_status

PERIODS = {"7days": 7, "30days": 30, "all": None}
PERFORMANCE_PERIODS = ("7days", "30days", "6months")
GROUP_BY = ("day", "week", "month")
MOVEMENT_TYPES = ("sale", "void", "refund", "manual")
MAX_PAGE_SIZE = 200


def _parse_range(date_from: str | None, date_to: str | None) -> tuple[datetime | None, datetime | None]:
    """Date-only upper bounds cover the whole day."""
    try:
        start = parse_iso_datetime(date_from) if date_from else None
        end = parse_range_end(date_to) if date_to else None
    except ValueError:
        raise InvalidInputError("Invalid date", details=["Dates must be ISO-8601 (YYYY-MM-DD or YYYY-MM-DDTHH:MM)"])
    if start and end and start > end:
        raise InvalidInputError("Invalid date range", details=["date_from must not be after date_to"])
    return start, end


def _in_range(query, column, start, end):
    if start:
        query = query.filter(column >= start)
    if end:
        query = query.filter(column <= end)
    return query


def _voided_ids_subquery():
    return db.select(LedgerTransaction.reverses_transaction_id).where(
        LedgerTransaction.kind == "void",
        LedgerTransaction.reverses_transaction_id.isnot(None),
    )


def _not_reversing_voided(voided):
    """Returns made against a checkout that was later voided drop out with it."""
    return db.or_(
        LedgerTransaction.reverses_transaction_id.is_(None),
        ~LedgerTransaction.reverses_transaction_id.in_(voided),
    )


def _live_sale_lines():
    """Positive lines of checkouts that were never voided."""
    return db.session.query(Sale).join(
        LedgerTransaction, Sale.transaction_id == LedgerTransaction.id
    ).filter(
        LedgerTransaction.kind == "sale",
        Sale.quantity > 0,
        ~LedgerTransaction.id.in_(_voided_ids_subquery()),
    )


def voided_transaction_numbers() -> set[str]:
    """checkout-{T} numbers that have a matching void."""
    original = aliased(LedgerTransaction)
    rows = db.session.query(original.transaction_no).join(
        LedgerTransaction, LedgerTransaction.reverses_transaction_id == original.id
    ).filter(LedgerTransaction.kind == "void").all()
    return {row[0] for row in rows}


# =============================================================================
# RECEIPTS
# =============================================================================

def _returned_by_line(sale_ids: list[int]) -> dict[int, int]:
    if not sale_ids:
        return {}
    rows = db.session.query(Sale.reverses_sale_id, func.sum(-Sale.quantity)).join(
        LedgerTransaction, Sale.transaction_id == LedgerTransaction.id
    ).filter(
        LedgerTransaction.kind == "return",
        Sale.reverses_sale_id.in_(sale_ids),
    ).group_by(Sale.reverses_sale_id).all()
    return {sale_id: int(qty or 0) for sale_id, qty in rows}


def _build_receipts(lines: list[Sale]) -> list[dict]:
    returned = _returned_by_line([line.id for line in lines])
    receipts: dict[str, dict] = {}
    for line in lines:
        receipt = receipts.get(line.ref_id)
        if receipt is None:
            receipt = receipts[line.ref_id] = {
                "transaction_no": line.ref_id,
                "date_time": to_utc_z(line.created_at),
                "user_id": line.user_id,
                "handled_by": line.user.email if line.user else None,
                "items": [],
                "subtotal_cents": 0,
                "total_cents": 0,
            }
        product = line.product
        receipt["items"].append({
            "sale_id": line.id,
            "product_id": line.product_id,
            "name": product.name if product else "Unknown Product",
            "barcode": product.barcode if product else None,
            "unit_price_cents": line.unit_price_cents,
            "quantity": line.quantity,
            "total_cents": line.total_amount_cents,
            "returned_quantity": returned.get(line.id, 0),
        })
        receipt["subtotal_cents"] += line.total_amount_cents
        receipt["total_cents"] += line.total_amount_cents
    return list(receipts.values())


def list_receipts(
    viewer: User,
    *,
    date_from: str | None = None,
    date_to: str | None = None,
    transaction_no: str | None = None,
    user_id=None,
) -> list[dict]:
    """
    Receipts for non-voided checkouts, newest first.

    Staff only ever see their own; admins may filter by user_id.
    """
    start, end = _parse_range(date_from, date_to)
    query = _in_range(_live_sale_lines(), Sale.created_at, start, end)

    if transaction_no:
        query = query.filter(Sale.ref_id.contains(transaction_no.strip()))

    if not viewer.is_admin:
        query = query.filter(Sale.user_id == viewer.id)
    elif user_id not in (None, ""):
        query = query.filter(Sale.user_id == coerce_int(user_id, "user_id"))

    lines = query.order_by(Sale.created_at.desc(), Sale.id.asc()).all()
    return _build_receipts(lines)


def get_receipt(transaction_no: str, viewer: User) -> dict:
    lines = _live_sale_lines().filter(Sale.ref_id == transaction_no).order_by(Sale.id.asc()).all()
    if not lines:
        raise NotFoundError("Receipt not found", details=[transaction_no])
    if not viewer.is_admin and lines[0].user_id != viewer.id:
        raise ForbiddenError("You can only view your own receipts")
    return _build_receipts(lines)[0]


# =============================================================================
# SALES ANALYTICS
# =============================================================================

def _period_start(period: str) -> datetime | None:
    if period not in PERIODS:
        raise InvalidInputError("Invalid period", details=[f"period must be one of: {', '.join(PERIODS)}"])
    days = PERIODS[period]
    if days is None:
        return None
    today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    return today - timedelta(days=days - 1)


def _net_by_product(start: datetime | None, end: datetime | None) -> dict[int, dict]:
    """Units and revenue per product: live sales minus returns against them."""
    voided = _voided_ids_subquery()
    query = db.session.query(
        Sale.product_id,
        func.coalesce(func.sum(Sale.quantity), 0),
        func.coalesce(func.sum(Sale.total_amount_cents), 0),
    ).join(LedgerTransaction, Sale.transaction_id == LedgerTransaction.id).filter(
        LedgerTransaction.kind.in_(("sale", "return")),
        ~LedgerTransaction.id.in_(voided),
        _not_reversing_voided(voided),
    )
    query = _in_range(query, Sale.created_at, start, end)
    rows = query.group_by(Sale.product_id).all()
    return {pid: {"sold": int(units), "revenue_cents": int(revenue)} for pid, units, revenue in rows}


def _trend(current: int, previous: int) -> str:
    if previous > 0:
        growth = (current - previous) / previous * 100
        return f"{'+' if growth >= 0 else ''}{round(growth)}%"
    if current > 0:
        return "+100%"
    return "+0%"


def top_products(period: str = "30days", limit=10) -> dict:
    limit = coerce_int(limit, "limit")
    if limit <= 0:
        raise InvalidInputError("limit must be positive")

    start = _period_start(period)
    current = _net_by_product(start, None)

    previous: dict[int, dict] = {}
    if start is not None:
        previous = _net_by_product(start - timedelta(days=PERIODS[period]), start - timedelta(microseconds=1))

    ranked = sorted(current.items(), key=lambda item: (-item[1]["sold"], item[0]))[:limit]
    names = {
        p.id: p.name
        for p in db.session.query(Product).filter(Product.id.in_([pid for pid, _ in ranked])).all()
    } if ranked else {}

    products = []
    for pid, stats in ranked:
        products.append({
            "product_id": pid,
            "name": names.get(pid, "Unknown Product"),
            "sold": stats["sold"],
            "revenue_cents": stats["revenue_cents"],
            "trend": _trend(stats["sold"], previous.get(pid, {}).get("sold", 0)) if start else None,
        })

    return {"period": period, "products": products}


def _bucket(dt: datetime, group_by: str) -> str:
    if group_by == "day":
        return dt.strftime("%Y-%m-%d")
    if group_by == "week":
        year, week, _ = dt.isocalendar()
        return f"{year}-W{week:02d}"
    return dt.strftime("%Y-%m")


def revenue_trends(group_by: str = "day", start: str | None = None, end: str | None = None) -> dict:
    """
    Revenue per day/week/month for non-voided checkouts, with returns netted.

    Buckets are computed in Python so the grouping is identical on every
    database backend.
    """
    if group_by not in GROUP_BY:
        raise InvalidInputError("group_by must be day, week, or month")
    start_dt, end_dt = _parse_range(start, end)

    voided = _voided_ids_subquery()
    query = db.session.query(
        Sale.created_at, Sale.quantity, Sale.total_amount_cents, LedgerTransaction.kind, LedgerTransaction.id
    ).join(LedgerTransaction, Sale.transaction_id == LedgerTransaction.id).filter(
        LedgerTransaction.kind.in_(("sale", "return")),
        ~LedgerTransaction.id.in_(voided),
        _not_reversing_voided(voided),
    )
    query = _in_range(query, Sale.created_at, start_dt, end_dt)

    buckets: dict[str, dict] = {}
    transactions: dict[str, set] = {}
    for created_at, quantity, total, kind, txn_id in query.order_by(Sale.created_at.asc()).all():
        key = _bucket(created_at, group_by)
        row = buckets.setdefault(key, {
            "period": key,
            "transactions": 0,
            "items_sold": 0,
            "gross_sales_cents": 0,
            "returns_cents": 0,
            "net_sales_cents": 0,
        })
        if kind == "sale":
            transactions.setdefault(key, set()).add(txn_id)
            row["items_sold"] += quantity
            row["gross_sales_cents"] += total
        else:
            row["returns_cents"] += -total
        row["net_sales_cents"] += total

    for key, row in buckets.items():
        row["transactions"] = len(transactions.get(key, ()))

    rows = [buckets[key] for key in sorted(buckets)]
    return {
        "group_by": group_by,
        "start": to_utc_z(start_dt),
        "end": to_utc_z(end_dt),
        "rows": rows,
        "total_net_sales_cents": sum(row["net_sales_cents"] for row in rows),
    }


def profit_margin(date_from: str | None = None, date_to: str | None = None) -> dict:
    start, end = _parse_range(date_from, date_to)
    lines = _in_range(_live_sale_lines(), Sale.created_at, start, end).all()

    by_product: dict[int, dict] = {}
    for line in lines:
        product = line.product
        cost = (product.unit_cost_cents or 0) if product else 0
        row = by_product.setdefault(line.product_id, {
            "product_id": line.product_id,
            "product_name": product.name if product else "Unknown Product",
            "cost_per_unit_cents": cost,
            "selling_price_cents": product.price_cents if product else line.unit_price_cents,
            "qty_sold": 0,
            "revenue_cents": 0,
            "cost_cents": 0,
        })
        row["qty_sold"] += line.quantity
        row["revenue_cents"] += line.total_amount_cents
        row["cost_cents"] += cost * line.quantity

    rows = []
    for row in by_product.values():
        row["total_profit_cents"] = row["revenue_cents"] - row["cost_cents"]
        row["profit_margin"] = (
            round(row["total_profit_cents"] / row["revenue_cents"] * 100, 2)
            if row["revenue_cents"] > 0 else 0.0
        )
        rows.append(row)
    rows.sort(key=lambda r: (-r["total_profit_cents"], r["product_id"]))
    return {"rows": rows}


def _performance_window(period: str) -> tuple[datetime, datetime, str]:
    """(start, end, chart grouping); 6months starts on the first of the month five months back."""
    if period not in PERFORMANCE_PERIODS:
        raise InvalidInputError(
            "Invalid period", details=[f"period must be one of: {', '.join(PERFORMANCE_PERIODS)}"]
        )
    now = utcnow()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "6months":
        months = today.year * 12 + today.month - 1 - 5
        return today.replace(year=months // 12, month=months % 12 + 1, day=1), now, "month"
    days = 7 if period == "7days" else 30
    return today - timedelta(days=days - 1), now, "day"


def _live_ledger_lines(start: datetime, end: datetime):
    """Sale, return and unlinked void lines; voided checkouts drop out together with their voids."""
    voided = _voided_ids_subquery()
    query = db.session.query(
        Sale.created_at, Sale.quantity, Sale.total_amount_cents, LedgerTransaction.id
    ).join(LedgerTransaction, Sale.transaction_id == LedgerTransaction.id).filter(
        LedgerTransaction.kind.in_(("sale", "void", "return")),
        ~LedgerTransaction.id.in_(voided),
        _not_reversing_voided(voided),
    )
    return _in_range(query, Sale.created_at, start, end).order_by(Sale.created_at.asc(), Sale.id.asc()).all()


def _growth(current: int, previous: int) -> float:
    if previous > 0:
        return round((current - previous) / previous * 100, 1)
    return 100.0 if current > 0 else 0.0


def _per(amount: int, count: int) -> int:
    return round(amount / count) if count else 0


def sales_performance(period: str = "6months") -> dict:
    """
    Gross versus net sales for the period, with a chart series and growth
    against the window of the same length just before it.

    Gross counts sale lines; returns and unlinked voids are the reversals
    netted from it.
    """
    start, end, group_by = _performance_window(period)

    gross = reversed_cents = units_sold = units_back = 0
    sales, reversals = set(), set()
    net_by_day: dict[str, int] = {}
    chart: dict[str, dict] = {}
    for created_at, quantity, total, txn_id in _live_ledger_lines(start, end):
        day = _bucket(created_at, "day")
        net_by_day[day] = net_by_day.get(day, 0) + total
        if quantity < 0:
            reversed_cents -= total
            units_back -= quantity
            reversals.add(txn_id)
            continue
        gross += total
        units_sold += quantity
        sales.add(txn_id)
        point = chart.setdefault(_bucket(created_at, group_by), {"sales_cents": 0, "transactions": set()})
        point["sales_cents"] += total
        point["transactions"].add(txn_id)

    peak_day, peak_cents = None, 0
    for day in sorted(net_by_day):
        if net_by_day[day] > peak_cents:
            peak_day, peak_cents = day, net_by_day[day]

    previous = _live_ledger_lines(start - (end - start), start - timedelta(microseconds=1))
    previous_net = sum(total for _, _, total, _ in previous)
    previous_sales = len({txn_id for _, quantity, _, txn_id in previous if quantity > 0})

    net = gross - reversed_cents
    total_transactions = len(sales) + len(reversals)
    return {
        "period": period,
        "group_by": group_by,
        "start": to_utc_z(start),
        "end": to_utc_z(end),
        "chart": [
            {
                "period": key,
                "sales_cents": point["sales_cents"],
                "transactions": len(point["transactions"]),
                "avg_order_cents": _per(point["sales_cents"], len(point["transactions"])),
            }
            for key, point in sorted(chart.items())
        ],
        "summary": {
            "gross_sales_cents": gross,
            "returns_cents": reversed_cents,
            "net_sales_cents": net,
            "return_rate": round(reversed_cents / gross * 100, 1) if gross else 0.0,
            "sales_transactions": len(sales),
            "return_transactions": len(reversals),
            "total_transactions": total_transactions,
            "avg_order_value_cents": _per(net, len(sales)),
            "avg_transaction_value_cents": _per(net, total_transactions),
            "units_sold": units_sold,
            "units_returned": units_back,
            "net_units_sold": units_sold - units_back,
            "peak_sales_date": peak_day,
            "peak_sales_cents": peak_cents,
            "sales_growth": _growth(net, previous_net),
            "transactions_growth": _growth(len(sales), previous_sales),
        },
    }


# =============================================================================
# STOCK REPORTS
# =============================================================================

def stock_movements(
    *,
    page=1,
    page_size=50,
    movement_type: str | None = None,
    product_id=None,
    date_from: str | None = None,
    date_to: str | None = None,
) -> dict:
    page = coerce_int(page, "page")
    page_size = coerce_int(page_size, "page_size")
    if page < 1:
        raise InvalidInputError("page must be >= 1")
    if not 1 <= page_size <= MAX_PAGE_SIZE:
        raise InvalidInputError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
    if movement_type and movement_type not in MOVEMENT_TYPES:
        raise InvalidInputError("Invalid type", details=[f"type must be one of: {', '.join(MOVEMENT_TYPES)}"])
    start, end = _parse_range(date_from, date_to)

    query = db.session.query(StockMovement)
    if movement_type:
        query = query.filter(StockMovement.type == movement_type)
    if product_id not in (None, ""):
        query = query.filter(StockMovement.product_id == coerce_int(product_id, "product_id"))
    query = _in_range(query, StockMovement.created_at, start, end)

    total = query.count()
    movements = query.order_by(
        StockMovement.created_at.desc(), StockMovement.id.desc()
    ).offset((page - 1) * page_size).limit(page_size).all()

    return {
        "movements": [m.to_dict() for m in movements],
        "page": page,
        "page_size": page_size,
        "total": total,
        "pages": (total + page_size - 1) // page_size,
    }


def returned_items(date_from: str | None = None, date_to: str | None = None) -> dict:
    start, end = _parse_range(date_from, date_to)
    original = aliased(LedgerTransaction)

    query = db.session.query(Sale, StockMovement.reason, original.transaction_no).join(
        LedgerTransaction, Sale.transaction_id == LedgerTransaction.id
    ).outerjoin(
        StockMovement, StockMovement.sale_id == Sale.id
    ).outerjoin(
        original, LedgerTransaction.reverses_transaction_id == original.id
    ).filter(LedgerTransaction.kind == "return")
    query = _in_range(query, Sale.created_at, start, end)

    rows = []
    for sale, reason, original_no in query.order_by(Sale.created_at.desc(), Sale.id.desc()).all():
        rows.append({
            "date": to_utc_z(sale.created_at),
            "transaction_no": sale.ref_id,
            "original_transaction_no": original_no,
            "sale_id": sale.reverses_sale_id,
            "product_id": sale.product_id,
            "product_name": sale.product.name if sale.product else "Unknown Product",
            "quantity": abs(sale.quantity),
            "refund_amount_cents": abs(sale.total_amount_cents),
            "reason": reason,
            "handled_by": sale.user.username if sale.user else None,
        })
    return {"rows": rows}


def void_items(date_from: str | None = None, date_to: str | None = None) -> dict:
    start, end = _parse_range(date_from, date_to)
    original = aliased(LedgerTransaction)

    query = db.session.query(Sale, original.transaction_no).join(
        LedgerTransaction, Sale.transaction_id == LedgerTransaction.id
    ).outerjoin(
        original, LedgerTransaction.reverses_transaction_id == original.id
    ).filter(LedgerTransaction.kind == "void")
    query = _in_range(query, Sale.created_at, start, end)
    results = query.order_by(Sale.created_at.desc(), Sale.id.desc()).all()

    void_nos = {sale.ref_id for sale, _ in results}
    reasons = {
        vr.void_transaction_no: vr.reason
        for vr in db.session.query(VoidRequest).filter(VoidRequest.void_transaction_no.in_(sorted(void_nos))).all()
    } if void_nos else {}

    rows = []
    for sale, original_no in results:
        rows.append({
            "date": to_utc_z(sale.created_at),
            "transaction_no": sale.ref_id,
            "original_transaction_no": original_no,
            "product_id": sale.product_id,
            "product_name": sale.product.name if sale.product else "Unknown Product",
            "quantity": abs(sale.quantity),
            "amount_cents": abs(sale.total_amount_cents),
            "reason": reasons.get(sale.ref_id),
            "requested_by": sale.user.username if sale.user else None,
            "approved_by": sale.approved_by.username if sale.approved_by else None,
        })
    return {"rows": rows}


def stock_alerts(threshold=None) -> dict:
    """Classify every non-deleted product with the same policy the engine uses."""
    general = stock_status.normalize_threshold(threshold, None)
    default = int(current_app.config.get("DEFAULT_LOW_STOCK_THRESHOLD", 10))

    products = db.session.query(Product).filter(
        Product.status != stock_status.DELETED
    ).order_by(Product.name.asc(), Product.id.asc()).all()

    low, out = [], []
    for product in products:
        effective = stock_status.resolve_threshold(product.low_stock_threshold, general, default)
        status = stock_status.compute_status(product.stock, effective)
        entry = dict(product.to_dict(), threshold=effective)
        if status == stock_status.LOW_STOCK:
            low.append(entry)
        elif status == stock_status.OUT_OF_STOCK:
            out.append(entry)

    return {
        "threshold": general if general is not None else default,
        "low_stock": low,
        "out_of_stock": out,
        "low_stock_count": len(low),
        "out_of_stock_count": len(out),
    }
