# Overview: Transaction engine; the only writer of product stock and of sale, movement and transaction rows.

"""
Transaction Engine

Checkout, void, return and manual adjustment flows. Each public call is one
unit of work: validate, lock, write the ledger rows, update stock, commit
once. Nothing is written when validation fails, and a failure after the
first write rolls the whole unit back.

Concurrency:
- SQLite: the unit opens with BEGIN IMMEDIATE (writer lock up front).
- Other databases: product rows are locked FOR UPDATE in ascending id order.
- Product.version_id turns every stock UPDATE into a compare-and-set, so a
  lost race raises StaleDataError and the unit is retried from scratch.
- transaction_no is unique; a duplicate void-{T} or same-millisecond
  checkout number fails the commit and is retried against fresh state.

Transaction numbers:
- checkout-{T}        sale (T = epoch milliseconds, bumped until neither
                      checkout-{T} nor void-{T} exists)
- void-{T}            void of checkout-{T}; unlinked voids take a fresh T
                      the same way a sale does
- return-{ref}-{T}    one per original transaction per return call
- manual-{T}          manual stock correction
"""

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from .. import time_utils
from ..extensions import db
from ..models import LedgerTransaction, Product, Sale, StockMovement, User
from ..validation import (
    InsufficientStockError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    coerce_id,
    coerce_int,
    coerce_positive_int,
    require_item_list,
)
from . import notification_service, stock_status
from .concurrency import begin_immediate, lock_for_update, run_with_retry

ACTIONS = ("sale", "void")

CHECKOUT_PREFIX = "checkout-"
VOID_PREFIX = "void-"
# Sales and unlinked voids draw stamps from one space.
SALE_AND_VOID = ["checkout", "void"]


@dataclass
class CheckoutPlan:
    """Validated checkout request, ready to be applied inside a unit of work."""
    action: str
    lines: list[tuple[int, int]]
    general_threshold: int | None
    ledger_user_id: int | None
    approved_by_user_id: int | None = None
    original_transaction_no: str | None = None

    @property
    def linked_void(self) -> bool:
        return (
            self.action == "void"
            and bool(self.original_transaction_no)
            and self.original_transaction_no.startswith(CHECKOUT_PREFIX)
        )


@dataclass
class ReturnLine:
    sale_id: int
    product_id: int | None
    quantity: int
    reason: str | None = None


@dataclass
class _Touched:
    """Running per-product state for one unit of work."""
    products: dict[int, Product]
    general_threshold: int | None
    stock: dict[int, int] = field(default_factory=dict)
    thresholds: dict[int, int] = field(default_factory=dict)

    def __post_init__(self):
        default = int(current_app.config.get("DEFAULT_LOW_STOCK_THRESHOLD", 10))
        for product_id, product in self.products.items():
            self.stock[product_id] = product.stock
            self.thresholds[product_id] = stock_status.resolve_threshold(
                product.low_stock_threshold, self.general_threshold, default
            )

    def apply(self, product_id: int, after: int) -> None:
        product = self.products[product_id]
        self.stock[product_id] = after
        product.stock = after
        product.status = stock_status.status_after_change(
            product.status, after, self.thresholds[product_id]
        )

    def summary(self, product_ids) -> dict:
        entries = [
            (pid, self.stock[pid], self.thresholds[pid])
            for pid in product_ids
            if not self.products[pid].is_deleted
        ]
        low_now, out_now = stock_status.classify(entries)
        return {"low_now": low_now, "out_now": out_now}


# =============================================================================
# HELPERS
# =============================================================================

def _transaction_no_taken(transaction_no: str) -> bool:
    return db.session.query(LedgerTransaction.id).filter_by(
        transaction_no=transaction_no
    ).first() is not None


def _allocate_stamp(prefixes: list[str]) -> int:
    """First millisecond stamp >= now for which every '{prefix}-{stamp}' is unused."""
    stamp = time_utils.now_ms()
    while any(_transaction_no_taken(f"{prefix}-{stamp}") for prefix in prefixes):
        stamp += 1
    return stamp


def _lock_products(product_ids) -> dict[int, Product]:
    ids = sorted(set(product_ids))
    rows = lock_for_update(
        db.session.query(Product).filter(Product.id.in_(ids)).order_by(Product.id)
    ).all()
    return {product.id: product for product in rows}


def _returned_quantities(sale_ids) -> dict[int, int]:
    """Units already returned per original sale line."""
    sale_ids = list(sale_ids)
    if not sale_ids:
        return {}
    rows = (
        db.session.query(Sale.reverses_sale_id, func.sum(-Sale.quantity))
        .join(LedgerTransaction, Sale.transaction_id == LedgerTransaction.id)
        .filter(Sale.reverses_sale_id.in_(sale_ids), LedgerTransaction.kind == "return")
        .group_by(Sale.reverses_sale_id)
        .all()
    )
    return {sale_id: int(quantity or 0) for sale_id, quantity in rows}


def _voided_transaction_ids(transaction_ids) -> set[int]:
    transaction_ids = list(transaction_ids)
    if not transaction_ids:
        return set()
    rows = db.session.query(LedgerTransaction.reverses_transaction_id).filter(
        LedgerTransaction.kind == "void",
        LedgerTransaction.reverses_transaction_id.in_(transaction_ids),
    ).all()
    return {row[0] for row in rows}


def _aggregate(lines) -> dict[int, int]:
    totals: dict[int, int] = {}
    for product_id, quantity in lines:
        totals[product_id] = totals.get(product_id, 0) + quantity
    return totals


def _clean_reason(value) -> str | None:
    if value is None:
        return None
    reason = str(value).strip()
    return reason[:255] or None


def _publish(transaction_no: str, summary: dict) -> None:
    notification_service.publish_stock_alert(
        transaction_no, summary["low_now"], summary["out_now"]
    )


# =============================================================================
# CHECKOUT (SALE / VOID)
# =============================================================================

def prepare_checkout(
    items,
    *,
    action: str = "sale",
    threshold=None,
    acting_user_id: int | None = None,
    requested_by_user_id: int | None = None,
    approved_by_user_id: int | None = None,
    original_transaction_no: str | None = None,
) -> CheckoutPlan:
    """
    Validate the request shape. Raises InvalidInputError listing every bad item.

    The ledger user for a void on someone's behalf is the requester; the
    approving admin is recorded separately and only on void rows.
    """
    if action not in ACTIONS:
        raise InvalidInputError("Invalid action", details=[f"action must be one of: {', '.join(ACTIONS)}"])

    items = require_item_list(items, empty_message="No items to checkout")

    lines: list[tuple[int, int]] = []
    problems: list[str] = []
    for index, item in enumerate(items, start=1):
        product_id = coerce_id(item.get("product_id"))
        quantity = coerce_positive_int(item.get("quantity"))
        if product_id is None:
            problems.append(f"Item {index}: product_id is required")
        if quantity is None:
            problems.append(f"Item {index}: invalid quantity {item.get('quantity')!r}")
        if product_id is not None and quantity is not None:
            lines.append((product_id, quantity))
    if problems:
        raise InvalidInputError("Invalid quantity", details=problems)

    ledger_user_id = acting_user_id
    if action == "void" and requested_by_user_id is not None:
        ledger_user_id = requested_by_user_id

    original = original_transaction_no.strip() if isinstance(original_transaction_no, str) else None

    return CheckoutPlan(
        action=action,
        lines=lines,
        general_threshold=stock_status.normalize_threshold(threshold, None),
        ledger_user_id=ledger_user_id,
        approved_by_user_id=approved_by_user_id if action == "void" else None,
        original_transaction_no=original or None,
    )


def _original_lines_for_void(plan: CheckoutPlan) -> tuple[LedgerTransaction, dict[int, Sale]]:
    """
    Guard a void of checkout-{T}: not voided yet, exists, and every voided
    product is still voidable (sold minus already returned).
    """
    original_no = plan.original_transaction_no
    void_no = VOID_PREFIX + original_no[len(CHECKOUT_PREFIX):]

    if _transaction_no_taken(void_no):
        raise InvalidStateError(
            "Transaction already voided",
            details=[f"{original_no} was already voided as {void_no}"],
        )

    original = db.session.query(LedgerTransaction).filter_by(
        transaction_no=original_no, kind="sale"
    ).first()
    if not original:
        raise NotFoundError("Original transaction not found", details=[original_no])

    lines = db.session.query(Sale).filter(
        Sale.transaction_id == original.id, Sale.quantity > 0
    ).order_by(Sale.id).all()

    returned = _returned_quantities(line.id for line in lines)
    sold: dict[int, int] = {}
    first_line: dict[int, Sale] = {}
    for line in lines:
        sold[line.product_id] = sold.get(line.product_id, 0) + line.quantity - returned.get(line.id, 0)
        first_line.setdefault(line.product_id, line)

    problems = []
    for product_id, quantity in _aggregate(plan.lines).items():
        if product_id not in sold:
            problems.append(f"Product {product_id} is not part of {original_no}")
        elif quantity > sold[product_id]:
            problems.append(
                f"Product {product_id} (Requested: {quantity}, Voidable: {sold[product_id]})"
            )
    if problems:
        raise InvalidInputError("Void does not match the original transaction", details=problems)

    return original, first_line


def apply_checkout(plan: CheckoutPlan) -> dict:
    """
    Apply a prepared checkout inside the caller's unit of work (no commit).

    The caller owns BEGIN/COMMIT so a void can share one unit of work with
    the void request that triggered it.
    """
    products = _lock_products(pid for pid, _ in plan.lines)

    missing = sorted({
        pid for pid, _ in plan.lines
        if pid not in products or (plan.action == "sale" and products[pid].is_deleted)
    })
    if missing:
        raise NotFoundError(
            "Product not found",
            details=[f"Product not found: {pid}" for pid in missing],
        )

    unknown_users = sorted({
        uid for uid in (plan.ledger_user_id, plan.approved_by_user_id)
        if uid is not None and db.session.get(User, uid) is None
    })
    if unknown_users:
        raise NotFoundError("User not found", details=[f"User not found: {uid}" for uid in unknown_users])

    if plan.action == "sale":
        short = []
        for pid, requested in _aggregate(plan.lines).items():
            product = products[pid]
            if requested > product.stock:
                short.append(f"{product.name} (Requested: {requested}, Available: {product.stock})")
        if short:
            raise InsufficientStockError("Insufficient stock", details=short)

    original = None
    original_lines: dict[int, Sale] = {}
    if plan.linked_void:
        original, original_lines = _original_lines_for_void(plan)
        transaction_no = VOID_PREFIX + plan.original_transaction_no[len(CHECKOUT_PREFIX):]
    elif plan.action == "void":
        transaction_no = f"void-{_allocate_stamp(SALE_AND_VOID)}"
    else:
        transaction_no = f"checkout-{_allocate_stamp(SALE_AND_VOID)}"

    is_void = plan.action == "void"
    txn = LedgerTransaction(
        transaction_no=transaction_no,
        kind=plan.action,
        reverses_transaction_id=original.id if original else None,
        user_id=plan.ledger_user_id,
        approved_by_user_id=plan.approved_by_user_id if is_void else None,
    )
    db.session.add(txn)
    db.session.flush()

    touched = _Touched(products, plan.general_threshold)
    for product_id, quantity in plan.lines:
        product = products[product_id]
        before = touched.stock[product_id]

        if is_void:
            after = before + quantity
            original_line = original_lines.get(product_id)
            unit_price = original_line.unit_price_cents if original_line else product.price_cents
            signed = -quantity
        else:
            after = max(0, before - quantity)
            original_line = None
            unit_price = product.price_cents
            signed = quantity

        sale = Sale(
            transaction_id=txn.id,
            ref_id=transaction_no,
            product_id=product_id,
            quantity=signed,
            unit_price_cents=unit_price,
            total_amount_cents=signed * unit_price,
            reverses_sale_id=original_line.id if original_line else None,
            user_id=plan.ledger_user_id,
            approved_by_user_id=plan.approved_by_user_id if is_void else None,
        )
        db.session.add(sale)
        db.session.flush()

        db.session.add(StockMovement(
            transaction_id=txn.id,
            sale_id=sale.id,
            ref_id=transaction_no,
            product_id=product_id,
            type=plan.action,
            quantity=quantity,
            before_stock=before,
            after_stock=after,
            user_id=plan.ledger_user_id,
        ))
        touched.apply(product_id, after)

    db.session.flush()

    if plan.action == "sale":
        summary = touched.summary(pid for pid, _ in plan.lines)
    else:
        summary = {"low_now": [], "out_now": []}

    return {
        "success": True,
        "action": plan.action,
        "transaction_no": transaction_no,
        "summary": summary,
    }


def checkout(
    items,
    *,
    action: str = "sale",
    threshold=None,
    acting_user_id: int | None = None,
    requested_by_user_id: int | None = None,
    approved_by_user_id: int | None = None,
    original_transaction_no: str | None = None,
) -> dict:
    """
    Record a sale (stock down) or a void (stock up) as one atomic transaction.

    Returns {"success", "action", "transaction_no", "summary": {"low_now", "out_now"}}.

    Raises:
        InvalidInputError: bad action, empty items, bad quantities, void mismatch
        NotFoundError: unknown (or, for sales, deleted) products; unknown original;
            unknown requester or approver
        InsufficientStockError: requested more than available
        InvalidStateError: original transaction already voided
    """
    plan = prepare_checkout(
        items,
        action=action,
        threshold=threshold,
        acting_user_id=acting_user_id,
        requested_by_user_id=requested_by_user_id,
        approved_by_user_id=approved_by_user_id,
        original_transaction_no=original_transaction_no,
    )

    def _op():
        begin_immediate()
        result = apply_checkout(plan)
        db.session.commit()
        return result

    result = run_with_retry(_op, retry_on=(IntegrityError,))
    current_app.logger.info(
        "Committed %s (%s, %d lines, user=%s)",
        result["transaction_no"], plan.action, len(plan.lines), plan.ledger_user_id,
    )
    _publish(result["transaction_no"], result["summary"])
    return result


# =============================================================================
# RETURNS
# =============================================================================

def _parse_return_items(items) -> list[ReturnLine]:
    items = require_item_list(items, empty_message="No items to return")

    lines: list[ReturnLine] = []
    problems: list[str] = []
    for index, item in enumerate(items, start=1):
        sale_id = coerce_id(item.get("sale_id"))
        quantity = coerce_positive_int(item.get("quantity"))
        raw_product_id = item.get("product_id")
        product_id = coerce_id(raw_product_id) if raw_product_id not in (None, "") else None

        if sale_id is None:
            problems.append(f"Item {index}: sale_id is required")
        if quantity is None:
            problems.append(f"Item {index}: invalid quantity {item.get('quantity')!r}")
        if raw_product_id not in (None, "") and product_id is None:
            problems.append(f"Item {index}: invalid product_id {raw_product_id!r}")
        if sale_id is not None and quantity is not None:
            lines.append(ReturnLine(sale_id, product_id, quantity, _clean_reason(item.get("reason"))))

    if problems:
        raise InvalidInputError("Invalid return items", details=problems)
    return lines


def _apply_return(lines: list[ReturnLine], general_threshold, acting_user_id) -> dict:
    sale_ids = sorted({line.sale_id for line in lines})
    originals = {
        sale.id: sale
        for sale in db.session.query(Sale).filter(Sale.id.in_(sale_ids)).all()
    }

    missing = [sid for sid in sale_ids if sid not in originals]
    if missing:
        raise NotFoundError("Sale not found", details=[f"Sale not found: {sid}" for sid in missing])

    requested: dict[int, int] = {}
    for line in lines:
        original = originals[line.sale_id]
        if original.quantity <= 0:
            raise InvalidStateError(
                "Only original sale lines can be returned",
                details=[f"Sale {original.id} is a void or return line"],
            )
        if line.product_id is not None and line.product_id != original.product_id:
            raise InvalidInputError(
                "Product does not match the original sale",
                details=[f"Sale {original.id} is for product {original.product_id}, not {line.product_id}"],
            )
        if line.quantity > original.quantity:
            raise InvalidInputError(
                "Return quantity exceeds original sale quantity",
                details=[f"Sale {original.id} (Requested: {line.quantity}, Sold: {original.quantity})"],
            )
        requested[original.id] = requested.get(original.id, 0) + line.quantity

    # Lock before reading what was already returned
    products = _lock_products(sale.product_id for sale in originals.values())

    voided = _voided_transaction_ids({sale.transaction_id for sale in originals.values()})
    blocked = sorted({originals[sid].ref_id for sid in sale_ids if originals[sid].transaction_id in voided})
    if blocked:
        raise InvalidStateError("Cannot return items from a voided transaction", details=blocked)

    already = _returned_quantities(sale_ids)
    over = []
    for sale_id, quantity in requested.items():
        available = originals[sale_id].quantity - already.get(sale_id, 0)
        if quantity > available:
            over.append(f"Sale {sale_id} (Requested: {quantity}, Available to return: {available})")
    if over:
        raise InvalidInputError("Return quantity exceeds available to return", details=over)

    # One return transaction per original transaction, first-seen order
    prefixes: dict[int, str] = {}
    for line in lines:
        original = originals[line.sale_id]
        prefixes.setdefault(original.transaction_id, f"return-{original.ref_id or original.id}")
    stamp = _allocate_stamp(list(prefixes.values()))

    transactions: dict[int, LedgerTransaction] = {}
    for transaction_id, prefix in prefixes.items():
        txn = LedgerTransaction(
            transaction_no=f"{prefix}-{stamp}",
            kind="return",
            reverses_transaction_id=transaction_id,
            user_id=acting_user_id,
        )
        db.session.add(txn)
        transactions[transaction_id] = txn
    db.session.flush()

    touched = _Touched(products, general_threshold)
    for line in lines:
        original = originals[line.sale_id]
        txn = transactions[original.transaction_id]
        product_id = original.product_id
        before = touched.stock[product_id]
        after = before + line.quantity

        sale = Sale(
            transaction_id=txn.id,
            ref_id=txn.transaction_no,
            product_id=product_id,
            quantity=-line.quantity,
            unit_price_cents=original.unit_price_cents,
            total_amount_cents=-line.quantity * original.unit_price_cents,
            reverses_sale_id=original.id,
            user_id=acting_user_id,
        )
        db.session.add(sale)
        db.session.flush()

        db.session.add(StockMovement(
            transaction_id=txn.id,
            sale_id=sale.id,
            ref_id=txn.transaction_no,
            product_id=product_id,
            type="refund",
            quantity=line.quantity,
            before_stock=before,
            after_stock=after,
            reason=line.reason,
            user_id=acting_user_id,
        ))
        touched.apply(product_id, after)

    db.session.flush()

    return {
        "success": True,
        "action": "return",
        "transaction_nos": [txn.transaction_no for txn in transactions.values()],
        "summary": touched.summary(originals[line.sale_id].product_id for line in lines),
        "message": f"Successfully processed return for {len(lines)} item(s)",
    }


def process_return(items, *, threshold=None, acting_user_id: int | None = None) -> dict:
    """
    Return units from earlier sale lines back into stock.

    Each item is {sale_id, product_id?, quantity, reason?}. The over-return
    guard counts every earlier return of the same line plus this request,
    re-read under lock.
    """
    lines = _parse_return_items(items)
    general_threshold = stock_status.normalize_threshold(threshold, None)

    def _op():
        begin_immediate()
        result = _apply_return(lines, general_threshold, acting_user_id)
        db.session.commit()
        return result

    result = run_with_retry(_op, retry_on=(IntegrityError,))
    joined = ", ".join(result["transaction_nos"])
    current_app.logger.info(
        "Committed %s (return, %d lines, user=%s)", joined, len(lines), acting_user_id
    )
    _publish(joined, result["summary"])
    return result


# =============================================================================
# MANUAL ADJUSTMENTS
# =============================================================================

def adjust_stock(
    product_id,
    quantity_delta,
    reason,
    *,
    acting_user_id: int | None = None,
    threshold=None,
) -> dict:
    """
    Manual stock correction (count fixes, damage, found stock).

    Writes a manual-{T} transaction and one movement; no sale line.
    """
    pid = coerce_id(product_id)
    if pid is None:
        raise InvalidInputError("product_id is required")
    delta = coerce_int(quantity_delta, "quantity_delta")
    if delta == 0:
        raise InvalidInputError("quantity_delta must not be zero")
    reason = _clean_reason(reason)
    if not reason:
        raise InvalidInputError("reason is required for manual adjustments")
    general_threshold = stock_status.normalize_threshold(threshold, None)

    def _op():
        begin_immediate()
        products = _lock_products([pid])
        product = products.get(pid)
        if not product:
            raise NotFoundError("Product not found", details=[f"Product not found: {pid}"])

        before = product.stock
        after = before + delta
        if after < 0:
            raise InsufficientStockError(
                "Insufficient stock",
                details=[f"{product.name} (Requested: {-delta}, Available: {before})"],
            )

        transaction_no = f"manual-{_allocate_stamp(['manual'])}"
        txn = LedgerTransaction(transaction_no=transaction_no, kind="manual", user_id=acting_user_id)
        db.session.add(txn)
        db.session.flush()

        db.session.add(StockMovement(
            transaction_id=txn.id,
            ref_id=transaction_no,
            product_id=pid,
            type="manual",
            quantity=abs(delta),
            before_stock=before,
            after_stock=after,
            reason=reason,
            user_id=acting_user_id,
        ))
        touched = _Touched(products, general_threshold)
        touched.apply(pid, after)
        db.session.flush()

        result = {
            "success": True,
            "action": "manual",
            "transaction_no": transaction_no,
            "product": product.to_dict(),
            "summary": touched.summary([pid]),
        }
        db.session.commit()
        return result

    result = run_with_retry(_op, retry_on=(IntegrityError,))
    current_app.logger.info(
        "Committed %s (manual, product=%s, delta=%d, user=%s)",
        result["transaction_no"], pid, delta, acting_user_id,
    )
    _publish(result["transaction_no"], result["summary"])
    return result
