"""
Transaction engine checkout tests.

Verifies:
- Sales decrement stock and write one sale line + movement per item
- Validation happens before any write and reports every bad item
- Low/out-of-stock summaries and status updates
- A failure mid-write leaves nothing behind
- Voids: linked numbering, original pricing, double-void guard
- Manual adjustments
"""

import pytest
from sqlalchemy.exc import IntegrityError

from posledger.extensions import db
from posledger.models import LedgerTransaction, Product, Sale, StockMovement
from posledger.services import stock_status, transaction_service
from posledger.validation import (
    InsufficientStockError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)

T0 = 1_700_000_000_000


def _stock(product_id):
    return db.session.get(Product, product_id).stock


def _ledger_counts():
    return (
        db.session.query(LedgerTransaction).count(),
        db.session.query(Sale).count(),
        db.session.query(StockMovement).count(),
    )


# =============================================================================
# SALES
# =============================================================================


class TestSale:

    def test_sale_writes_ledger_and_decrements_stock(self, staff_user, make_product, fixed_clock):
        product = make_product(stock=20, price_cents=500)

        result = transaction_service.checkout(
            [{"product_id": product.id, "quantity": 3}],
            acting_user_id=staff_user.id,
        )

        assert result["success"] is True
        assert result["action"] == "sale"
        assert result["transaction_no"] == f"checkout-{T0}"
        assert result["summary"] == {"low_now": [], "out_now": []}

        product = db.session.get(Product, product.id)
        assert product.stock == 17
        assert product.status == "available"

        txn = db.session.query(LedgerTransaction).one()
        assert txn.kind == "sale"
        assert txn.user_id == staff_user.id

        sale = db.session.query(Sale).one()
        assert sale.ref_id == f"checkout-{T0}"
        assert sale.quantity == 3
        assert sale.unit_price_cents == 500
        assert sale.total_amount_cents == 1500
        assert sale.user_id == staff_user.id

        movement = db.session.query(StockMovement).one()
        assert movement.type == "sale"
        assert movement.sale_id == sale.id
        assert movement.quantity == 3
        assert (movement.before_stock, movement.after_stock) == (20, 17)

    def test_summary_reports_low_and_out(self, make_product):
        low = make_product(stock=12)
        out = make_product(stock=2)

        result = transaction_service.checkout([
            {"product_id": low.id, "quantity": 5},
            {"product_id": out.id, "quantity": 2},
        ])

        assert result["summary"] == {"low_now": [low.id], "out_now": [out.id]}
        assert db.session.get(Product, low.id).status == "low_stock"
        assert db.session.get(Product, out.id).status == "out_of_stock"

    def test_request_threshold_and_product_override(self, make_product):
        general = make_product(stock=12)
        override = make_product(stock=12, low_stock_threshold=8)

        result = transaction_service.checkout(
            [
                {"product_id": general.id, "quantity": 5},
                {"product_id": override.id, "quantity": 5},
            ],
            threshold=5,
        )

        assert result["summary"]["low_now"] == [override.id]
        assert db.session.get(Product, general.id).status == "available"

    def test_repeated_product_lines_chain_stock(self, make_product):
        product = make_product(stock=10)

        transaction_service.checkout([
            {"product_id": product.id, "quantity": 5},
            {"product_id": product.id, "quantity": 5},
        ])

        assert _stock(product.id) == 0
        movements = db.session.query(StockMovement).order_by(StockMovement.id).all()
        assert [(m.before_stock, m.after_stock) for m in movements] == [(10, 5), (5, 0)]
        assert db.session.query(Sale).count() == 2

    def test_integral_float_quantity_accepted(self, make_product):
        product = make_product(stock=10)
        transaction_service.checkout([{"product_id": product.id, "quantity": 2.0}])
        assert _stock(product.id) == 8

    def test_same_millisecond_checkouts_get_distinct_numbers(self, make_product, fixed_clock):
        product = make_product(stock=10)

        first = transaction_service.checkout([{"product_id": product.id, "quantity": 1}])
        second = transaction_service.checkout([{"product_id": product.id, "quantity": 1}])

        assert first["transaction_no"] == f"checkout-{T0}"
        assert second["transaction_no"] == f"checkout-{T0 + 1}"


# =============================================================================
# VALIDATION
# =============================================================================


class TestCheckoutValidation:

    def test_invalid_action(self, make_product):
        product = make_product()
        with pytest.raises(InvalidInputError) as exc:
            transaction_service.checkout([{"product_id": product.id, "quantity": 1}], action="refund")
        assert exc.value.message == "Invalid action"

    @pytest.mark.parametrize("items", [None, []])
    def test_empty_items(self, db_session, items):
        with pytest.raises(InvalidInputError) as exc:
            transaction_service.checkout(items)
        assert exc.value.message == "No items to checkout"

    def test_items_must_be_objects(self, db_session):
        with pytest.raises(InvalidInputError) as exc:
            transaction_service.checkout([1, 2])
        assert exc.value.details == ["Item 1 must be an object", "Item 2 must be an object"]

    def test_every_bad_quantity_is_reported(self, make_product):
        product = make_product(stock=10)

        with pytest.raises(InvalidInputError) as exc:
            transaction_service.checkout([
                {"product_id": product.id, "quantity": 0},
                {"product_id": product.id, "quantity": 1.5},
                {"product_id": product.id, "quantity": "2"},
                {"product_id": product.id, "quantity": True},
                {"product_id": product.id, "quantity": 1},
            ])

        assert exc.value.message == "Invalid quantity"
        assert len(exc.value.details) == 4
        assert exc.value.details[0].startswith("Item 1:")
        assert _ledger_counts() == (0, 0, 0)
        assert _stock(product.id) == 10

    def test_missing_product_id(self, db_session):
        with pytest.raises(InvalidInputError) as exc:
            transaction_service.checkout([{"quantity": 1}])
        assert exc.value.details == ["Item 1: product_id is required"]

    def test_bad_quantity_reported_before_unknown_product(self, db_session):
        with pytest.raises(InvalidInputError):
            transaction_service.checkout([{"product_id": 999, "quantity": -1}])

    def test_unknown_products_listed(self, make_product):
        product = make_product()

        with pytest.raises(NotFoundError) as exc:
            transaction_service.checkout([
                {"product_id": 9999, "quantity": 1},
                {"product_id": product.id, "quantity": 1},
                {"product_id": 9998, "quantity": 1},
            ])

        assert exc.value.message == "Product not found"
        assert exc.value.details == ["Product not found: 9998", "Product not found: 9999"]
        assert _stock(product.id) == 20

    def test_deleted_product_cannot_be_sold(self, make_product):
        product = make_product(status="deleted")
        with pytest.raises(NotFoundError):
            transaction_service.checkout([{"product_id": product.id, "quantity": 1}])

    def test_deleted_product_releases_its_barcode(self, make_product, db_session):
        retired = make_product(status="deleted")
        replacement = Product(name="Replacement", barcode=retired.barcode, stock=1, status="available")
        db_session.add(replacement)
        db_session.commit()

        db_session.add(Product(name="Clash", barcode=retired.barcode, stock=1, status="available"))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_insufficient_stock_uses_aggregated_quantity(self, make_product):
        product = make_product(name="Widget", stock=10)

        with pytest.raises(InsufficientStockError) as exc:
            transaction_service.checkout([
                {"product_id": product.id, "quantity": 6},
                {"product_id": product.id, "quantity": 6},
            ])

        assert exc.value.details == ["Widget (Requested: 12, Available: 10)"]
        assert _stock(product.id) == 10
        assert _ledger_counts() == (0, 0, 0)

    def test_one_short_item_blocks_whole_checkout(self, make_product):
        plenty = make_product(stock=50)
        scarce = make_product(name="Scarce", stock=1)

        with pytest.raises(InsufficientStockError):
            transaction_service.checkout([
                {"product_id": plenty.id, "quantity": 5},
                {"product_id": scarce.id, "quantity": 2},
            ])

        assert _stock(plenty.id) == 50
        assert _ledger_counts() == (0, 0, 0)


class TestAtomicity:

    def test_failure_after_first_write_rolls_back(self, make_product, monkeypatch):
        first = make_product(stock=10)
        second = make_product(stock=10)

        real = stock_status.status_after_change
        calls = {"n": 0}

        def flaky(*args):
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("storage failure")
            return real(*args)

        monkeypatch.setattr(stock_status, "status_after_change", flaky)

        with pytest.raises(RuntimeError):
            transaction_service.checkout([
                {"product_id": first.id, "quantity": 1},
                {"product_id": second.id, "quantity": 1},
            ])

        assert _ledger_counts() == (0, 0, 0)
        assert _stock(first.id) == 10
        assert _stock(second.id) == 10


# =============================================================================
# VOIDS
# =============================================================================


class TestVoid:

    def _sell(self, product, quantity, user_id=None):
        return transaction_service.checkout(
            [{"product_id": product.id, "quantity": quantity}],
            acting_user_id=user_id,
        )["transaction_no"]

    def test_linked_void_uses_original_number_and_price(self, admin_user, make_product, fixed_clock):
        product = make_product(stock=20, price_cents=500)
        original_no = self._sell(product, 2)

        product = db.session.get(Product, product.id)
        product.price_cents = 700
        db.session.commit()

        fixed_clock(T0 + 5000)
        result = transaction_service.checkout(
            [{"product_id": product.id, "quantity": 2}],
            action="void",
            acting_user_id=admin_user.id,
            original_transaction_no=original_no,
        )

        assert result["transaction_no"] == f"void-{T0}"
        assert result["summary"] == {"low_now": [], "out_now": []}
        assert _stock(product.id) == 20

        original = db.session.query(LedgerTransaction).filter_by(transaction_no=original_no).one()
        void_txn = db.session.query(LedgerTransaction).filter_by(transaction_no=f"void-{T0}").one()
        assert void_txn.kind == "void"
        assert void_txn.reverses_transaction_id == original.id

        original_line = db.session.query(Sale).filter_by(ref_id=original_no).one()
        void_line = db.session.query(Sale).filter_by(ref_id=f"void-{T0}").one()
        assert void_line.quantity == -2
        assert void_line.unit_price_cents == 500
        assert void_line.total_amount_cents == -1000
        assert void_line.reverses_sale_id == original_line.id

        movement = db.session.query(StockMovement).filter_by(ref_id=f"void-{T0}").one()
        assert movement.type == "void"
        assert movement.quantity == 2
        assert (movement.before_stock, movement.after_stock) == (18, 20)

    def test_second_void_is_rejected(self, make_product, fixed_clock):
        product = make_product(stock=20)
        original_no = self._sell(product, 2)
        items = [{"product_id": product.id, "quantity": 2}]

        transaction_service.checkout(items, action="void", original_transaction_no=original_no)

        with pytest.raises(InvalidStateError) as exc:
            transaction_service.checkout(items, action="void", original_transaction_no=original_no)

        assert exc.value.message == "Transaction already voided"
        assert _stock(product.id) == 20

    def test_void_of_unknown_checkout(self, make_product):
        product = make_product()
        with pytest.raises(NotFoundError) as exc:
            transaction_service.checkout(
                [{"product_id": product.id, "quantity": 1}],
                action="void",
                original_transaction_no="checkout-42",
            )
        assert exc.value.message == "Original transaction not found"
        assert _stock(product.id) == 20

    def test_void_must_match_original(self, make_product, fixed_clock):
        sold = make_product(stock=20)
        other = make_product(stock=20)
        original_no = self._sell(sold, 2)

        with pytest.raises(InvalidInputError) as exc:
            transaction_service.checkout(
                [{"product_id": other.id, "quantity": 1}],
                action="void",
                original_transaction_no=original_no,
            )
        assert exc.value.message == "Void does not match the original transaction"

        with pytest.raises(InvalidInputError):
            transaction_service.checkout(
                [{"product_id": sold.id, "quantity": 3}],
                action="void",
                original_transaction_no=original_no,
            )

        assert _stock(sold.id) == 18
        assert _stock(other.id) == 20

    def test_void_after_partial_return_only_restores_remaining(self, make_product, fixed_clock):
        product = make_product(stock=20)
        original_no = self._sell(product, 3)
        sale = db.session.query(Sale).filter_by(ref_id=original_no).one()

        fixed_clock(T0 + 10)
        transaction_service.process_return([{"sale_id": sale.id, "quantity": 1}])
        assert _stock(product.id) == 18

        with pytest.raises(InvalidInputError):
            transaction_service.checkout(
                [{"product_id": product.id, "quantity": 3}],
                action="void",
                original_transaction_no=original_no,
            )

        transaction_service.checkout(
            [{"product_id": product.id, "quantity": 2}],
            action="void",
            original_transaction_no=original_no,
        )
        assert _stock(product.id) == 20

    def test_void_on_behalf_of_requester(self, admin_user, staff_user, make_product, fixed_clock):
        product = make_product(stock=20)
        original_no = self._sell(product, 1, user_id=staff_user.id)

        transaction_service.checkout(
            [{"product_id": product.id, "quantity": 1}],
            action="void",
            acting_user_id=admin_user.id,
            requested_by_user_id=staff_user.id,
            approved_by_user_id=admin_user.id,
            original_transaction_no=original_no,
        )

        void_line = db.session.query(Sale).filter_by(ref_id=f"void-{T0}").one()
        assert void_line.user_id == staff_user.id
        assert void_line.approved_by_user_id == admin_user.id

    def test_unlinked_void_restocks_at_current_price(self, make_product, fixed_clock):
        product = make_product(stock=5, price_cents=250)

        result = transaction_service.checkout(
            [{"product_id": product.id, "quantity": 4}],
            action="void",
        )

        assert result["transaction_no"] == f"void-{T0}"
        assert _stock(product.id) == 9
        line = db.session.query(Sale).one()
        assert line.quantity == -4
        assert line.total_amount_cents == -1000
        assert line.reverses_sale_id is None

    def test_sale_after_unlinked_void_stays_voidable(self, make_product, fixed_clock):
        product = make_product(stock=5)
        unlinked = transaction_service.checkout(
            [{"product_id": product.id, "quantity": 1}], action="void"
        )["transaction_no"]
        sale = transaction_service.checkout([{"product_id": product.id, "quantity": 2}])["transaction_no"]

        assert unlinked == f"void-{T0}"
        assert sale == f"checkout-{T0 + 1}"

        voided = transaction_service.checkout(
            [{"product_id": product.id, "quantity": 2}],
            action="void",
            original_transaction_no=sale,
        )
        assert voided["transaction_no"] == f"void-{T0 + 1}"
        assert _stock(product.id) == 6

    def test_unlinked_void_skips_stamp_of_existing_sale(self, make_product, fixed_clock):
        product = make_product(stock=5)
        sale = transaction_service.checkout([{"product_id": product.id, "quantity": 1}])["transaction_no"]
        unlinked = transaction_service.checkout(
            [{"product_id": product.id, "quantity": 1}], action="void"
        )["transaction_no"]

        assert sale == f"checkout-{T0}"
        assert unlinked == f"void-{T0 + 1}"

    def test_void_with_unknown_approver_writes_nothing(self, make_product, fixed_clock):
        product = make_product(stock=5)
        counts = _ledger_counts()

        with pytest.raises(NotFoundError) as excinfo:
            transaction_service.checkout(
                [{"product_id": product.id, "quantity": 1}],
                action="void",
                approved_by_user_id=424242,
            )

        assert excinfo.value.details == ["User not found: 424242"]
        assert _ledger_counts() == counts
        assert _stock(product.id) == 5

    def test_void_keeps_deleted_status(self, make_product):
        product = make_product(stock=0, status="deleted")

        transaction_service.checkout([{"product_id": product.id, "quantity": 3}], action="void")

        product = db.session.get(Product, product.id)
        assert product.stock == 3
        assert product.status == "deleted"


# =============================================================================
# MANUAL ADJUSTMENTS
# =============================================================================


class TestAdjustStock:

    def test_manual_adjustment_writes_movement(self, admin_user, make_product, fixed_clock):
        product = make_product(stock=12)

        result = transaction_service.adjust_stock(product.id, -4, "Damaged", acting_user_id=admin_user.id)

        assert result["transaction_no"] == f"manual-{T0}"
        assert result["product"]["stock"] == 8
        assert result["summary"] == {"low_now": [product.id], "out_now": []}

        movement = db.session.query(StockMovement).one()
        assert movement.type == "manual"
        assert movement.quantity == 4
        assert movement.quantity_delta == -4
        assert movement.reason == "Damaged"
        assert movement.sale_id is None
        assert db.session.query(Sale).count() == 0

    def test_adjustment_cannot_go_negative(self, make_product):
        product = make_product(stock=2)
        with pytest.raises(InsufficientStockError):
            transaction_service.adjust_stock(product.id, -3, "Count fix")
        assert _stock(product.id) == 2

    @pytest.mark.parametrize(
        "product_id,delta,reason",
        [
            (None, 1, "x"),
            (1, 0, "x"),
            (1, 1.5, "x"),
            (1, 1, "  "),
        ],
    )
    def test_adjustment_validation(self, db_session, product_id, delta, reason):
        with pytest.raises(InvalidInputError):
            transaction_service.adjust_stock(product_id, delta, reason)

    def test_adjustment_unknown_product(self, db_session):
        with pytest.raises(NotFoundError):
            transaction_service.adjust_stock(12345, 1, "Found stock")


class TestLedgerBalance:

    def test_stock_equals_initial_plus_movement_deltas(self, make_product, fixed_clock):
        product = make_product(stock=20)
        checkout_no = transaction_service.checkout([{"product_id": product.id, "quantity": 5}])["transaction_no"]
        sale = db.session.query(Sale).filter_by(ref_id=checkout_no).one()

        fixed_clock(T0 + 1)
        transaction_service.process_return([{"sale_id": sale.id, "quantity": 2}])
        transaction_service.adjust_stock(product.id, -3, "Shrinkage")

        movements = db.session.query(StockMovement).filter_by(product_id=product.id).all()
        assert _stock(product.id) == 20 + sum(m.quantity_delta for m in movements)
        net_sold = sum(s.quantity for s in db.session.query(Sale).filter_by(product_id=product.id))
        assert net_sold == 3
        assert _stock(product.id) == 14
