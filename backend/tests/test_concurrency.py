"""
Concurrency and ledger integrity tests.

Verifies:
- run_with_retry retries conflicts and rolls back everything else
- Product.version_id turns a lost update into StaleDataError
- Concurrent checkouts for the last units never oversell
- Ledger rows are append-only through the ORM
"""

import threading

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from posledger import create_app
from posledger.extensions import db
from posledger.models import AppendOnlyViolation, Product, Sale, StockMovement
from posledger.services import transaction_service
from posledger.services.concurrency import run_with_retry
from posledger.validation import InsufficientStockError, InvalidInputError


class TestRunWithRetry:

    def test_retries_stale_data(self, db_session):
        calls = []

        def op():
            calls.append(1)
            if len(calls) == 1:
                raise StaleDataError("version mismatch")
            return "done"

        assert run_with_retry(op, backoff_base=0) == "done"
        assert len(calls) == 2

    def test_gives_up_after_attempts(self, db_session):
        calls = []

        def op():
            calls.append(1)
            raise StaleDataError("version mismatch")

        with pytest.raises(StaleDataError):
            run_with_retry(op, attempts=2, backoff_base=0)
        assert len(calls) == 2

    def test_extra_retry_types(self, db_session):
        calls = []

        def op():
            calls.append(1)
            if len(calls) == 1:
                raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
            return len(calls)

        assert run_with_retry(op, backoff_base=0, retry_on=(IntegrityError,)) == 2

    def test_other_errors_are_not_retried(self, db_session, make_product):
        product = make_product(stock=5)
        calls = []

        def op():
            calls.append(1)
            db.session.get(Product, product.id).stock = 1
            db.session.flush()
            raise ValueError("bad")

        with pytest.raises(ValueError):
            run_with_retry(op, backoff_base=0)

        assert len(calls) == 1
        assert db.session.get(Product, product.id).stock == 5


class TestOptimisticLock:

    def test_lost_update_raises_stale_data(self, make_product):
        product = make_product(stock=5)
        product = db.session.get(Product, product.id)
        assert product.version_id == 1

        db.session.execute(
            db.update(Product)
            .where(Product.id == product.id)
            .values(stock=4, version_id=2)
            .execution_options(synchronize_session=False)
        )
        product.stock = 3

        with pytest.raises(StaleDataError):
            db.session.flush()
        db.session.rollback()

    def test_engine_bumps_version(self, make_product):
        product = make_product(stock=5)
        transaction_service.checkout([{"product_id": product.id, "quantity": 1}])
        assert db.session.get(Product, product.id).version_id == 2


class TestAppendOnly:

    def test_sale_rows_cannot_be_updated(self, make_product):
        product = make_product(stock=5)
        transaction_service.checkout([{"product_id": product.id, "quantity": 1}])

        sale = db.session.query(Sale).one()
        sale.quantity = 5
        with pytest.raises(AppendOnlyViolation):
            db.session.flush()
        db.session.rollback()
        assert db.session.query(Sale).one().quantity == 1

    def test_movements_cannot_be_deleted(self, make_product):
        product = make_product(stock=5)
        transaction_service.checkout([{"product_id": product.id, "quantity": 1}])

        db.session.delete(db.session.query(StockMovement).one())
        with pytest.raises(AppendOnlyViolation):
            db.session.flush()
        db.session.rollback()
        assert db.session.query(StockMovement).count() == 1


# =============================================================================
# CONCURRENT CHECKOUTS (file database, one session per thread)
# =============================================================================


@pytest.fixture
def file_app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'ledger.sqlite3'}",
        'LEDGER_RETRY_ATTEMPTS': 5,
        'LEDGER_RETRY_BACKOFF': 0.01,
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


def _buy(app, product_id, barrier, results, lock):
    with app.app_context():
        try:
            barrier.wait()
            transaction_service.checkout([{"product_id": product_id, "quantity": 1}])
            outcome = "ok"
        except InsufficientStockError:
            outcome = "insufficient"
        except Exception as exc:
            outcome = f"error: {exc!r}"
        finally:
            db.session.remove()
        with lock:
            results.append(outcome)


class TestConcurrentCheckout:

    def test_last_units_are_sold_once(self, file_app):
        with file_app.app_context():
            product = Product(name="Last Units", price_cents=100, stock=2, status="low_stock")
            db.session.add(product)
            db.session.commit()
            product_id = product.id
            db.session.remove()

        workers = 5
        barrier = threading.Barrier(workers)
        results = []
        lock = threading.Lock()
        threads = [
            threading.Thread(target=_buy, args=(file_app, product_id, barrier, results, lock))
            for _ in range(workers)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert sorted(results) == ["insufficient"] * 3 + ["ok"] * 2

        with file_app.app_context():
            assert db.session.get(Product, product_id).stock == 0
            assert db.session.query(Sale).count() == 2
            movements = db.session.query(StockMovement).order_by(StockMovement.id).all()
            assert [(m.before_stock, m.after_stock) for m in movements] == [(2, 1), (1, 0)]
            refs = {m.ref_id for m in movements}
            assert len(refs) == 2
            db.session.remove()


def _return(app, sale_id, quantity, barrier, results, lock):
    with app.app_context():
        try:
            barrier.wait()
            transaction_service.process_return([{"sale_id": sale_id, "quantity": quantity}])
            outcome = "ok"
        except InvalidInputError:
            outcome = "over-return"
        except Exception as exc:
            outcome = f"error: {exc!r}"
        finally:
            db.session.remove()
        with lock:
            results.append(outcome)


class TestConcurrentReturns:

    def test_partial_returns_cannot_jointly_over_return(self, file_app):
        sold = 4
        with file_app.app_context():
            product = Product(name="Returned Twice", price_cents=100, stock=10, status="available")
            db.session.add(product)
            db.session.commit()
            product_id = product.id
            transaction_no = transaction_service.checkout(
                [{"product_id": product_id, "quantity": sold}]
            )["transaction_no"]
            sale_id = db.session.query(Sale).filter_by(ref_id=transaction_no).one().id
            db.session.remove()

        barrier = threading.Barrier(2)
        results = []
        lock = threading.Lock()
        threads = [
            threading.Thread(target=_return, args=(file_app, sale_id, sold - 1, barrier, results, lock))
            for _ in range(2)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert sorted(results) == ["ok", "over-return"]

        with file_app.app_context():
            returned = -sum(
                line.quantity for line in db.session.query(Sale).filter_by(reverses_sale_id=sale_id)
            )
            assert returned == sold - 1
            assert db.session.get(Product, product_id).stock == 10 - sold + returned
            db.session.remove()
