"""
Pytest fixtures for posledger backend tests.

Provides the in-memory database, users, products, session tokens and a
test client.
"""

import pytest

from posledger import create_app
from posledger.extensions import db
from posledger.models import Product, User
from posledger.services import session_service
from posledger.services.auth_service import hash_password

TEST_PASSWORD = "Password123!"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'DEFAULT_LOW_STOCK_THRESHOLD': 10,
        'LEDGER_RETRY_BACKOFF': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Core deletes skip the append-only ORM guards on ledger rows
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        db.session.rollback()


def _make_user(session, username, role):
    user = User(
        username=username,
        email=f"{username}@posledger.test",
        password_hash=hash_password(TEST_PASSWORD, rounds=4),
        role=role,
        is_active=True,
    )
    session.add(user)
    session.commit()
    return user


@pytest.fixture(scope='function')
def admin_user(db_session):
    return _make_user(db_session, "admin", "Admin")


@pytest.fixture(scope='function')
def staff_user(db_session):
    return _make_user(db_session, "staff", "Staff")


@pytest.fixture(scope='function')
def other_staff(db_session):
    return _make_user(db_session, "staff2", "Staff")


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory for committed products; stock defaults to 20 units at 5.00."""
    counter = {"n": 0}

    def _make(name=None, stock=20, price_cents=500, unit_cost_cents=None, low_stock_threshold=None, status=None):
        counter["n"] += 1
        product = Product(
            name=name or f"Product {counter['n']}",
            barcode=f"BC{counter['n']:06d}",
            price_cents=price_cents,
            unit_cost_cents=unit_cost_cents,
            stock=stock,
            low_stock_threshold=low_stock_threshold,
            status=status or ("available" if stock > 0 else "out_of_stock"),
        )
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def admin_token(admin_user):
    _, token = session_service.create_session(admin_user.id)
    return token


@pytest.fixture(scope='function')
def staff_token(staff_user):
    _, token = session_service.create_session(staff_user.id)
    return token


@pytest.fixture(scope='function')
def admin_headers(admin_token):
    return {"Authorization": f"Bearer {admin_token}"}


@pytest.fixture(scope='function')
def staff_headers(staff_token):
    return {"Authorization": f"Bearer {staff_token}"}


@pytest.fixture(scope='function')
def fixed_clock(monkeypatch):
    """Pin the transaction-number clock; returns a setter for later stamps."""
    from posledger import time_utils

    def _set(ms):
        monkeypatch.setattr(time_utils, "now_ms", lambda: ms)

    _set(1_700_000_000_000)
    return _set
