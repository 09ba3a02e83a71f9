from sqlalchemy import event
from sqlalchemy.orm import object_session

from .auth import User, SessionToken, ROLES
from .inventory import Category, Product, StockMovement
from .sales import LedgerTransaction, Sale
from .documents import VoidRequest

__all__ = [
    'User', 'SessionToken', 'ROLES',
    'Category', 'Product', 'StockMovement',
    'LedgerTransaction', 'Sale',
    'VoidRequest',
    'AppendOnlyViolation',
]


class AppendOnlyViolation(RuntimeError):
    """Raised when code tries to rewrite or delete a ledger row through the ORM."""


def _refuse_update(mapper, connection, target):
    session = object_session(target)
    if session is not None and not session.is_modified(target, include_collections=False):
        return
    raise AppendOnlyViolation(f"{type(target).__name__} rows are append-only (id={target.id})")


def _refuse_delete(mapper, connection, target):
    raise AppendOnlyViolation(f"{type(target).__name__} rows are append-only (id={target.id})")


for _model in (LedgerTransaction, Sale, StockMovement):
    event.listen(_model, "before_update", _refuse_update)
    event.listen(_model, "before_delete", _refuse_delete)
