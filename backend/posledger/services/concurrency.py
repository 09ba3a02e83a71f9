# Overview: Unit-of-work helpers for the ledger; row locks, write-lock acquisition and conflict retries.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def begin_immediate() -> None:
    """
    Take the database write lock at the start of a unit of work.

    SQLite ignores SELECT ... FOR UPDATE, so the whole transaction is opened
    with BEGIN IMMEDIATE instead; other databases rely on lock_for_update().
    """
    if db.engine.dialect.name == "sqlite":
        db.session.execute(text("BEGIN IMMEDIATE"))


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    populate_existing() makes the locked read overwrite any stale copy
    already sitting in the identity map.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update().populate_existing()


def _retry_settings(attempts, backoff_base):
    if attempts is None:
        attempts = current_app.config.get("LEDGER_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("LEDGER_RETRY_BACKOFF", 0.1)
    return max(1, int(attempts)), float(backoff_base)


def run_with_retry(
    func,
    *,
    attempts: int | None = None,
    backoff_base: float | None = None,
    retry_on: tuple = (),
):
    """
    Execute a DB unit of work with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks), StaleDataError
    (optimistic locking conflicts) and any extra exception types in
    retry_on. Any other exception rolls the session back before it
    propagates, so no partial ledger rows survive.
    """
    attempts, backoff_base = _retry_settings(attempts, backoff_base)
    retryable = (OperationalError, StaleDataError) + tuple(retry_on)
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except retryable as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            current_app.logger.warning(
                "Ledger conflict (%s), retrying attempt %d/%d",
                type(exc).__name__, attempt + 2, attempts,
            )
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc


def commit_with_retry(*, attempts: int | None = None, backoff_base: float | None = None):
    """Commit current session with retry handling."""
    def _op():
        db.session.commit()
    return run_with_retry(_op, attempts=attempts, backoff_base=backoff_base)
