# Overview: Transaction boundaries for stock-mutating operations; isolation, row locks, conflict mapping.

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConcurrencyConflict
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def begin_stock_transaction() -> None:
    """
    Pin the configured isolation level on the transaction about to start.

    Execution options only apply when the session procures its connection,
    so a transaction that is already open keeps the level it started with.
    """
    level = current_app.config.get("STOCK_ISOLATION_LEVEL")
    if not level or db.session().in_transaction():
        return
    db.session.connection(execution_options={"isolation_level": level})


def run_serializable(func):
    """
    Run `func` in one serializable transaction and commit it.

    Serialization failures, deadlocks and optimistic version conflicts are
    raised as ConcurrencyConflict after rollback. Nothing is retried here;
    the caller decides whether the operation is worth repeating.
    """
    begin_stock_transaction()
    try:
        result = func()
        db.session.commit()
        return result
    except (OperationalError, StaleDataError) as exc:
        db.session.rollback()
        raise ConcurrencyConflict(f"Concurrent update detected: {exc}") from exc
    except Exception:
        db.session.rollback()
        raise
