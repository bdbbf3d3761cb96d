# Overview: Service-layer operations for concurrency; unit of work, row locks and retry.

from __future__ import annotations

import time
from contextlib import contextmanager

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import Product


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def lock_products(product_ids) -> dict[int, Product]:
    """
    Lock the stock aggregate of each product for the rest of the unit of work.

    Rows are locked in ascending id order so two writers touching the same
    products cannot deadlock. The stock_version bump is an UPDATE, which holds
    a row lock on every backend and takes the database write lock on SQLite,
    so the Guard's read and the ledger write are one critical section.

    Returns the locked products keyed by id (missing ids are simply absent).
    """
    ids = sorted({int(pid) for pid in product_ids})
    if not ids:
        return {}

    products = (
        lock_for_update(db.session.query(Product).filter(Product.id.in_(ids)))
        .order_by(Product.id.asc())
        .all()
    )
    found = [p.id for p in products]
    if found:
        db.session.execute(
            update(Product)
            .where(Product.id.in_(found))
            .values(
                stock_version=Product.stock_version + 1,
                updated_at=Product.updated_at,
            )
            .execution_options(synchronize_session=False)
        )
    return {p.id: p for p in products}


@contextmanager
def unit_of_work():
    """
    One atomic database transaction.

    Commits when the block finishes, rolls back on any exception and re-raises,
    so a failed operation never leaves partial rows behind.
    """
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts).
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc
