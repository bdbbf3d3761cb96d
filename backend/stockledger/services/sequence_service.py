# Overview: Service-layer operations for transaction numbering; per-type, per-day counters.

from __future__ import annotations

from datetime import date

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import TransactionSequence
from stockledger.time_utils import day_stamp, today


TRANSACTION_PREFIXES = {
    "purchase": "PUR",
    "sale": "SAL",
    "adjustment": "ADJ",
}


class SequenceError(Exception):
    """Raised when transaction sequence operations fail."""
    pass


def format_transaction_no(prefix: str, day: date, number: int, pad: int = 3) -> str:
    return f"{prefix}-{day_stamp(day)}-{number:0{pad}d}"


def next_transaction_no(txn_type: str, *, day: date | None = None, pad: int = 3) -> str:
    """
    Allocate the next transaction number for (type, day).

    Runs inside the caller's unit of work: the counter increment commits or
    rolls back together with the transaction that uses the number, so a failed
    request never consumes a number.

    The first number of a day is created under a savepoint; if a concurrent
    writer created the row first, the savepoint is rolled back and the
    increment is retried against the existing row.
    """
    prefix = TRANSACTION_PREFIXES.get(txn_type)
    if not prefix:
        raise SequenceError(f"unknown transaction type: {txn_type!r}")

    day = day or today()

    stmt = (
        update(TransactionSequence)
        .where(
            TransactionSequence.type == txn_type,
            TransactionSequence.day == day,
        )
        .values(next_number=TransactionSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    def _current() -> int:
        return (
            db.session.query(TransactionSequence.next_number)
            .filter_by(type=txn_type, day=day)
            .scalar()
        )

    result = db.session.execute(stmt)
    if result.rowcount:
        next_num = _current() - 1
    else:
        try:
            with db.session.begin_nested():
                db.session.add(TransactionSequence(type=txn_type, day=day, next_number=2))
            next_num = 1
        except IntegrityError:
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise
            next_num = _current() - 1

    return format_transaction_no(prefix, day, next_num, pad=pad)
