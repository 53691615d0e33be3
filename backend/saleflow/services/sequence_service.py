# Overview: Named counters for receipt and order numbers; atomic increment with period resets.

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Counter
from ..time_utils import utcnow
from ..errors import ValidationError
from ..domain import counters as counter_rules
from .concurrency import run_with_retry

logger = logging.getLogger(__name__)


def _business_tz() -> str:
    return current_app.config.get("BUSINESS_TIMEZONE", "Africa/Nairobi")


def _increment_stmt(key: str, reset_period: str, now, boundary):
    """
    Increment-or-reset in one statement.

    Both CASE arms read the pre-update row, so the reset decision and the new
    seq are taken from the same snapshot under the row's write lock.
    """
    if boundary is None:
        values = {"seq": Counter.seq + 1}
    else:
        stale = Counter.last_reset < boundary
        values = {
            "seq": case((stale, 1), else_=Counter.seq + 1),
            "last_reset": case((stale, now), else_=Counter.last_reset),
        }
    values["reset_period"] = reset_period
    values["updated_at"] = now
    return (
        update(Counter)
        .where(Counter.key == key)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


def _current_seq(key: str) -> int:
    return db.session.query(Counter.seq).filter(Counter.key == key).scalar()


def next_value(key: str, reset_period: str = counter_rules.NEVER, *, now=None) -> int:
    """
    Atomically allocate the next value of a named counter.

    WHY: Two concurrent checkouts must never see the same receipt number.
    A read-modify-write in Python would race; the UPDATE ... SET seq = seq+1
    holds the row's write lock until the surrounding transaction ends, and
    the value is read back under that same lock.

    A counter that does not exist yet is created with seq=1. If two callers
    race to create it, the loser falls back to the UPDATE path.

    DESIGN: Does not commit. The caller's transaction owns the number, so a
    sale that fails after allocation also releases its number. Call it before
    any other write in the transaction: the create-race fallback rolls back.
    """
    if not key:
        raise ValidationError("counter key is required")
    if reset_period not in counter_rules.RESET_PERIODS:
        raise ValidationError(f"Unknown reset period: {reset_period}")

    now = now or utcnow()
    boundary = counter_rules.period_start(reset_period, now, _business_tz())
    stmt = _increment_stmt(key, reset_period, now, boundary)

    result = db.session.execute(stmt)
    if result.rowcount:
        return _current_seq(key)

    db.session.add(Counter(key=key, seq=1, reset_period=reset_period, last_reset=now, updated_at=now))
    try:
        db.session.flush()
        logger.info("Created counter %s (reset=%s)", key, reset_period)
        return 1
    except IntegrityError:
        db.session.rollback()
        result = db.session.execute(stmt)
        if not result.rowcount:
            raise
        return _current_seq(key)


def next_receipt_number(*, now=None) -> str:
    """RCP + YYMMDD + daily sequence, in the business timezone."""
    now = now or utcnow()
    seq = next_value(counter_rules.RECEIPT_KEY, counter_rules.DAILY, now=now)
    return counter_rules.format_receipt_number(seq, now, _business_tz())


def next_order_number(*, now=None) -> str:
    """ORD + YYMM + monthly sequence, in the business timezone."""
    now = now or utcnow()
    seq = next_value(counter_rules.ORDER_KEY, counter_rules.MONTHLY, now=now)
    return counter_rules.format_order_number(seq, now, _business_tz())


def allocate(key: str, reset_period: str = counter_rules.NEVER) -> int:
    """Allocate and commit a value outside any document transaction."""
    def _op() -> int:
        value = next_value(key, reset_period)
        db.session.commit()
        return value

    return run_with_retry(_op)


def peek(key: str) -> dict | None:
    counter = db.session.get(Counter, key)
    if counter is None:
        return None
    return {
        "key": counter.key,
        "seq": counter.seq,
        "reset_period": counter.reset_period,
        "last_reset": counter.last_reset,
    }
