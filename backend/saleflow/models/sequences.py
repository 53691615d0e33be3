from __future__ import annotations

from ..extensions import db
from ..time_utils import utcnow
from ..domain.counters import NEVER


class Counter(db.Model):
    """
    Named monotonic sequence (receipt, order, ...).

    WHY: Document numbers must never repeat, even under concurrent checkouts.
    sequence_service.next_value increments and resets in a single UPDATE;
    nothing else writes seq.

    last_reset is the UTC-naive instant the current period's run started.
    """
    __tablename__ = "counters"

    key = db.Column(db.String(32), primary_key=True)
    seq = db.Column(db.Integer, nullable=False, default=0)
    reset_period = db.Column(db.String(16), nullable=False, default=NEVER)
    last_reset = db.Column(db.DateTime, nullable=False, default=utcnow)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<Counter key={self.key!r} seq={self.seq} reset={self.reset_period}>"
