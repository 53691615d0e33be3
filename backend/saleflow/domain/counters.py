"""
Counter reset boundaries and document number formats.

Periods are evaluated in the business timezone: a "daily" counter resets at
local midnight, not UTC midnight. Boundaries are returned as UTC-naive so
they can be compared with stored timestamps.
"""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from ..errors import ValidationError

DAILY = "daily"
MONTHLY = "monthly"
YEARLY = "yearly"
NEVER = "never"

RESET_PERIODS = (DAILY, MONTHLY, YEARLY, NEVER)

RECEIPT_KEY = "receipt"
ORDER_KEY = "order"

RECEIPT_PREFIX = "RCP"
ORDER_PREFIX = "ORD"
SEQUENCE_WIDTH = 5


def _local_now(now_utc: datetime, tz_name: str) -> datetime:
    aware = now_utc.replace(tzinfo=timezone.utc) if now_utc.tzinfo is None else now_utc
    return aware.astimezone(ZoneInfo(tz_name))


def period_start(reset_period: str, now_utc: datetime, tz_name: str) -> datetime | None:
    """
    Start of the current period as UTC-naive, or None for counters that never reset.
    """
    if reset_period not in RESET_PERIODS:
        raise ValidationError(f"Unknown reset period: {reset_period}")
    if reset_period == NEVER:
        return None

    local = _local_now(now_utc, tz_name)
    if reset_period == DAILY:
        start = local.replace(hour=0, minute=0, second=0, microsecond=0)
    elif reset_period == MONTHLY:
        start = local.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    else:
        start = local.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)

    return start.astimezone(timezone.utc).replace(tzinfo=None)


def needs_reset(reset_period: str, last_reset: datetime | None, now_utc: datetime, tz_name: str) -> bool:
    boundary = period_start(reset_period, now_utc, tz_name)
    if boundary is None:
        return False
    return last_reset is None or last_reset < boundary


def format_receipt_number(seq: int, now_utc: datetime, tz_name: str) -> str:
    """RCP + YYMMDD + 5-digit sequence, e.g. RCP24031500042."""
    local = _local_now(now_utc, tz_name)
    return f"{RECEIPT_PREFIX}{local:%y%m%d}{seq:0{SEQUENCE_WIDTH}d}"


def format_order_number(seq: int, now_utc: datetime, tz_name: str) -> str:
    """ORD + YYMM + 5-digit sequence."""
    local = _local_now(now_utc, tz_name)
    return f"{ORDER_PREFIX}{local:%y%m}{seq:0{SEQUENCE_WIDTH}d}"
