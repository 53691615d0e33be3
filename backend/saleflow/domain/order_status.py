# Overview: Order status state machine (pure; no database access).

from __future__ import annotations

from ..errors import InvalidStatusTransition

PENDING = "pending"
CONFIRMED = "confirmed"
PROCESSING = "processing"
READY = "ready"
OUT_FOR_DELIVERY = "out_for_delivery"
DELIVERED = "delivered"
FAILED = "failed"
CANCELLED = "cancelled"

ALL_STATUSES = (
    PENDING,
    CONFIRMED,
    PROCESSING,
    READY,
    OUT_FOR_DELIVERY,
    DELIVERED,
    FAILED,
    CANCELLED,
)

# Directed graph; only failed -> out_for_delivery re-enters a prior state
TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({CONFIRMED, CANCELLED}),
    CONFIRMED: frozenset({PROCESSING, CANCELLED}),
    PROCESSING: frozenset({READY, CANCELLED}),
    READY: frozenset({OUT_FOR_DELIVERY, DELIVERED, CANCELLED}),
    OUT_FOR_DELIVERY: frozenset({DELIVERED, FAILED}),
    FAILED: frozenset({OUT_FOR_DELIVERY, CANCELLED}),
    DELIVERED: frozenset(),
    CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, nxt in TRANSITIONS.items() if not nxt)


def allowed_next(status: str) -> frozenset[str]:
    return TRANSITIONS.get(status, frozenset())


def can_transition(current: str, requested: str) -> bool:
    return requested in allowed_next(current)


def validate_transition(current: str, requested: str) -> None:
    """Raise InvalidStatusTransition unless current -> requested is an edge."""
    if not can_transition(current, requested):
        raise InvalidStatusTransition(current, requested)


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES
