# Overview: Stock movement arithmetic and product stock views (pure).

from __future__ import annotations

from ..errors import ValidationError

SALE = "sale"
DAMAGE = "damage"
TRANSFER = "transfer"
PURCHASE = "purchase"
RETURN = "return"
ADJUSTMENT = "adjustment"

DECREASING_TYPES = frozenset({SALE, DAMAGE, TRANSFER})
INCREASING_TYPES = frozenset({PURCHASE, RETURN, ADJUSTMENT})
MOVEMENT_TYPES = DECREASING_TYPES | INCREASING_TYPES

OUT_OF_STOCK = "out_of_stock"
LOW_STOCK = "low_stock"
OVERSTOCK = "overstock"
IN_STOCK = "in_stock"


def signed_delta(movement_type: str, quantity: int) -> int:
    """Quantity as it applies to current stock: negative for decreasing types."""
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"Unknown movement type: {movement_type}")
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise ValidationError("Quantity must be a positive integer", details={"quantity": quantity})
    return -quantity if movement_type in DECREASING_TYPES else quantity


def new_stock(current_stock: int, movement_type: str, quantity: int) -> int:
    return current_stock + signed_delta(movement_type, quantity)


def needs_reorder(current_stock: int, reorder_point: int | None, min_stock: int) -> bool:
    threshold = reorder_point if reorder_point is not None else min_stock
    return current_stock <= threshold


def stock_status(current_stock: int, min_stock: int) -> str:
    if current_stock <= 0:
        return OUT_OF_STOCK
    if current_stock <= min_stock:
        return LOW_STOCK
    if current_stock > min_stock * 3:
        return OVERSTOCK
    return IN_STOCK
