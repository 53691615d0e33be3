# Overview: Service-layer operations for customer orders; status machine, delivery stock commit and payments.

"""
Order Service

WHY orders differ from sales:
An order reserves nothing. Stock leaves with one "sale" movement per line
only when the order enters delivered, and stock_committed_at makes that
happen at most once even if the transition is replayed.

Every status change (creation included) appends an OrderStatusHistory row.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from flask import current_app
from sqlalchemy import case

from ..extensions import db
from ..models import Order, OrderItem, OrderStatusHistory, OrderPaymentTransaction
from ..models.orders import (
    DELIVERY_TYPES,
    DELIVERY_WINDOWS,
    ORDER_PAYMENT_PAID,
    ORDER_PAYMENT_PARTIAL,
    ORDER_SOURCES,
    PRIORITIES,
    PRIORITY_RANK,
)
from ..models.sales import PAYMENT_METHODS
from ..time_utils import utcnow, local_to_utc_naive
from ..errors import NotFoundError, StateConflictError, ValidationError
from ..domain import order_status
from ..domain import pricing
from ..domain import stock as stock_rules
from ..domain.mpesa import is_valid_contact_phone
from ..validation import coerce_datetime, coerce_int, optional_int, require_list
from . import customer_service, inventory_service, sequence_service
from .concurrency import lock_for_update, run_with_retry
from .pagination import paginate

logger = logging.getLogger(__name__)

OPEN_STATUSES = (order_status.PENDING, order_status.CONFIRMED, order_status.PROCESSING)
DISPATCH_STATUSES = (order_status.READY, order_status.OUT_FOR_DELIVERY)


def _choice(value, allowed, field: str, default: str) -> str:
    if value is None:
        return default
    if value not in allowed:
        raise ValidationError(f"{field} must be one of: {', '.join(allowed)}", details={field: value})
    return value


def _parse_location(location) -> tuple[float | None, float | None]:
    if not location:
        return None, None
    if not isinstance(location, dict):
        raise ValidationError("location must be an object with latitude and longitude")
    try:
        return float(location["latitude"]), float(location["longitude"])
    except (KeyError, TypeError, ValueError):
        raise ValidationError("location must be an object with latitude and longitude")


def _history(order: Order, from_status: str | None, to_status: str, *, actor_id, notes=None, location=None):
    latitude, longitude = _parse_location(location)
    order.status_history.append(OrderStatusHistory(
        from_status=from_status,
        status=to_status,
        changed_by_user_id=actor_id,
        notes=notes,
        latitude=latitude,
        longitude=longitude,
    ))


# =============================================================================
# CREATE
# =============================================================================

def create_order(payload: dict, *, actor_id: int | None = None) -> Order:
    """
    Payload:
        customer_id?: int
        customer_info: {name, phone, email?, alternate_phone?}
        items: [{product_id, quantity, unit_price_cents?, discount_percent?,
                 discount_cents?, notes?}]
        delivery?: {type, address?, scheduled_date?, window?, fee_cents?}
        priority?, source?, payment_method?, customer_notes?, internal_notes?
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    raw_items = require_list(payload, "items")
    customer_id = optional_int(payload, "customer_id")
    info = payload.get("customer_info") or {}
    delivery = payload.get("delivery") or {}
    if not isinstance(info, dict) or not isinstance(delivery, dict):
        raise ValidationError("customer_info and delivery must be objects")

    delivery_type = _choice(delivery.get("type"), DELIVERY_TYPES, "delivery.type", "pickup")
    window = _choice(delivery.get("window"), DELIVERY_WINDOWS, "delivery.window", "anytime")
    priority = _choice(payload.get("priority"), PRIORITIES, "priority", "normal")
    source = _choice(payload.get("source"), ORDER_SOURCES, "source", "pos")
    payment_method = _choice(payload.get("payment_method"), PAYMENT_METHODS, "payment_method", "cash")

    fee = delivery.get("fee_cents")
    fee = coerce_int(fee, "delivery.fee_cents") if fee is not None else 0
    address = delivery.get("address")
    if delivery_type == "delivery" and not address:
        raise ValidationError("delivery.address is required for delivery orders")
    scheduled = delivery.get("scheduled_date")
    scheduled = coerce_datetime(scheduled, "delivery.scheduled_date") if scheduled else None

    for field in ("phone", "alternate_phone"):
        value = info.get(field)
        if value and not is_valid_contact_phone(value):
            raise ValidationError("Please provide a valid Kenyan phone number", details={field: value})

    def _op() -> Order:
        # First write of the transaction (see sequence_service.next_value)
        order_number = sequence_service.next_order_number()

        customer = customer_service.get_customer(customer_id) if customer_id is not None else None
        name = info.get("name") or (customer.name if customer else None)
        phone = info.get("phone") or (customer.phone if customer else None)
        if not name or not phone:
            raise ValidationError("customer_info.name and customer_info.phone are required")

        lines = []
        for idx, raw in enumerate(raw_items):
            if not isinstance(raw, dict) or raw.get("product_id") is None:
                raise ValidationError(f"items[{idx}].product_id is required")
            product = inventory_service.get_product(coerce_int(raw["product_id"], "product_id"))
            if not product.is_active:
                raise ValidationError(
                    f"Product {product.name} is not available", details={"product_id": product.id}
                )
            unit_price = raw.get("unit_price_cents")
            line = pricing.LineInput.build(
                quantity=coerce_int(raw.get("quantity"), "quantity"),
                unit_price_cents=(
                    coerce_int(unit_price, "unit_price_cents")
                    if unit_price is not None else product.effective_price_cents
                ),
                discount_percent=raw.get("discount_percent"),
                discount_cents=(
                    coerce_int(raw["discount_cents"], "discount_cents")
                    if raw.get("discount_cents") is not None else 0
                ),
            )
            lines.append((product, line, pricing.price_line(line, apply_tax=False), raw.get("notes")))

        totals = pricing.order_totals((lt for _, _, lt, _ in lines), delivery_fee_cents=fee)

        order = Order(
            order_number=order_number,
            customer_id=customer.id if customer else None,
            customer_name=name,
            customer_phone=phone,
            customer_email=info.get("email") or (customer.email if customer else None),
            customer_alternate_phone=info.get("alternate_phone"),
            priority=priority,
            source=source,
            delivery_type=delivery_type,
            delivery_address=address,
            scheduled_date=scheduled or utcnow(),
            scheduled_window=window,
            delivery_fee_cents=totals.delivery_fee_cents,
            subtotal_cents=totals.subtotal_cents,
            discount_cents=totals.discount_cents,
            tax_cents=totals.tax_cents,
            total_cents=totals.total_cents,
            payment_method=payment_method,
            customer_notes=payload.get("customer_notes"),
            internal_notes=payload.get("internal_notes"),
            created_by_user_id=actor_id,
        )
        for product, line, lt, notes in lines:
            order.items.append(OrderItem(
                product_id=product.id,
                product_name=product.name,
                quantity=line.quantity,
                unit_price_cents=line.unit_price_cents,
                discount_percent=line.discount_percent,
                discount_cents=lt.discount_cents,
                subtotal_cents=lt.subtotal_cents,
                notes=notes,
            ))
        _history(order, None, order_status.PENDING, actor_id=actor_id, notes="Order created")

        db.session.add(order)
        db.session.commit()
        return order

    order = run_with_retry(_op)
    logger.info("Order %s created total=%s type=%s", order.order_number, order.total_cents, order.delivery_type)
    return order


# =============================================================================
# QUERIES
# =============================================================================

def get_order(order_id: int, *, lock: bool = False) -> Order:
    query = db.session.query(Order).filter(Order.id == order_id)
    if lock:
        query = lock_for_update(query)
    order = query.first()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
    return order


def list_orders(
    *,
    status: str | None = None,
    customer_id: int | None = None,
    page: int | None = 1,
    per_page: int | None = 20,
) -> dict:
    base_query = db.session.query(Order).order_by(Order.created_at.desc(), Order.id.desc())
    if status:
        base_query = base_query.filter(Order.status == status)
    if customer_id is not None:
        base_query = base_query.filter(Order.customer_id == customer_id)
    return paginate(base_query, page=page, per_page=per_page)


def _priority_order():
    return case(PRIORITY_RANK, value=Order.priority, else_=0).desc()


def pending_orders() -> list[Order]:
    """Orders not yet ready, most urgent first, then oldest first."""
    return (
        db.session.query(Order)
        .filter(Order.status.in_(OPEN_STATUSES))
        .order_by(_priority_order(), Order.created_at.asc(), Order.id.asc())
        .all()
    )


def delivery_queue(day: date | None = None) -> list[Order]:
    """Delivery orders scheduled for one business day that are ready or on the road."""
    tz = ZoneInfo(current_app.config.get("BUSINESS_TIMEZONE", "Africa/Nairobi"))
    if day is None:
        day = datetime.now(tz).date()
    start = local_to_utc_naive(datetime.combine(day, time.min, tzinfo=tz))
    end = start + timedelta(days=1)

    return (
        db.session.query(Order)
        .filter(
            Order.delivery_type == "delivery",
            Order.status.in_(DISPATCH_STATUSES),
            Order.scheduled_date >= start,
            Order.scheduled_date < end,
        )
        .order_by(_priority_order(), Order.scheduled_date.asc(), Order.id.asc())
        .all()
    )


# =============================================================================
# STATUS MACHINE
# =============================================================================

def _commit_stock(order: Order, *, actor_id: int | None) -> None:
    if order.stock_committed_at is not None:
        return
    for item in order.items:
        if not item.product.track_inventory:
            continue
        inventory_service.adjust_stock(
            item.product_id,
            item.quantity,
            stock_rules.SALE,
            reference=order.order_number,
            actor_id=actor_id,
            revenue_cents=item.subtotal_cents,
            commit=False,
        )
    order.stock_committed_at = utcnow()


def _settle_on_delivery(order: Order, *, actor_id: int | None) -> None:
    balance = order.balance_cents
    if balance > 0:
        order.transactions.append(OrderPaymentTransaction(
            amount_cents=balance,
            method=order.payment_method,
            reference="delivery",
            received_by_user_id=actor_id,
        ))
    order.payment_status = ORDER_PAYMENT_PAID


def update_status(
    order_id: int,
    new_status: str,
    *,
    actor_id: int | None = None,
    notes: str | None = None,
    location: dict | None = None,
    delivery_person_id: int | None = None,
    reason: str | None = None,
) -> Order:
    """
    Move an order along one edge of the status graph.

    delivered: stamps the delivery date, moves stock once, settles the
    outstanding balance and folds the order into the customer's statistics.
    cancelled: stamps who, when and why.

    Raises:
        InvalidStatusTransition: edge not in the graph (status unchanged)
    """
    if new_status not in order_status.ALL_STATUSES:
        raise ValidationError(f"Unknown order status: {new_status}", details={"status": new_status})

    def _op() -> Order:
        order = get_order(order_id, lock=True)
        previous = order.status
        order_status.validate_transition(previous, new_status)

        now = utcnow()
        order.status = new_status

        if new_status == order_status.OUT_FOR_DELIVERY and delivery_person_id is not None:
            order.delivery_person_user_id = delivery_person_id
        elif new_status == order_status.DELIVERED:
            order.actual_delivery_date = now
            _commit_stock(order, actor_id=actor_id)
            _settle_on_delivery(order, actor_id=actor_id)
            if order.customer is not None:
                customer_service.update_order_statistics(order.customer, order.total_cents)
        elif new_status == order_status.CANCELLED:
            order.cancelled_by_user_id = actor_id
            order.cancelled_at = now
            order.cancellation_reason = reason or notes

        _history(order, previous, new_status, actor_id=actor_id, notes=notes or reason, location=location)
        db.session.commit()
        return order

    order = run_with_retry(_op)
    logger.info("Order %s status -> %s by %s", order.order_number, new_status, actor_id)
    return order


def cancel_order(order_id: int, *, actor_id: int | None = None, reason: str | None = None) -> Order:
    if not reason:
        raise ValidationError("Cancellation reason is required")
    return update_status(order_id, order_status.CANCELLED, actor_id=actor_id, reason=reason)


def assign_delivery_person(
    order_id: int,
    delivery_person_id,
    *,
    actor_id: int | None = None,
    notes: str | None = None,
) -> Order:
    """Hand the order to a rider; this is the ready/failed -> out_for_delivery edge."""
    delivery_person_id = coerce_int(delivery_person_id, "delivery_person_id")
    return update_status(
        order_id,
        order_status.OUT_FOR_DELIVERY,
        actor_id=actor_id,
        notes=notes or f"Assigned to delivery person {delivery_person_id}",
        delivery_person_id=delivery_person_id,
    )


# =============================================================================
# PAYMENTS
# =============================================================================

def record_order_payment(
    order_id: int,
    amount_cents,
    method: str,
    *,
    reference: str | None = None,
    actor_id: int | None = None,
) -> Order:
    amount_cents = coerce_int(amount_cents, "amount_cents")
    if amount_cents <= 0:
        raise ValidationError("Payment amount must be > 0")
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"Unsupported payment method: {method}", details={"method": method})

    def _op() -> Order:
        order = get_order(order_id, lock=True)
        if order.status == order_status.CANCELLED:
            raise StateConflictError("Cannot take payment on a cancelled order", details={"order_id": order.id})
        if order.payment_status == ORDER_PAYMENT_PAID:
            raise StateConflictError("Order is already paid", details={"order_id": order.id})

        balance = order.balance_cents
        if amount_cents > balance:
            raise ValidationError(
                "Payment exceeds outstanding balance",
                details={"balance_cents": balance, "amount_cents": amount_cents},
            )

        order.transactions.append(OrderPaymentTransaction(
            amount_cents=amount_cents,
            method=method,
            reference=reference,
            received_by_user_id=actor_id,
        ))
        order.payment_status = ORDER_PAYMENT_PAID if amount_cents == balance else ORDER_PAYMENT_PARTIAL
        db.session.commit()
        return order

    order = run_with_retry(_op)
    logger.info(
        "Order %s payment %s %s; balance=%s", order.order_number, method, amount_cents, order.balance_cents
    )
    return order
