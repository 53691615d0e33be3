"""
Sales Service - point-of-sale checkout, void, refund and payment

WHY: A sale is one atomic unit. Receipt number, line snapshots, stock
movements, payment settlement, M-Pesa linkage and customer statistics are
written in a single transaction, so a failure anywhere leaves no trace.

LIFECYCLE:
completed -> voided (terminal; every unrefunded unit goes back to stock)
completed -> partial_refund -> refunded (terminal once refunds cover the total)
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Sale, SaleItem, SalePayment, SaleRefund, SaleRefundLine
from ..models.sales import (
    PAYMENT_METHODS,
    PAYMENT_PAID,
    PAYMENT_PARTIAL,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    SALE_COMPLETED,
    SALE_PARTIAL_REFUND,
    SALE_PAYMENT_METHODS,
    SALE_REFUNDED,
    SALE_VOIDED,
)
from ..models.customers import CREDIT_CHARGE
from ..time_utils import utcnow, local_to_utc_naive
from ..errors import (
    ExceedsSoldQuantity,
    NotFoundError,
    NotFoundInSale,
    StateConflictError,
    ValidationError,
)
from ..domain import pricing
from ..domain import stock as stock_rules
from ..validation import coerce_int, optional_int, require_list
from . import customer_service, inventory_service, mpesa_service, sequence_service
from .concurrency import lock_for_update, run_with_retry
from .pagination import paginate

logger = logging.getLogger(__name__)


# =============================================================================
# INPUT PARSING
# =============================================================================

def _parse_items(raw_items: list) -> list[dict]:
    items = []
    for idx, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{idx}] must be an object")
        if raw.get("product_id") is None:
            raise ValidationError(f"items[{idx}].product_id is required")
        items.append({
            "product_id": coerce_int(raw["product_id"], "product_id"),
            "quantity": coerce_int(raw.get("quantity"), "quantity"),
            "unit_price_cents": (
                coerce_int(raw["unit_price_cents"], "unit_price_cents")
                if raw.get("unit_price_cents") is not None else None
            ),
            "discount_percent": raw.get("discount_percent"),
            "discount_cents": (
                coerce_int(raw["discount_cents"], "discount_cents")
                if raw.get("discount_cents") is not None else 0
            ),
            "tax_rate_percent": raw.get("tax_rate_percent"),
        })
    return items


def _parse_payment_details(payment: dict) -> list[dict]:
    details = []
    for idx, raw in enumerate(payment.get("details") or []):
        if not isinstance(raw, dict):
            raise ValidationError(f"payment.details[{idx}] must be an object")
        method = raw.get("method") or payment.get("method") or "cash"
        if method not in PAYMENT_METHODS:
            raise ValidationError(f"Unsupported payment method: {method}", details={"method": method})
        amount = coerce_int(raw.get("amount_cents"), "amount_cents")
        if amount <= 0:
            raise ValidationError("Payment amount must be > 0")
        details.append({
            "method": method,
            "amount_cents": amount,
            "reference": raw.get("reference"),
            "transaction_id": raw.get("transaction_id"),
        })
    return details


def _header_method(requested: str | None, details: list[dict]) -> str:
    methods = {d["method"] for d in details}
    if len(methods) > 1:
        return "mixed"
    if methods:
        return methods.pop()
    method = requested or "cash"
    if method == "mixed":
        raise ValidationError("Mixed payments require payment.details")
    if method not in SALE_PAYMENT_METHODS:
        raise ValidationError(f"Unsupported payment method: {method}", details={"method": method})
    return method


def _settlement(total_cents: int, total_paid_cents: int) -> tuple[str, int]:
    """(payment_status, change_cents) for an amount tendered against a total."""
    if total_paid_cents >= total_cents:
        return PAYMENT_PAID, total_paid_cents - total_cents
    if total_paid_cents > 0:
        return PAYMENT_PARTIAL, 0
    return PAYMENT_PENDING, 0


# =============================================================================
# SETTLEMENT SIDE EFFECTS
# =============================================================================

def _apply_tender(sale: Sale, detail: dict, *, actor_id: int | None, customer=None) -> SalePayment:
    """
    Record one tender on a sale (no commit).

    mpesa: must quote the receipt of a successful, unlinked transaction.
    credit: charged to the customer's credit account.
    """
    if detail["method"] == "mpesa":
        mpesa_service.link_sale(detail.get("transaction_id"), sale.id, amount_cents=detail["amount_cents"])
    elif detail["method"] == "credit":
        if customer is None:
            raise ValidationError("Credit payments require a customer")
        customer_service.apply_credit_transaction(
            customer,
            CREDIT_CHARGE,
            detail["amount_cents"],
            reference=sale.receipt_number,
            actor_id=actor_id,
        )

    payment = SalePayment(
        sale_id=sale.id,
        method=detail["method"],
        amount_cents=detail["amount_cents"],
        reference=detail.get("reference"),
        transaction_id=detail.get("transaction_id"),
        created_by_user_id=actor_id,
    )
    db.session.add(payment)
    return payment


# =============================================================================
# CHECKOUT
# =============================================================================

def create_sale(payload: dict, *, actor_id: int | None = None) -> Sale:
    """
    Check out a cart.

    Payload:
        items: [{product_id, quantity, unit_price_cents?, discount_percent?,
                 discount_cents?, tax_rate_percent?}]
        customer_id?: int
        customer_info?: {name, phone, email}
        payment?: {method, details: [{method, amount_cents, reference?,
                   transaction_id?}]}
        notes?: str

    Omitted unit price / tax rate default to the product's effective price
    and tax rate at this moment; the sale keeps that snapshot forever.
    A payment with no details is treated as exact tender in payment.method.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    items = _parse_items(require_list(payload, "items"))
    payment = payload.get("payment") or {}
    if not isinstance(payment, dict):
        raise ValidationError("payment must be an object")
    details = _parse_payment_details(payment)
    header_method = _header_method(payment.get("method"), details)
    customer_id = optional_int(payload, "customer_id")
    customer_info = payload.get("customer_info") or {}

    def _op() -> Sale:
        # First write of the transaction (see sequence_service.next_value)
        receipt_number = sequence_service.next_receipt_number()

        customer = customer_service.get_customer(customer_id) if customer_id is not None else None

        priced = []
        for item in items:
            product = inventory_service.get_product(item["product_id"])
            if not product.is_active:
                raise ValidationError(
                    f"Product {product.name} is not available", details={"product_id": product.id}
                )
            unit_price = item["unit_price_cents"]
            if unit_price is None:
                unit_price = product.effective_price_cents
            tax_rate = item["tax_rate_percent"]
            if tax_rate is None:
                tax_rate = product.tax_rate_percent

            line = pricing.LineInput.build(
                quantity=item["quantity"],
                unit_price_cents=unit_price,
                discount_percent=item["discount_percent"],
                discount_cents=item["discount_cents"],
                tax_rate_percent=tax_rate,
            )
            priced.append((product, line, pricing.price_line(line)))

        totals = pricing.sale_totals(lt for _, _, lt in priced)

        total_paid = sum(d["amount_cents"] for d in details) if details else totals.total_cents
        payment_status, change = _settlement(totals.total_cents, total_paid)

        sale = Sale(
            receipt_number=receipt_number,
            customer_id=customer.id if customer else None,
            customer_name=customer_info.get("name") or (customer.name if customer else None),
            customer_phone=customer_info.get("phone") or (customer.phone if customer else None),
            customer_email=customer_info.get("email") or (customer.email if customer else None),
            seller_user_id=actor_id,
            status=SALE_COMPLETED,
            subtotal_cents=totals.subtotal_cents,
            discount_cents=totals.discount_cents,
            tax_cents=totals.tax_cents,
            total_cents=totals.total_cents,
            payment_method=header_method,
            payment_status=payment_status,
            total_paid_cents=total_paid,
            change_cents=change,
            notes=payload.get("notes"),
        )
        db.session.add(sale)

        for product, line, lt in priced:
            sale.items.append(SaleItem(
                product_id=product.id,
                product_name=product.name,
                sku=product.sku,
                quantity=line.quantity,
                unit_price_cents=line.unit_price_cents,
                discount_percent=line.discount_percent,
                discount_cents=lt.discount_cents,
                tax_rate_percent=line.tax_rate_percent,
                tax_cents=lt.tax_cents,
                subtotal_cents=lt.subtotal_cents,
                stock_tracked=product.track_inventory,
            ))
        db.session.flush()

        for product, line, lt in priced:
            if not product.track_inventory:
                continue
            inventory_service.adjust_stock(
                product.id,
                line.quantity,
                stock_rules.SALE,
                reference=receipt_number,
                revenue_cents=lt.subtotal_cents,
                actor_id=actor_id,
                commit=False,
            )

        if not details and totals.total_cents > 0:
            # Exact tender in the header method
            details_to_apply = [{
                "method": header_method,
                "amount_cents": totals.total_cents,
                "reference": payment.get("reference"),
                "transaction_id": payment.get("transaction_id"),
            }]
        else:
            details_to_apply = details
        for detail in details_to_apply:
            _apply_tender(sale, detail, actor_id=actor_id, customer=customer)

        if customer is not None:
            customer_service.update_order_statistics(customer, totals.total_cents)

        db.session.commit()
        return sale

    sale = run_with_retry(_op)
    logger.info(
        "Sale %s completed total=%s items=%s method=%s",
        sale.receipt_number, sale.total_cents, len(sale.items), sale.payment_method,
    )
    return sale


# =============================================================================
# QUERIES
# =============================================================================

def get_sale(sale_id: int, *, lock: bool = False) -> Sale:
    query = db.session.query(Sale).filter(Sale.id == sale_id)
    if lock:
        query = lock_for_update(query)
    sale = query.first()
    if sale is None:
        raise NotFoundError(f"Sale {sale_id} not found", details={"sale_id": sale_id})
    return sale


def get_sale_by_receipt(receipt_number: str) -> Sale:
    sale = db.session.query(Sale).filter(Sale.receipt_number == receipt_number).first()
    if sale is None:
        raise NotFoundError("Sale not found", details={"receipt_number": receipt_number})
    return sale


def list_sales(
    *,
    status: str | None = None,
    customer_id: int | None = None,
    page: int | None = 1,
    per_page: int | None = 20,
) -> dict:
    base_query = db.session.query(Sale).order_by(Sale.created_at.desc(), Sale.id.desc())
    if status:
        base_query = base_query.filter(Sale.status == status)
    if customer_id is not None:
        base_query = base_query.filter(Sale.customer_id == customer_id)
    return paginate(base_query, page=page, per_page=per_page)


def daily_summary(day: date | None = None) -> dict:
    """
    Revenue summary for one business day (completed and partially refunded
    sales), with a breakdown by header payment method.
    """
    tz = ZoneInfo(current_app.config.get("BUSINESS_TIMEZONE", "Africa/Nairobi"))
    if day is None:
        day = datetime.now(tz).date()
    start = local_to_utc_naive(datetime.combine(day, time.min, tzinfo=tz))
    end = start + timedelta(days=1)

    counted = (SALE_COMPLETED, SALE_PARTIAL_REFUND)
    window = (Sale.created_at >= start, Sale.created_at < end, Sale.status.in_(counted))

    row = (
        db.session.query(
            func.count(Sale.id).label("sales"),
            func.coalesce(func.sum(Sale.total_cents), 0).label("revenue"),
            func.coalesce(func.sum(Sale.discount_cents), 0).label("discount"),
            func.coalesce(func.sum(Sale.tax_cents), 0).label("tax"),
        )
        .filter(*window)
        .one()
    )
    by_method = (
        db.session.query(Sale.payment_method, func.count(Sale.id), func.sum(Sale.total_cents))
        .filter(*window)
        .group_by(Sale.payment_method)
        .all()
    )

    total_sales = int(row.sales or 0)
    revenue = int(row.revenue or 0)
    return {
        "date": day.isoformat(),
        "total_sales": total_sales,
        "total_revenue_cents": revenue,
        "total_discount_cents": int(row.discount or 0),
        "total_tax_cents": int(row.tax or 0),
        "average_sale_cents": revenue // total_sales if total_sales else 0,
        "payment_methods": {
            method: {"count": int(count), "total_cents": int(total or 0)}
            for method, count, total in by_method
        },
    }


# =============================================================================
# VOID
# =============================================================================

def void_sale(sale_id: int, *, actor_id: int | None = None, reason: str | None = None) -> Sale:
    """
    Void a sale. Irreversible.

    Every unit not already refunded goes back to stock with a "return"
    movement; the customer's lifetime spend drops by what was not refunded.
    """
    def _op() -> Sale:
        sale = get_sale(sale_id, lock=True)
        if sale.status == SALE_VOIDED:
            raise StateConflictError("Sale is already voided", details={"sale_id": sale.id})
        if sale.status == SALE_REFUNDED:
            raise StateConflictError("Cannot void a fully refunded sale", details={"sale_id": sale.id})

        now = utcnow()
        sale.status = SALE_VOIDED
        sale.voided_by_user_id = actor_id
        sale.voided_at = now
        sale.void_reason = reason

        for item in sale.items:
            remaining = item.refundable_quantity
            if not item.stock_tracked or remaining <= 0:
                continue
            inventory_service.adjust_stock(
                item.product_id,
                remaining,
                stock_rules.RETURN,
                reference=sale.receipt_number,
                actor_id=actor_id,
                reason=f"Voided sale: {reason}" if reason else "Voided sale",
                commit=False,
            )

        if sale.customer is not None:
            customer_service.record_refund(sale.customer, sale.total_cents - sale.total_refunded_cents)

        db.session.commit()
        return sale

    sale = run_with_retry(_op)
    logger.info("Sale %s voided by %s: %s", sale.receipt_number, actor_id, reason)
    return sale


# =============================================================================
# REFUND
# =============================================================================

def _plan_refund(sale: Sale, requested: dict[int, int]) -> list[tuple[SaleItem, int]]:
    """
    Validate every requested line before anything is applied.

    A product sold on several lines is refunded across them in line order.
    """
    plan: list[tuple[SaleItem, int]] = []
    for product_id, qty in requested.items():
        lines = [item for item in sale.items if item.product_id == product_id]
        if not lines:
            raise NotFoundInSale(product_id)

        refundable = sum(item.refundable_quantity for item in lines)
        if qty > refundable:
            raise ExceedsSoldQuantity(product_id, qty, refundable)

        left = qty
        for item in lines:
            if left == 0:
                break
            take = min(left, item.refundable_quantity)
            if take > 0:
                plan.append((item, take))
                left -= take
    return plan


def refund_sale(
    sale_id: int,
    items: list,
    *,
    actor_id: int | None = None,
    reason: str | None = None,
) -> tuple[Sale, SaleRefund]:
    """
    Refund some units of a sale.

    Each unit's refund is its share of the line subtotal (tax and discount
    included). Cumulative refunds per line are tracked, so the same unit can
    never be refunded twice; all lines are checked before any is applied.
    """
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")

    requested: dict[int, int] = {}
    for idx, raw in enumerate(items):
        if not isinstance(raw, dict) or raw.get("product_id") is None:
            raise ValidationError(f"items[{idx}].product_id is required")
        product_id = coerce_int(raw["product_id"], "product_id")
        qty = coerce_int(raw.get("quantity"), "quantity")
        if qty < 1:
            raise ValidationError("Refund quantity must be at least 1", details={"product_id": product_id})
        requested[product_id] = requested.get(product_id, 0) + qty

    def _op() -> tuple[Sale, SaleRefund]:
        sale = get_sale(sale_id, lock=True)
        if sale.status == SALE_VOIDED:
            raise StateConflictError("Cannot refund a voided sale", details={"sale_id": sale.id})
        if sale.status == SALE_REFUNDED:
            raise StateConflictError("Sale is already fully refunded", details={"sale_id": sale.id})

        plan = _plan_refund(sale, requested)

        refund = SaleRefund(sale_id=sale.id, amount_cents=0, reason=reason, refunded_by_user_id=actor_id)
        db.session.add(refund)

        refund_total = 0
        for item, qty in plan:
            amount = pricing.refund_amount_cents(
                item_subtotal_cents=item.subtotal_cents,
                item_quantity=item.quantity,
                refund_quantity=qty,
                refunded_quantity=item.refunded_quantity,
                refunded_cents=item.refunded_cents,
            )
            item.refunded_quantity += qty
            item.refunded_cents += amount
            refund.lines.append(SaleRefundLine(
                sale_item_id=item.id,
                product_id=item.product_id,
                quantity=qty,
                amount_cents=amount,
            ))
            refund_total += amount

            if item.stock_tracked:
                inventory_service.adjust_stock(
                    item.product_id,
                    qty,
                    stock_rules.RETURN,
                    reference=sale.receipt_number,
                    actor_id=actor_id,
                    reason=f"Refund: {reason}" if reason else "Refund",
                    commit=False,
                )

        refund.amount_cents = refund_total
        sale.total_refunded_cents += refund_total
        if sale.total_refunded_cents >= sale.total_cents:
            sale.status = SALE_REFUNDED
            sale.payment_status = PAYMENT_REFUNDED
        else:
            sale.status = SALE_PARTIAL_REFUND

        if sale.customer is not None:
            customer_service.record_refund(sale.customer, refund_total)

        db.session.commit()
        return sale, refund

    sale, refund = run_with_retry(_op)
    logger.info(
        "Sale %s refunded %s (cumulative %s of %s) status=%s",
        sale.receipt_number, refund.amount_cents, sale.total_refunded_cents, sale.total_cents, sale.status,
    )
    return sale, refund


# =============================================================================
# PAYMENTS
# =============================================================================

def record_sale_payment(
    sale_id: int,
    amount_cents,
    method: str,
    *,
    reference: str | None = None,
    transaction_id: str | None = None,
    actor_id: int | None = None,
) -> Sale:
    """Add a tender to a pending or partially paid sale."""
    amount_cents = coerce_int(amount_cents, "amount_cents")
    if amount_cents <= 0:
        raise ValidationError("Payment amount must be > 0")
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"Unsupported payment method: {method}", details={"method": method})

    def _op() -> Sale:
        sale = get_sale(sale_id, lock=True)
        if sale.status == SALE_VOIDED:
            raise StateConflictError("Cannot take payment on a voided sale", details={"sale_id": sale.id})
        if sale.payment_status in (PAYMENT_PAID, PAYMENT_REFUNDED):
            raise StateConflictError("Sale is already paid", details={"sale_id": sale.id})

        _apply_tender(
            sale,
            {"method": method, "amount_cents": amount_cents,
             "reference": reference, "transaction_id": transaction_id},
            actor_id=actor_id,
            customer=sale.customer,
        )

        sale.total_paid_cents += amount_cents
        sale.payment_status, sale.change_cents = _settlement(sale.total_cents, sale.total_paid_cents)
        if sale.payment_method != method:
            sale.payment_method = "mixed"

        db.session.commit()
        return sale

    sale = run_with_retry(_op)
    logger.info(
        "Payment %s %s on sale %s; status=%s", method, amount_cents, sale.receipt_number, sale.payment_status
    )
    return sale
