# Overview: Service-layer operations for customers; lifetime statistics, loyalty tiers and credit accounts.

from __future__ import annotations

import logging

from ..extensions import db
from ..models import Customer, CustomerCreditTransaction
from ..models.customers import CREDIT_CHARGE, CREDIT_PAYMENT
from ..time_utils import utcnow
from ..errors import NotFoundError, ValidationError, StateConflictError, DuplicateError
from ..domain import loyalty
from ..domain.mpesa import is_valid_contact_phone
from ..validation import ModelValidationPolicy, validate_payload, coerce_int
from .concurrency import lock_for_update, run_with_retry
from .pagination import paginate

logger = logging.getLogger(__name__)


CUSTOMER_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "phone", "alternate_phone", "email",
        "credit_enabled", "credit_limit_cents", "is_active",
    },
    required_on_create={"name", "phone"},
)


def _check_phones(patch: dict) -> None:
    for field in ("phone", "alternate_phone"):
        value = patch.get(field)
        if value and not is_valid_contact_phone(value):
            raise ValidationError(
                "Please provide a valid Kenyan phone number", details={field: value}
            )
    if patch.get("credit_limit_cents") is not None and patch["credit_limit_cents"] < 0:
        raise ValidationError("credit_limit_cents must be >= 0")


def get_customer(customer_id: int, *, lock: bool = False) -> Customer:
    query = db.session.query(Customer).filter(Customer.id == customer_id)
    if lock:
        query = lock_for_update(query)
    customer = query.first()
    if customer is None:
        raise NotFoundError(f"Customer {customer_id} not found", details={"customer_id": customer_id})
    return customer


def create_customer(payload: dict) -> Customer:
    patch = validate_payload(model=Customer, payload=payload, policy=CUSTOMER_POLICY, partial=False)
    _check_phones(patch)

    def _op() -> Customer:
        if db.session.query(Customer.id).filter(Customer.phone == patch["phone"]).first():
            raise DuplicateError("Customer with this phone already exists", details={"phone": patch["phone"]})
        customer = Customer(**patch)
        db.session.add(customer)
        db.session.commit()
        return customer

    return run_with_retry(_op)


def update_customer(customer_id: int, payload: dict) -> Customer:
    patch = validate_payload(model=Customer, payload=payload, policy=CUSTOMER_POLICY, partial=True)
    _check_phones(patch)

    def _op() -> Customer:
        customer = get_customer(customer_id)
        for key, value in patch.items():
            setattr(customer, key, value)
        db.session.commit()
        return customer

    return run_with_retry(_op)


def list_customers(*, page: int | None = None, per_page: int | None = None, tier: str | None = None) -> dict:
    base_query = db.session.query(Customer).order_by(Customer.name.asc(), Customer.id.asc())
    if tier:
        base_query = base_query.filter(Customer.loyalty_tier == tier)
    return paginate(base_query, page=page, per_page=per_page)


# =============================================================================
# STATISTICS & LOYALTY
# =============================================================================

def update_order_statistics(customer: Customer, amount_cents: int) -> Customer:
    """
    Fold one completed sale / delivered order into the customer's lifetime totals.

    Does not commit; runs inside the sale or order transaction. Concurrent
    updates to the same customer surface as StaleDataError (version_id) and
    the caller's run_with_retry replays the whole operation.
    """
    now = utcnow()
    customer.total_orders += 1
    customer.total_spent_cents += amount_cents
    customer.average_order_value_cents = customer.total_spent_cents // customer.total_orders
    customer.last_order_at = now
    customer.last_activity_at = now
    customer.loyalty_points += loyalty.points_for_amount(amount_cents)

    new_tier = loyalty.compute_tier(customer.total_spent_cents, customer.total_orders)
    if new_tier != customer.loyalty_tier:
        logger.info("Customer %s tier %s -> %s", customer.id, customer.loyalty_tier, new_tier)
        customer.loyalty_tier = new_tier
    return customer


def record_refund(customer: Customer, amount_cents: int) -> Customer:
    """Refunds reduce lifetime spend (never below zero) and may drop the tier."""
    customer.total_spent_cents = max(0, customer.total_spent_cents - amount_cents)
    if customer.total_orders:
        customer.average_order_value_cents = customer.total_spent_cents // customer.total_orders
    customer.last_activity_at = utcnow()
    customer.loyalty_tier = loyalty.compute_tier(customer.total_spent_cents, customer.total_orders)
    return customer


def next_tier_requirement(customer_id: int) -> dict | None:
    customer = get_customer(customer_id)
    return loyalty.next_tier_requirement(
        customer.loyalty_tier, customer.total_spent_cents, customer.total_orders
    )


# =============================================================================
# CREDIT ACCOUNT
# =============================================================================

def apply_credit_transaction(
    customer: Customer,
    tx_type: str,
    amount_cents: int,
    *,
    reference: str | None = None,
    actor_id: int | None = None,
) -> CustomerCreditTransaction:
    """
    Post a credit-account movement without committing.

    credit: balance goes up; rejected if it would pass the limit.
    payment: balance goes down, floored at zero.
    """
    if not customer.credit_enabled:
        raise StateConflictError(
            "Credit not enabled for this customer", details={"customer_id": customer.id}
        )
    if tx_type not in (CREDIT_CHARGE, CREDIT_PAYMENT):
        raise ValidationError("type must be 'credit' or 'payment'", details={"type": tx_type})
    if amount_cents <= 0:
        raise ValidationError("amount_cents must be > 0")

    balance = customer.credit_used_cents
    if tx_type == CREDIT_CHARGE:
        if balance + amount_cents > customer.credit_limit_cents:
            raise StateConflictError(
                "Credit limit exceeded",
                details={
                    "credit_limit_cents": customer.credit_limit_cents,
                    "credit_used_cents": balance,
                    "requested_cents": amount_cents,
                },
            )
        balance += amount_cents
    else:
        balance = max(0, balance - amount_cents)

    customer.credit_used_cents = balance
    customer.last_activity_at = utcnow()

    tx = CustomerCreditTransaction(
        customer_id=customer.id,
        type=tx_type,
        amount_cents=amount_cents,
        reference=reference,
        balance_cents=balance,
        recorded_by_user_id=actor_id,
    )
    db.session.add(tx)
    return tx


def add_credit_transaction(
    customer_id: int,
    tx_type: str,
    amount_cents,
    *,
    reference: str | None = None,
    actor_id: int | None = None,
) -> CustomerCreditTransaction:
    amount_cents = coerce_int(amount_cents, "amount_cents")

    def _op() -> CustomerCreditTransaction:
        customer = get_customer(customer_id, lock=True)
        tx = apply_credit_transaction(
            customer, tx_type, amount_cents, reference=reference, actor_id=actor_id
        )
        db.session.commit()
        logger.info(
            "Credit %s customer=%s amount=%s balance=%s",
            tx_type, customer_id, amount_cents, tx.balance_cents,
        )
        return tx

    return run_with_retry(_op)


def list_credit_transactions(customer_id: int, *, page: int = 1, per_page: int = 50) -> dict:
    get_customer(customer_id)
    base_query = (
        db.session.query(CustomerCreditTransaction)
        .filter(CustomerCreditTransaction.customer_id == customer_id)
        .order_by(CustomerCreditTransaction.created_at.desc(), CustomerCreditTransaction.id.desc())
    )
    return paginate(base_query, page=page, per_page=per_page)
