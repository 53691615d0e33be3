import pytest

from saleflow.domain import loyalty
from saleflow.errors import DuplicateError, StateConflictError, ValidationError
from saleflow.services import customer_service


def test_create_and_duplicate_phone(make_customer):
    customer = make_customer(phone="0712345678")
    assert customer.loyalty_tier == loyalty.BRONZE

    with pytest.raises(DuplicateError):
        make_customer(phone="0712345678")


@pytest.mark.parametrize("phone", ["12345", "254712345678", "0812345678"])
def test_invalid_phone_rejected(db_session, phone):
    with pytest.raises(ValidationError):
        customer_service.create_customer({"name": "Jane", "phone": phone})


def test_plus_prefixed_phone_accepted(make_customer):
    assert make_customer(phone="+254712345678").phone == "+254712345678"


def test_statistics_and_tier_promotion(db_session, make_customer):
    customer = make_customer()
    for _ in range(10):
        customer_service.update_order_statistics(customer, 5_000_00)
    db_session.commit()

    assert customer.total_orders == 10
    assert customer.total_spent_cents == 50_000_00
    assert customer.average_order_value_cents == 5_000_00
    assert customer.loyalty_points == 500
    assert customer.loyalty_tier == loyalty.SILVER


def test_refund_reduces_spend_and_can_drop_tier(db_session, make_customer):
    customer = make_customer()
    for _ in range(10):
        customer_service.update_order_statistics(customer, 5_000_00)
    customer_service.record_refund(customer, 1_00)
    db_session.commit()

    assert customer.total_spent_cents == 50_000_00 - 1_00
    assert customer.loyalty_tier == loyalty.BRONZE

    customer_service.record_refund(customer, 10_000_000_00)
    assert customer.total_spent_cents == 0


def test_next_tier_requirement(make_customer):
    customer = make_customer()
    req = customer_service.next_tier_requirement(customer.id)
    assert req == {"tier": loyalty.SILVER, "spent_needed_cents": 50_000_00, "orders_needed": 10}


def test_credit_requires_enabled_account(make_customer):
    customer = make_customer()
    with pytest.raises(StateConflictError):
        customer_service.add_credit_transaction(customer.id, "credit", 100)


def test_credit_limit_and_payment_floor(make_customer):
    customer = make_customer(credit_enabled=True, credit_limit_cents=1000)

    tx = customer_service.add_credit_transaction(customer.id, "credit", 800, reference="INV-1")
    assert tx.balance_cents == 800

    with pytest.raises(StateConflictError) as excinfo:
        customer_service.add_credit_transaction(customer.id, "credit", 201)
    assert excinfo.value.details["credit_used_cents"] == 800

    tx = customer_service.add_credit_transaction(customer.id, "payment", 5000)
    assert tx.balance_cents == 0
    assert customer_service.get_customer(customer.id).credit_used_cents == 0

    history = customer_service.list_credit_transactions(customer.id)
    assert history["pagination"]["total"] == 2


def test_credit_rejects_unknown_type_and_bad_amount(make_customer):
    customer = make_customer(credit_enabled=True, credit_limit_cents=1000)
    with pytest.raises(ValidationError):
        customer_service.add_credit_transaction(customer.id, "gift", 100)
    with pytest.raises(ValidationError):
        customer_service.add_credit_transaction(customer.id, "credit", 0)


def test_list_customers_filters_by_tier(db_session, make_customer):
    make_customer()
    silver = make_customer()
    silver.loyalty_tier = loyalty.SILVER
    db_session.commit()

    result = customer_service.list_customers(tier=loyalty.SILVER)
    assert [c["id"] for c in result["items"]] == [silver.id]
