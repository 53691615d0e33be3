import re

import pytest

from saleflow.errors import (
    ExceedsSoldQuantity,
    InsufficientStockError,
    NotFoundInSale,
    StateConflictError,
    ValidationError,
)
from saleflow.models import MpesaTransaction, Sale, SalePayment, StockMovement
from saleflow.services import customer_service, inventory_service, sales_service, sequence_service


def _stock(product_id):
    return inventory_service.get_product(product_id).current_stock


def test_checkout_prices_lines_and_moves_stock(db_session, make_product):
    product = make_product(selling_price_cents=100_00, tax_rate_percent=16, opening_stock=10)

    sale = sales_service.create_sale(
        {"items": [{"product_id": product.id, "quantity": 2, "discount_percent": 10}]},
        actor_id=7,
    )

    assert re.fullmatch(r"RCP\d{6}00001", sale.receipt_number)
    assert sale.subtotal_cents == 20000
    assert sale.discount_cents == 2000
    assert sale.tax_cents == 2880
    assert sale.total_cents == 20880
    assert sale.status == "completed"
    assert sale.payment_method == "cash"
    assert sale.payment_status == "paid"
    assert sale.total_paid_cents == 20880
    assert sale.seller_user_id == 7

    item = sale.items[0]
    assert item.product_name == product.name
    assert item.unit_price_cents == 100_00
    assert item.subtotal_cents == 20880

    assert _stock(product.id) == 8
    movement = (
        db_session.query(StockMovement)
        .filter_by(product_id=product.id, movement_type="sale")
        .one()
    )
    assert movement.reference == sale.receipt_number
    assert inventory_service.get_product(product.id).total_revenue_cents == 20880


def test_unit_price_defaults_to_discounted_shelf_price(make_product):
    product = make_product(selling_price_cents=200_00, discount_percent=25)
    sale = sales_service.create_sale({"items": [{"product_id": product.id, "quantity": 1}]})
    assert sale.items[0].unit_price_cents == 150_00
    assert sale.total_cents == 150_00


def test_receipt_numbers_are_sequential(make_product):
    product = make_product()
    first = sales_service.create_sale({"items": [{"product_id": product.id, "quantity": 1}]})
    second = sales_service.create_sale({"items": [{"product_id": product.id, "quantity": 1}]})
    assert int(second.receipt_number[-5:]) == int(first.receipt_number[-5:]) + 1


def test_cash_overpayment_gives_change(make_product):
    product = make_product(selling_price_cents=75_00)
    sale = sales_service.create_sale({
        "items": [{"product_id": product.id, "quantity": 1}],
        "payment": {"method": "cash", "details": [{"method": "cash", "amount_cents": 100_00}]},
    })
    assert sale.payment_status == "paid"
    assert sale.change_cents == 25_00


def test_underpayment_is_partial_and_can_be_completed(make_product):
    product = make_product(selling_price_cents=100_00)
    sale = sales_service.create_sale({
        "items": [{"product_id": product.id, "quantity": 1}],
        "payment": {"details": [{"method": "cash", "amount_cents": 40_00}]},
    })
    assert sale.payment_status == "partial"

    sale = sales_service.record_sale_payment(sale.id, 60_00, "card", reference="VISA-1")

    assert sale.payment_status == "paid"
    assert sale.total_paid_cents == 100_00
    assert sale.payment_method == "mixed"
    assert len(sale.payments) == 2

    with pytest.raises(StateConflictError):
        sales_service.record_sale_payment(sale.id, 1_00, "cash")


def test_split_tender_is_mixed(make_product):
    product = make_product(selling_price_cents=100_00)
    sale = sales_service.create_sale({
        "items": [{"product_id": product.id, "quantity": 1}],
        "payment": {"details": [
            {"method": "cash", "amount_cents": 30_00},
            {"method": "card", "amount_cents": 70_00},
        ]},
    })
    assert sale.payment_method == "mixed"
    assert sorted(p.method for p in sale.payments) == ["card", "cash"]


def test_mixed_without_details_rejected(make_product):
    product = make_product()
    with pytest.raises(ValidationError):
        sales_service.create_sale({"items": [{"product_id": product.id, "quantity": 1}], "payment": {"method": "mixed"}})


def test_oversell_rolls_back_everything(db_session, make_product):
    plenty = make_product(opening_stock=10)
    scarce = make_product(opening_stock=1)

    with pytest.raises(InsufficientStockError):
        sales_service.create_sale({"items": [
            {"product_id": plenty.id, "quantity": 2},
            {"product_id": scarce.id, "quantity": 2},
        ]})

    assert _stock(plenty.id) == 10
    assert _stock(scarce.id) == 1
    assert db_session.query(Sale).count() == 0
    assert sequence_service.peek("receipt") is None


def test_untracked_product_does_not_move_stock(db_session, make_product):
    service = make_product(track_inventory=False, opening_stock=None)
    sales_service.create_sale({"items": [{"product_id": service.id, "quantity": 5}]})
    assert _stock(service.id) == 0
    assert db_session.query(StockMovement).filter_by(product_id=service.id).count() == 0


def test_inactive_product_rejected(make_product):
    product = make_product(is_active=False)
    with pytest.raises(ValidationError):
        sales_service.create_sale({"items": [{"product_id": product.id, "quantity": 1}]})


@pytest.mark.parametrize("payload", [
    {},
    {"items": []},
    {"items": [{"quantity": 1}]},
    {"items": [{"product_id": 1, "quantity": "two"}]},
    {"items": [{"product_id": 1, "quantity": 1.5}]},
])
def test_bad_payloads_rejected(db_session, payload):
    with pytest.raises(ValidationError):
        sales_service.create_sale(payload)


def test_customer_sale_updates_statistics(make_product, make_customer):
    customer = make_customer()
    product = make_product(selling_price_cents=250_00)

    sale = sales_service.create_sale({
        "items": [{"product_id": product.id, "quantity": 2}],
        "customer_id": customer.id,
    })

    customer = customer_service.get_customer(customer.id)
    assert sale.customer_name == customer.name
    assert customer.total_orders == 1
    assert customer.total_spent_cents == 500_00
    assert customer.loyalty_points == 5


def test_credit_tender_charges_customer_account(make_product, make_customer):
    customer = make_customer(credit_enabled=True, credit_limit_cents=1000_00)
    product = make_product(selling_price_cents=300_00)

    sales_service.create_sale({
        "items": [{"product_id": product.id, "quantity": 1}],
        "customer_id": customer.id,
        "payment": {"method": "credit"},
    })

    assert customer_service.get_customer(customer.id).credit_used_cents == 300_00


def test_credit_tender_requires_customer(make_product):
    product = make_product()
    with pytest.raises(ValidationError):
        sales_service.create_sale({"items": [{"product_id": product.id, "quantity": 1}], "payment": {"method": "credit"}})


def test_mpesa_tender_links_transaction_once(db_session, make_product, make_mpesa_success):
    product = make_product(selling_price_cents=100_00, opening_stock=5)
    tx = make_mpesa_success("QKJ7X1Y2Z3", 100)

    sale = sales_service.create_sale({
        "items": [{"product_id": product.id, "quantity": 1}],
        "payment": {"method": "mpesa", "transaction_id": "QKJ7X1Y2Z3"},
    })

    assert db_session.get(MpesaTransaction, tx.id).sale_id == sale.id
    assert sale.payments[0].transaction_id == "QKJ7X1Y2Z3"

    with pytest.raises(StateConflictError):
        sales_service.create_sale({
            "items": [{"product_id": product.id, "quantity": 1}],
            "payment": {"method": "mpesa", "transaction_id": "QKJ7X1Y2Z3"},
        })
    assert _stock(product.id) == 4


def test_mpesa_tender_validation(make_product, make_mpesa_success):
    product = make_product(selling_price_cents=100_00)
    make_mpesa_success("SMALL1", 50)
    make_mpesa_success("PENDING1", 500, status="pending")

    for transaction_id in (None, "UNKNOWN", "SMALL1", "PENDING1"):
        with pytest.raises(ValidationError):
            sales_service.create_sale({
                "items": [{"product_id": product.id, "quantity": 1}],
                "payment": {"method": "mpesa", "transaction_id": transaction_id},
            })


def test_void_restores_stock_and_customer_spend(db_session, make_product, make_customer):
    customer = make_customer()
    product = make_product(opening_stock=10)
    sale = sales_service.create_sale({
        "items": [{"product_id": product.id, "quantity": 3}],
        "customer_id": customer.id,
    })

    voided = sales_service.void_sale(sale.id, actor_id=2, reason="Wrong item")

    assert voided.status == "voided"
    assert voided.void_reason == "Wrong item"
    assert voided.voided_at is not None
    assert _stock(product.id) == 10
    assert customer_service.get_customer(customer.id).total_spent_cents == 0

    with pytest.raises(StateConflictError):
        sales_service.void_sale(sale.id, reason="again")
    with pytest.raises(StateConflictError):
        sales_service.refund_sale(sale.id, [{"product_id": product.id, "quantity": 1}])


def test_partial_then_full_refund(make_product):
    product = make_product(selling_price_cents=10_00, opening_stock=10)
    sale = sales_service.create_sale({"items": [{"product_id": product.id, "quantity": 3}]})

    sale, refund = sales_service.refund_sale(sale.id, [{"product_id": product.id, "quantity": 1}], reason="Damaged")
    assert refund.amount_cents == 10_00
    assert sale.status == "partial_refund"
    assert sale.total_refunded_cents == 10_00
    assert _stock(product.id) == 8

    with pytest.raises(ExceedsSoldQuantity):
        sales_service.refund_sale(sale.id, [{"product_id": product.id, "quantity": 3}])

    sale, refund = sales_service.refund_sale(sale.id, [{"product_id": product.id, "quantity": 2}])
    assert refund.amount_cents == 20_00
    assert sale.status == "refunded"
    assert sale.payment_status == "refunded"
    assert _stock(product.id) == 10

    with pytest.raises(StateConflictError):
        sales_service.refund_sale(sale.id, [{"product_id": product.id, "quantity": 1}])
    with pytest.raises(StateConflictError):
        sales_service.void_sale(sale.id)


def test_refund_rounding_never_exceeds_line(make_product):
    product = make_product(selling_price_cents=10_00, tax_rate_percent=16, opening_stock=10)
    sale = sales_service.create_sale({"items": [{"product_id": product.id, "quantity": 3, "discount_cents": 1}]})
    line_total = sale.items[0].subtotal_cents

    for _ in range(3):
        sale, _refund = sales_service.refund_sale(sale.id, [{"product_id": product.id, "quantity": 1}])

    assert sale.total_refunded_cents == line_total
    assert sale.status == "refunded"


def test_refund_of_product_not_in_sale(make_product):
    sold = make_product()
    other = make_product()
    sale = sales_service.create_sale({"items": [{"product_id": sold.id, "quantity": 1}]})

    with pytest.raises(NotFoundInSale):
        sales_service.refund_sale(sale.id, [{"product_id": other.id, "quantity": 1}])
    with pytest.raises(ValidationError):
        sales_service.refund_sale(sale.id, [{"product_id": sold.id, "quantity": 0}])


def test_refund_spans_duplicate_lines(make_product):
    product = make_product(selling_price_cents=10_00, opening_stock=10)
    sale = sales_service.create_sale({"items": [
        {"product_id": product.id, "quantity": 1},
        {"product_id": product.id, "quantity": 2},
    ]})

    sale, refund = sales_service.refund_sale(sale.id, [{"product_id": product.id, "quantity": 2}])

    assert [line.quantity for line in refund.lines] == [1, 1]
    assert [item.refunded_quantity for item in sale.items] == [1, 1]


def test_void_after_partial_refund_returns_only_remaining_units(make_product, make_customer):
    customer = make_customer()
    product = make_product(selling_price_cents=10_00, opening_stock=10)
    sale = sales_service.create_sale({
        "items": [{"product_id": product.id, "quantity": 4}],
        "customer_id": customer.id,
    })
    sales_service.refund_sale(sale.id, [{"product_id": product.id, "quantity": 1}])

    sales_service.void_sale(sale.id, reason="Cancelled")

    assert _stock(product.id) == 10
    assert customer_service.get_customer(customer.id).total_spent_cents == 0


def test_list_and_lookup(make_product):
    product = make_product()
    first = sales_service.create_sale({"items": [{"product_id": product.id, "quantity": 1}]})
    second = sales_service.create_sale({"items": [{"product_id": product.id, "quantity": 1}]})
    sales_service.void_sale(second.id)

    assert sales_service.get_sale_by_receipt(first.receipt_number).id == first.id
    result = sales_service.list_sales(status="completed")
    assert [s["id"] for s in result["items"]] == [first.id]


def test_daily_summary_counts_todays_completed_sales(db_session, make_product):
    product = make_product(selling_price_cents=100_00, opening_stock=20)
    sales_service.create_sale({"items": [{"product_id": product.id, "quantity": 1}]})
    sales_service.create_sale({
        "items": [{"product_id": product.id, "quantity": 2}],
        "payment": {"method": "card"},
    })
    voided = sales_service.create_sale({"items": [{"product_id": product.id, "quantity": 1}]})
    sales_service.void_sale(voided.id)

    summary = sales_service.daily_summary()

    assert summary["total_sales"] == 2
    assert summary["total_revenue_cents"] == 300_00
    assert summary["average_sale_cents"] == 150_00
    assert summary["payment_methods"] == {
        "cash": {"count": 1, "total_cents": 100_00},
        "card": {"count": 1, "total_cents": 200_00},
    }
    assert db_session.query(SalePayment).count() == 3
