import pytest

from saleflow.services.rate_limit import InMemoryCounterStore, SlidingWindowLimiter

from conftest import callback_payload


ACTOR = {"X-Actor-Id": "7"}


@pytest.fixture
def product(make_product):
    return make_product(selling_price_cents=100_00, tax_rate_percent=16, opening_stock=5)


@pytest.fixture
def tight_limiter(app):
    original = app.extensions["rate_limiter"]
    app.extensions["rate_limiter"] = SlidingWindowLimiter(InMemoryCounterStore(), limit=2, window_seconds=60)
    yield
    app.extensions["rate_limiter"] = original


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "ok"
    assert body["checks"]["database"]["status"] == "healthy"
    assert body["checks"]["mpesa"]["status"] == "configured"


def test_product_crud_and_stock_adjustment(client):
    response = client.post("/api/inventory/products", json={
        "sku": "MILK-500", "name": "Milk 500ml", "selling_price_cents": 6500, "opening_stock": 3,
    })
    assert response.status_code == 201
    product_id = response.get_json()["product"]["id"]

    response = client.post(
        f"/api/inventory/products/{product_id}/adjust",
        json={"quantity": "2", "movement_type": "damage", "reason": "Spilled"},
        headers=ACTOR,
    )
    assert response.status_code == 201
    body = response.get_json()
    assert body["movement"]["new_stock"] == 1
    assert body["movement"]["actor_user_id"] == 7
    assert body["product"]["stock_status"] == "low_stock"

    response = client.post(
        f"/api/inventory/products/{product_id}/adjust", json={"quantity": 5, "movement_type": "sale"},
    )
    assert response.status_code == 409
    assert response.get_json()["details"]["available"] == 1

    response = client.get(f"/api/inventory/products/{product_id}/movements")
    assert response.get_json()["pagination"]["total"] == 2


def test_unknown_product_is_404(client):
    response = client.get("/api/inventory/products/999")
    assert response.status_code == 404
    assert "error" in response.get_json()


def test_sale_checkout_and_receipt_lookup(client, product):
    response = client.post("/api/sales/", json={
        "items": [{"product_id": product.id, "quantity": 2, "discount_percent": 10}],
        "payment": {"method": "cash"},
    }, headers=ACTOR)

    assert response.status_code == 201
    sale = response.get_json()["sale"]
    assert sale["totals"]["total_cents"] == 20880
    assert sale["payment"]["status"] == "paid"
    assert sale["seller_user_id"] == 7

    response = client.get(f"/api/sales/receipt/{sale['receipt_number']}")
    assert response.status_code == 200
    assert response.get_json()["sale"]["id"] == sale["id"]


def test_sale_validation_error_is_400(client):
    response = client.post("/api/sales/", json={"items": []})
    assert response.status_code == 400


def test_bad_actor_header_is_400(client, product):
    response = client.post(
        "/api/sales/", json={"items": [{"product_id": product.id, "quantity": 1}]},
        headers={"X-Actor-Id": "abc"},
    )
    assert response.status_code == 400


def test_void_requires_reason_and_refund_flow(client, product):
    sale = client.post("/api/sales/", json={"items": [{"product_id": product.id, "quantity": 2}]}).get_json()["sale"]

    assert client.post(f"/api/sales/{sale['id']}/void", json={}).status_code == 400

    response = client.post(f"/api/sales/{sale['id']}/refund", json={
        "items": [{"product_id": product.id, "quantity": 1}], "reason": "Damaged",
    })
    assert response.status_code == 200
    body = response.get_json()
    assert body["sale"]["status"] == "partial_refund"
    assert body["refund"]["lines"][0]["quantity"] == 1

    response = client.post(f"/api/sales/{sale['id']}/refund", json={"items": [{"product_id": product.id, "quantity": 5}]})
    assert response.status_code == 409
    assert response.get_json()["details"]["refundable_quantity"] == 1

    response = client.post(f"/api/sales/{sale['id']}/void", json={"reason": "Mistake"})
    assert response.status_code == 200
    assert response.get_json()["sale"]["void_info"]["reason"] == "Mistake"


def test_sales_are_rate_limited(client, product, tight_limiter):
    payload = {"items": [{"product_id": product.id, "quantity": 1}]}
    statuses = [client.post("/api/sales/", json=payload, headers=ACTOR).status_code for _ in range(3)]

    assert statuses == [201, 201, 429]
    blocked = client.post("/api/sales/", json=payload, headers=ACTOR)
    assert int(blocked.headers["Retry-After"]) >= 1

    # another cashier has their own window
    other = client.post("/api/sales/", json=payload, headers={"X-Actor-Id": "8"})
    assert other.status_code == 201


def test_order_lifecycle_over_http(client, product):
    response = client.post("/api/orders/", json={
        "customer_info": {"name": "Otieno", "phone": "0712345678"},
        "items": [{"product_id": product.id, "quantity": 1}],
    }, headers=ACTOR)
    assert response.status_code == 201
    order_id = response.get_json()["order"]["id"]

    response = client.post(f"/api/orders/{order_id}/status", json={"status": "delivered"})
    assert response.status_code == 409
    assert response.get_json()["details"] == {"current_status": "pending", "requested_status": "delivered"}

    response = client.post(f"/api/orders/{order_id}/status", json={"status": "confirmed"})
    assert response.status_code == 200

    assert client.get("/api/orders/pending").get_json()["count"] == 1

    response = client.post(f"/api/orders/{order_id}/cancel", json={"reason": "Out of area"})
    assert response.status_code == 200
    assert response.get_json()["order"]["status"] == "cancelled"


def test_customer_routes(client):
    response = client.post("/api/customers/", json={"name": "Mary", "phone": "0711000222"})
    assert response.status_code == 201
    customer_id = response.get_json()["customer"]["id"]

    assert client.post("/api/customers/", json={"name": "Copy", "phone": "0711000222"}).status_code == 409

    response = client.get(f"/api/customers/{customer_id}/next-tier")
    assert response.get_json()["next_tier"]["tier"] == "silver"

    response = client.post(f"/api/customers/{customer_id}/credit", json={"type": "credit", "amount_cents": 100})
    assert response.status_code == 409

    assert client.get("/api/customers/12345").status_code == 404


def test_stk_push_and_status(client, daraja):
    response = client.post("/api/mpesa/stk-push", json={"phone": "0712345678", "amount": 50}, headers=ACTOR)
    assert response.status_code == 200
    checkout_id = response.get_json()["checkout_request_id"]

    response = client.get(f"/api/mpesa/status/{checkout_id}")
    assert response.status_code == 200
    assert response.get_json()["checkout_request_id"] == checkout_id

    assert client.get("/api/mpesa/status/ws_CO_missing").status_code == 404


def test_stk_push_validation_and_gateway_errors(client, daraja):
    assert client.post("/api/mpesa/stk-push", json={"phone": "123", "amount": 50}).status_code == 400

    daraja.push_response = (500, {"errorMessage": "System busy"})
    response = client.post("/api/mpesa/stk-push", json={"phone": "0712345678", "amount": 50})
    assert response.status_code == 502


def test_gateway_details_hidden_in_production(app, client, daraja):
    daraja.push_response = (500, {"errorMessage": "internal detail"})
    app.config["APP_ENV"] = "production"
    try:
        response = client.post("/api/mpesa/stk-push", json={"phone": "0712345678", "amount": 50})
    finally:
        app.config["APP_ENV"] = "development"

    assert response.status_code == 502
    assert response.get_json() == {"error": "Payment gateway error", "details": {}}


@pytest.mark.parametrize("body", [
    callback_payload("ws_CO_unknown", 0),
    {"Body": {}},
    {"unexpected": True},
])
def test_callback_always_acknowledges(client, body):
    response = client.post("/api/mpesa/callback", json=body)
    assert response.status_code == 200
    assert response.get_json() == {"ResultCode": 0, "ResultDesc": "Accepted"}


def test_callback_acknowledges_non_json(client):
    response = client.post("/api/mpesa/callback", data="not json", content_type="text/plain")
    assert response.status_code == 200
    assert response.get_json()["ResultCode"] == 0


def test_callback_completes_payment_then_sale_links_it(client, daraja, product):
    checkout_id = client.post(
        "/api/mpesa/stk-push", json={"phone": "0712345678", "amount": 232}
    ).get_json()["checkout_request_id"]
    client.post("/api/mpesa/callback", json=callback_payload(checkout_id, 0, receipt="QAB123", amount=232))

    response = client.post("/api/sales/", json={
        "items": [{"product_id": product.id, "quantity": 2}],
        "payment": {"method": "mpesa", "transaction_id": "QAB123"},
    })
    assert response.status_code == 201

    tx = client.get(f"/api/mpesa/transactions/{checkout_id}").get_json()
    assert tx["transaction"]["sale_id"] == response.get_json()["sale"]["id"]
