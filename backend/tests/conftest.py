"""
Pytest fixtures for SaleFlow backend tests.

Provides the app on in-memory SQLite, a per-test table wipe, product and
customer factories, and a fake Daraja gateway mounted through
httpx.MockTransport (no network).
"""

import itertools

import httpx
import pytest

from saleflow import create_app
from saleflow.extensions import db
from saleflow.models import MpesaTransaction
from saleflow.services import customer_service, inventory_service
from saleflow.services.mpesa_client import (
    STK_PUSH_PATH,
    STK_QUERY_PATH,
    TOKEN_PATH,
    init_mpesa_client,
)


TEST_CONFIG = {
    "TESTING": True,
    "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
    "APP_ENV": "development",
    "LOG_LEVEL": "WARNING",
    "MPESA_CONSUMER_KEY": "test-key",
    "MPESA_CONSUMER_SECRET": "test-secret",
    "MPESA_BUSINESS_SHORTCODE": "174379",
    "MPESA_PASSKEY": "test-passkey",
    "MPESA_CALLBACK_URL": "https://example.test/api/mpesa/callback",
    "MPESA_QUERY_COOLDOWN_SECONDS": 5,
    "TRANSACTION_RATE_LIMIT": 30,
    "TRANSACTION_RATE_WINDOW_SECONDS": 60,
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Fresh tables and a pushed app context for each test."""
    with app.app_context():
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        app.extensions["rate_limiter"].store.reset()

        yield db.session

        db.session.rollback()


@pytest.fixture(scope='function')
def client(app, db_session):
    return app.test_client()


# =============================================================================
# FACTORIES
# =============================================================================

@pytest.fixture
def make_product(db_session):
    counter = itertools.count(1)

    def _make(**overrides):
        n = next(counter)
        payload = {
            "sku": f"SKU-{n:04d}",
            "name": f"Product {n}",
            "selling_price_cents": 100_00,
            "cost_price_cents": 60_00,
            "min_stock": 2,
            "opening_stock": 10,
        }
        payload.update(overrides)
        return inventory_service.create_product(payload)

    return _make


@pytest.fixture
def make_customer(db_session):
    counter = itertools.count(1)

    def _make(**overrides):
        n = next(counter)
        payload = {"name": f"Customer {n}", "phone": f"07{n:08d}"}
        payload.update(overrides)
        return customer_service.create_customer(payload)

    return _make


@pytest.fixture
def make_mpesa_success(db_session):
    """A transaction the callback already confirmed (amount in whole shillings)."""
    counter = itertools.count(1)

    def _make(receipt: str, amount: int, **overrides):
        n = next(counter)
        values = dict(
            checkout_request_id=f"ws_CO_done_{n}",
            merchant_request_id=f"merchant-done-{n}",
            phone_number="0712345678",
            amount=amount,
            account_reference=f"POS-DONE-{n}",
            transaction_desc="Payment for POS Sale",
            status="success",
            mpesa_receipt_number=receipt,
        )
        values.update(overrides)
        tx = MpesaTransaction(**values)
        db.session.add(tx)
        db.session.commit()
        return tx

    return _make


# =============================================================================
# FAKE GATEWAY
# =============================================================================

class FakeDaraja:
    """
    Scriptable stand-in for the Daraja API.

    push_response / query_response are (status_code, json_body); set them
    per test. Every request is kept in .requests for inspection.
    """

    def __init__(self):
        self.requests = []
        self.token_calls = 0
        self._checkout_ids = itertools.count(1)
        self.push_response = None
        self.query_response = (200, {"ResultCode": "1037", "ResultDesc": "No response from user"})
        self.token_response = (200, {"access_token": "fake-token", "expires_in": "3599"})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == TOKEN_PATH:
            self.token_calls += 1
            status, body = self.token_response
            return httpx.Response(status, json=body)

        if path == STK_PUSH_PATH:
            if self.push_response is not None:
                status, body = self.push_response
                return httpx.Response(status, json=body)
            n = next(self._checkout_ids)
            return httpx.Response(200, json={
                "MerchantRequestID": f"merchant-{n}",
                "CheckoutRequestID": f"ws_CO_{n}",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            })

        if path == STK_QUERY_PATH:
            status, body = self.query_response
            return httpx.Response(status, json=body)

        return httpx.Response(404, json={"errorMessage": "unknown path"})

    def calls_to(self, path: str) -> list:
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture
def daraja(app, db_session):
    fake = FakeDaraja()
    init_mpesa_client(app, transport=httpx.MockTransport(fake.handler))
    yield fake
    init_mpesa_client(app)


def callback_payload(checkout_id: str, result_code=0, *, receipt="QKJ7X1Y2Z3", amount=100,
                     date=20231025143022, desc=None):
    stk = {
        "MerchantRequestID": "merchant-1",
        "CheckoutRequestID": checkout_id,
        "ResultCode": result_code,
        "ResultDesc": desc or ("The service request is processed successfully." if result_code == 0
                               else "Request cancelled by user"),
    }
    if result_code == 0:
        stk["CallbackMetadata"] = {"Item": [
            {"Name": "Amount", "Value": amount},
            {"Name": "TransactionDate", "Value": date},
            {"Name": "MpesaReceiptNumber", "Value": receipt},
            {"Name": "PhoneNumber", "Value": 254712345678},
        ]}
    return {"Body": {"stkCallback": stk}}
