import base64
import json
from datetime import datetime, timedelta

import httpx
import pytest

from saleflow.errors import DuplicateError, GatewayError, NotFoundError, ValidationError
from saleflow.models import MpesaTransaction
from saleflow.services import mpesa_service
from saleflow.services.mpesa_client import (
    STK_PUSH_PATH,
    STK_QUERY_PATH,
    TOKEN_PATH,
    MpesaClient,
    init_mpesa_client,
)
from saleflow.time_utils import utcnow

from conftest import callback_payload


def _tx(checkout_id):
    return mpesa_service.get_transaction(checkout_id)


def _reopen_query_window(db_session, checkout_id):
    tx = _tx(checkout_id)
    tx.last_query_at = utcnow() - timedelta(minutes=1)
    db_session.commit()


# =============================================================================
# INITIATION
# =============================================================================

def test_initiate_records_pending_transaction(db_session, daraja):
    result = mpesa_service.initiate_payment("0712345678", 99.5, reference="POS-1", actor_id=4)

    assert result["checkout_request_id"] == "ws_CO_1"
    assert result["account_reference"] == "POS-1"
    tx = _tx("ws_CO_1")
    assert tx.status == "pending"
    assert tx.amount == 100
    assert tx.user_id == 4

    push = daraja.calls_to(STK_PUSH_PATH)[0]
    body = json.loads(push.content)
    assert body["PhoneNumber"] == "254712345678"
    assert body["PartyA"] == "254712345678"
    assert body["Amount"] == 100
    assert body["TransactionType"] == "CustomerPayBillOnline"
    assert base64.b64decode(body["Password"]).decode() == "174379test-passkey" + body["Timestamp"]
    assert push.headers["Authorization"] == "Bearer fake-token"


def test_initiate_accepts_plus_prefixed_phone(db_session, daraja):
    result = mpesa_service.initiate_payment("+254712345678", 10)

    body = json.loads(daraja.calls_to(STK_PUSH_PATH)[0].content)
    assert body["PhoneNumber"] == "254712345678"
    assert body["PartyA"] == "254712345678"
    assert _tx(result["checkout_request_id"]).phone_number == "254712345678"


def test_initiate_stores_canonical_phone(db_session, daraja):
    mpesa_service.initiate_payment("0712345678", 10)
    assert _tx("ws_CO_1").phone_number == "254712345678"


def test_initiate_generates_reference(db_session, daraja):
    result = mpesa_service.initiate_payment("254712345678", 10)
    assert result["account_reference"].startswith("POS-")


def test_invalid_initiation_never_reaches_gateway(db_session, daraja):
    with pytest.raises(ValidationError):
        mpesa_service.initiate_payment("12345", 10)
    with pytest.raises(ValidationError):
        mpesa_service.initiate_payment("0712345678", 0)
    assert daraja.requests == []


def test_duplicate_reference_rejected(db_session, daraja):
    mpesa_service.initiate_payment("0712345678", 10, reference="POS-DUP")
    with pytest.raises(DuplicateError):
        mpesa_service.initiate_payment("0712345678", 10, reference="POS-DUP")
    assert len(daraja.calls_to(STK_PUSH_PATH)) == 1


def test_gateway_failure_records_nothing(db_session, daraja):
    daraja.push_response = (500, {"errorMessage": "System busy"})

    with pytest.raises(GatewayError) as excinfo:
        mpesa_service.initiate_payment("0712345678", 10)

    assert excinfo.value.status_code == 502
    assert excinfo.value.upstream_status == 500
    assert db_session.query(MpesaTransaction).count() == 0


def test_push_response_without_ids_is_gateway_error(db_session, daraja):
    daraja.push_response = (200, {"ResponseCode": "0"})
    with pytest.raises(GatewayError):
        mpesa_service.initiate_payment("0712345678", 10)


def test_token_is_cached_between_calls(db_session, daraja):
    mpesa_service.initiate_payment("0712345678", 10)
    mpesa_service.initiate_payment("0712345678", 10)
    assert daraja.token_calls == 1


def test_token_refreshed_before_expiry():
    now = [0.0]
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(200, json={"access_token": f"t{len(calls)}", "expires_in": "120"})

    client = MpesaClient(
        consumer_key="k", consumer_secret="s", shortcode="174379", passkey="p",
        callback_url="https://example.test/cb",
        transport=httpx.MockTransport(handler), clock=lambda: now[0],
    )

    assert client.get_access_token() == "t1"
    now[0] = 59.0
    assert client.get_access_token() == "t1"
    now[0] = 60.0
    assert client.get_access_token() == "t2"
    assert calls == [TOKEN_PATH, TOKEN_PATH]
    client.close()


def test_token_failure_is_gateway_error():
    client = MpesaClient(
        consumer_key="k", consumer_secret="s", shortcode="1", passkey="p", callback_url="x",
        transport=httpx.MockTransport(lambda request: httpx.Response(401, json={"error": "bad creds"})),
    )
    with pytest.raises(GatewayError):
        client.get_access_token()
    client.close()


def test_reinstalling_client_closes_previous(app):
    first = app.extensions["mpesa_client"]
    second = init_mpesa_client(app)

    assert first.is_closed
    assert not second.is_closed
    assert app.extensions["mpesa_client"] is second


def test_transport_error_is_gateway_error():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    client = MpesaClient(
        consumer_key="k", consumer_secret="s", shortcode="1", passkey="p", callback_url="x",
        transport=httpx.MockTransport(handler),
    )
    with pytest.raises(GatewayError) as excinfo:
        client.get_access_token()
    assert "timed out" in excinfo.value.message
    client.close()


# =============================================================================
# POLLING
# =============================================================================

def test_poll_cancelled_is_terminal(db_session, daraja):
    mpesa_service.initiate_payment("0712345678", 10)
    daraja.query_response = (200, {"ResultCode": "1032", "ResultDesc": "Request cancelled by user"})

    view = mpesa_service.check_payment_status("ws_CO_1")

    assert view["status"] == "cancelled"
    assert view["cached"] is False
    assert view["retry_count"] == 1

    _reopen_query_window(db_session, "ws_CO_1")
    again = mpesa_service.check_payment_status("ws_CO_1")
    assert again["cached"] is True
    assert len(daraja.calls_to(STK_QUERY_PATH)) == 1


def test_poll_success_does_not_complete_the_record(db_session, daraja):
    mpesa_service.initiate_payment("0712345678", 10)
    daraja.query_response = (200, {"ResultCode": "0", "ResultDesc": "processed successfully"})

    view = mpesa_service.check_payment_status("ws_CO_1")

    assert view["status"] == "pending"
    assert view["query_status"] == "success"
    assert view["transaction_id"] is None


def test_poll_cooldown_serves_cached_view(db_session, daraja):
    mpesa_service.initiate_payment("0712345678", 10)
    daraja.query_response = (200, {"ResultCode": "0", "ResultDesc": "processed successfully"})

    mpesa_service.check_payment_status("ws_CO_1")
    view = mpesa_service.check_payment_status("ws_CO_1")

    assert view["status"] == "pending"
    assert view["cached"] is True
    assert len(daraja.calls_to(STK_QUERY_PATH)) == 1


def test_poll_gateway_error_keeps_record_pending(db_session, daraja):
    mpesa_service.initiate_payment("0712345678", 10)
    daraja.query_response = (500, {"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"})

    view = mpesa_service.check_payment_status("ws_CO_1")

    assert view["status"] == "pending"
    assert view["cached"] is True
    assert view["query_error"]["details"]["upstream_status"] == 500


def test_poll_unknown_checkout(db_session, daraja):
    with pytest.raises(NotFoundError):
        mpesa_service.check_payment_status("ws_CO_missing")


# =============================================================================
# CALLBACKS
# =============================================================================

def test_success_callback_sets_receipt(db_session, daraja):
    mpesa_service.initiate_payment("0712345678", 100)

    outcome = mpesa_service.process_callback(callback_payload("ws_CO_1", 0, receipt="QKJ7X1Y2Z3"))

    assert outcome["outcome"] == "applied"
    tx = _tx("ws_CO_1")
    assert tx.status == "success"
    assert tx.mpesa_receipt_number == "QKJ7X1Y2Z3"
    assert tx.transaction_date == datetime(2023, 10, 25, 14, 30, 22)
    assert tx.result_code == "0"
    assert tx.callback_data["Body"]["stkCallback"]["CheckoutRequestID"] == "ws_CO_1"


def test_duplicate_and_late_callbacks_are_ignored(db_session, daraja):
    mpesa_service.initiate_payment("0712345678", 100)
    mpesa_service.process_callback(callback_payload("ws_CO_1", 0, receipt="R1"))

    assert mpesa_service.process_callback(callback_payload("ws_CO_1", 0, receipt="R1"))["outcome"] == "ignored"
    assert mpesa_service.process_callback(callback_payload("ws_CO_1", 1))["outcome"] == "ignored"

    tx = _tx("ws_CO_1")
    assert tx.status == "success"
    assert tx.mpesa_receipt_number == "R1"


def test_callback_after_poll_cancel_does_not_overwrite(db_session, daraja):
    mpesa_service.initiate_payment("0712345678", 100)
    daraja.query_response = (200, {"ResultCode": "1032", "ResultDesc": "Request cancelled by user"})
    mpesa_service.check_payment_status("ws_CO_1")

    outcome = mpesa_service.process_callback(callback_payload("ws_CO_1", 0, receipt="LATE1"))

    assert outcome["outcome"] == "ignored"
    tx = _tx("ws_CO_1")
    assert tx.status == "cancelled"
    assert tx.mpesa_receipt_number is None


def test_failure_callback(db_session, daraja):
    mpesa_service.initiate_payment("0712345678", 100)
    mpesa_service.process_callback(callback_payload("ws_CO_1", 1032))
    assert _tx("ws_CO_1").status == "failed"


def test_unknown_and_malformed_callbacks(db_session):
    assert mpesa_service.process_callback(callback_payload("ws_CO_nope", 0))["outcome"] == "unknown"
    assert mpesa_service.process_callback({"Body": {}})["outcome"] == "malformed"
    assert mpesa_service.process_callback("garbage")["outcome"] == "malformed"


def test_reused_receipt_is_reported_not_raised(db_session, daraja):
    mpesa_service.initiate_payment("0712345678", 100)
    mpesa_service.initiate_payment("0712345678", 100)
    mpesa_service.process_callback(callback_payload("ws_CO_1", 0, receipt="SAME"))

    outcome = mpesa_service.process_callback(callback_payload("ws_CO_2", 0, receipt="SAME"))

    assert outcome["outcome"] == "conflict"
    assert _tx("ws_CO_2").status == "pending"


# =============================================================================
# LINKING & MAINTENANCE
# =============================================================================

def test_link_sale_requires_receipt(db_session):
    with pytest.raises(ValidationError):
        mpesa_service.link_sale("", 1)


def test_expire_stale_payments(db_session, daraja):
    mpesa_service.initiate_payment("0712345678", 10)
    mpesa_service.initiate_payment("0712345678", 10)
    old = _tx("ws_CO_1")
    old.created_at = utcnow() - timedelta(hours=2)
    db_session.commit()

    assert mpesa_service.expire_stale_payments(timedelta(minutes=30)) == 1
    assert _tx("ws_CO_1").status == "failed"
    assert _tx("ws_CO_2").status == "pending"


def test_list_transactions_by_status(db_session, daraja):
    mpesa_service.initiate_payment("0712345678", 10)
    mpesa_service.initiate_payment("0712345678", 10)
    mpesa_service.process_callback(callback_payload("ws_CO_2", 0, receipt="R2"))

    result = mpesa_service.list_transactions(status="success")

    assert [t["checkout_request_id"] for t in result["items"]] == ["ws_CO_2"]
