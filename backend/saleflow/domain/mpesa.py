"""
M-Pesa (Daraja) wire helpers: phone formats, STK password, result codes,
and callback payload parsing.

Everything here is pure. The HTTP client lives in services/mpesa_client.py.
"""

from __future__ import annotations

import base64
import re
from dataclasses import dataclass, field
from datetime import datetime

from ..errors import ValidationError

# Accepted on initiation: 07XXXXXXXX / 01XXXXXXXX / 2547XXXXXXXX / +2547XXXXXXXX
INITIATE_PHONE_RE = re.compile(r"^(\+254|254|0)[17]\d{8}$")

# Accepted on customer/order records: 07XXXXXXXX / +2547XXXXXXXX
CONTACT_PHONE_RE = re.compile(r"^(\+254|0)[17]\d{8}$")

MIN_AMOUNT = 1

RESULT_SUCCESS = "0"
RESULT_CANCELLED_BY_USER = "1032"

STATUS_PENDING = "pending"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

TERMINAL_STATUSES = frozenset({STATUS_SUCCESS, STATUS_FAILED, STATUS_CANCELLED})

TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


def validate_initiation(phone, amount) -> None:
    if not phone or amount is None:
        raise ValidationError("Phone number and amount are required")
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise ValidationError("Amount must be a number")
    if amount < MIN_AMOUNT:
        raise ValidationError(f"Minimum amount is KSH {MIN_AMOUNT}")
    if not INITIATE_PHONE_RE.match(str(phone)):
        raise ValidationError(
            "Invalid phone number format. Use format: 0712345678, 254712345678 or +254712345678",
            details={"phone": phone},
        )


def is_valid_contact_phone(phone: str | None) -> bool:
    return bool(phone) and bool(CONTACT_PHONE_RE.match(phone))


def format_phone(phone: str) -> str:
    """Normalise to the 2547XXXXXXXX form the gateway expects."""
    if phone.startswith("0"):
        return "254" + phone[1:]
    if phone.startswith("+254"):
        return phone[1:]
    if phone.startswith("254"):
        return phone
    raise ValidationError("Invalid phone number format", details={"phone": phone})


def gateway_amount(amount) -> int:
    """The gateway rejects decimals; round half-up to whole units."""
    return int(float(amount) + 0.5)


def make_timestamp(now: datetime) -> str:
    return now.strftime(TIMESTAMP_FORMAT)


def make_password(shortcode: str, passkey: str, timestamp: str) -> str:
    raw = f"{shortcode}{passkey}{timestamp}".encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def basic_auth_header(consumer_key: str, consumer_secret: str) -> str:
    raw = f"{consumer_key}:{consumer_secret}".encode("utf-8")
    return "Basic " + base64.b64encode(raw).decode("ascii")


def status_for_result_code(result_code) -> str:
    code = str(result_code).strip()
    if code == RESULT_SUCCESS:
        return STATUS_SUCCESS
    if code == RESULT_CANCELLED_BY_USER:
        return STATUS_CANCELLED
    return STATUS_FAILED


def parse_transaction_date(value) -> datetime | None:
    """
    Parse the compact YYYYMMDDHHMMSS stamp (sent as a number or a string).

    Returns None when the value does not fit the format.
    """
    if value is None:
        return None
    text = str(value).strip()
    if len(text) != 14 or not text.isdigit():
        return None
    try:
        return datetime.strptime(text, TIMESTAMP_FORMAT)
    except ValueError:
        return None


def find_metadata_value(items, name: str):
    """Look up a CallbackMetadata item by Name; position is not guaranteed."""
    for item in items or []:
        if isinstance(item, dict) and item.get("Name") == name:
            return item.get("Value")
    return None


@dataclass
class ParsedCallback:
    checkout_request_id: str
    merchant_request_id: str | None
    result_code: str
    result_desc: str | None
    status: str
    receipt_number: str | None = None
    transaction_date: datetime | None = None
    amount: float | None = None
    phone_number: str | None = None
    raw: dict = field(default_factory=dict)


def parse_callback(payload) -> ParsedCallback:
    """
    Extract the fields we act on from an STK callback body.

    Raises ValidationError when the envelope itself is malformed; callers on
    the webhook path log and acknowledge instead of propagating.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Callback body must be a JSON object")
    body = payload.get("Body")
    stk = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(stk, dict):
        raise ValidationError("Callback missing Body.stkCallback")

    checkout_id = stk.get("CheckoutRequestID")
    if not checkout_id:
        raise ValidationError("Callback missing CheckoutRequestID")

    result_code = stk.get("ResultCode")
    if result_code is None:
        raise ValidationError("Callback missing ResultCode")
    result_code = str(result_code).strip()

    parsed = ParsedCallback(
        checkout_request_id=str(checkout_id),
        merchant_request_id=stk.get("MerchantRequestID"),
        result_code=result_code,
        result_desc=stk.get("ResultDesc"),
        # Callbacks have no "cancelled" mapping: any nonzero code is a failure
        status=STATUS_SUCCESS if result_code == RESULT_SUCCESS else STATUS_FAILED,
        raw=payload,
    )

    if parsed.status == STATUS_SUCCESS:
        metadata = stk.get("CallbackMetadata") or {}
        items = metadata.get("Item") if isinstance(metadata, dict) else None
        receipt = find_metadata_value(items, "MpesaReceiptNumber")
        parsed.receipt_number = str(receipt) if receipt is not None else None
        parsed.transaction_date = parse_transaction_date(find_metadata_value(items, "TransactionDate"))
        parsed.amount = find_metadata_value(items, "Amount")
        phone = find_metadata_value(items, "PhoneNumber")
        parsed.phone_number = str(phone) if phone is not None else None

    return parsed
