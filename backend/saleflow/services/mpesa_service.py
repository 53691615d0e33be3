# Overview: M-Pesa payment reconciliation; initiation, status polling, callbacks and sale linking.

"""
Payment reconciliation core.

States: pending -> success | failed | cancelled (all terminal).

Two uncoordinated writers race on the same MpesaTransaction:
- the poll path (client asks us, we ask the gateway), and
- the callback path (gateway tells us).

Rules:
- Every status change is UPDATE ... WHERE status = 'pending'. Zero rows
  updated means someone else already finished the record; that is a logged
  no-op, never an error and never an overwrite.
- Only the callback may set status=success and the receipt number. A poll
  result of "0" is stored as query_status="success" and reported to the
  client as informational; it does not make the record terminal.
- The poll path may finish a record as cancelled (1032) or failed.
- Polls are rate limited per transaction: the cooldown is claimed with a
  conditional UPDATE on last_query_at, so concurrent polls cannot both
  reach the gateway inside one window.
- link_sale sets sale_id once, with UPDATE ... WHERE sale_id IS NULL.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import MpesaTransaction
from ..time_utils import utcnow
from ..errors import (
    DuplicateError,
    GatewayError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from ..domain import mpesa as mpesa_rules
from .concurrency import run_with_retry
from .mpesa_client import get_client
from .pagination import paginate

logger = logging.getLogger(__name__)


def _cooldown() -> timedelta:
    return timedelta(seconds=int(current_app.config.get("MPESA_QUERY_COOLDOWN_SECONDS", 5)))


def _transition(checkout_request_id: str, new_status: str, **values) -> bool:
    """
    Move a pending record to a terminal status. Returns False if it was
    already terminal (or missing); the caller logs and moves on.
    """
    stmt = (
        update(MpesaTransaction)
        .where(
            MpesaTransaction.checkout_request_id == checkout_request_id,
            MpesaTransaction.status == mpesa_rules.STATUS_PENDING,
        )
        .values(status=new_status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    return bool(result.rowcount)


def get_transaction(checkout_request_id: str) -> MpesaTransaction:
    tx = (
        db.session.query(MpesaTransaction)
        .filter(MpesaTransaction.checkout_request_id == checkout_request_id)
        .first()
    )
    if tx is None:
        raise NotFoundError("Transaction not found", details={"checkout_request_id": checkout_request_id})
    return tx


def _status_view(tx: MpesaTransaction, *, cached: bool, query_error=None) -> dict:
    data = {
        "checkout_request_id": tx.checkout_request_id,
        "status": tx.status,
        "transaction_id": tx.mpesa_receipt_number,
        "result_code": tx.result_code,
        "result_desc": tx.result_desc or tx.query_result_desc,
        "query_status": tx.query_status,
        "retry_count": tx.retry_count,
        "sale_id": tx.sale_id,
        "cached": cached,
    }
    if query_error is not None:
        data["query_error"] = query_error
    return data


# =============================================================================
# INITIATION
# =============================================================================

def initiate_payment(phone, amount, *, reference: str | None = None, actor_id: int | None = None) -> dict:
    """
    Start an STK push and record it as pending.

    WHY no retry on GatewayError: a retried push could prompt the customer
    twice. The cashier re-initiates explicitly.

    Raises:
        ValidationError: missing/invalid phone or amount below 1
        GatewayError: token or push request failed upstream
        DuplicateError: checkout id or account reference already recorded
    """
    mpesa_rules.validate_initiation(phone, amount)

    stamp = utcnow().strftime("%Y%m%d%H%M%S%f")[:-3]
    account_reference = reference or f"POS-{stamp}"
    transaction_desc = f"Payment for POS Sale - {account_reference}"

    if (
        db.session.query(MpesaTransaction.id)
        .filter(MpesaTransaction.account_reference == account_reference)
        .first()
    ):
        raise DuplicateError(
            "Duplicate transaction request. Please try again.",
            details={"account_reference": account_reference},
        )

    msisdn = mpesa_rules.format_phone(str(phone))
    push = get_client().stk_push(msisdn, amount, account_reference, transaction_desc)

    tx = MpesaTransaction(
        checkout_request_id=push["checkout_request_id"],
        merchant_request_id=push["merchant_request_id"],
        phone_number=msisdn,
        amount=mpesa_rules.gateway_amount(amount),
        account_reference=account_reference,
        transaction_desc=transaction_desc,
        status=mpesa_rules.STATUS_PENDING,
        user_id=actor_id,
    )
    db.session.add(tx)
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise DuplicateError(
            "Duplicate transaction request. Please try again.",
            details={"checkout_request_id": push["checkout_request_id"]},
        ) from exc

    logger.info(
        "STK push initiated checkout=%s ref=%s amount=%s",
        tx.checkout_request_id, account_reference, tx.amount,
    )
    return {
        "checkout_request_id": tx.checkout_request_id,
        "merchant_request_id": tx.merchant_request_id,
        "account_reference": account_reference,
        "response_code": push.get("response_code"),
        "response_description": push.get("response_description"),
        "message": "STK push sent successfully. Please check your phone and enter M-Pesa PIN.",
    }


# =============================================================================
# POLL PATH
# =============================================================================

def _claim_query_slot(checkout_request_id: str, now) -> bool:
    """Atomically take the per-transaction query window. False = within cooldown or terminal."""
    cutoff = now - _cooldown()
    stmt = (
        update(MpesaTransaction)
        .where(
            MpesaTransaction.checkout_request_id == checkout_request_id,
            MpesaTransaction.status == mpesa_rules.STATUS_PENDING,
            or_(
                MpesaTransaction.last_query_at.is_(None),
                MpesaTransaction.last_query_at <= cutoff,
            ),
        )
        .values(
            last_query_at=now,
            retry_count=MpesaTransaction.retry_count + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )

    def _op() -> bool:
        claimed = bool(db.session.execute(stmt).rowcount)
        db.session.commit()
        return claimed

    return run_with_retry(_op)


def check_payment_status(checkout_request_id: str) -> dict:
    """
    Client-driven status check.

    Terminal records and records inside the cooldown are answered from the
    database. Otherwise one STK query goes upstream and its outcome is
    applied through the conditional transition.
    """
    tx = get_transaction(checkout_request_id)
    if tx.is_terminal:
        return _status_view(tx, cached=True)

    now = utcnow()
    if not _claim_query_slot(checkout_request_id, now):
        db.session.refresh(tx)
        return _status_view(tx, cached=True)

    try:
        result = get_client().stk_query(checkout_request_id)
    except GatewayError as exc:
        # Common while the customer is still on the PIN prompt; the record stays pending
        logger.warning("STK query failed for %s: %s", checkout_request_id, exc.message)
        db.session.refresh(tx)
        return _status_view(tx, cached=True, query_error=exc.to_dict())

    code = result.get("result_code")
    desc = result.get("result_desc")
    polled_status = mpesa_rules.status_for_result_code(code) if code is not None else None

    def _op():
        db.session.execute(
            update(MpesaTransaction)
            .where(MpesaTransaction.checkout_request_id == checkout_request_id)
            .values(query_status=polled_status, query_result_code=code, query_result_desc=desc)
            .execution_options(synchronize_session=False)
        )
        applied = False
        if polled_status in (mpesa_rules.STATUS_FAILED, mpesa_rules.STATUS_CANCELLED):
            applied = _transition(
                checkout_request_id, polled_status, result_code=code, result_desc=desc
            )
        db.session.commit()
        return applied

    applied = run_with_retry(_op)
    if polled_status == mpesa_rules.STATUS_SUCCESS:
        logger.info("Poll reports success for %s; awaiting callback for receipt", checkout_request_id)
    elif applied:
        logger.info("Poll moved %s to %s (code=%s)", checkout_request_id, polled_status, code)
    elif polled_status is not None:
        logger.info("Poll result for %s ignored; record already terminal", checkout_request_id)

    db.session.refresh(tx)
    return _status_view(tx, cached=False)


# =============================================================================
# CALLBACK PATH
# =============================================================================

def process_callback(payload) -> dict:
    """
    Apply an STK callback. Never raises.

    The gateway has no useful retry contract for callbacks, so every outcome
    (applied, duplicate, late, unknown, malformed) is logged and acknowledged.
    Returns a small dict describing what happened, for the log and the ack.
    """
    try:
        parsed = mpesa_rules.parse_callback(payload)
    except ValidationError as exc:
        logger.warning("Malformed M-Pesa callback ignored: %s", exc.message)
        return {"outcome": "malformed"}

    checkout_id = parsed.checkout_request_id

    def _op() -> str:
        exists = (
            db.session.query(MpesaTransaction.id)
            .filter(MpesaTransaction.checkout_request_id == checkout_id)
            .first()
        )
        if exists is None:
            return "unknown"

        values = {
            "result_code": parsed.result_code,
            "result_desc": parsed.result_desc,
            "callback_data": parsed.raw,
            "callback_received_at": utcnow(),
        }
        if parsed.status == mpesa_rules.STATUS_SUCCESS:
            values["mpesa_receipt_number"] = parsed.receipt_number
            values["transaction_date"] = parsed.transaction_date

        applied = _transition(checkout_id, parsed.status, **values)
        db.session.commit()
        return "applied" if applied else "ignored"

    try:
        outcome = run_with_retry(_op)
    except IntegrityError:
        # Receipt number already recorded on another transaction
        db.session.rollback()
        logger.exception("M-Pesa callback for %s conflicts with an existing receipt", checkout_id)
        return {"outcome": "conflict", "checkout_request_id": checkout_id}
    except Exception:
        db.session.rollback()
        logger.exception("M-Pesa callback for %s could not be stored", checkout_id)
        return {"outcome": "error", "checkout_request_id": checkout_id}

    if outcome == "unknown":
        logger.warning("M-Pesa callback for unknown transaction %s", checkout_id)
    elif outcome == "ignored":
        logger.warning(
            "M-Pesa callback for %s ignored; transaction already terminal (code=%s)",
            checkout_id, parsed.result_code,
        )
    else:
        logger.info(
            "M-Pesa callback processed checkout=%s status=%s receipt=%s",
            checkout_id, parsed.status, parsed.receipt_number,
        )
    return {"outcome": outcome, "checkout_request_id": checkout_id, "status": parsed.status}


# =============================================================================
# SALE LINKAGE
# =============================================================================

def link_sale(receipt_number: str, sale_id: int, *, amount_cents: int | None = None) -> MpesaTransaction:
    """
    Attach a successful transaction to a sale, at most once.

    Runs inside the sale's transaction (no commit). Two checkouts quoting
    the same receipt: the second UPDATE matches zero rows and fails.

    Raises:
        ValidationError: no successful transaction with this receipt, or it
            does not cover the amount being paid
        StateConflictError: already linked to a sale
    """
    if not receipt_number:
        raise ValidationError("M-Pesa payments require a transaction_id")

    tx = (
        db.session.query(MpesaTransaction)
        .filter(MpesaTransaction.mpesa_receipt_number == receipt_number)
        .first()
    )
    if tx is None or tx.status != mpesa_rules.STATUS_SUCCESS:
        raise ValidationError("Invalid M-Pesa transaction", details={"transaction_id": receipt_number})
    if amount_cents is not None and amount_cents > tx.amount * 100:
        raise ValidationError(
            "M-Pesa transaction does not cover this payment",
            details={"transaction_id": receipt_number, "paid_cents": tx.amount * 100},
        )

    stmt = (
        update(MpesaTransaction)
        .where(
            and_(
                MpesaTransaction.mpesa_receipt_number == receipt_number,
                MpesaTransaction.status == mpesa_rules.STATUS_SUCCESS,
                MpesaTransaction.sale_id.is_(None),
            )
        )
        .values(sale_id=sale_id, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if not db.session.execute(stmt).rowcount:
        raise StateConflictError(
            "M-Pesa transaction already linked to a sale",
            details={"transaction_id": receipt_number},
        )

    db.session.expire(tx)
    logger.info("Linked M-Pesa receipt %s to sale %s", receipt_number, sale_id)
    return tx


# =============================================================================
# MAINTENANCE
# =============================================================================

def expire_stale_payments(older_than: timedelta) -> int:
    """
    Fail records still pending after `older_than` (abandoned PIN prompts,
    lost callbacks). Uses the same pending-only guard as the live paths.
    """
    cutoff = utcnow() - older_than

    def _op() -> int:
        stmt = (
            update(MpesaTransaction)
            .where(
                MpesaTransaction.status == mpesa_rules.STATUS_PENDING,
                MpesaTransaction.created_at < cutoff,
            )
            .values(
                status=mpesa_rules.STATUS_FAILED,
                result_desc="Expired without confirmation",
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        count = db.session.execute(stmt).rowcount or 0
        db.session.commit()
        return count

    expired = run_with_retry(_op)
    logger.info("Expired %d stale M-Pesa transactions (older than %s)", expired, older_than)
    return expired


def list_transactions(*, status: str | None = None, page: int | None = 1, per_page: int | None = 20) -> dict:
    base_query = db.session.query(MpesaTransaction).order_by(
        MpesaTransaction.created_at.desc(), MpesaTransaction.id.desc()
    )
    if status:
        base_query = base_query.filter(MpesaTransaction.status == status)
    return paginate(base_query, page=page, per_page=per_page)
