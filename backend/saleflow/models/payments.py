from __future__ import annotations

from ..extensions import db
from ..time_utils import utcnow, to_utc_z
from ..domain.mpesa import STATUS_PENDING, TERMINAL_STATUSES


class MpesaTransaction(db.Model):
    """
    Reconciliation record for one STK push attempt.

    STATE MACHINE:
    pending -> success | failed | cancelled (all terminal)

    CONCURRENCY:
    The poll path and the callback path race on the same row. Every status
    change is a conditional UPDATE ... WHERE status='pending', so the first
    writer wins and later writers become no-ops. mpesa_receipt_number is
    written only by the callback. sale_id is set at most once, by a
    conditional UPDATE ... WHERE sale_id IS NULL.
    """
    __tablename__ = "mpesa_transactions"
    __table_args__ = (
        db.Index("ix_mpesa_tx_status_created", "status", "created_at"),
        db.Index("ix_mpesa_tx_user_created", "user_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    checkout_request_id = db.Column(db.String(64), nullable=False, unique=True)
    merchant_request_id = db.Column(db.String(64), nullable=False)

    # As entered (07... / 2547...); the gateway gets the normalised form
    phone_number = db.Column(db.String(20), nullable=False)
    # Whole shillings, as sent to the gateway
    amount = db.Column(db.Integer, nullable=False)
    account_reference = db.Column(db.String(64), nullable=False, unique=True)
    transaction_desc = db.Column(db.String(128), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=STATUS_PENDING, index=True)

    mpesa_receipt_number = db.Column(db.String(64), nullable=True, unique=True)
    transaction_date = db.Column(db.DateTime, nullable=True)
    result_code = db.Column(db.String(16), nullable=True)
    result_desc = db.Column(db.String(255), nullable=True)
    callback_data = db.Column(db.JSON, nullable=True)
    callback_received_at = db.Column(db.DateTime, nullable=True)

    # Latest poll outcome; informational only, never authoritative
    query_status = db.Column(db.String(16), nullable=True)
    query_result_code = db.Column(db.String(16), nullable=True)
    query_result_desc = db.Column(db.String(255), nullable=True)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    last_query_at = db.Column(db.DateTime, nullable=True)

    user_id = db.Column(db.Integer, nullable=True)
    # Several transactions may settle one sale; each transaction settles at most one
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    sale = db.relationship("Sale", foreign_keys=[sale_id])

    def __repr__(self) -> str:
        return f"<MpesaTransaction id={self.id} checkout={self.checkout_request_id!r} status={self.status}>"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "checkout_request_id": self.checkout_request_id,
            "merchant_request_id": self.merchant_request_id,
            "phone_number": self.phone_number,
            "amount": self.amount,
            "account_reference": self.account_reference,
            "transaction_desc": self.transaction_desc,
            "status": self.status,
            "mpesa_receipt_number": self.mpesa_receipt_number,
            "transaction_date": to_utc_z(self.transaction_date),
            "result_code": self.result_code,
            "result_desc": self.result_desc,
            "query_status": self.query_status,
            "retry_count": self.retry_count,
            "last_query_at": to_utc_z(self.last_query_at),
            "user_id": self.user_id,
            "sale_id": self.sale_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
