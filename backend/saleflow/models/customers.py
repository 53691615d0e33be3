from __future__ import annotations

from ..extensions import db
from ..time_utils import utcnow, to_utc_z
from ..domain.loyalty import BRONZE, next_tier_requirement

CREDIT_CHARGE = "credit"
CREDIT_PAYMENT = "payment"


class Customer(db.Model):
    """
    Customer profile with lifetime statistics, loyalty and a credit account.

    Statistics are updated by customer_service.update_order_statistics after
    a completed sale or a delivered order. Loyalty tier is recomputed from
    (total_spent_cents, total_orders) every time statistics change.

    CREDIT:
    credit_used_cents is the outstanding balance. A "credit" transaction
    raises it (bounded by credit_limit_cents); a "payment" lowers it,
    floored at zero.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.CheckConstraint("credit_used_cents >= 0", name="ck_customers_credit_used_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(128), nullable=False)
    # 07XXXXXXXX or +2547XXXXXXXX
    phone = db.Column(db.String(20), nullable=False, unique=True)
    alternate_phone = db.Column(db.String(20), nullable=True)
    email = db.Column(db.String(255), nullable=True)

    total_orders = db.Column(db.Integer, nullable=False, default=0)
    total_spent_cents = db.Column(db.BigInteger, nullable=False, default=0)
    average_order_value_cents = db.Column(db.Integer, nullable=False, default=0)
    last_order_at = db.Column(db.DateTime, nullable=True)

    loyalty_points = db.Column(db.Integer, nullable=False, default=0)
    loyalty_tier = db.Column(db.String(16), nullable=False, default=BRONZE)
    loyalty_member_since = db.Column(db.DateTime, nullable=False, default=utcnow)

    credit_enabled = db.Column(db.Boolean, nullable=False, default=False)
    credit_limit_cents = db.Column(db.Integer, nullable=False, default=0)
    credit_used_cents = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_activity_at = db.Column(db.DateTime, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Customer id={self.id} phone={self.phone!r} tier={self.loyalty_tier}>"

    @property
    def credit_available_cents(self) -> int:
        return max(0, self.credit_limit_cents - self.credit_used_cents)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "alternate_phone": self.alternate_phone,
            "email": self.email,
            "statistics": {
                "total_orders": self.total_orders,
                "total_spent_cents": self.total_spent_cents,
                "average_order_value_cents": self.average_order_value_cents,
                "last_order_at": to_utc_z(self.last_order_at),
            },
            "loyalty": {
                "points": self.loyalty_points,
                "tier": self.loyalty_tier,
                "member_since": to_utc_z(self.loyalty_member_since),
                "next_tier": next_tier_requirement(
                    self.loyalty_tier, self.total_spent_cents, self.total_orders
                ),
            },
            "credit": {
                "enabled": self.credit_enabled,
                "limit_cents": self.credit_limit_cents,
                "used_cents": self.credit_used_cents,
                "available_cents": self.credit_available_cents,
            },
            "is_active": self.is_active,
            "last_activity_at": to_utc_z(self.last_activity_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class CustomerCreditTransaction(db.Model):
    """Credit account history (append-only, paginated on read)."""
    __tablename__ = "customer_credit_transactions"
    __table_args__ = (
        db.Index("ix_customer_credit_tx_customer_created", "customer_id", "created_at"),
        db.CheckConstraint("amount_cents > 0", name="ck_customer_credit_tx_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    # credit | payment
    type = db.Column(db.String(16), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    reference = db.Column(db.String(128), nullable=True)
    # credit_used_cents after this transaction
    balance_cents = db.Column(db.Integer, nullable=False)
    recorded_by_user_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    customer = db.relationship("Customer", backref=db.backref("credit_transactions", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "type": self.type,
            "amount_cents": self.amount_cents,
            "reference": self.reference,
            "balance_cents": self.balance_cents,
            "recorded_by_user_id": self.recorded_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
