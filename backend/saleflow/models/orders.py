from __future__ import annotations

from ..extensions import db
from ..time_utils import utcnow, to_utc_z
from ..domain.order_status import PENDING

DELIVERY_TYPES = ("pickup", "delivery")
DELIVERY_WINDOWS = ("morning", "afternoon", "evening", "anytime")
PRIORITIES = ("low", "normal", "high", "urgent")
ORDER_SOURCES = ("pos", "phone", "whatsapp", "online", "walkin")

# Sort weight for queue queries (higher first)
PRIORITY_RANK = {"urgent": 3, "high": 2, "normal": 1, "low": 0}

# Order.payment_status
ORDER_PAYMENT_PENDING = "pending"
ORDER_PAYMENT_PARTIAL = "partial"
ORDER_PAYMENT_PAID = "paid"


class Order(db.Model):
    """
    Customer order for pickup or delivery.

    LIFECYCLE (see domain/order_status.py for the full graph):
    pending -> confirmed -> processing -> ready -> [out_for_delivery] -> delivered
    with cancellation allowed until dispatch and failed -> out_for_delivery retries.

    STOCK:
    Orders reserve nothing. Stock leaves with a "sale" movement only on the
    transition into delivered, exactly once.

    Totals: 16% VAT on the net of lines, plus the delivery fee.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_created", "status", "created_at"),
        db.Index("ix_orders_scheduled_date", "scheduled_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # ORD + YYMM + 5-digit monthly sequence; assigned once
    order_number = db.Column(db.String(32), nullable=False, unique=True)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    customer_name = db.Column(db.String(128), nullable=False)
    customer_phone = db.Column(db.String(20), nullable=False)
    customer_email = db.Column(db.String(255), nullable=True)
    customer_alternate_phone = db.Column(db.String(20), nullable=True)

    status = db.Column(db.String(20), nullable=False, default=PENDING, index=True)
    priority = db.Column(db.String(8), nullable=False, default="normal")
    source = db.Column(db.String(16), nullable=False, default="pos")

    delivery_type = db.Column(db.String(16), nullable=False, default="pickup")
    delivery_address = db.Column(db.JSON, nullable=True)
    scheduled_date = db.Column(db.DateTime, nullable=False)
    scheduled_window = db.Column(db.String(16), nullable=False, default="anytime")
    actual_delivery_date = db.Column(db.DateTime, nullable=True)
    delivery_person_user_id = db.Column(db.Integer, nullable=True, index=True)
    delivery_fee_cents = db.Column(db.Integer, nullable=False, default=0)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    payment_method = db.Column(db.String(16), nullable=False, default="cash")
    payment_status = db.Column(db.String(16), nullable=False, default=ORDER_PAYMENT_PENDING)

    internal_notes = db.Column(db.Text, nullable=True)
    customer_notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    assigned_to_user_id = db.Column(db.Integer, nullable=True)

    cancelled_by_user_id = db.Column(db.Integer, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)

    # Set once when delivery moved stock; guards against a second decrement
    stock_committed_at = db.Column(db.DateTime, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    items = db.relationship(
        "OrderItem", backref="order", lazy=True, order_by="OrderItem.id", cascade="all, delete-orphan"
    )
    status_history = db.relationship(
        "OrderStatusHistory",
        backref="order",
        lazy=True,
        order_by="OrderStatusHistory.id",
        cascade="all, delete-orphan",
    )
    transactions = db.relationship(
        "OrderPaymentTransaction",
        backref="order",
        lazy=True,
        order_by="OrderPaymentTransaction.id",
        cascade="all, delete-orphan",
    )
    customer = db.relationship("Customer", foreign_keys=[customer_id])

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} status={self.status}>"

    @property
    def amount_paid_cents(self) -> int:
        return sum(t.amount_cents for t in self.transactions)

    @property
    def balance_cents(self) -> int:
        return self.total_cents - self.amount_paid_cents

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "customer_id": self.customer_id,
            "customer_info": {
                "name": self.customer_name,
                "phone": self.customer_phone,
                "email": self.customer_email,
                "alternate_phone": self.customer_alternate_phone,
            },
            "status": self.status,
            "priority": self.priority,
            "source": self.source,
            "delivery": {
                "type": self.delivery_type,
                "address": self.delivery_address,
                "scheduled_date": to_utc_z(self.scheduled_date),
                "scheduled_window": self.scheduled_window,
                "actual_delivery_date": to_utc_z(self.actual_delivery_date),
                "delivery_person_user_id": self.delivery_person_user_id,
                "delivery_fee_cents": self.delivery_fee_cents,
            },
            "totals": {
                "subtotal_cents": self.subtotal_cents,
                "discount_cents": self.discount_cents,
                "delivery_fee_cents": self.delivery_fee_cents,
                "tax_cents": self.tax_cents,
                "total_cents": self.total_cents,
            },
            "payment": {
                "method": self.payment_method,
                "status": self.payment_status,
                "amount_paid_cents": self.amount_paid_cents,
                "balance_cents": self.balance_cents,
                "transactions": [t.to_dict() for t in self.transactions],
            },
            "notes": {
                "internal": self.internal_notes,
                "customer": self.customer_notes,
            },
            "created_by_user_id": self.created_by_user_id,
            "assigned_to_user_id": self.assigned_to_user_id,
            "cancellation": None,
            "status_history": [h.to_dict() for h in self.status_history],
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if self.cancelled_at is not None:
            data["cancellation"] = {
                "cancelled_by_user_id": self.cancelled_by_user_id,
                "cancelled_at": to_utc_z(self.cancelled_at),
                "reason": self.cancellation_reason,
            }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    product_name = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    discount_percent = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    # unit_price * quantity - discount (VAT is applied at order level)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    notes = db.Column(db.String(255), nullable=True)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "discount": {
                "percent": str(self.discount_percent),
                "amount_cents": self.discount_cents,
            },
            "subtotal_cents": self.subtotal_cents,
            "notes": self.notes,
        }


class OrderStatusHistory(db.Model):
    """Append-only audit of every status change (including creation)."""
    __tablename__ = "order_status_history"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    from_status = db.Column(db.String(20), nullable=True)
    status = db.Column(db.String(20), nullable=False)
    changed_by_user_id = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.String(255), nullable=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        location = None
        if self.latitude is not None and self.longitude is not None:
            location = {"latitude": self.latitude, "longitude": self.longitude}
        return {
            "from_status": self.from_status,
            "status": self.status,
            "changed_by_user_id": self.changed_by_user_id,
            "notes": self.notes,
            "location": location,
            "created_at": to_utc_z(self.created_at),
        }


class OrderPaymentTransaction(db.Model):
    __tablename__ = "order_payment_transactions"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_order_payment_tx_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    method = db.Column(db.String(16), nullable=False)
    reference = db.Column(db.String(128), nullable=True)
    received_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "amount_cents": self.amount_cents,
            "method": self.method,
            "reference": self.reference,
            "received_by_user_id": self.received_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
