from __future__ import annotations

from ..extensions import db
from ..time_utils import utcnow, to_utc_z

# Sale.status
SALE_COMPLETED = "completed"
SALE_VOIDED = "voided"
SALE_REFUNDED = "refunded"
SALE_PARTIAL_REFUND = "partial_refund"

# Sale.payment_status
PAYMENT_PAID = "paid"
PAYMENT_PENDING = "pending"
PAYMENT_PARTIAL = "partial"
PAYMENT_REFUNDED = "refunded"

PAYMENT_METHODS = ("cash", "mpesa", "card", "bank_transfer", "credit")
# Header-level method also allows "mixed" when details use more than one method
SALE_PAYMENT_METHODS = PAYMENT_METHODS + ("mixed",)


class Sale(db.Model):
    """
    Point-of-sale transaction.

    LIFECYCLE:
    completed -> voided (terminal, restores all item stock)
    completed -> partial_refund -> refunded (refunded once cumulative >= total)

    Totals are derived from SaleItem rows by domain.pricing and written once
    at creation; they are never edited afterwards. Refunds accumulate in
    total_refunded_cents and on each item's refunded_quantity/refunded_cents.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.Index("ix_sales_status_created", "status", "created_at"),
        db.Index("ix_sales_payment_status_created", "payment_status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # RCP + YYMMDD + 5-digit daily sequence; assigned once
    receipt_number = db.Column(db.String(32), nullable=False, unique=True)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    customer_name = db.Column(db.String(128), nullable=True)
    customer_phone = db.Column(db.String(20), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)

    seller_user_id = db.Column(db.Integer, nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default=SALE_COMPLETED, index=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    payment_method = db.Column(db.String(16), nullable=False, default="cash")
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_PAID, index=True)
    total_paid_cents = db.Column(db.Integer, nullable=False, default=0)
    change_cents = db.Column(db.Integer, nullable=False, default=0)

    total_refunded_cents = db.Column(db.Integer, nullable=False, default=0)

    voided_by_user_id = db.Column(db.Integer, nullable=True)
    voided_at = db.Column(db.DateTime, nullable=True)
    void_reason = db.Column(db.String(255), nullable=True)

    notes = db.Column(db.Text, nullable=True)
    source = db.Column(db.String(16), nullable=False, default="pos")

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    items = db.relationship(
        "SaleItem", backref="sale", lazy=True, order_by="SaleItem.id", cascade="all, delete-orphan"
    )
    payments = db.relationship(
        "SalePayment", backref="sale", lazy=True, order_by="SalePayment.id", cascade="all, delete-orphan"
    )
    refunds = db.relationship(
        "SaleRefund", backref="sale", lazy=True, order_by="SaleRefund.id", cascade="all, delete-orphan"
    )
    customer = db.relationship("Customer", foreign_keys=[customer_id])

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Sale id={self.id} receipt={self.receipt_number!r} status={self.status}>"

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "receipt_number": self.receipt_number,
            "customer_id": self.customer_id,
            "customer_info": {
                "name": self.customer_name,
                "phone": self.customer_phone,
                "email": self.customer_email,
            },
            "seller_user_id": self.seller_user_id,
            "status": self.status,
            "totals": {
                "subtotal_cents": self.subtotal_cents,
                "discount_cents": self.discount_cents,
                "tax_cents": self.tax_cents,
                "total_cents": self.total_cents,
            },
            "payment": {
                "method": self.payment_method,
                "status": self.payment_status,
                "total_paid_cents": self.total_paid_cents,
                "change_cents": self.change_cents,
                "details": [p.to_dict() for p in self.payments],
            },
            "void_info": None,
            "refund_info": None,
            "notes": self.notes,
            "source": self.source,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if self.voided_at is not None:
            data["void_info"] = {
                "voided_by_user_id": self.voided_by_user_id,
                "voided_at": to_utc_z(self.voided_at),
                "reason": self.void_reason,
            }
        if self.refunds:
            data["refund_info"] = {
                "total_refunded_cents": self.total_refunded_cents,
                "refunds": [r.to_dict() for r in self.refunds],
            }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class SaleItem(db.Model):
    """
    Sale line snapshot: name and pricing are copied at sale time so later
    product edits never change historical sales.
    """
    __tablename__ = "sale_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_sale_items_quantity_positive"),
        db.CheckConstraint("refunded_quantity <= quantity", name="ck_sale_items_refund_bound"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    product_name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)

    discount_percent = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_rate_percent = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)

    # (unit_price * quantity - discount) + tax
    subtotal_cents = db.Column(db.Integer, nullable=False)

    # Refund accumulator; guards against refunding the same units twice
    refunded_quantity = db.Column(db.Integer, nullable=False, default=0)
    refunded_cents = db.Column(db.Integer, nullable=False, default=0)

    # Whether the sale moved stock for this line (track_inventory at sale time)
    stock_tracked = db.Column(db.Boolean, nullable=False, default=True)

    product = db.relationship("Product")

    @property
    def refundable_quantity(self) -> int:
        return self.quantity - self.refunded_quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "sku": self.sku,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "discount": {
                "percent": str(self.discount_percent),
                "amount_cents": self.discount_cents,
            },
            "tax": {
                "rate_percent": str(self.tax_rate_percent),
                "amount_cents": self.tax_cents,
            },
            "subtotal_cents": self.subtotal_cents,
            "refunded_quantity": self.refunded_quantity,
            "refunded_cents": self.refunded_cents,
        }


class SalePayment(db.Model):
    """One tender applied to a sale (payment.details[] entry)."""
    __tablename__ = "sale_payments"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_sale_payments_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)

    method = db.Column(db.String(16), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    reference = db.Column(db.String(128), nullable=True)
    # M-Pesa receipt number for method="mpesa"
    transaction_id = db.Column(db.String(64), nullable=True, index=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "method": self.method,
            "amount_cents": self.amount_cents,
            "reference": self.reference,
            "transaction_id": self.transaction_id,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }


class SaleRefund(db.Model):
    """One refund call against a sale; lines say which items and how much."""
    __tablename__ = "sale_refunds"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(255), nullable=True)
    refunded_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    lines = db.relationship(
        "SaleRefundLine", backref="refund", lazy=True, order_by="SaleRefundLine.id", cascade="all, delete-orphan"
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "amount_cents": self.amount_cents,
            "reason": self.reason,
            "refunded_by_user_id": self.refunded_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "lines": [line.to_dict() for line in self.lines],
        }


class SaleRefundLine(db.Model):
    __tablename__ = "sale_refund_lines"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_sale_refund_lines_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    refund_id = db.Column(db.Integer, db.ForeignKey("sale_refunds.id"), nullable=False, index=True)
    sale_item_id = db.Column(db.Integer, db.ForeignKey("sale_items.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {
            "sale_item_id": self.sale_item_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "amount_cents": self.amount_cents,
        }
