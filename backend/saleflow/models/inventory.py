from __future__ import annotations

from ..extensions import db
from ..time_utils import utcnow, to_utc_z
from ..domain import stock as stock_rules
from ..domain.pricing import effective_price_cents


class Product(db.Model):
    """
    Product master data plus its running stock level.

    STOCK DESIGN:
    current_stock is a stored counter, not a ledger sum. It is only ever
    changed by inventory_service.adjust_stock, which updates the counter with
    one conditional UPDATE and writes the StockMovement in the same
    transaction. Never assign current_stock directly.

    PERFORMANCE COUNTERS:
    total_sold / total_revenue_cents / last_sold_at are best-effort analytics
    maintained on "sale" movements. Nothing depends on them for correctness.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_active_name", "is_active", "name"),
        db.CheckConstraint("min_stock >= 0", name="ck_products_min_stock_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    sku = db.Column(db.String(64), nullable=False, unique=True)
    barcode = db.Column(db.String(64), nullable=True, unique=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(64), nullable=True, index=True)
    unit = db.Column(db.String(16), nullable=False, default="piece")

    # Authoritative storage in cents
    cost_price_cents = db.Column(db.Integer, nullable=False, default=0)
    selling_price_cents = db.Column(db.Integer, nullable=False)
    discount_percent = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    tax_rate_percent = db.Column(db.Numeric(5, 2), nullable=False, default=0)

    current_stock = db.Column(db.Integer, nullable=False, default=0)
    min_stock = db.Column(db.Integer, nullable=False, default=10)
    max_stock = db.Column(db.Integer, nullable=True)
    # Falls back to min_stock when unset
    reorder_point = db.Column(db.Integer, nullable=True)
    reorder_quantity = db.Column(db.Integer, nullable=True)
    track_inventory = db.Column(db.Boolean, nullable=False, default=True)
    allow_backorder = db.Column(db.Boolean, nullable=False, default=False)

    total_sold = db.Column(db.Integer, nullable=False, default=0)
    total_revenue_cents = db.Column(db.BigInteger, nullable=False, default=0)
    last_sold_at = db.Column(db.DateTime, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} stock={self.current_stock}>"

    @property
    def effective_price_cents(self) -> int:
        return effective_price_cents(self.selling_price_cents, self.discount_percent)

    @property
    def stock_status(self) -> str:
        return stock_rules.stock_status(self.current_stock, self.min_stock)

    @property
    def needs_reorder(self) -> bool:
        return stock_rules.needs_reorder(self.current_stock, self.reorder_point, self.min_stock)

    @property
    def stock_value_cents(self) -> int:
        return max(self.current_stock, 0) * self.cost_price_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "barcode": self.barcode,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "unit": self.unit,
            "cost_price_cents": self.cost_price_cents,
            "selling_price_cents": self.selling_price_cents,
            "discount_percent": str(self.discount_percent),
            "tax_rate_percent": str(self.tax_rate_percent),
            "effective_price_cents": self.effective_price_cents,
            "current_stock": self.current_stock,
            "min_stock": self.min_stock,
            "max_stock": self.max_stock,
            "reorder_point": self.reorder_point,
            "reorder_quantity": self.reorder_quantity,
            "track_inventory": self.track_inventory,
            "allow_backorder": self.allow_backorder,
            "stock_status": self.stock_status,
            "needs_reorder": self.needs_reorder,
            "stock_value_cents": self.stock_value_cents,
            "performance": {
                "total_sold": self.total_sold,
                "total_revenue_cents": self.total_revenue_cents,
                "last_sold_at": to_utc_z(self.last_sold_at),
            },
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Append-only stock movement log.

    quantity is always positive; movement_type decides the direction.
    previous_stock/new_stock are the counter values around this movement,
    as seen by the transaction that applied it.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_product_created", "product_id", "created_at"),
        db.CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    # sale, damage, transfer (decrease); purchase, return, adjustment (increase)
    movement_type = db.Column(db.String(16), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    previous_stock = db.Column(db.Integer, nullable=False)
    new_stock = db.Column(db.Integer, nullable=False)

    # Receipt or order number, PO number, etc.
    reference = db.Column(db.String(64), nullable=True, index=True)
    reason = db.Column(db.String(255), nullable=True)
    actor_user_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    product = db.relationship("Product", backref=db.backref("movements", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "movement_type": self.movement_type,
            "quantity": self.quantity,
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
            "reference": self.reference,
            "reason": self.reason,
            "actor_user_id": self.actor_user_id,
            "created_at": to_utc_z(self.created_at),
        }
