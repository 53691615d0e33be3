# Overview: Service-layer operations for the inventory ledger; encapsulates stock math and database work.

"""
SaleFlow Inventory Invariants (authoritative)

Stock model:
- Product.current_stock is a stored counter; StockMovement is its audit log.
- Every change to current_stock goes through adjust_stock, which applies the
  change with ONE conditional UPDATE and inserts the StockMovement in the same
  transaction. A concurrent reader sees either both or neither.

Direction:
- sale, damage, transfer subtract; purchase, return, adjustment add.
- quantity is always positive; the movement type decides the sign.

Business invariants:
- Stock may never go negative unless the product allows backorder. The
  check lives in the UPDATE's WHERE clause, so two concurrent sales of the
  last unit cannot both succeed.
- Sale movements also bump the product's performance counters (best effort).

Retention:
- The movement log is paginated on read and pruned by
  prune_stock_movements(keep) to the newest N rows per product.
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import func, or_, update, delete

from ..extensions import db
from ..models import Product, StockMovement
from ..time_utils import utcnow
from ..errors import NotFoundError, InsufficientStockError, DuplicateError
from ..domain import stock as stock_rules
from ..validation import ModelValidationPolicy, validate_payload, enforce_rules_product, coerce_int
from .concurrency import run_with_retry
from .pagination import paginate

logger = logging.getLogger(__name__)


PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={
        "sku", "barcode", "name", "description", "category", "unit",
        "cost_price_cents", "selling_price_cents", "discount_percent", "tax_rate_percent",
        "min_stock", "max_stock", "reorder_point", "reorder_quantity",
        "track_inventory", "allow_backorder", "is_active",
    },
    required_on_create={"sku", "name", "selling_price_cents"},
)


# =============================================================================
# PRODUCTS
# =============================================================================

def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    return product


def create_product(payload: dict, *, actor_id: int | None = None) -> Product:
    """
    Create a product. An optional opening_stock is booked as a "purchase"
    movement so the log explains the starting level.
    """
    payload = dict(payload or {})
    opening_stock = payload.pop("opening_stock", None)
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=False)
    enforce_rules_product(patch)
    if opening_stock is not None:
        opening_stock = coerce_int(opening_stock, "opening_stock")

    def _op() -> Product:
        if db.session.query(Product.id).filter(Product.sku == patch["sku"]).first():
            raise DuplicateError(f"SKU {patch['sku']} already exists", details={"sku": patch["sku"]})

        product = Product(**patch)
        db.session.add(product)
        db.session.flush()

        if opening_stock:
            adjust_stock(
                product.id,
                opening_stock,
                stock_rules.PURCHASE,
                reference="OPENING",
                actor_id=actor_id,
                reason="Opening stock",
                commit=False,
            )

        db.session.commit()
        logger.info("Created product %s (sku=%s)", product.id, product.sku)
        return product

    return run_with_retry(_op)


def update_product(product_id: int, payload: dict) -> Product:
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=True)
    enforce_rules_product(patch)

    def _op() -> Product:
        product = get_product(product_id)
        if "sku" in patch and patch["sku"] != product.sku:
            clash = (
                db.session.query(Product.id)
                .filter(Product.sku == patch["sku"], Product.id != product.id)
                .first()
            )
            if clash:
                raise DuplicateError(f"SKU {patch['sku']} already exists", details={"sku": patch["sku"]})

        for key, value in patch.items():
            setattr(product, key, value)
        db.session.commit()
        return product

    return run_with_retry(_op)


def list_products(*, page: int | None = None, per_page: int | None = None, active_only: bool = False) -> dict:
    base_query = db.session.query(Product).order_by(Product.name.asc(), Product.id.asc())
    if active_only:
        base_query = base_query.filter(Product.is_active.is_(True))
    return paginate(base_query, page=page, per_page=per_page)


def find_low_stock() -> list[Product]:
    """Tracked, active products at or below their reorder threshold (but not out)."""
    threshold = func.coalesce(Product.reorder_point, Product.min_stock)
    return (
        db.session.query(Product)
        .filter(
            Product.is_active.is_(True),
            Product.track_inventory.is_(True),
            Product.current_stock > 0,
            Product.current_stock <= threshold,
        )
        .order_by(Product.current_stock.asc(), Product.id.asc())
        .all()
    )


def find_out_of_stock() -> list[Product]:
    return (
        db.session.query(Product)
        .filter(
            Product.is_active.is_(True),
            Product.track_inventory.is_(True),
            Product.current_stock <= 0,
        )
        .order_by(Product.name.asc())
        .all()
    )


def stock_valuation() -> dict:
    """Total stock value at cost over active, tracked products."""
    row = (
        db.session.query(
            func.count(Product.id).label("products"),
            func.coalesce(func.sum(Product.current_stock), 0).label("units"),
            func.coalesce(func.sum(Product.current_stock * Product.cost_price_cents), 0).label("value"),
        )
        .filter(
            Product.is_active.is_(True),
            Product.track_inventory.is_(True),
            Product.current_stock > 0,
        )
        .one()
    )
    return {
        "products": int(row.products or 0),
        "units": int(row.units or 0),
        "stock_value_cents": int(row.value or 0),
    }


# =============================================================================
# STOCK LEDGER
# =============================================================================

def adjust_stock(
    product_id: int,
    quantity: int,
    movement_type: str,
    *,
    reference: str | None = None,
    actor_id: int | None = None,
    reason: str | None = None,
    revenue_cents: int | None = None,
    commit: bool = True,
) -> StockMovement:
    """
    Apply one stock movement and record it.

    WHY a conditional UPDATE instead of lock + read + write:
    The "enough stock?" check and the decrement are one statement, so it is
    correct on databases that ignore SELECT ... FOR UPDATE (SQLite) as well
    as on those that honor it.

    Raises:
        ValidationError: unknown movement type or non-positive quantity
        NotFoundError: product missing
        InsufficientStockError: decrease would go below zero without backorder

    commit=False lets sales/orders fold the movement into their own
    transaction; the caller then owns retry and commit.
    """
    delta = stock_rules.signed_delta(movement_type, quantity)

    def _op() -> StockMovement:
        product = get_product(product_id)
        now = utcnow()

        values = {
            "current_stock": Product.current_stock + delta,
            "version_id": Product.version_id + 1,
            "updated_at": now,
        }
        if movement_type == stock_rules.SALE:
            revenue = revenue_cents if revenue_cents is not None else quantity * product.effective_price_cents
            values["total_sold"] = Product.total_sold + quantity
            values["total_revenue_cents"] = Product.total_revenue_cents + revenue
            values["last_sold_at"] = now

        stmt = update(Product).where(Product.id == product_id)
        if delta < 0:
            stmt = stmt.where(or_(Product.allow_backorder.is_(True), Product.current_stock >= quantity))
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        result = db.session.execute(stmt)
        if not result.rowcount:
            available = (
                db.session.query(Product.current_stock).filter(Product.id == product_id).scalar()
            )
            raise InsufficientStockError(product.name, available, quantity, product_id=product_id)

        new_stock = db.session.query(Product.current_stock).filter(Product.id == product_id).scalar()
        # The ORM copy is stale after the Core UPDATE (stock and version_id)
        db.session.expire(product)

        movement = StockMovement(
            product_id=product_id,
            movement_type=movement_type,
            quantity=quantity,
            previous_stock=new_stock - delta,
            new_stock=new_stock,
            reference=reference,
            reason=reason,
            actor_user_id=actor_id,
            created_at=now,
        )
        db.session.add(movement)
        db.session.flush()

        if commit:
            db.session.commit()

        logger.info(
            "Stock %s product=%s qty=%s %s->%s ref=%s",
            movement_type, product_id, quantity, movement.previous_stock, new_stock, reference,
        )
        return movement

    if not commit:
        return _op()
    return run_with_retry(_op)


def list_stock_movements(product_id: int, *, page: int = 1, per_page: int = 50) -> dict:
    get_product(product_id)
    base_query = (
        db.session.query(StockMovement)
        .filter(StockMovement.product_id == product_id)
        .order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
    )
    return paginate(base_query, page=page, per_page=per_page)


def prune_stock_movements(keep: int | None = None) -> int:
    """
    Delete all but the newest `keep` movements per product.

    Returns number of rows deleted.
    """
    if keep is None:
        keep = int(current_app.config.get("STOCK_MOVEMENT_RETENTION", 100))
    if keep < 0:
        raise ValueError("keep must be >= 0")

    def _op() -> int:
        ranked = (
            db.session.query(
                StockMovement.id.label("id"),
                func.row_number()
                .over(
                    partition_by=StockMovement.product_id,
                    order_by=(StockMovement.created_at.desc(), StockMovement.id.desc()),
                )
                .label("rn"),
            )
            .subquery()
        )
        doomed = db.session.query(ranked.c.id).filter(ranked.c.rn > keep)
        result = db.session.execute(
            delete(StockMovement)
            .where(StockMovement.id.in_(doomed.scalar_subquery()))
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return result.rowcount or 0

    deleted = run_with_retry(_op)
    logger.info("Pruned %d stock movements (keep=%d per product)", deleted, keep)
    return deleted

