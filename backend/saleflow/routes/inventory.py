# backend/saleflow/routes/inventory.py
"""
Product catalogue and stock ledger routes.

Every stock change goes through inventory_service.adjust_stock; there is no
route that writes current_stock directly.
"""
from flask import Blueprint, request, jsonify, g, current_app

from ..errors import SaleFlowError, ValidationError
from ..services import inventory_service
from ..validation import coerce_int
from ..decorators import with_actor
from . import pagination_args


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.post("/products")
@with_actor
def create_product_route():
    payload = request.get_json(silent=True) or {}
    try:
        product = inventory_service.create_product(payload, actor_id=g.actor_id)
        return jsonify({"product": product.to_dict()}), 201
    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create product")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/products")
def list_products_route():
    try:
        page, per_page = pagination_args()
        active_only = request.args.get("active_only", "false").lower() in ("1", "true", "yes")
        return jsonify(inventory_service.list_products(page=page, per_page=per_page, active_only=active_only)), 200
    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code


@inventory_bp.get("/products/<int:product_id>")
def get_product_route(product_id: int):
    try:
        product = inventory_service.get_product(product_id)
        return jsonify({"product": product.to_dict()}), 200
    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code


@inventory_bp.patch("/products/<int:product_id>")
def update_product_route(product_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        product = inventory_service.update_product(product_id, payload)
        return jsonify({"product": product.to_dict()}), 200
    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update product")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/products/<int:product_id>/adjust")
@with_actor
def adjust_stock_route(product_id: int):
    """
    Body: {quantity, movement_type, reference?, reason?}

    quantity is positive; movement_type decides the direction.
    """
    payload = request.get_json(silent=True) or {}
    try:
        if payload.get("quantity") is None or not payload.get("movement_type"):
            raise ValidationError("quantity and movement_type required")
        movement = inventory_service.adjust_stock(
            product_id,
            coerce_int(payload["quantity"], "quantity"),
            payload["movement_type"],
            reference=payload.get("reference"),
            actor_id=g.actor_id,
            reason=payload.get("reason"),
        )
        product = inventory_service.get_product(product_id)
        return jsonify({"movement": movement.to_dict(), "product": product.to_dict()}), 201
    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/products/<int:product_id>/movements")
def list_movements_route(product_id: int):
    try:
        page, per_page = pagination_args(default_per_page=50)
        result = inventory_service.list_stock_movements(product_id, page=page, per_page=per_page)
        return jsonify(result), 200
    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code


@inventory_bp.get("/low-stock")
def low_stock_route():
    products = inventory_service.find_low_stock()
    return jsonify({"items": [p.to_dict() for p in products], "count": len(products)}), 200


@inventory_bp.get("/out-of-stock")
def out_of_stock_route():
    products = inventory_service.find_out_of_stock()
    return jsonify({"items": [p.to_dict() for p in products], "count": len(products)}), 200


@inventory_bp.get("/valuation")
def valuation_route():
    return jsonify(inventory_service.stock_valuation()), 200
