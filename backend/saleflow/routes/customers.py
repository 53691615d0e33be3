# Overview: Flask API routes for customers, loyalty and credit accounts.

# backend/saleflow/routes/customers.py
"""Customer API routes"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import SaleFlowError
from ..services import customer_service
from ..decorators import with_actor
from . import pagination_args


customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")


@customers_bp.post("/")
def create_customer_route():
    try:
        customer = customer_service.create_customer(request.get_json(silent=True) or {})
        return jsonify({"customer": customer.to_dict()}), 201
    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create customer")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.get("/")
def list_customers_route():
    try:
        page, per_page = pagination_args()
        result = customer_service.list_customers(page=page, per_page=per_page, tier=request.args.get("tier"))
        return jsonify(result), 200
    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code


@customers_bp.get("/<int:customer_id>")
def get_customer_route(customer_id: int):
    try:
        customer = customer_service.get_customer(customer_id)
        return jsonify({"customer": customer.to_dict()}), 200
    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code


@customers_bp.patch("/<int:customer_id>")
def update_customer_route(customer_id: int):
    try:
        customer = customer_service.update_customer(customer_id, request.get_json(silent=True) or {})
        return jsonify({"customer": customer.to_dict()}), 200
    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update customer")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.get("/<int:customer_id>/next-tier")
def next_tier_route(customer_id: int):
    try:
        return jsonify({"next_tier": customer_service.next_tier_requirement(customer_id)}), 200
    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code


@customers_bp.post("/<int:customer_id>/credit")
@with_actor
def add_credit_transaction_route(customer_id: int):
    """Body: {type: credit|payment, amount_cents, reference?}"""
    try:
        data = request.get_json(silent=True) or {}
        if not data.get("type") or data.get("amount_cents") is None:
            return jsonify({"error": "type and amount_cents required"}), 400

        tx = customer_service.add_credit_transaction(
            customer_id,
            data["type"],
            data["amount_cents"],
            reference=data.get("reference"),
            actor_id=g.actor_id,
        )
        return jsonify({"transaction": tx.to_dict()}), 201
    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to record credit transaction")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.get("/<int:customer_id>/credit")
def list_credit_transactions_route(customer_id: int):
    try:
        page, per_page = pagination_args(default_per_page=50)
        result = customer_service.list_credit_transactions(customer_id, page=page, per_page=per_page)
        return jsonify(result), 200
    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code
