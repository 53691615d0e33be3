# Overview: Flask API routes for point-of-sale checkout, voids, refunds and payments.

# backend/saleflow/routes/sales.py
"""Sales API routes"""

from datetime import date

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import SaleFlowError, ValidationError
from ..services import sales_service
from ..decorators import with_actor, rate_limited
from . import pagination_args


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


@sales_bp.post("/")
@with_actor
@rate_limited("sale")
def create_sale_route():
    """
    Check out a cart in one step: receipt number, stock, payment.

    Body: {items, customer_id?, customer_info?, payment?, notes?}
    """
    try:
        data = request.get_json(silent=True) or {}
        sale = sales_service.create_sale(data, actor_id=g.actor_id)
        return jsonify({"sale": sale.to_dict()}), 201

    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/")
def list_sales_route():
    try:
        page, per_page = pagination_args()
        customer_id = request.args.get("customer_id", type=int)
        result = sales_service.list_sales(
            status=request.args.get("status"),
            customer_id=customer_id,
            page=page,
            per_page=per_page,
        )
        return jsonify(result), 200
    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code


@sales_bp.get("/summary")
def daily_summary_route():
    """Business-day totals; ?date=YYYY-MM-DD (defaults to today)."""
    try:
        raw = request.args.get("date")
        try:
            day = date.fromisoformat(raw) if raw else None
        except ValueError:
            raise ValidationError("date must be YYYY-MM-DD")
        return jsonify(sales_service.daily_summary(day)), 200
    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code


@sales_bp.get("/<int:sale_id>")
def get_sale_route(sale_id: int):
    try:
        sale = sales_service.get_sale(sale_id)
        return jsonify({"sale": sale.to_dict()}), 200
    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code


@sales_bp.get("/receipt/<receipt_number>")
def get_sale_by_receipt_route(receipt_number: str):
    try:
        sale = sales_service.get_sale_by_receipt(receipt_number)
        return jsonify({"sale": sale.to_dict()}), 200
    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code


@sales_bp.post("/<int:sale_id>/void")
@with_actor
def void_sale_route(sale_id: int):
    """
    Void a sale and put every unrefunded unit back in stock.

    Body: {reason}
    """
    try:
        data = request.get_json(silent=True) or {}
        reason = data.get("reason")
        if not reason:
            return jsonify({"error": "reason required"}), 400

        sale = sales_service.void_sale(sale_id, actor_id=g.actor_id, reason=reason)
        return jsonify({"sale": sale.to_dict()}), 200

    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to void sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/refund")
@with_actor
def refund_sale_route(sale_id: int):
    """
    Refund some units.

    Body: {items: [{product_id, quantity}], reason?}
    """
    try:
        data = request.get_json(silent=True) or {}
        sale, refund = sales_service.refund_sale(
            sale_id, data.get("items"), actor_id=g.actor_id, reason=data.get("reason")
        )
        return jsonify({"sale": sale.to_dict(), "refund": refund.to_dict()}), 200

    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to refund sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/payments")
@with_actor
def record_payment_route(sale_id: int):
    """
    Add a tender to a pending or partially paid sale.

    Body: {amount_cents, method, reference?, transaction_id?}
    """
    try:
        data = request.get_json(silent=True) or {}
        if data.get("amount_cents") is None or not data.get("method"):
            return jsonify({"error": "amount_cents and method required"}), 400

        sale = sales_service.record_sale_payment(
            sale_id,
            data["amount_cents"],
            data["method"],
            reference=data.get("reference"),
            transaction_id=data.get("transaction_id"),
            actor_id=g.actor_id,
        )
        return jsonify({"sale": sale.to_dict()}), 200

    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to record sale payment")
        return jsonify({"error": "Internal server error"}), 500
