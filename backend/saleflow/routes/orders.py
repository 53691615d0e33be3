# Overview: Flask API routes for customer orders; status transitions, delivery and payments.

# backend/saleflow/routes/orders.py
"""Order API routes"""

from datetime import date

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import SaleFlowError, ValidationError
from ..services import order_service
from ..decorators import with_actor, rate_limited
from . import pagination_args


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("/")
@with_actor
@rate_limited("order")
def create_order_route():
    """
    Create an order. No stock moves until the order is delivered.

    Body: {customer_id?, customer_info, items, delivery?, priority?, source?,
           payment_method?, customer_notes?, internal_notes?}
    """
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.create_order(data, actor_id=g.actor_id)
        return jsonify({"order": order.to_dict()}), 201

    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/")
def list_orders_route():
    try:
        page, per_page = pagination_args()
        result = order_service.list_orders(
            status=request.args.get("status"),
            customer_id=request.args.get("customer_id", type=int),
            page=page,
            per_page=per_page,
        )
        return jsonify(result), 200
    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code


@orders_bp.get("/pending")
def pending_orders_route():
    orders = order_service.pending_orders()
    return jsonify({"items": [o.to_dict(include_items=False) for o in orders], "count": len(orders)}), 200


@orders_bp.get("/delivery-queue")
def delivery_queue_route():
    """Delivery orders for one business day; ?date=YYYY-MM-DD (defaults to today)."""
    try:
        raw = request.args.get("date")
        try:
            day = date.fromisoformat(raw) if raw else None
        except ValueError:
            raise ValidationError("date must be YYYY-MM-DD")
        orders = order_service.delivery_queue(day)
        return jsonify({"items": [o.to_dict() for o in orders], "count": len(orders)}), 200
    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id)
        return jsonify({"order": order.to_dict()}), 200
    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code


@orders_bp.post("/<int:order_id>/status")
@with_actor
def update_status_route(order_id: int):
    """
    Move the order along the status graph.

    Body: {status, notes?, location?: {latitude, longitude}, reason?}
    """
    try:
        data = request.get_json(silent=True) or {}
        if not data.get("status"):
            return jsonify({"error": "status required"}), 400

        order = order_service.update_status(
            order_id,
            data["status"],
            actor_id=g.actor_id,
            notes=data.get("notes"),
            location=data.get("location"),
            reason=data.get("reason"),
        )
        return jsonify({"order": order.to_dict()}), 200

    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
@with_actor
def cancel_order_route(order_id: int):
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.cancel_order(order_id, actor_id=g.actor_id, reason=data.get("reason"))
        return jsonify({"order": order.to_dict()}), 200

    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/assign")
@with_actor
def assign_delivery_route(order_id: int):
    """Body: {delivery_person_id, notes?}"""
    try:
        data = request.get_json(silent=True) or {}
        if data.get("delivery_person_id") is None:
            return jsonify({"error": "delivery_person_id required"}), 400

        order = order_service.assign_delivery_person(
            order_id, data["delivery_person_id"], actor_id=g.actor_id, notes=data.get("notes")
        )
        return jsonify({"order": order.to_dict()}), 200

    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to assign delivery person")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/payments")
@with_actor
def record_payment_route(order_id: int):
    """Body: {amount_cents, method, reference?}"""
    try:
        data = request.get_json(silent=True) or {}
        if data.get("amount_cents") is None or not data.get("method"):
            return jsonify({"error": "amount_cents and method required"}), 400

        order = order_service.record_order_payment(
            order_id,
            data["amount_cents"],
            data["method"],
            reference=data.get("reference"),
            actor_id=g.actor_id,
        )
        return jsonify({"order": order.to_dict()}), 200

    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to record order payment")
        return jsonify({"error": "Internal server error"}), 500
