# Overview: Flask API routes for M-Pesa STK push; initiation, status polling and the gateway callback.

# backend/saleflow/routes/mpesa.py
"""
M-Pesa routes.

The callback route is called by the gateway, not by our clients. It always
answers 200 with the acknowledgement body, whatever happened locally.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import SaleFlowError
from ..services import mpesa_service
from ..decorators import with_actor, rate_limited
from . import pagination_args


mpesa_bp = Blueprint("mpesa", __name__, url_prefix="/api/mpesa")

CALLBACK_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


@mpesa_bp.post("/stk-push")
@with_actor
@rate_limited("stk")
def initiate_route():
    """
    Prompt the customer's phone for payment.

    Body: {phone, amount, reference?}
    """
    try:
        data = request.get_json(silent=True) or {}
        result = mpesa_service.initiate_payment(
            data.get("phone"),
            data.get("amount"),
            reference=data.get("reference"),
            actor_id=g.actor_id,
        )
        return jsonify(result), 200

    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to initiate M-Pesa payment")
        return jsonify({"error": "Internal server error"}), 500


@mpesa_bp.get("/status/<checkout_request_id>")
def status_route(checkout_request_id: str):
    try:
        return jsonify(mpesa_service.check_payment_status(checkout_request_id)), 200

    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to check M-Pesa payment status")
        return jsonify({"error": "Internal server error"}), 500


@mpesa_bp.post("/callback")
def callback_route():
    payload = request.get_json(silent=True)
    try:
        result = mpesa_service.process_callback(payload)
        current_app.logger.info("M-Pesa callback acknowledged: %s", result.get("outcome"))
    except Exception:
        current_app.logger.exception("M-Pesa callback handling failed")
    return jsonify(CALLBACK_ACK), 200


@mpesa_bp.get("/transactions")
def list_transactions_route():
    try:
        page, per_page = pagination_args()
        result = mpesa_service.list_transactions(
            status=request.args.get("status"), page=page, per_page=per_page
        )
        return jsonify(result), 200
    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code


@mpesa_bp.get("/transactions/<checkout_request_id>")
def get_transaction_route(checkout_request_id: str):
    try:
        tx = mpesa_service.get_transaction(checkout_request_id)
        return jsonify({"transaction": tx.to_dict()}), 200
    except SaleFlowError as e:
        return jsonify(e.to_dict()), e.status_code
