# Overview: Typed domain errors and their mapping to JSON API responses.

"""
SaleFlow error taxonomy

Services raise these; the HTTP layer maps them to status codes.

- ValidationError: bad input shape or range (user-fixable)
- NotFoundError: missing aggregate
- StateConflictError: illegal transition (double void, over-refund, status jump)
- InsufficientStockError: stock would go negative without backorder
- GatewayError: upstream payment provider failure, never retried automatically
- DuplicateError: unique-constraint violation
"""

from __future__ import annotations

from flask import Flask, jsonify, current_app, has_app_context


class SaleFlowError(Exception):
    """Base class for errors raised by the sale/stock/payment core."""
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "details": self.details}


class ValidationError(SaleFlowError):
    """400-level input problem."""
    status_code = 400


class NotFoundError(SaleFlowError):
    status_code = 404


class StateConflictError(SaleFlowError):
    """409-level business rule conflict."""
    status_code = 409


class InvalidStatusTransition(StateConflictError):
    def __init__(self, current_status: str, requested_status: str):
        super().__init__(
            f"Cannot change status from {current_status} to {requested_status}",
            details={"current_status": current_status, "requested_status": requested_status},
        )
        self.current_status = current_status
        self.requested_status = requested_status


class NotFoundInSale(ValidationError):
    def __init__(self, product_id: int):
        super().__init__(
            f"Product {product_id} not found in sale",
            details={"product_id": product_id},
        )


class ExceedsSoldQuantity(StateConflictError):
    def __init__(self, product_id: int, requested: int, refundable: int):
        super().__init__(
            "Cannot refund more than sold quantity",
            details={
                "product_id": product_id,
                "requested_quantity": requested,
                "refundable_quantity": refundable,
            },
        )


class InsufficientStockError(SaleFlowError):
    status_code = 409

    def __init__(self, product_name: str, available: int, requested: int, product_id: int | None = None):
        super().__init__(
            f"Insufficient stock for {product_name}. Available: {available}",
            details={
                "product_id": product_id,
                "available": available,
                "requested": requested,
            },
        )
        self.available = available
        self.requested = requested


class GatewayError(SaleFlowError):
    """Upstream payment provider failure (non-2xx, timeout, transport error)."""
    status_code = 502

    def __init__(self, message: str, upstream=None, status: int | None = None):
        super().__init__(message, details={"upstream": upstream, "upstream_status": status})
        self.upstream = upstream
        self.upstream_status = status

    def to_dict(self) -> dict:
        # Verbose upstream payloads are for development only
        if has_app_context() and current_app.config.get("APP_ENV") == "production":
            return {"error": "Payment gateway error", "details": {}}
        return super().to_dict()


class DuplicateError(SaleFlowError):
    status_code = 409


def register_error_handlers(app: Flask) -> None:
    """Map typed errors to JSON responses for every blueprint."""

    @app.errorhandler(SaleFlowError)
    def handle_saleflow_error(exc: SaleFlowError):
        if exc.status_code >= 500:
            app.logger.error("%s: %s", type(exc).__name__, exc.message)
        return jsonify(exc.to_dict()), exc.status_code
