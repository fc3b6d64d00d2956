from __future__ import annotations

from typing import Any, Dict, Optional

ERROR_CODE_MAP: Dict[str, Dict[str, str]] = {
    "VALIDATION_ERROR": {
        "message": "Invalid request",
        "hint": "Check the required fields and their formats.",
    },
    "NO_VALID_ITEMS": {
        "message": "No order could be created",
        "hint": "Every cart item referenced a missing or inactive plan; refresh the plan list.",
    },
    "NOT_FOUND": {
        "message": "Resource not found",
        "hint": "Confirm the identifier.",
    },
    "PLAN_NOT_FOUND": {
        "message": "Plan not found",
        "hint": "The plan does not exist or is no longer offered.",
    },
    "ORDER_NOT_FOUND": {
        "message": "Order not found",
        "hint": "The order does not exist or belongs to another account.",
    },
    "CONFLICT": {
        "message": "Request conflicts with the current state",
        "hint": "Reload the resource and retry.",
    },
    "ORDER_NOT_PENDING": {
        "message": "Order is not awaiting payment",
        "hint": "Only pending orders can be paid; place a new order instead.",
    },
    "PLAN_PRICE_LOCKED": {
        "message": "Plan prices are locked",
        "hint": "Orders already reference this plan; create a new plan for new prices.",
    },
    "PAYMENT_GATEWAY_ERROR": {
        "message": "Payment provider error",
        "hint": "The payment provider rejected or failed the request; retry later.",
    },
    "MALFORMED_NOTIFICATION": {
        "message": "Malformed payment notification",
        "hint": "The payment carries no order reference; it cannot be reconciled.",
    },
    "FULFILLMENT_FAILED": {
        "message": "Fulfillment action failed",
        "hint": "Check the Discord bot token, guild id and role permissions.",
    },
    "UNAUTHORIZED": {
        "message": "Authentication required",
        "hint": "Sign in again to refresh the session token.",
    },
    "FORBIDDEN": {
        "message": "Not allowed",
        "hint": "This operation requires the admin role.",
    },
    "INTERNAL_SERVER_ERROR": {
        "message": "Internal server error",
        "hint": "Check the logs with the returned trace id.",
    },
}


def explain_error(code: str | None) -> Dict[str, str] | None:
    if not code:
        return None
    return ERROR_CODE_MAP.get(code)


class StoreError(RuntimeError):
    """Base class for errors that map onto an HTTP response."""

    code = "INTERNAL_SERVER_ERROR"
    status_code = 500

    def __init__(self, message: str, *, detail: Any = None, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = str(message)
        self.detail = detail
        if code:
            self.code = code

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error_code": self.code, "message": self.message}
        if self.detail is not None:
            payload["detail"] = self.detail
        explained = explain_error(self.code)
        if explained:
            payload["hint"] = explained["hint"]
        return payload


class ValidationError(StoreError):
    code = "VALIDATION_ERROR"
    status_code = 400


class NoValidItems(ValidationError):
    code = "NO_VALID_ITEMS"


class NotFoundError(StoreError):
    code = "NOT_FOUND"
    status_code = 404


class PlanNotFound(NotFoundError):
    code = "PLAN_NOT_FOUND"


class OrderNotFound(NotFoundError):
    code = "ORDER_NOT_FOUND"


class ConflictError(StoreError):
    code = "CONFLICT"
    status_code = 409


class OrderNotPending(ConflictError):
    code = "ORDER_NOT_PENDING"

    def __init__(self, order_id: str, status: str) -> None:
        super().__init__(
            f"order {order_id} is not pending payment (status: {status})",
            detail={"order_id": order_id, "status": status},
        )
        self.order_id = order_id
        self.status = status


class UpstreamGatewayError(StoreError):
    code = "PAYMENT_GATEWAY_ERROR"
    status_code = 502

    def __init__(self, message: str, *, upstream_status: Optional[int] = None, detail: Any = None) -> None:
        if upstream_status is not None and (detail is None or isinstance(detail, dict)):
            detail = {**(detail or {}), "upstream_status": int(upstream_status)}
        super().__init__(message, detail=detail)
        self.upstream_status = upstream_status
        # Pass through upstream client errors (4xx); everything else is a bad gateway.
        if upstream_status is not None and 400 <= int(upstream_status) < 500:
            self.status_code = int(upstream_status)


class PaymentGatewayError(UpstreamGatewayError):
    pass


class MalformedNotification(StoreError):
    """Gateway callback without the data needed to reconcile it. Acknowledged, never retried."""

    code = "MALFORMED_NOTIFICATION"
    status_code = 200


class FulfillmentError(StoreError):
    code = "FULFILLMENT_FAILED"
    status_code = 500
