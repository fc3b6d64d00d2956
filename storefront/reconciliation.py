from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from errors import MalformedNotification
from observability import get_logger, log_event

from .db import SessionFactory, session_scope
from .gateway import BasePaymentGateway
from .models import OrderStatus
from .policy import as_utc_aware, compute_expires_at
from .repository import StoreRepository

LOGGER = get_logger("storefront.reconciliation")

NOTIFICATION_TYPE_PAYMENT = "payment"
NOTIFICATION_ACTION_UPDATED = "payment.updated"

# Gateway payment status -> terminal order status. Anything else keeps waiting.
STATUS_MAP: dict[str, OrderStatus] = {
    "approved": OrderStatus.COMPLETED,
    "cancelled": OrderStatus.CANCELLED,
    "rejected": OrderStatus.FAILED,
    "refunded": OrderStatus.REFUNDED,
    "charged_back": OrderStatus.REFUNDED,
}

FulfillmentHandoff = Callable[[str], Any]


def _payment_id(notification: dict[str, Any]) -> str:
    data = notification.get("data")
    if not isinstance(data, dict):
        raise MalformedNotification("notification has no data object")
    payment_id = str(data.get("id") or "").strip()
    if not payment_id:
        raise MalformedNotification("notification has no data.id")
    return payment_id


def process_gateway_notification(
    notification: dict[str, Any],
    *,
    gateway: BasePaymentGateway,
    session_factory: Optional[SessionFactory] = None,
    dispatch: Optional[FulfillmentHandoff] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """
    Reconcile one gateway notification against the order it refers to.

    Integrity properties:
    - The notification body is untrusted; status and correlation token are
      re-fetched from the gateway.
    - Only PENDING orders move, through a conditional update, so duplicate or
      concurrent deliveries transition an order at most once.
    - Fulfillment is handed off after commit; a failed handoff is logged and
      never rolls the status back.

    Gateway fetch errors and database errors propagate to the caller, which
    answers with a retryable status.
    """

    notification_type = str(notification.get("type") or "").strip().lower()
    action = str(notification.get("action") or "").strip().lower()
    if notification_type != NOTIFICATION_TYPE_PAYMENT or action != NOTIFICATION_ACTION_UPDATED:
        log_event(LOGGER, logging.INFO, "reconciliation.ignored", type=notification_type or "-", action=action or "-")
        return {"status": "ignored", "reason": f"unsupported notification type={notification_type or '-'} action={action or '-'}"}

    try:
        payment_id = _payment_id(notification)
    except MalformedNotification as exc:
        log_event(LOGGER, logging.WARNING, "reconciliation.malformed", error=str(exc))
        return {"status": "malformed", "reason": str(exc)}

    details = gateway.fetch_payment_details(payment_id)
    order_id = str(details.external_reference or "").strip()
    if not order_id:
        exc = MalformedNotification(f"payment {payment_id} carries no external reference")
        log_event(LOGGER, logging.WARNING, "reconciliation.malformed", payment_id=payment_id, error=str(exc))
        return {"status": "malformed", "payment_id": payment_id, "reason": str(exc)}

    current = as_utc_aware(now) if now else datetime.now(timezone.utc)
    target_status = STATUS_MAP.get(details.status)

    with session_scope(session_factory) as session:
        repo = StoreRepository(session)
        order = repo.get_order_for_update(order_id)
        if order is None:
            log_event(LOGGER, logging.WARNING, "reconciliation.order_not_found", order_id=order_id, payment_id=payment_id)
            return {"status": "order_not_found", "order_id": order_id, "payment_id": payment_id}

        if order.status != OrderStatus.PENDING:
            log_event(
                LOGGER,
                logging.INFO,
                "reconciliation.already_reconciled",
                order_id=order.id,
                order_status=OrderStatus(order.status).value,
                payment_status=details.status,
            )
            return {"status": "already_reconciled", "order_id": order.id, "order_status": OrderStatus(order.status).value}

        if order.external_payment_ref and order.external_payment_ref != payment_id:
            log_event(
                LOGGER,
                logging.WARNING,
                "reconciliation.payment_ref_mismatch",
                order_id=order.id,
                payment_id=payment_id,
                recorded_payment_id=order.external_payment_ref,
            )

        if target_status is None:
            log_event(LOGGER, logging.INFO, "reconciliation.waiting", order_id=order.id, payment_status=details.status)
            return {"status": "waiting", "order_id": order.id, "payment_status": details.status}

        if target_status is OrderStatus.COMPLETED:
            expires_at = order.expires_at or compute_expires_at(order.plan_price_tier, current)
            transitioned = repo.transition_order(order.id, target_status, expires_at=expires_at, now=current)
        else:
            transitioned = repo.transition_order(order.id, target_status, now=current)

        if not transitioned:
            # Lost the race to a concurrent delivery of the same payment.
            log_event(LOGGER, logging.INFO, "reconciliation.already_reconciled", order_id=order.id, raced=True)
            return {"status": "already_reconciled", "order_id": order.id}

    result: dict[str, Any] = {
        "status": "processed",
        "order_id": order_id,
        "payment_id": payment_id,
        "order_status": target_status.value,
    }
    log_event(
        LOGGER,
        logging.INFO,
        "reconciliation.processed",
        order_id=order_id,
        payment_id=payment_id,
        order_status=target_status.value,
    )

    if target_status is OrderStatus.COMPLETED:
        result["fulfillment"] = _hand_off(order_id, dispatch)
    return result


def _hand_off(order_id: str, dispatch: Optional[FulfillmentHandoff]) -> str:
    if dispatch is None:
        log_event(LOGGER, logging.WARNING, "reconciliation.fulfillment_skipped", order_id=order_id, reason="no_dispatcher")
        return "skipped"
    try:
        dispatch(order_id)
    except Exception as exc:  # noqa: BLE001
        # The order is already committed as COMPLETED; fulfillment can be replayed.
        log_event(LOGGER, logging.ERROR, "reconciliation.fulfillment_handoff_failed", order_id=order_id, error=str(exc))
        return "handoff_failed"
    return "queued"
