from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional

from config import DEFAULT_CURRENCY, MERCADOPAGO_NOTIFY_URL
from errors import NoValidItems, OrderNotFound, OrderNotPending, ValidationError
from observability import get_logger, log_event

from .db import SessionFactory, session_scope
from .gateway import BasePaymentGateway, PixIntent
from .models import Order, OrderStatus, PlanPriceTier
from .money import to_decimal
from .policy import as_utc_aware, compute_expires_at
from .repository import StoreRepository

LOGGER = get_logger("storefront.orders")

REJECT_PLAN_NOT_FOUND = "plan_not_found"
REJECT_PLAN_INACTIVE = "plan_inactive"
REJECT_INVALID_QUANTITY = "invalid_quantity"


@dataclass(frozen=True)
class LineItem:
    """One cart entry as sent by the client. `unit_price` is advisory only."""

    plan_id: str
    tier: PlanPriceTier
    unit_price: Optional[Decimal] = None
    quantity: int = 1


@dataclass(frozen=True)
class ItemRejection:
    index: int
    plan_id: str
    reason: str

    def as_dict(self) -> dict[str, object]:
        return {"index": self.index, "plan_id": self.plan_id, "reason": self.reason}


def _claimed_price(value: object) -> object:
    if value is None:
        return None
    try:
        return to_decimal(value)
    except ValueError:
        # Unusable claims still count as a mismatch and get logged verbatim.
        return str(value)


def create_orders(
    repo: StoreRepository,
    user_id: str,
    items: Iterable[LineItem],
    *,
    currency: Optional[str] = None,
    now: Optional[datetime] = None,
) -> list[Order]:
    """
    Turn a cart into PENDING orders, one per line item.

    Items are resolved independently: a missing or inactive plan skips that
    item only. Prices always come from the plan; a client-claimed unit price
    that disagrees is overridden and logged. Raises `NoValidItems` when nothing
    could be created.
    """
    owner = str(user_id or "").strip()
    if not owner:
        raise ValidationError("user id is required")
    cart = list(items)
    if not cart:
        raise ValidationError("cart is empty", detail={"field": "items"})

    created_at = as_utc_aware(now) if now else datetime.now(timezone.utc)
    order_currency = str(currency or DEFAULT_CURRENCY).strip().upper()
    created: list[Order] = []
    rejected: list[ItemRejection] = []

    for index, item in enumerate(cart):
        quantity = int(item.quantity)
        if quantity < 1:
            rejected.append(ItemRejection(index, item.plan_id, REJECT_INVALID_QUANTITY))
            continue
        plan = repo.get_plan_by_id(item.plan_id)
        if plan is None:
            rejected.append(ItemRejection(index, item.plan_id, REJECT_PLAN_NOT_FOUND))
            continue
        if not plan.active:
            rejected.append(ItemRejection(index, item.plan_id, REJECT_PLAN_INACTIVE))
            continue

        tier = PlanPriceTier(item.tier)
        unit_cents = plan.price_cents_for_tier(tier)
        unit_price = plan.price_for_tier(tier)
        claimed_price = _claimed_price(item.unit_price)
        if claimed_price is not None and claimed_price != unit_price:
            log_event(
                LOGGER,
                logging.WARNING,
                "orders.price_overridden",
                user_id=owner,
                plan_id=plan.id,
                tier=tier.value,
                claimed_price=claimed_price,
                unit_price=unit_price,
            )

        order = repo.create_order(
            user_id=owner,
            plan=plan,
            tier=tier,
            quantity=quantity,
            total_amount_cents=unit_cents * quantity,
            currency=order_currency,
            expires_at=compute_expires_at(tier, created_at),
            now=created_at,
        )
        created.append(order)

    for rejection in rejected:
        log_event(LOGGER, logging.INFO, "orders.item_rejected", user_id=owner, **rejection.as_dict())

    if not created:
        raise NoValidItems(
            "no valid items in cart",
            detail={"rejected": [rejection.as_dict() for rejection in rejected]},
        )

    log_event(
        LOGGER,
        logging.INFO,
        "orders.created",
        user_id=owner,
        order_ids=[order.id for order in created],
        rejected=len(rejected),
    )
    return created


def build_payment_description(plan_name: str, order_id: str) -> str:
    return f"Plan payment: {plan_name} - Order #{str(order_id)[:8]}"


def create_payment_intent(
    order_id: str,
    *,
    user_id: str,
    payer_email: Optional[str],
    gateway: BasePaymentGateway,
    session_factory: Optional[SessionFactory] = None,
    notify_url: Optional[str] = None,
) -> PixIntent:
    """
    Request a PIX charge for one pending order owned by `user_id`.

    No session is held while the gateway call is in flight. The only write is
    `external_payment_ref`, and only after the gateway succeeded.
    """
    email = str(payer_email or "").strip()
    if not email:
        raise ValidationError("payer email is required", detail={"field": "email"})

    with session_scope(session_factory) as session:
        order = StoreRepository(session).get_order(order_id)
        # Orders of other users are reported as missing.
        if order is None or order.user_id != str(user_id):
            raise OrderNotFound(f"order not found: {order_id}")
        if order.status != OrderStatus.PENDING:
            raise OrderNotPending(order.id, OrderStatus(order.status).value)
        snapshot_id = order.id
        amount = order.total_amount
        description = build_payment_description(order.plan.name, order.id)

    intent = gateway.create_pix_intent(
        amount=amount,
        description=description,
        payer_email=email,
        correlation_token=snapshot_id,
        notify_url=notify_url if notify_url is not None else MERCADOPAGO_NOTIFY_URL,
    )

    with session_scope(session_factory) as session:
        repo = StoreRepository(session)
        if not repo.set_external_payment_ref(snapshot_id, intent.gateway_payment_id):
            current = repo.get_order(snapshot_id)
            status = OrderStatus(current.status).value if current else "unknown"
            log_event(
                LOGGER,
                logging.WARNING,
                "payments.intent_orphaned",
                order_id=snapshot_id,
                payment_id=intent.gateway_payment_id,
                status=status,
            )
            raise OrderNotPending(snapshot_id, status)

    log_event(
        LOGGER,
        logging.INFO,
        "payments.intent_created",
        order_id=snapshot_id,
        payment_id=intent.gateway_payment_id,
        gateway=gateway.name,
        amount=amount,
    )
    return intent
