from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from config import FULFILLMENT_MAX_ATTEMPTS, FULFILLMENT_RETRY_DELAY_SECONDS
from errors import FulfillmentError, OrderNotFound
from observability import get_logger, log_event

from .discord_bot import ChatPlatformClient
from .models import OrderStatus
from .repository import StoreRepository

LOGGER = get_logger("storefront.fulfillment")

OUTCOME_SENT = "sent"
OUTCOME_GRANTED = "granted"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"


@dataclass(frozen=True)
class FulfillmentTarget:
    """Snapshot of a completed order, detached from any database session."""

    order_id: str
    user_id: str
    plan_name: str
    tier: str
    destination_id: Optional[str] = None
    display_name: Optional[str] = None
    role_id: Optional[str] = None


def load_fulfillment_target(repo: StoreRepository, order_id: str) -> FulfillmentTarget:
    order = repo.get_order(order_id)
    if order is None:
        raise OrderNotFound(f"order not found: {order_id}")
    if order.status != OrderStatus.COMPLETED:
        raise FulfillmentError(
            f"order {order_id} is not completed",
            detail={"order_id": order_id, "status": OrderStatus(order.status).value},
        )
    link = repo.get_account_link(order.user_id, "discord")
    return FulfillmentTarget(
        order_id=order.id,
        user_id=order.user_id,
        plan_name=order.plan.name,
        tier=order.plan_price_tier.value,
        destination_id=link.provider_account_id if link else None,
        display_name=link.display_name if link else None,
        role_id=order.plan.discord_role_id,
    )


def build_confirmation_message(target: FulfillmentTarget) -> str:
    greeting = f"Hi {target.display_name}!" if target.display_name else "Hi!"
    return (
        f"{greeting} Your payment for the **{target.plan_name}** plan ({target.tier}) was confirmed. "
        f"Order #{target.order_id[:8]} is active. Thank you!"
    )


class FulfillmentDispatcher:
    """
    Post-payment side effects: confirmation DM, then role grant.

    Each action is attempted on its own with bounded retries. Failures are
    logged and reported in the outcome; they never raise and never touch the
    order.
    """

    def __init__(
        self,
        client: ChatPlatformClient,
        *,
        max_attempts: int = FULFILLMENT_MAX_ATTEMPTS,
        retry_delay_seconds: float = FULFILLMENT_RETRY_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay_seconds = max(0.0, float(retry_delay_seconds))
        self._sleep = sleep

    def _attempt(self, action: str, target: FulfillmentTarget, call: Callable[[], bool]) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                ok = bool(call())
            except Exception as exc:  # noqa: BLE001
                ok = False
                log_event(
                    LOGGER,
                    logging.WARNING,
                    "fulfillment.action_error",
                    action=action,
                    order_id=target.order_id,
                    attempt=attempt,
                    error=str(exc),
                )
            if ok:
                log_event(LOGGER, logging.INFO, "fulfillment.action_succeeded", action=action, order_id=target.order_id, attempt=attempt)
                return True
            if attempt < self.max_attempts:
                # Linear backoff between attempts.
                self._sleep(self.retry_delay_seconds * attempt)
        log_event(
            LOGGER,
            logging.ERROR,
            "fulfillment.action_failed",
            action=action,
            order_id=target.order_id,
            attempts=self.max_attempts,
        )
        return False

    def fulfill(self, target: FulfillmentTarget) -> dict[str, str]:
        if not target.destination_id:
            log_event(LOGGER, logging.WARNING, "fulfillment.skipped", order_id=target.order_id, reason="no_linked_account")
            return {"status": OUTCOME_SKIPPED, "reason": "no_linked_account"}

        outcome: dict[str, str] = {"status": "done"}
        message = build_confirmation_message(target)
        sent = self._attempt(
            "direct_message",
            target,
            lambda: self.client.send_direct_message(str(target.destination_id), message),
        )
        outcome["direct_message"] = OUTCOME_SENT if sent else OUTCOME_FAILED

        if target.role_id and self.client.guild_id:
            granted = self._attempt(
                "grant_role",
                target,
                lambda: self.client.grant_role(str(target.destination_id), str(target.role_id)),
            )
            outcome["grant_role"] = OUTCOME_GRANTED if granted else OUTCOME_FAILED
        else:
            outcome["grant_role"] = OUTCOME_SKIPPED

        log_event(LOGGER, logging.INFO, "fulfillment.completed", order_id=target.order_id, **{k: v for k, v in outcome.items() if k != "status"})
        return outcome
