"""Plan catalog reads plus the admin-side plan lifecycle."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional

from errors import PlanNotFound, ValidationError
from observability import get_logger, log_event

from .models import Plan
from .money import to_cents
from .repository import StoreRepository

LOGGER = get_logger("storefront.catalog")

_PRICE_INPUTS = {"price_monthly": "price_monthly_cents", "price_annually": "price_annually_cents"}


def list_purchasable(repo: StoreRepository, *, privileged: bool = False) -> list[Plan]:
    return repo.list_plans(include_inactive=bool(privileged))


def get_plan(repo: StoreRepository, plan_id: str, *, privileged: bool = False) -> Plan:
    plan = repo.get_plan_by_id(plan_id)
    # Inactive plans are indistinguishable from missing ones for regular callers.
    if plan is None or (not plan.active and not privileged):
        raise PlanNotFound(f"plan not found: {plan_id}")
    return plan


def _price_changes(fields: dict[str, Any]) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    for key, value in fields.items():
        column = _PRICE_INPUTS.get(key)
        if column is None:
            changes[key] = value
            continue
        try:
            changes[column] = to_cents(value)
        except ValueError as exc:
            raise ValidationError(f"invalid {key}", detail={"field": key}) from exc
    return changes


def create_plan(
    repo: StoreRepository,
    *,
    name: str,
    price_monthly: Decimal,
    price_annually: Decimal,
    description: Optional[str] = None,
    features: Optional[list[str]] = None,
    active: bool = True,
    discord_role_id: Optional[str] = None,
    price_ref_monthly: Optional[str] = None,
    price_ref_annually: Optional[str] = None,
) -> Plan:
    prices = _price_changes({"price_monthly": price_monthly, "price_annually": price_annually})
    plan = repo.create_plan(
        name=name,
        description=description,
        features=features,
        active=active,
        discord_role_id=discord_role_id,
        price_ref_monthly=price_ref_monthly,
        price_ref_annually=price_ref_annually,
        **prices,
    )
    log_event(LOGGER, logging.INFO, "catalog.plan_created", plan_id=plan.id, plan_name=plan.name)
    return plan


def update_plan(repo: StoreRepository, plan_id: str, fields: dict[str, Any]) -> Plan:
    """
    Partial update. Unset keys are left alone; prices are given as decimal
    amounts and are rejected once any order references the plan.
    """
    if not fields:
        raise ValidationError("no fields to update")
    plan = repo.update_plan(plan_id, **_price_changes(fields))
    log_event(LOGGER, logging.INFO, "catalog.plan_updated", plan_id=plan.id, fields=sorted(fields))
    return plan


def deactivate_plan(repo: StoreRepository, plan_id: str) -> Plan:
    plan = repo.deactivate_plan(plan_id)
    log_event(LOGGER, logging.INFO, "catalog.plan_deactivated", plan_id=plan.id, plan_name=plan.name)
    return plan
