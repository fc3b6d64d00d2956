from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from errors import ValidationError
from observability import get_logger, log_event

from .db import SessionFactory, session_scope
from .money import to_cents
from .repository import StoreRepository

LOGGER = get_logger("storefront.seed")


@dataclass(frozen=True)
class SeedPlan:
    name: str
    price_monthly_cents: int
    price_annually_cents: int
    description: Optional[str] = None
    features: tuple[str, ...] = field(default_factory=tuple)
    active: bool = True
    discord_role_id: Optional[str] = None

    @classmethod
    def from_config(cls, raw: dict[str, Any]) -> "SeedPlan":
        name = str(raw.get("name") or "").strip()
        if not name:
            raise ValidationError("seed plan name is required")
        try:
            monthly = to_cents(raw.get("price_monthly", 0))
            annually = to_cents(raw.get("price_annually", 0))
        except ValueError as exc:
            raise ValidationError(f"invalid seed plan price: {name}") from exc
        features = raw.get("features") or ()
        return cls(
            name=name,
            price_monthly_cents=monthly,
            price_annually_cents=annually,
            description=str(raw.get("description") or "").strip() or None,
            features=tuple(str(item) for item in features),
            active=bool(raw.get("active", True)),
            discord_role_id=str(raw.get("discord_role_id") or "").strip() or None,
        )


def seed_plans(
    plans: Iterable[dict[str, Any]],
    *,
    session_factory: SessionFactory | None = None,
) -> dict[str, int]:
    """
    Create configured plans that do not exist yet, matched by name.

    Existing plans are left untouched: their prices may already be locked by
    orders, and admins may have edited them since.
    """
    seeds = [SeedPlan.from_config(item) for item in plans]
    created = 0
    skipped = 0
    with session_scope(session_factory) as session:
        repo = StoreRepository(session)
        for seed in seeds:
            if repo.get_plan_by_name(seed.name):
                skipped += 1
                continue
            repo.create_plan(
                name=seed.name,
                price_monthly_cents=seed.price_monthly_cents,
                price_annually_cents=seed.price_annually_cents,
                description=seed.description,
                features=list(seed.features),
                active=seed.active,
                discord_role_id=seed.discord_role_id,
            )
            created += 1
    log_event(LOGGER, logging.INFO, "seed.plans", created=created, skipped=skipped)
    return {"created": created, "skipped": skipped}
