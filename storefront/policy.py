from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .models import PlanPriceTier


def as_utc_aware(dt: datetime) -> datetime:
    """
    Normalize datetimes to UTC aware.

    SQLite returns offset-naive datetimes even for DateTime(timezone=True)
    columns; naive values are treated as UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _add_days(days: int) -> Callable[[datetime], datetime]:
    def _apply(base: datetime) -> datetime:
        return base + timedelta(days=days)

    return _apply


def add_calendar_years(base: datetime, years: int = 1) -> datetime:
    """Same month and day `years` later; Feb 29 lands on Feb 28 in non-leap years."""
    try:
        return base.replace(year=base.year + years)
    except ValueError:
        return base.replace(year=base.year + years, day=28)


TIER_TERMS: dict[PlanPriceTier, Callable[[datetime], datetime]] = {
    PlanPriceTier.MONTHLY: _add_days(30),
    PlanPriceTier.ANNUALLY: add_calendar_years,
}


def compute_expires_at(tier: PlanPriceTier | str | None, created_at: datetime) -> Optional[datetime]:
    try:
        normalized = PlanPriceTier(tier)
    except ValueError:
        return None
    term = TIER_TERMS.get(normalized)
    if term is None:
        return None
    return term(as_utc_aware(created_at))
