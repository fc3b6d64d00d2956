from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from errors import ConflictError, PlanNotFound, ValidationError

from .models import ExternalAccountLink, Order, OrderStatus, Plan, PlanPriceTier
from .policy import as_utc_aware

_UNSET = object()

PRICE_FIELDS = ("price_monthly_cents", "price_annually_cents")
PLAN_MUTABLE_FIELDS = (
    "name",
    "description",
    "price_monthly_cents",
    "price_annually_cents",
    "features",
    "active",
    "discord_role_id",
    "price_ref_monthly",
    "price_ref_annually",
)


def _clean_features(features: Any) -> list[str]:
    if features is None:
        return []
    if not isinstance(features, (list, tuple)):
        raise ValidationError("features must be a list of strings")
    return [str(item).strip() for item in features if str(item).strip()]


def _clean_price_cents(value: Any, field: str) -> int:
    cents = int(value)
    if cents < 0:
        raise ValidationError(f"{field} must not be negative", detail={"field": field})
    return cents


class StoreRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    # Plans

    def list_plans(self, include_inactive: bool = True) -> list[Plan]:
        query = select(Plan).order_by(Plan.name.asc())
        if not include_inactive:
            query = query.where(Plan.active.is_(True))
        return list(self.session.scalars(query).all())

    def get_plan_by_id(self, plan_id: str) -> Optional[Plan]:
        key = str(plan_id or "").strip()
        if not key:
            return None
        return self.session.get(Plan, key)

    def get_plan_by_name(self, name: str) -> Optional[Plan]:
        normalized = str(name or "").strip()
        if not normalized:
            return None
        return self.session.scalar(select(Plan).where(Plan.name == normalized))

    def count_orders_for_plan(self, plan_id: str) -> int:
        count = self.session.scalar(select(func.count()).select_from(Order).where(Order.plan_id == plan_id))
        return int(count or 0)

    def create_plan(
        self,
        *,
        name: str,
        price_monthly_cents: int,
        price_annually_cents: int,
        description: Optional[str] = None,
        features: Optional[list[str]] = None,
        active: bool = True,
        discord_role_id: Optional[str] = None,
        price_ref_monthly: Optional[str] = None,
        price_ref_annually: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Plan:
        normalized_name = str(name or "").strip()
        if not normalized_name:
            raise ValidationError("plan name is required", detail={"field": "name"})
        if self.get_plan_by_name(normalized_name):
            raise ConflictError(f"plan already exists: {normalized_name}")
        current = as_utc_aware(now) if now else datetime.now(timezone.utc)
        plan = Plan(
            name=normalized_name,
            description=str(description or "").strip() or None,
            price_monthly_cents=_clean_price_cents(price_monthly_cents, "price_monthly"),
            price_annually_cents=_clean_price_cents(price_annually_cents, "price_annually"),
            features=_clean_features(features),
            active=bool(active),
            discord_role_id=str(discord_role_id or "").strip() or None,
            price_ref_monthly=price_ref_monthly or None,
            price_ref_annually=price_ref_annually or None,
            created_at=current,
            updated_at=current,
        )
        self.session.add(plan)
        try:
            self.session.flush()
        except IntegrityError as exc:
            # Concurrent insert of the same name; the session must be rolled back by the caller.
            raise ConflictError(f"plan already exists: {normalized_name}") from exc
        return plan

    def update_plan(self, plan_id: str, *, now: Optional[datetime] = None, **changes: Any) -> Plan:
        unknown = sorted(set(changes) - set(PLAN_MUTABLE_FIELDS))
        if unknown:
            raise ValidationError(f"unknown plan fields: {', '.join(unknown)}", detail={"fields": unknown})
        if not changes:
            raise ValidationError("no fields to update")
        if "active" in changes and not isinstance(changes["active"], bool):
            raise ValidationError("active must be true or false", detail={"field": "active"})

        plan = self.get_plan_by_id(plan_id)
        if not plan:
            raise PlanNotFound(f"plan not found: {plan_id}")

        price_changes = {
            field: _clean_price_cents(changes[field], field.removesuffix("_cents"))
            for field in PRICE_FIELDS
            if field in changes
        }
        changed_prices = [field for field, cents in price_changes.items() if cents != getattr(plan, field)]
        if changed_prices and self.count_orders_for_plan(plan.id) > 0:
            raise ConflictError(
                "plan prices cannot change once orders reference the plan",
                code="PLAN_PRICE_LOCKED",
                detail={"plan_id": plan.id, "fields": [field.removesuffix("_cents") for field in changed_prices]},
            )

        if "name" in changes:
            normalized_name = str(changes["name"] or "").strip()
            if not normalized_name:
                raise ValidationError("plan name is required", detail={"field": "name"})
            existing = self.get_plan_by_name(normalized_name)
            if existing and existing.id != plan.id:
                raise ConflictError(f"plan already exists: {normalized_name}")
            plan.name = normalized_name
        if "description" in changes:
            plan.description = str(changes["description"] or "").strip() or None
        for field, cents in price_changes.items():
            setattr(plan, field, cents)
        if "features" in changes:
            plan.features = _clean_features(changes["features"])
        if "active" in changes:
            plan.active = changes["active"]
        for field in ("discord_role_id", "price_ref_monthly", "price_ref_annually"):
            if field in changes:
                setattr(plan, field, str(changes[field] or "").strip() or None)

        plan.updated_at = as_utc_aware(now) if now else datetime.now(timezone.utc)
        self.session.flush()
        return plan

    def deactivate_plan(self, plan_id: str, *, now: Optional[datetime] = None) -> Plan:
        plan = self.get_plan_by_id(plan_id)
        if not plan:
            raise PlanNotFound(f"plan not found: {plan_id}")
        plan.active = False
        plan.updated_at = as_utc_aware(now) if now else datetime.now(timezone.utc)
        self.session.flush()
        return plan

    # Orders

    def create_order(
        self,
        *,
        user_id: str,
        plan: Plan,
        tier: PlanPriceTier,
        quantity: int,
        total_amount_cents: int,
        currency: str,
        expires_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        current = as_utc_aware(now) if now else datetime.now(timezone.utc)
        order = Order(
            user_id=user_id,
            plan_id=plan.id,
            plan_price_tier=tier,
            quantity=int(quantity),
            status=OrderStatus.PENDING,
            total_amount_cents=int(total_amount_cents),
            currency=currency,
            expires_at=expires_at,
            created_at=current,
            updated_at=current,
        )
        order.plan = plan
        self.session.add(order)
        self.session.flush()
        return order

    def get_order(self, order_id: str) -> Optional[Order]:
        key = str(order_id or "").strip()
        if not key:
            return None
        query = select(Order).options(selectinload(Order.plan)).where(Order.id == key)
        return self.session.scalar(query)

    def get_order_for_update(self, order_id: str) -> Optional[Order]:
        key = str(order_id or "").strip()
        if not key:
            return None
        query = select(Order).options(selectinload(Order.plan)).where(Order.id == key)
        if self._supports_select_for_update():
            query = query.with_for_update(of=Order)
        return self.session.scalar(query)

    def set_external_payment_ref(self, order_id: str, payment_ref: str, *, now: Optional[datetime] = None) -> bool:
        """Attach the gateway payment id while the order is still pending."""
        current = as_utc_aware(now) if now else datetime.now(timezone.utc)
        result = self.session.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.PENDING)
            .values(external_payment_ref=str(payment_ref), updated_at=current)
        )
        return int(result.rowcount or 0) == 1

    def transition_order(
        self,
        order_id: str,
        to_status: OrderStatus,
        *,
        expires_at: Any = _UNSET,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Compare-and-set PENDING -> `to_status`.

        Returns False when another writer already moved the order out of
        PENDING; the caller treats that as already reconciled.
        """
        if OrderStatus(to_status) is OrderStatus.PENDING:
            raise ValueError("cannot transition an order back to pending")
        current = as_utc_aware(now) if now else datetime.now(timezone.utc)
        values: dict[str, Any] = {"status": OrderStatus(to_status), "updated_at": current}
        if expires_at is not _UNSET:
            values["expires_at"] = expires_at
        result = self.session.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0) == 1

    def list_orders_for_user(self, user_id: str, *, limit: int = 50, offset: int = 0) -> list[Order]:
        query = (
            select(Order)
            .options(selectinload(Order.plan))
            .where(Order.user_id == user_id)
            .order_by(Order.created_at.desc())
            .limit(max(1, min(int(limit), 200)))
            .offset(max(0, int(offset)))
        )
        return list(self.session.scalars(query).all())

    def get_active_order_for_user(self, user_id: str, *, now: Optional[datetime] = None) -> Optional[Order]:
        current = as_utc_aware(now) if now else datetime.now(timezone.utc)
        query = (
            select(Order)
            .options(selectinload(Order.plan))
            .where(Order.user_id == user_id, Order.status == OrderStatus.COMPLETED)
            .order_by(Order.created_at.desc())
        )
        for order in self.session.scalars(query).all():
            if order.expires_at is None or as_utc_aware(order.expires_at) > current:
                return order
        return None

    # Identity links

    def get_account_link(self, user_id: str, provider: str = "discord") -> Optional[ExternalAccountLink]:
        return self.session.scalar(
            select(ExternalAccountLink).where(
                ExternalAccountLink.user_id == user_id,
                ExternalAccountLink.provider == str(provider or "").strip().lower(),
            )
        )

    def upsert_account_link(
        self,
        *,
        user_id: str,
        provider: str,
        provider_account_id: str,
        display_name: Optional[str] = None,
    ) -> ExternalAccountLink:
        normalized_provider = str(provider or "").strip().lower()
        link = self.get_account_link(user_id, normalized_provider)
        if link is None:
            link = ExternalAccountLink(user_id=user_id, provider=normalized_provider)
            self.session.add(link)
        link.provider_account_id = str(provider_account_id)
        if display_name is not None:
            link.display_name = str(display_name).strip() or None
        self.session.flush()
        return link

    def _supports_select_for_update(self) -> bool:
        bind = self.session.get_bind()
        dialect_name = str(getattr(getattr(bind, "dialect", None), "name", "")).lower()
        return dialect_name not in {"sqlite"}
