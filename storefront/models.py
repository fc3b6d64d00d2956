from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .money import from_cents


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


class PlanPriceTier(str, enum.Enum):
    MONTHLY = "monthly"
    ANNUALLY = "annually"


class Plan(Base):
    __tablename__ = "store_plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(120), unique=True, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price_monthly_cents: Mapped[int] = mapped_column(Integer, default=0)
    price_annually_cents: Mapped[int] = mapped_column(Integer, default=0)
    features: Mapped[list[str]] = mapped_column(JSON, default=list)
    active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    discord_role_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    price_ref_monthly: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    price_ref_annually: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    orders: Mapped[list["Order"]] = relationship(back_populates="plan")

    @property
    def price_monthly(self) -> Decimal:
        return from_cents(self.price_monthly_cents)

    @property
    def price_annually(self) -> Decimal:
        return from_cents(self.price_annually_cents)

    def price_cents_for_tier(self, tier: PlanPriceTier) -> int:
        if PlanPriceTier(tier) is PlanPriceTier.ANNUALLY:
            return int(self.price_annually_cents or 0)
        return int(self.price_monthly_cents or 0)

    def price_for_tier(self, tier: PlanPriceTier) -> Decimal:
        return from_cents(self.price_cents_for_tier(tier))


class Order(Base):
    __tablename__ = "store_orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    plan_id: Mapped[str] = mapped_column(ForeignKey("store_plans.id"), index=True)
    plan_price_tier: Mapped[PlanPriceTier] = mapped_column(Enum(PlanPriceTier, native_enum=False))
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[OrderStatus] = mapped_column(Enum(OrderStatus, native_enum=False), default=OrderStatus.PENDING)
    total_amount_cents: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(8), default="BRL")
    external_payment_ref: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    plan: Mapped[Plan] = relationship(back_populates="orders")

    @property
    def total_amount(self) -> Decimal:
        return from_cents(self.total_amount_cents)


class ExternalAccountLink(Base):
    """
    User → chat-platform account association.

    Written by the identity subsystem when a user signs in with a provider; the
    storefront only reads it to resolve fulfillment destinations.
    """

    __tablename__ = "identity_account_links"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_identity_account_links_user_provider"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    provider: Mapped[str] = mapped_column(String(32), index=True)
    provider_account_id: Mapped[str] = mapped_column(String(128))
    display_name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


Index("ix_store_orders_user_status", Order.user_id, Order.status)
