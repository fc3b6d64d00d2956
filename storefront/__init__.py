from .db import ENGINE, SessionLocal, build_session_factory, init_store_db, session_scope
from .models import ExternalAccountLink, Order, OrderStatus, Plan, PlanPriceTier
from .repository import StoreRepository

__all__ = [
    "ENGINE",
    "SessionLocal",
    "build_session_factory",
    "init_store_db",
    "session_scope",
    "ExternalAccountLink",
    "Order",
    "OrderStatus",
    "Plan",
    "PlanPriceTier",
    "StoreRepository",
]
