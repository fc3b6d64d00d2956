from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError

from auth import AuthError, AuthIdentity, decode_access_token, extract_bearer_token
from config import (
    API_HOST,
    API_PORT,
    APP_VERSION,
    AUTH_TOKEN_SECRET,
    CORS_ORIGINS,
    MERCADOPAGO_NOTIFY_URL,
    MERCADOPAGO_WEBHOOK_SECRET,
    PLANS,
    ROOT_PATH,
    STARTUP_BOOTSTRAP_ENABLED,
)
from errors import ERROR_CODE_MAP, StoreError, UpstreamGatewayError
from observability import configure_json_logging, get_logger, log_event, set_trace_id
from storefront import catalog
from storefront.db import SessionLocal, check_database, init_store_db, session_scope
from storefront.discord_bot import close_chat_client
from storefront.gateway import get_payment_gateway, verify_mercadopago_signature
from storefront.models import Order, OrderStatus, Plan, PlanPriceTier
from storefront.orders import LineItem, create_orders, create_payment_intent
from storefront.reconciliation import process_gateway_notification
from storefront.repository import StoreRepository
from storefront.seed import seed_plans
from worker import enqueue_fulfillment

APP_LOGGER = get_logger("storefront.api")

# Swapped by tests for an isolated database.
SESSION_FACTORY = SessionLocal


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_json_logging()
    if not AUTH_TOKEN_SECRET:
        raise RuntimeError("AUTH_TOKEN_SECRET is required")
    if STARTUP_BOOTSTRAP_ENABLED:
        init_store_db()
        if PLANS:
            seed_plans(PLANS, session_factory=SESSION_FACTORY)
    yield
    close_chat_client()


app = FastAPI(title="Plan Storefront", version=APP_VERSION, root_path=ROOT_PATH, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Signature", "X-Request-Id"],
    expose_headers=["X-Trace-Id"],
)


PUBLIC_PATHS = {
    "/health",
    "/error-codes",
    "/webhooks/mercadopago",
    "/docs",
    "/redoc",
    "/openapi.json",
}


class PlanResponse(BaseModel):
    plan_id: str
    name: str
    description: Optional[str] = None
    price_monthly: Decimal
    price_annually: Decimal
    features: List[str] = Field(default_factory=list)
    active: bool
    discord_role_id: Optional[str] = None


class PlanCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = Field(default=None, max_length=2000)
    price_monthly: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    price_annually: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    features: List[str] = Field(default_factory=list)
    active: bool = True
    discord_role_id: Optional[str] = Field(default=None, max_length=64)
    price_ref_monthly: Optional[str] = Field(default=None, max_length=128)
    price_ref_annually: Optional[str] = Field(default=None, max_length=128)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> str:
        return str(value or "").strip()


class PlanUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = Field(default=None, max_length=2000)
    price_monthly: Optional[Decimal] = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    price_annually: Optional[Decimal] = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    features: Optional[List[str]] = None
    active: Optional[bool] = None
    discord_role_id: Optional[str] = Field(default=None, max_length=64)
    price_ref_monthly: Optional[str] = Field(default=None, max_length=128)
    price_ref_annually: Optional[str] = Field(default=None, max_length=128)


class OrderItemRequest(BaseModel):
    plan_id: str = Field(..., min_length=1, max_length=64)
    tier: PlanPriceTier = PlanPriceTier.MONTHLY
    unit_price: Optional[Decimal] = Field(default=None, ge=0)
    quantity: int = Field(default=1, ge=1, le=100)

    @field_validator("tier", mode="before")
    @classmethod
    def _normalize_tier(cls, value: Any) -> str:
        return str(value or "").strip().lower()


class CreateOrdersRequest(BaseModel):
    items: List[OrderItemRequest]


class OrderResponse(BaseModel):
    order_id: str
    plan_id: str
    plan_name: Optional[str] = None
    plan_price_tier: str
    quantity: int
    status: str
    total_amount: Decimal
    currency: str
    external_payment_ref: Optional[str] = None
    created_at: datetime
    expires_at: Optional[datetime] = None


class CreateOrdersResponse(BaseModel):
    orders: List[OrderResponse]


class ActivePlanResponse(BaseModel):
    active: bool
    order: Optional[OrderResponse] = None
    plan: Optional[PlanResponse] = None


class PixPaymentRequest(BaseModel):
    order_id: str = Field(..., min_length=1, max_length=64)

    @field_validator("order_id", mode="before")
    @classmethod
    def _strip_order_id(cls, value: Any) -> str:
        return str(value or "").strip()


class PixPaymentResponse(BaseModel):
    order_id: str
    payment_id: str
    qr_code_base64: str
    qr_code: str
    ticket_url: Optional[str] = None


class GatewayNotificationResponse(BaseModel):
    status: str
    reason: Optional[str] = None
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    order_status: Optional[str] = None
    fulfillment: Optional[str] = None


def _normalize_request_path(path: str) -> str:
    normalized = path or "/"
    if ROOT_PATH and normalized.startswith(ROOT_PATH):
        stripped = normalized[len(ROOT_PATH):]
        normalized = stripped if stripped.startswith("/") else f"/{stripped}"
    return normalized or "/"


def _is_public_path(path: str) -> bool:
    normalized = _normalize_request_path(path)
    if normalized in PUBLIC_PATHS:
        return True
    return normalized.startswith("/docs/") or normalized.startswith("/redoc/")


def _is_optional_auth_request(request: Request) -> bool:
    if request.method.upper() not in {"GET", "HEAD"}:
        return False
    normalized = _normalize_request_path(request.url.path)
    return normalized == "/plans" or normalized.startswith("/plans/")


def _request_user_id(request: Request) -> str:
    identity = getattr(request.state, "auth_identity", None)
    if isinstance(identity, AuthIdentity):
        return str(identity.user_id or "anonymous")
    return "anonymous"


def _request_trace_id(request: Request) -> str:
    raw = str(getattr(request.state, "trace_id", "") or "").strip()
    if raw:
        return raw
    return uuid.uuid4().hex


@app.middleware("http")
async def auth_middleware(request: Request, call_next):
    if request.method.upper() == "OPTIONS" or _is_public_path(request.url.path):
        return await call_next(request)
    authorization = request.headers.get("Authorization")
    if not authorization and _is_optional_auth_request(request):
        return await call_next(request)
    try:
        token = extract_bearer_token(authorization)
        identity = decode_access_token(token, AUTH_TOKEN_SECRET)
    except AuthError as exc:
        return JSONResponse(
            status_code=401,
            content={"error_code": "UNAUTHORIZED", "message": str(exc), "trace_id": _request_trace_id(request)},
        )
    request.state.auth_identity = identity
    return await call_next(request)


# Registered last so it wraps auth_middleware and every response carries a trace id.
@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    trace_id = str(request.headers.get("X-Trace-Id") or uuid.uuid4().hex).strip()[:64]
    request.state.trace_id = trace_id
    set_trace_id(trace_id)
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = int((time.perf_counter() - started) * 1000)
    log_event(
        APP_LOGGER,
        logging.INFO,
        "request.completed",
        method=request.method,
        path=_normalize_request_path(request.url.path),
        status_code=response.status_code,
        duration_ms=duration_ms,
        user_id=_request_user_id(request),
    )
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    trace_id = _request_trace_id(request)
    log_event(
        APP_LOGGER,
        logging.WARNING if exc.status_code < 500 else logging.ERROR,
        "request.store_error",
        error_code=exc.code,
        status_code=exc.status_code,
        path=_normalize_request_path(request.url.path),
        error=exc.message,
    )
    payload = exc.to_payload()
    payload["trace_id"] = trace_id
    return JSONResponse(status_code=exc.status_code, content=payload, headers={"X-Trace-Id": trace_id})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    trace_id = _request_trace_id(request)
    log_event(
        APP_LOGGER,
        logging.ERROR,
        "request.unhandled_exception",
        user_id=_request_user_id(request),
        method=request.method,
        path=_normalize_request_path(request.url.path),
        exception_type=type(exc).__name__,
        exception_message=str(exc),
    )
    return JSONResponse(
        status_code=500,
        content={
            "error_code": "INTERNAL_SERVER_ERROR",
            "message": "internal server error",
            "trace_id": trace_id,
        },
        headers={"X-Trace-Id": trace_id},
    )


def get_current_identity(request: Request) -> AuthIdentity:
    identity = getattr(request.state, "auth_identity", None)
    if isinstance(identity, AuthIdentity):
        return identity
    raise HTTPException(status_code=401, detail="unauthorized")


def get_optional_identity(request: Request) -> AuthIdentity | None:
    identity = getattr(request.state, "auth_identity", None)
    return identity if isinstance(identity, AuthIdentity) else None


def require_admin(identity: AuthIdentity = Depends(get_current_identity)) -> AuthIdentity:
    if not identity.is_admin:
        raise HTTPException(status_code=403, detail="admin role required")
    return identity


def _to_plan_response(plan: Plan) -> PlanResponse:
    return PlanResponse(
        plan_id=plan.id,
        name=plan.name,
        description=plan.description,
        price_monthly=plan.price_monthly,
        price_annually=plan.price_annually,
        features=list(plan.features or []),
        active=bool(plan.active),
        discord_role_id=plan.discord_role_id,
    )


def _to_order_response(order: Order) -> OrderResponse:
    plan = order.plan
    return OrderResponse(
        order_id=order.id,
        plan_id=order.plan_id,
        plan_name=plan.name if plan is not None else None,
        plan_price_tier=PlanPriceTier(order.plan_price_tier).value,
        quantity=int(order.quantity),
        status=OrderStatus(order.status).value,
        total_amount=order.total_amount,
        currency=order.currency,
        external_payment_ref=order.external_payment_ref,
        created_at=order.created_at,
        expires_at=order.expires_at,
    )


@app.get("/health")
async def health() -> dict:
    report: Dict[str, Any] = {"status": "ok", "version": APP_VERSION, "db": "ok"}
    db_error = await asyncio.to_thread(check_database, SESSION_FACTORY)
    if db_error:
        report["status"] = "degraded"
        report["db"] = "error"
        log_event(APP_LOGGER, logging.WARNING, "health.db_unavailable", error=db_error)
    return report


@app.get("/error-codes")
async def error_codes() -> dict:
    return {"items": ERROR_CODE_MAP}


@app.get("/plans", response_model=List[PlanResponse])
async def list_plans(identity: AuthIdentity | None = Depends(get_optional_identity)) -> List[PlanResponse]:
    privileged = bool(identity and identity.is_admin)
    with session_scope(SESSION_FACTORY) as session:
        plans = catalog.list_purchasable(StoreRepository(session), privileged=privileged)
        return [_to_plan_response(plan) for plan in plans]


@app.get("/plans/{plan_id}", response_model=PlanResponse)
async def get_plan(plan_id: str, identity: AuthIdentity | None = Depends(get_optional_identity)) -> PlanResponse:
    privileged = bool(identity and identity.is_admin)
    with session_scope(SESSION_FACTORY) as session:
        plan = catalog.get_plan(StoreRepository(session), plan_id, privileged=privileged)
        return _to_plan_response(plan)


@app.post("/admin/plans", response_model=PlanResponse, status_code=201)
async def create_plan(payload: PlanCreateRequest, _: AuthIdentity = Depends(require_admin)) -> PlanResponse:
    with session_scope(SESSION_FACTORY) as session:
        plan = catalog.create_plan(StoreRepository(session), **payload.model_dump())
        return _to_plan_response(plan)


@app.put("/admin/plans/{plan_id}", response_model=PlanResponse)
async def update_plan(
    plan_id: str,
    payload: PlanUpdateRequest,
    _: AuthIdentity = Depends(require_admin),
) -> PlanResponse:
    with session_scope(SESSION_FACTORY) as session:
        plan = catalog.update_plan(StoreRepository(session), plan_id, payload.model_dump(exclude_unset=True))
        return _to_plan_response(plan)


@app.delete("/admin/plans/{plan_id}", response_model=PlanResponse)
async def deactivate_plan(plan_id: str, _: AuthIdentity = Depends(require_admin)) -> PlanResponse:
    with session_scope(SESSION_FACTORY) as session:
        plan = catalog.deactivate_plan(StoreRepository(session), plan_id)
        return _to_plan_response(plan)


@app.post("/orders", response_model=CreateOrdersResponse, status_code=201)
async def place_orders(
    payload: CreateOrdersRequest,
    identity: AuthIdentity = Depends(get_current_identity),
) -> CreateOrdersResponse:
    items = [
        LineItem(plan_id=item.plan_id, tier=item.tier, unit_price=item.unit_price, quantity=item.quantity)
        for item in payload.items
    ]
    with session_scope(SESSION_FACTORY) as session:
        orders = create_orders(StoreRepository(session), identity.user_id, items)
        return CreateOrdersResponse(orders=[_to_order_response(order) for order in orders])


@app.get("/users/me/orders", response_model=List[OrderResponse])
async def my_orders(identity: AuthIdentity = Depends(get_current_identity)) -> List[OrderResponse]:
    with session_scope(SESSION_FACTORY) as session:
        orders = StoreRepository(session).list_orders_for_user(identity.user_id)
        return [_to_order_response(order) for order in orders]


@app.get("/users/me/active-plan", response_model=ActivePlanResponse)
async def my_active_plan(identity: AuthIdentity = Depends(get_current_identity)) -> ActivePlanResponse:
    with session_scope(SESSION_FACTORY) as session:
        order = StoreRepository(session).get_active_order_for_user(identity.user_id)
        if order is None:
            return ActivePlanResponse(active=False)
        return ActivePlanResponse(active=True, order=_to_order_response(order), plan=_to_plan_response(order.plan))


@app.post("/payments/pix", response_model=PixPaymentResponse)
async def create_pix_payment(
    payload: PixPaymentRequest,
    identity: AuthIdentity = Depends(get_current_identity),
) -> PixPaymentResponse:
    # The gateway call blocks; keep it off the event loop.
    intent = await asyncio.to_thread(
        create_payment_intent,
        payload.order_id,
        user_id=identity.user_id,
        payer_email=identity.email,
        gateway=get_payment_gateway(),
        session_factory=SESSION_FACTORY,
        notify_url=MERCADOPAGO_NOTIFY_URL,
    )
    return PixPaymentResponse(
        order_id=payload.order_id,
        payment_id=intent.gateway_payment_id,
        qr_code_base64=intent.qr_code_base64,
        qr_code=intent.qr_code,
        ticket_url=intent.ticket_url,
    )


def _notification_data_id(request: Request, notification: Dict[str, Any]) -> str:
    data = notification.get("data")
    if isinstance(data, dict) and data.get("id") is not None:
        return str(data.get("id")).strip()
    return str(request.query_params.get("data.id") or "").strip()


@app.post("/webhooks/mercadopago", response_model=GatewayNotificationResponse)
async def mercadopago_webhook(request: Request) -> GatewayNotificationResponse:
    raw = await request.body()
    try:
        notification = json.loads(raw.decode("utf-8")) if raw else {}
    except (UnicodeDecodeError, ValueError) as exc:
        log_event(APP_LOGGER, logging.WARNING, "webhook.invalid_payload", error=str(exc))
        return GatewayNotificationResponse(status="malformed", reason="invalid JSON payload")
    if not isinstance(notification, dict):
        return GatewayNotificationResponse(status="malformed", reason="payload must be a JSON object")

    if MERCADOPAGO_WEBHOOK_SECRET:
        valid = verify_mercadopago_signature(
            secret=MERCADOPAGO_WEBHOOK_SECRET,
            signature_header=request.headers.get("X-Signature"),
            request_id=request.headers.get("X-Request-Id"),
            data_id=_notification_data_id(request, notification),
        )
        if not valid:
            log_event(APP_LOGGER, logging.WARNING, "webhook.invalid_signature")
            raise HTTPException(status_code=403, detail="invalid webhook signature")

    try:
        result = await asyncio.to_thread(
            process_gateway_notification,
            notification,
            gateway=get_payment_gateway(),
            session_factory=SESSION_FACTORY,
            dispatch=enqueue_fulfillment,
        )
    except UpstreamGatewayError as exc:
        # Transient from our side: a non-2xx answer makes the gateway redeliver.
        log_event(APP_LOGGER, logging.WARNING, "webhook.gateway_unavailable", error=exc.message)
        raise HTTPException(status_code=502, detail="payment gateway unavailable") from exc
    except SQLAlchemyError as exc:
        log_event(APP_LOGGER, logging.ERROR, "webhook.db_unavailable", error=str(exc))
        raise HTTPException(status_code=503, detail="database unavailable") from exc
    return GatewayNotificationResponse(**result)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
