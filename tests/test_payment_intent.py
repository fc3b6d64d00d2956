from __future__ import annotations

from decimal import Decimal

import pytest

from errors import OrderNotFound, OrderNotPending, PaymentGatewayError, ValidationError
from storefront import OrderStatus, PlanPriceTier, StoreRepository, build_session_factory, init_store_db, session_scope
from storefront.gateway import BasePaymentGateway, PaymentDetails, PixIntent
from storefront.orders import LineItem, create_orders, create_payment_intent


class RecordingGateway(BasePaymentGateway):
    def __init__(self, *, fail_with: Exception | None = None) -> None:
        self.calls: list[dict] = []
        self.fail_with = fail_with

    @property
    def name(self):
        return "mock"

    def create_pix_intent(self, **kwargs) -> PixIntent:
        self.calls.append(kwargs)
        if self.fail_with is not None:
            raise self.fail_with
        return PixIntent(
            gateway_payment_id="1234567890",
            qr_code_base64="iVBORw0KGgo=",
            qr_code="00020126580014br.gov.bcb.pix",
            ticket_url="https://www.mercadopago.com.br/payments/1234567890/ticket",
        )

    def fetch_payment_details(self, gateway_payment_id: str) -> PaymentDetails:
        raise AssertionError("not used")


def make_db():
    engine, session_factory = build_session_factory("sqlite+pysqlite:///:memory:")
    init_store_db(engine)
    return engine, session_factory


def _pending_order(session_factory, *, user_id: str = "u_1") -> str:
    with session_scope(session_factory) as session:
        repo = StoreRepository(session)
        plan = repo.create_plan(name="Gold", price_monthly_cents=1990, price_annually_cents=19900)
        orders = create_orders(repo, user_id, [LineItem(plan_id=plan.id, tier=PlanPriceTier.MONTHLY)])
        return orders[0].id


def test_payment_intent_uses_stored_total_and_records_payment_ref() -> None:
    engine, session_factory = make_db()
    order_id = _pending_order(session_factory)
    gateway = RecordingGateway()

    intent = create_payment_intent(
        order_id,
        user_id="u_1",
        payer_email="buyer@example.com",
        gateway=gateway,
        session_factory=session_factory,
        notify_url="https://store.example.com/webhooks/mercadopago",
    )

    assert intent.gateway_payment_id == "1234567890"
    assert intent.qr_code.startswith("000201")
    assert gateway.calls == [
        {
            "amount": Decimal("19.90"),
            "description": f"Plan payment: Gold - Order #{order_id[:8]}",
            "payer_email": "buyer@example.com",
            "correlation_token": order_id,
            "notify_url": "https://store.example.com/webhooks/mercadopago",
        }
    ]
    with session_scope(session_factory) as session:
        order = StoreRepository(session).get_order(order_id)
        assert order.external_payment_ref == "1234567890"
        assert order.status == OrderStatus.PENDING

    engine.dispose()


def test_payment_intent_for_another_users_order_is_not_found() -> None:
    engine, session_factory = make_db()
    order_id = _pending_order(session_factory, user_id="owner")
    gateway = RecordingGateway()

    with pytest.raises(OrderNotFound):
        create_payment_intent(
            order_id,
            user_id="intruder",
            payer_email="x@example.com",
            gateway=gateway,
            session_factory=session_factory,
        )
    with pytest.raises(OrderNotFound):
        create_payment_intent(
            "missing-order",
            user_id="owner",
            payer_email="x@example.com",
            gateway=gateway,
            session_factory=session_factory,
        )
    assert gateway.calls == []

    engine.dispose()


def test_payment_intent_requires_pending_order() -> None:
    engine, session_factory = make_db()
    order_id = _pending_order(session_factory)
    with session_scope(session_factory) as session:
        StoreRepository(session).transition_order(order_id, OrderStatus.COMPLETED)
    gateway = RecordingGateway()

    with pytest.raises(OrderNotPending) as excinfo:
        create_payment_intent(
            order_id,
            user_id="u_1",
            payer_email="buyer@example.com",
            gateway=gateway,
            session_factory=session_factory,
        )
    assert excinfo.value.status_code == 409
    assert excinfo.value.detail == {"order_id": order_id, "status": "completed"}
    assert gateway.calls == []

    engine.dispose()


def test_gateway_failure_leaves_order_untouched() -> None:
    engine, session_factory = make_db()
    order_id = _pending_order(session_factory)
    gateway = RecordingGateway(fail_with=PaymentGatewayError("payer email rejected", upstream_status=400))

    with pytest.raises(PaymentGatewayError) as excinfo:
        create_payment_intent(
            order_id,
            user_id="u_1",
            payer_email="buyer@example.com",
            gateway=gateway,
            session_factory=session_factory,
        )
    assert excinfo.value.status_code == 400
    assert excinfo.value.upstream_status == 400

    with session_scope(session_factory) as session:
        order = StoreRepository(session).get_order(order_id)
        assert order.external_payment_ref is None
        assert order.status == OrderStatus.PENDING

    engine.dispose()


def test_payment_intent_requires_payer_email() -> None:
    engine, session_factory = make_db()
    order_id = _pending_order(session_factory)

    with pytest.raises(ValidationError):
        create_payment_intent(
            order_id,
            user_id="u_1",
            payer_email=None,
            gateway=RecordingGateway(),
            session_factory=session_factory,
        )

    engine.dispose()
