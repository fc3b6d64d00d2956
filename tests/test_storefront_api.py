from __future__ import annotations

import hashlib
import hmac

import jwt
from sqlalchemy.exc import OperationalError
from fastapi.testclient import TestClient

import main
from storefront import StoreRepository, build_session_factory, init_store_db, session_scope
from storefront.gateway import MockGateway

SECRET = "test-secret"


def _token(user_id: str, *, role: str = "user", email: str | None = "buyer@example.com") -> str:
    claims = {"sub": user_id, "role": role}
    if email:
        claims["email"] = email
    return jwt.encode(claims, SECRET, algorithm="HS256")


def _auth(user_id: str = "u_1", **kwargs) -> dict[str, str]:
    return {"Authorization": f"Bearer {_token(user_id, **kwargs)}"}


ADMIN = {"role": "admin", "email": "ops@example.com"}


def _setup(monkeypatch):
    engine, session_factory = build_session_factory("sqlite+pysqlite:///:memory:")
    init_store_db(engine)
    gateway = MockGateway()
    dispatched: list[str] = []
    monkeypatch.setattr(main, "SESSION_FACTORY", session_factory)
    monkeypatch.setattr(main, "init_store_db", lambda: None)
    monkeypatch.setattr(main, "PLANS", [])
    monkeypatch.setattr(main, "AUTH_TOKEN_SECRET", SECRET)
    monkeypatch.setattr(main, "MERCADOPAGO_WEBHOOK_SECRET", "")
    monkeypatch.setattr(main, "get_payment_gateway", lambda: gateway)
    monkeypatch.setattr(main, "enqueue_fulfillment", dispatched.append)
    return engine, session_factory, gateway, dispatched


def _create_gold(session_factory) -> str:
    with session_scope(session_factory) as session:
        plan = StoreRepository(session).create_plan(
            name="Gold", price_monthly_cents=1990, price_annually_cents=19900, features=["vip channel"]
        )
        return plan.id


def _notification(payment_id: str) -> dict:
    return {"type": "payment", "action": "payment.updated", "data": {"id": payment_id}}


def test_plan_listing_is_public_and_hides_inactive_plans(monkeypatch) -> None:
    engine, _session_factory, _gateway, _dispatched = _setup(monkeypatch)

    with TestClient(main.app) as client:
        created = client.post(
            "/admin/plans",
            json={"name": "Gold", "price_monthly": "19.90", "price_annually": "199.00", "features": ["vip"]},
            headers=_auth("admin-1", **ADMIN),
        )
        assert created.status_code == 201, created.text
        assert created.json()["price_monthly"] == "19.90"
        legacy = client.post(
            "/admin/plans",
            json={"name": "Legacy", "price_monthly": 5, "price_annually": 50},
            headers=_auth("admin-1", **ADMIN),
        ).json()
        removed = client.delete(f"/admin/plans/{legacy['plan_id']}", headers=_auth("admin-1", **ADMIN))
        assert removed.status_code == 200, removed.text
        assert removed.json()["active"] is False

        public = client.get("/plans")
        assert public.status_code == 200, public.text
        assert [plan["name"] for plan in public.json()] == ["Gold"]

        privileged = client.get("/plans", headers=_auth("admin-1", **ADMIN))
        assert [plan["name"] for plan in privileged.json()] == ["Gold", "Legacy"]

        hidden = client.get(f"/plans/{legacy['plan_id']}")
        assert hidden.status_code == 404
        payload = hidden.json()
        assert payload["error_code"] == "PLAN_NOT_FOUND"
        assert payload["trace_id"] == hidden.headers["X-Trace-Id"]

    engine.dispose()


def test_admin_routes_require_admin_role(monkeypatch) -> None:
    engine, _session_factory, _gateway, _dispatched = _setup(monkeypatch)
    body = {"name": "Gold", "price_monthly": "19.90", "price_annually": "199.00"}

    with TestClient(main.app) as client:
        assert client.post("/admin/plans", json=body, headers=_auth("u_1")).status_code == 403
        anonymous = client.post("/admin/plans", json=body)
        assert anonymous.status_code == 401
        assert anonymous.json()["error_code"] == "UNAUTHORIZED"
        assert client.get("/plans", headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401
        assert client.get("/users/me/orders").status_code == 401

    engine.dispose()


def test_purchase_flow_from_cart_to_active_plan(monkeypatch) -> None:
    engine, session_factory, gateway, dispatched = _setup(monkeypatch)
    plan_id = _create_gold(session_factory)

    with TestClient(main.app) as client:
        placed = client.post(
            "/orders",
            json={"items": [{"plan_id": plan_id, "tier": "MONTHLY", "unit_price": "1.00"}]},
            headers=_auth(),
        )
        assert placed.status_code == 201, placed.text
        order = placed.json()["orders"][0]
        assert order["total_amount"] == "19.90"
        assert order["status"] == "pending"
        assert order["plan_price_tier"] == "monthly"

        pix = client.post("/payments/pix", json={"order_id": order["order_id"]}, headers=_auth())
        assert pix.status_code == 200, pix.text
        payment_id = pix.json()["payment_id"]
        assert pix.json()["qr_code"]

        inactive = client.get("/users/me/active-plan", headers=_auth())
        assert inactive.json() == {"active": False, "order": None, "plan": None}

        gateway.set_status(payment_id, "approved")
        first = client.post("/webhooks/mercadopago", json=_notification(payment_id))
        replay = client.post("/webhooks/mercadopago", json=_notification(payment_id))
        assert first.status_code == 200, first.text
        assert first.json()["status"] == "processed"
        assert first.json()["fulfillment"] == "queued"
        assert replay.json()["status"] == "already_reconciled"
        assert dispatched == [order["order_id"]]

        active = client.get("/users/me/active-plan", headers=_auth())
        assert active.status_code == 200, active.text
        assert active.json()["active"] is True
        assert active.json()["plan"]["name"] == "Gold"
        assert active.json()["order"]["expires_at"]

        history = client.get("/users/me/orders", headers=_auth())
        assert [row["status"] for row in history.json()] == ["completed"]
        assert history.json()[0]["external_payment_ref"] == payment_id

        again = client.post("/payments/pix", json={"order_id": order["order_id"]}, headers=_auth())
        assert again.status_code == 409
        assert again.json()["error_code"] == "ORDER_NOT_PENDING"

        # Another account sees nothing of this order.
        assert client.get("/users/me/orders", headers=_auth("u_2")).json() == []
        stranger = client.post("/payments/pix", json={"order_id": order["order_id"]}, headers=_auth("u_2"))
        assert stranger.status_code == 404

    engine.dispose()


def test_cart_with_only_invalid_items_reports_rejections(monkeypatch) -> None:
    engine, session_factory, _gateway, _dispatched = _setup(monkeypatch)
    _create_gold(session_factory)

    with TestClient(main.app) as client:
        response = client.post(
            "/orders",
            json={"items": [{"plan_id": "missing", "tier": "monthly"}]},
            headers=_auth(),
        )
        assert response.status_code == 400
        payload = response.json()
        assert payload["error_code"] == "NO_VALID_ITEMS"
        assert payload["detail"]["rejected"] == [{"index": 0, "plan_id": "missing", "reason": "plan_not_found"}]

        bad_tier = client.post(
            "/orders",
            json={"items": [{"plan_id": "missing", "tier": "weekly"}]},
            headers=_auth(),
        )
        assert bad_tier.status_code == 422

    engine.dispose()


def test_plan_prices_lock_after_first_order(monkeypatch) -> None:
    engine, session_factory, _gateway, _dispatched = _setup(monkeypatch)
    plan_id = _create_gold(session_factory)

    with TestClient(main.app) as client:
        client.post("/orders", json={"items": [{"plan_id": plan_id}]}, headers=_auth())

        locked = client.put(f"/admin/plans/{plan_id}", json={"price_monthly": "24.90"}, headers=_auth("a", **ADMIN))
        assert locked.status_code == 409
        assert locked.json()["error_code"] == "PLAN_PRICE_LOCKED"

        renamed = client.put(
            f"/admin/plans/{plan_id}", json={"description": "All channels"}, headers=_auth("a", **ADMIN)
        )
        assert renamed.status_code == 200, renamed.text
        assert renamed.json()["description"] == "All channels"
        assert renamed.json()["price_monthly"] == "19.90"

    engine.dispose()


def test_null_active_flag_does_not_deactivate_plan(monkeypatch) -> None:
    engine, session_factory, _gateway, _dispatched = _setup(monkeypatch)
    plan_id = _create_gold(session_factory)

    with TestClient(main.app) as client:
        response = client.put(f"/admin/plans/{plan_id}", json={"active": None}, headers=_auth("a", **ADMIN))
        assert response.status_code == 400, response.text
        assert response.json()["error_code"] == "VALIDATION_ERROR"
        assert response.json()["detail"] == {"field": "active"}
        assert [plan["name"] for plan in client.get("/plans").json()] == ["Gold"]

    engine.dispose()


def test_pix_payment_requires_payer_email(monkeypatch) -> None:
    engine, session_factory, _gateway, _dispatched = _setup(monkeypatch)
    plan_id = _create_gold(session_factory)

    with TestClient(main.app) as client:
        order = client.post("/orders", json={"items": [{"plan_id": plan_id}]}, headers=_auth(email=None))
        order_id = order.json()["orders"][0]["order_id"]
        response = client.post("/payments/pix", json={"order_id": order_id}, headers=_auth(email=None))
        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    engine.dispose()


def test_webhook_acknowledges_unusable_payloads(monkeypatch) -> None:
    engine, _session_factory, _gateway, dispatched = _setup(monkeypatch)

    with TestClient(main.app) as client:
        garbage = client.post(
            "/webhooks/mercadopago", content=b"{not json", headers={"Content-Type": "application/json"}
        )
        assert garbage.status_code == 200
        assert garbage.json()["status"] == "malformed"

        listed = client.post("/webhooks/mercadopago", json=[1, 2])
        assert listed.json()["status"] == "malformed"

        other = client.post("/webhooks/mercadopago", json={"type": "merchant_order", "data": {"id": "1"}})
        assert other.status_code == 200
        assert other.json()["status"] == "ignored"

        # Unknown payment: the gateway lookup fails and the gateway is asked to redeliver.
        unknown = client.post("/webhooks/mercadopago", json=_notification("mock-unknown"))
        assert unknown.status_code == 502

    assert dispatched == []
    engine.dispose()


def test_webhook_asks_for_redelivery_when_database_is_down(monkeypatch) -> None:
    engine, session_factory, gateway, dispatched = _setup(monkeypatch)
    plan_id = _create_gold(session_factory)

    def _unavailable(_self, _order_id):
        raise OperationalError("SELECT orders", {}, Exception("database unavailable"))

    with TestClient(main.app) as client:
        order_id = client.post("/orders", json={"items": [{"plan_id": plan_id}]}, headers=_auth()).json()["orders"][0][
            "order_id"
        ]
        payment_id = client.post("/payments/pix", json={"order_id": order_id}, headers=_auth()).json()["payment_id"]
        gateway.set_status(payment_id, "approved")

        monkeypatch.setattr(StoreRepository, "get_order_for_update", _unavailable)
        response = client.post("/webhooks/mercadopago", json=_notification(payment_id))
        assert response.status_code == 503, response.text
        assert dispatched == []

    engine.dispose()


def test_out_of_range_claimed_price_still_charges_plan_price(monkeypatch) -> None:
    engine, session_factory, _gateway, _dispatched = _setup(monkeypatch)
    plan_id = _create_gold(session_factory)

    with TestClient(main.app) as client:
        placed = client.post(
            "/orders",
            json={"items": [{"plan_id": plan_id, "tier": "monthly", "unit_price": "1e30"}]},
            headers=_auth(),
        )
        assert placed.status_code == 201, placed.text
        assert placed.json()["orders"][0]["total_amount"] == "19.90"

    engine.dispose()


def test_webhook_signature_is_enforced_when_secret_configured(monkeypatch) -> None:
    engine, session_factory, gateway, dispatched = _setup(monkeypatch)
    monkeypatch.setattr(main, "MERCADOPAGO_WEBHOOK_SECRET", "whsec-test")
    plan_id = _create_gold(session_factory)

    with TestClient(main.app) as client:
        order_id = client.post("/orders", json={"items": [{"plan_id": plan_id}]}, headers=_auth()).json()["orders"][0][
            "order_id"
        ]
        payment_id = client.post("/payments/pix", json={"order_id": order_id}, headers=_auth()).json()["payment_id"]
        gateway.set_status(payment_id, "approved")

        unsigned = client.post("/webhooks/mercadopago", json=_notification(payment_id))
        assert unsigned.status_code == 403
        assert dispatched == []

        manifest = f"id:{payment_id.lower()};request-id:req-1;ts:1704908010;"
        digest = hmac.new(b"whsec-test", manifest.encode("utf-8"), hashlib.sha256).hexdigest()
        signed = client.post(
            "/webhooks/mercadopago",
            json=_notification(payment_id),
            headers={"X-Signature": f"ts=1704908010,v1={digest}", "X-Request-Id": "req-1"},
        )
        assert signed.status_code == 200, signed.text
        assert signed.json()["status"] == "processed"
        assert dispatched == [order_id]

    engine.dispose()


def test_error_codes_and_health_are_public(monkeypatch) -> None:
    engine, _session_factory, _gateway, _dispatched = _setup(monkeypatch)

    with TestClient(main.app) as client:
        codes = client.get("/error-codes")
        assert codes.status_code == 200
        assert "ORDER_NOT_PENDING" in codes.json()["items"]

        health = client.get("/health", headers={"X-Trace-Id": "trace-abc"})
        assert health.status_code == 200
        assert health.json()["db"] == "ok"
        assert health.headers["X-Trace-Id"] == "trace-abc"

    engine.dispose()
