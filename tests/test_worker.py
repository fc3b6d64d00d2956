from __future__ import annotations

import json
from contextlib import contextmanager

import pytest
from sqlalchemy.exc import OperationalError

import worker
from errors import FulfillmentError
from storefront import OrderStatus, PlanPriceTier, StoreRepository, build_session_factory, init_store_db, session_scope
from storefront.discord_bot import ChatPlatformClient


class _Request:
    def __init__(self, retries: int) -> None:
        self.retries = retries


class _Sender:
    def __init__(self, *, name: str, max_retries: int, retries: int) -> None:
        self.name = name
        self.max_retries = max_retries
        self.request = _Request(retries)


class _ListRedis:
    def __init__(self) -> None:
        self.lists: dict[str, list[str]] = {}

    def rpush(self, key: str, value: str) -> int:
        self.lists.setdefault(key, []).append(value)
        return len(self.lists[key])


class _RecordingChat(ChatPlatformClient):
    guild_id = "guild-1"

    def __init__(self) -> None:
        self.messages: list[str] = []
        self.roles: list[tuple[str, str]] = []

    def send_direct_message(self, destination_id: str, text: str) -> bool:
        self.messages.append(destination_id)
        return True

    def grant_role(self, destination_id: str, role_id: str) -> bool:
        self.roles.append((destination_id, role_id))
        return True


def test_task_failure_moves_exhausted_job_to_dead_letter(monkeypatch) -> None:
    fake = _ListRedis()
    monkeypatch.setattr(worker, "redis_client", fake)
    monkeypatch.setattr(worker, "WORKER_DEAD_LETTER_KEY", "test:dead_letters")

    sender = _Sender(name="storefront.fulfill_order", max_retries=2, retries=2)
    worker._handle_task_failure(
        sender=sender,
        task_id="task-1",
        exception=RuntimeError("database unavailable"),
        args=("order-1",),
        kwargs={},
    )

    rows = fake.lists["test:dead_letters"]
    payload = json.loads(rows[-1])
    assert payload["task"] == "storefront.fulfill_order"
    assert payload["task_id"] == "task-1"
    assert payload["args"] == ["order-1"]
    assert payload["retries"] == 2
    assert payload["error_type"] == "RuntimeError"


def test_task_failure_before_max_retry_does_not_dead_letter(monkeypatch) -> None:
    fake = _ListRedis()
    monkeypatch.setattr(worker, "redis_client", fake)
    monkeypatch.setattr(worker, "WORKER_DEAD_LETTER_KEY", "test:dead_letters")

    sender = _Sender(name="storefront.fulfill_order", max_retries=3, retries=1)
    worker._handle_task_failure(
        sender=sender,
        task_id="task-2",
        exception=RuntimeError("temporary"),
        args=("order-2",),
        kwargs={},
    )
    assert fake.lists == {}


def test_database_outage_dead_letters_after_exhausting_retries(monkeypatch) -> None:
    fake = _ListRedis()
    monkeypatch.setattr(worker, "redis_client", fake)
    monkeypatch.setattr(worker, "WORKER_DEAD_LETTER_KEY", "test:dead_letters")
    attempts: list[str] = []

    @contextmanager
    def _scope():
        yield None

    def _unavailable(_repo, order_id):
        attempts.append(order_id)
        raise OperationalError("SELECT 1", {}, Exception("database unavailable"))

    monkeypatch.setattr(worker, "session_scope", _scope)
    monkeypatch.setattr(worker, "load_fulfillment_target", _unavailable)

    result = worker.fulfill_order.apply(args=["order-1"])

    assert result.state == "FAILURE"
    assert worker.fulfill_order.max_retries == worker.WORKER_TASK_MAX_RETRIES
    assert len(attempts) == worker.WORKER_TASK_MAX_RETRIES + 1
    rows = fake.lists["test:dead_letters"]
    assert len(rows) == 1
    payload = json.loads(rows[0])
    assert payload["args"] == ["order-1"]
    assert payload["retries"] == worker.WORKER_TASK_MAX_RETRIES
    assert payload["error_type"] == "OperationalError"


def _completed_order(session_factory, *, linked: bool) -> str:
    with session_scope(session_factory) as session:
        repo = StoreRepository(session)
        plan = repo.create_plan(
            name="Gold", price_monthly_cents=1990, price_annually_cents=19900, discord_role_id="998877"
        )
        order = repo.create_order(
            user_id="u_1",
            plan=plan,
            tier=PlanPriceTier.MONTHLY,
            quantity=1,
            total_amount_cents=1990,
            currency="BRL",
        )
        if linked:
            repo.upsert_account_link(user_id="u_1", provider="discord", provider_account_id="412345678901234567")
        order_id = order.id
    with session_scope(session_factory) as session:
        StoreRepository(session).transition_order(order_id, OrderStatus.COMPLETED)
    return order_id


def _patch_worker(monkeypatch, session_factory, chat: ChatPlatformClient) -> None:
    @contextmanager
    def _scope():
        with session_scope(session_factory) as session:
            yield session

    monkeypatch.setattr(worker, "session_scope", _scope)
    monkeypatch.setattr(worker, "get_chat_client", lambda: chat)


def test_fulfill_order_task_delivers_message_and_role(monkeypatch) -> None:
    engine, session_factory = build_session_factory("sqlite+pysqlite:///:memory:")
    init_store_db(engine)
    order_id = _completed_order(session_factory, linked=True)
    chat = _RecordingChat()
    _patch_worker(monkeypatch, session_factory, chat)

    result = worker.fulfill_order.run(order_id)

    assert result == {"order_id": order_id, "status": "done", "direct_message": "sent", "grant_role": "granted"}
    assert chat.messages == ["412345678901234567"]
    assert chat.roles == [("412345678901234567", "998877")]

    engine.dispose()


def test_fulfill_order_task_skips_unlinked_users(monkeypatch) -> None:
    engine, session_factory = build_session_factory("sqlite+pysqlite:///:memory:")
    init_store_db(engine)
    order_id = _completed_order(session_factory, linked=False)
    chat = _RecordingChat()
    _patch_worker(monkeypatch, session_factory, chat)

    result = worker.fulfill_order.run(order_id)

    assert result["status"] == "skipped"
    assert chat.messages == []

    engine.dispose()


def test_fulfill_order_task_refuses_unpaid_orders(monkeypatch) -> None:
    engine, session_factory = build_session_factory("sqlite+pysqlite:///:memory:")
    init_store_db(engine)
    with session_scope(session_factory) as session:
        repo = StoreRepository(session)
        plan = repo.create_plan(name="Gold", price_monthly_cents=1990, price_annually_cents=19900)
        order_id = repo.create_order(
            user_id="u_1", plan=plan, tier=PlanPriceTier.MONTHLY, quantity=1, total_amount_cents=1990, currency="BRL"
        ).id
    _patch_worker(monkeypatch, session_factory, _RecordingChat())

    with pytest.raises(FulfillmentError):
        worker.fulfill_order.run(order_id)

    engine.dispose()
