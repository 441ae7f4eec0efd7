import asyncio
import uuid
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.api.v1 import payments as payments_api
from app.core import metrics
from app.core.config import settings
from app.core.errors import ConflictError
from app.db.base import Base
from app.db.session import get_session
from app.main import app
from app.models.cart import Cart, CartItem, FulfillmentType
from app.models.member import Member
from app.models.payment import PaymentWebhookEvent

TOKEN = "cb-test-token"


@pytest.fixture
def test_app(monkeypatch: pytest.MonkeyPatch) -> Dict[str, object]:
    monkeypatch.setattr(settings, "payments_provider", "mock")
    monkeypatch.setattr(settings, "environment", "local")
    monkeypatch.setattr(settings, "payment_callback_token", TOKEN)
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())

    async def override_get_session():
        async with SessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    client = TestClient(app)
    yield {"client": client, "session_factory": SessionLocal}
    client.close()
    app.dependency_overrides.clear()


def seed_cart(session_factory) -> str:
    async def seed():
        async with session_factory() as session:
            member = Member(name="Putri", phone=f"08{uuid.uuid4().int % 10**9}", points=0, total_spend=0)
            session.add(member)
            await session.flush()
            cart = Cart(member_id=member.id, fulfillment_type=FulfillmentType.dine_in, table_number="2")
            cart.items = [
                CartItem(position=0, menu_id="soto", name="Soto Ayam", category="food", quantity=2, unit_price=25_000),
            ]
            session.add(cart)
            await session.commit()
            return str(cart.id)

    return asyncio.run(seed())


def webhook_events(session_factory) -> list[PaymentWebhookEvent]:
    async def load():
        async with session_factory() as session:
            return (await session.execute(select(PaymentWebhookEvent))).scalars().all()

    return asyncio.run(load())


def _callback(external_id: str, amount: int, *, status: str = "COMPLETED") -> dict:
    return {
        "event": "qr.payment",
        "data": {
            "id": "qrpy_0001",
            "reference_id": external_id,
            "payment_id": "pay_0001",
            "status": status,
            "amount": amount,
            "created": "2026-03-10T12:05:00Z",
        },
    }


def test_session_then_callback_creates_paid_order(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    session_factory = test_app["session_factory"]
    cart_id = seed_cart(session_factory)

    created = client.post("/api/v1/payments/sessions", json={"cart_id": cart_id})
    assert created.status_code == 201, created.text
    ps = created.json()
    assert ps["status"] == "pending"
    assert ps["qr_string"].startswith("MOCKQR|")
    assert ps["order_id"] is None

    body = _callback(ps["external_id"], ps["requested_amount"])
    first = client.post("/api/v1/payments/webhook", json=body, headers={"x-callback-token": TOKEN})
    assert first.status_code == 200, first.text
    order_id = first.json()["order_id"]
    assert order_id

    again = client.post("/api/v1/payments/webhook", json=body, headers={"x-callback-token": TOKEN})
    assert again.status_code == 200
    assert again.json()["order_id"] == order_id

    order = client.get(f"/api/v1/orders/{order_id}").json()
    assert order["status"] == "accepted"
    assert order["payment_status"] == "paid"
    assert order["table_number"] == "2"

    events = webhook_events(session_factory)
    assert len(events) == 1
    assert events[0].provider_event_id == "pay_0001"
    assert events[0].attempts == 2
    assert events[0].processed_at is not None
    assert metrics.snapshot()["payments_reconciled"] == 1


def test_callback_with_wrong_token_is_rejected(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    res = client.post(
        "/api/v1/payments/webhook",
        json=_callback("ARCH-QR-UNKNOWN", 1000),
        headers={"x-callback-token": "nope"},
    )
    assert res.status_code == 401
    assert res.json()["code"] == "invalid_callback_token"
    assert metrics.snapshot()["payment_failures"] == 1

    missing = client.post("/api/v1/payments/webhook", json=_callback("ARCH-QR-UNKNOWN", 1000))
    assert missing.status_code == 401


def test_callback_for_unknown_reference_is_acknowledged(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    res = client.post(
        "/api/v1/payments/webhook",
        json=_callback("ARCH-QR-UNKNOWN", 1000),
        headers={"x-callback-token": TOKEN},
    )
    assert res.status_code == 200
    assert res.json() == {"received": True, "order_id": None}


def test_malformed_callback_is_400(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    res = client.post("/api/v1/payments/webhook", json={"data": {}}, headers={"x-callback-token": TOKEN})
    assert res.status_code == 400
    assert res.json()["code"] == "invalid_payload"


def test_unconfigured_callback_token_is_server_error(test_app: Dict[str, object], monkeypatch: pytest.MonkeyPatch) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    monkeypatch.setattr(settings, "payment_callback_token", None)
    res = client.post("/api/v1/payments/webhook", json=_callback("x", 1), headers={"x-callback-token": TOKEN})
    assert res.status_code == 500
    assert res.json()["code"] == "configuration_error"


def test_callback_that_fails_to_reconcile_is_still_acknowledged(
    test_app: Dict[str, object], monkeypatch: pytest.MonkeyPatch
) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    session_factory = test_app["session_factory"]
    cart_id = seed_cart(session_factory)
    ps = client.post("/api/v1/payments/sessions", json={"cart_id": cart_id}).json()

    async def no_free_code(session, notification):
        raise ConflictError("Could not allocate a unique transaction code", code="transaction_code_conflict")

    monkeypatch.setattr(payments_api, "reconcile_payment", no_free_code)
    res = client.post(
        "/api/v1/payments/webhook",
        json=_callback(ps["external_id"], ps["requested_amount"]),
        headers={"x-callback-token": TOKEN},
    )

    assert res.status_code == 200
    assert res.json() == {"received": True, "order_id": None}
    events = webhook_events(session_factory)
    assert len(events) == 1
    assert events[0].processed_at is None
    assert events[0].last_error.startswith("transaction_code_conflict")
    assert metrics.snapshot()["payment_failures"] == 1
    assert metrics.snapshot().get("payments_reconciled", 0) == 0
