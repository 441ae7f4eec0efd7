import asyncio
import uuid
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.db.base import Base
from app.db.session import get_session
from app.main import app
from app.models.cart import Cart, CartItem, FulfillmentType
from app.models.member import Member


@pytest.fixture
def test_app() -> Dict[str, object]:
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


def seed_cart(session_factory, *, fulfillment: FulfillmentType = FulfillmentType.dine_in) -> str:
    async def seed():
        async with session_factory() as session:
            member = Member(name="Agus", phone=f"08{uuid.uuid4().int % 10**9}", points=0, total_spend=0)
            session.add(member)
            await session.flush()
            cart = Cart(
                member_id=member.id,
                fulfillment_type=fulfillment,
                table_number="9" if fulfillment == FulfillmentType.dine_in else None,
            )
            cart.items = [
                CartItem(position=0, menu_id="mie-ayam", name="Mie Ayam", category="food", quantity=2, unit_price=20_000),
                CartItem(position=1, menu_id="jus-jeruk", name="Jus Jeruk", category="drink", quantity=1, unit_price=15_000),
            ]
            session.add(cart)
            await session.commit()
            return str(cart.id)

    return asyncio.run(seed())


def test_price_endpoint_returns_totals_and_lines(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    cart_id = seed_cart(test_app["session_factory"])

    res = client.post(f"/api/v1/carts/{cart_id}/price", json={})
    assert res.status_code == 200, res.text
    body = res.json()
    assert [line["menu_id"] for line in body["lines"]] == ["mie-ayam", "jus-jeruk"]
    totals = body["totals"]
    assert totals["items_subtotal"] == 55_000
    assert totals["service_fee"] == 1_100
    assert totals["tax"] == 6_050
    assert totals["total_before_rounding"] == 62_150
    assert totals["grand_total"] == 62_000
    assert totals["rounding_delta"] == -150
    assert body["ledger"] == []


def test_checkout_and_order_transitions(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    cart_id = seed_cart(test_app["session_factory"])

    res = client.post(f"/api/v1/carts/{cart_id}/checkout", json={}, headers={"Idempotency-Key": "pos-1"})
    assert res.status_code == 201, res.text
    order = res.json()
    assert order["status"] == "created"
    assert order["payment_status"] == "unpaid"
    assert order["transaction_code"].startswith("ARCH-")
    assert order["grand_total"] == 62_000

    replay = client.post(f"/api/v1/carts/{cart_id}/checkout", json={}, headers={"Idempotency-Key": "pos-1"})
    assert replay.status_code == 201
    assert replay.json()["id"] == order["id"]

    fetched = client.get(f"/api/v1/orders/{order['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["transaction_code"] == order["transaction_code"]

    jump = client.post(f"/api/v1/orders/{order['id']}/status", json={"status": "served"})
    assert jump.status_code == 409
    assert jump.json()["code"] == "invalid_transition"

    accepted = client.post(f"/api/v1/orders/{order['id']}/status", json={"status": "accepted"})
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "accepted"

    courier = client.post(f"/api/v1/orders/{order['id']}/courier", json={"courier_id": "c-1"})
    assert courier.status_code == 409
    assert courier.json()["code"] == "not_delivery_order"

    paid = client.post(f"/api/v1/orders/{order['id']}/payment-status", json={"payment_status": "paid"})
    assert paid.status_code == 200
    assert paid.json()["paid_at"] is not None


def test_delivery_order_courier_flow(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    cart_id = seed_cart(test_app["session_factory"], fulfillment=FulfillmentType.delivery)

    order = client.post(f"/api/v1/carts/{cart_id}/checkout", json={"idempotency_key": "app-1"}).json()
    assert order["delivery_status"] == "pending"

    unpaid = client.post(f"/api/v1/orders/{order['id']}/courier", json={"courier_id": "c-9", "courier_name": "Joko"})
    assert unpaid.status_code == 409
    assert unpaid.json()["code"] == "payment_required"

    client.post(f"/api/v1/orders/{order['id']}/payment-status", json={"payment_status": "paid"})
    assigned = client.post(f"/api/v1/orders/{order['id']}/courier", json={"courier_id": "c-9", "courier_name": "Joko"})
    assert assigned.status_code == 200
    assert assigned.json()["delivery_status"] == "assigned"
    assert assigned.json()["courier_name"] == "Joko"

    picked = client.post(f"/api/v1/orders/{order['id']}/delivery-status", json={"delivery_status": "picked_up"})
    assert picked.status_code == 200
    assert picked.json()["delivery_status"] == "picked_up"


def test_unknown_order_is_404(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    res = client.get(f"/api/v1/orders/{uuid.uuid4()}")
    assert res.status_code == 404
    assert res.json()["code"] == "not_found"
