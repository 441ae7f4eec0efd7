import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.core import metrics
from app.core.config import settings
from app.core.errors import ConflictError
from app.db.base import Base
from app.models.cart import Cart, CartItem, CartStatus, FulfillmentType
from app.models.member import Member
from app.models.order import Order, OrderEvent, OrderStatus, PaymentStatus
from app.models.payment import PaymentSession, PaymentSessionStatus
from app.models.promo import Promotion, PromotionType
from app.services import notifications
from app.services import webhook_handlers
from app.services.order_lifecycle import expire_unpaid_order
from app.services.payment_sessions import create_payment_session, expire_stale_sessions
from app.services.order import build_order_from_snapshot
from app.services.payments import PaymentNotification, parse_notification
from app.services.tx_code import business_day, format_transaction_code
from app.services.webhook_handlers import ensure_order_for_session, reconcile_payment

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def session_factory(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(settings, "payments_provider", "mock")
    monkeypatch.setattr(settings, "environment", "local")
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    return SessionLocal


async def _seed(session, *, points_promo: bool = False) -> dict:
    member = Member(name="Dewi", phone=f"08{uuid.uuid4().int % 10**9}", points=0, total_spend=0)
    session.add(member)
    await session.flush()
    cart = Cart(member_id=member.id, fulfillment_type=FulfillmentType.dine_in, table_number="4")
    cart.items = [
        CartItem(position=0, menu_id="nasi-goreng", name="Nasi Goreng", category="food", quantity=2, unit_price=30_000),
        CartItem(position=1, menu_id="es-teh", name="Es Teh", category="drink", quantity=4, unit_price=10_000),
    ]
    session.add(cart)
    await session.flush()
    if points_promo:
        session.add(
            Promotion(
                name="Bonus points",
                type=PromotionType.award_points,
                conditions={},
                rewards=[{"points": 200, "grant_membership": True}],
            )
        )
    await session.commit()
    return {"member_id": member.id, "cart_id": cart.id}


def _paid(payment_session: PaymentSession, *, event_id: str = "evt-1") -> PaymentNotification:
    return PaymentNotification(
        event_id=event_id,
        reference_id=payment_session.external_id,
        status="COMPLETED",
        provider_reference=payment_session.provider_reference,
        amount=payment_session.requested_amount,
    )


def test_payment_session_is_created_without_an_order(session_factory) -> None:
    async def run():
        async with session_factory() as session:
            ids = await _seed(session)
            ps = await create_payment_session(session, ids["cart_id"], now=NOW)
            cart = await session.get(Cart, ids["cart_id"])
            return ps, cart

    ps, cart = asyncio.run(run())
    assert ps.status == PaymentSessionStatus.pending
    assert ps.external_id.startswith("ARCH-QR-")
    assert ps.qr_string.startswith("MOCKQR|")
    assert ps.order_id is None
    assert ps.snapshot["cart"] == {"fulfillment_type": "dine_in", "table_number": "4"}
    assert ps.requested_amount == ps.snapshot["totals"]["grand_total"]
    assert cart.status != CartStatus.checked_out


def test_paid_callback_creates_accepted_order_once(session_factory) -> None:
    received: list[str] = []

    async def staff_handler(event, payload):
        received.append(event)

    notifications.bus.subscribe("staff", staff_handler)

    async def run():
        async with session_factory() as session:
            ids = await _seed(session)
            ps = await create_payment_session(session, ids["cart_id"], now=NOW)
            first = await reconcile_payment(session, _paid(ps), now=NOW)
            second = await reconcile_payment(session, _paid(ps, event_id="evt-1-retry"), now=NOW)
        async with session_factory() as session:
            member = await session.get(Member, ids["member_id"])
            cart = await session.get(Cart, ids["cart_id"])
            stored = await session.get(PaymentSession, ps.id)
            events = (
                await session.execute(select(OrderEvent.event).where(OrderEvent.order_id == first.id))
            ).scalars().all()
        return first, second, member, cart, stored, events

    first, second, member, cart, stored, events = asyncio.run(run())

    assert first.id == second.id
    assert first.status == OrderStatus.accepted
    assert first.payment_status == PaymentStatus.paid
    assert first.payment_provider == "qris"
    assert first.table_number == "4"
    assert first.loyalty_points_awarded == 5_100
    assert member.points == 5_100
    assert member.total_spend == first.grand_total
    assert cart.status == CartStatus.checked_out
    assert cart.order_id == first.id
    assert stored.status == PaymentSessionStatus.paid
    assert stored.order_id == first.id
    assert events.count("payment_status_change") == 1
    assert events.count("loyalty_awarded") == 1
    assert metrics.snapshot()["orders_created"] == 1
    assert metrics.snapshot()["payments_reconciled"] == 1
    assert received == ["order.paid"]


def test_expired_and_unknown_callbacks_create_nothing(session_factory) -> None:
    async def run():
        async with session_factory() as session:
            ids = await _seed(session)
            ps = await create_payment_session(session, ids["cart_id"], now=NOW)
            expired = await reconcile_payment(
                session,
                PaymentNotification(event_id="evt-x", reference_id=ps.external_id, status="EXPIRED"),
                now=NOW,
            )
            unknown = await reconcile_payment(
                session,
                PaymentNotification(event_id="evt-y", reference_id="ARCH-QR-NOPE", status="COMPLETED"),
                now=NOW,
            )
            stored = await session.get(PaymentSession, ps.id, populate_existing=True)
            return expired, unknown, stored

    expired, unknown, stored = asyncio.run(run())
    assert expired is None
    assert unknown is None
    assert stored.status == PaymentSessionStatus.expired
    assert stored.provider_status == "EXPIRED"


def test_promo_point_rewards_are_granted_once(session_factory) -> None:
    async def run():
        async with session_factory() as session:
            ids = await _seed(session, points_promo=True)
            ps = await create_payment_session(session, ids["cart_id"], now=NOW)
            order = await reconcile_payment(session, _paid(ps), now=NOW)
            await reconcile_payment(session, _paid(ps, event_id="evt-2"), now=NOW)
        async with session_factory() as session:
            member = await session.get(Member, ids["member_id"])
        return order, member

    order, member = asyncio.run(run())
    assert order.applied_promo["actions"][0]["type"] == "award_points"
    assert order.rewards_granted_at is not None
    assert member.points == 5_100 + 200
    assert member.loyalty_card is True


def test_payment_after_auto_cancel_is_recorded_not_applied(session_factory) -> None:
    async def run():
        async with session_factory() as session:
            ids = await _seed(session)
            ps = await create_payment_session(session, ids["cart_id"], now=NOW)
            order, created = await ensure_order_for_session(session, ps, now=NOW)
            assert created
            assert await expire_unpaid_order(session, order, now=NOW + timedelta(minutes=45))
            result = await reconcile_payment(session, _paid(ps), now=NOW + timedelta(minutes=50))
        async with session_factory() as session:
            member = await session.get(Member, ids["member_id"])
            events = (
                await session.execute(select(OrderEvent.event).where(OrderEvent.order_id == order.id))
            ).scalars().all()
        return result, member, events

    result, member, events = asyncio.run(run())
    assert result.status == OrderStatus.cancelled
    assert result.payment_status == PaymentStatus.void
    assert "payment_received_after_close" in events
    assert member.points == 0
    assert metrics.snapshot().get("payments_reconciled", 0) == 0


def test_checked_out_cart_cannot_open_a_payment_session(session_factory) -> None:
    async def run():
        async with session_factory() as session:
            ids = await _seed(session)
            ps = await create_payment_session(session, ids["cart_id"], now=NOW)
            await reconcile_payment(session, _paid(ps), now=NOW)
            with pytest.raises(ConflictError) as exc:
                await create_payment_session(session, ids["cart_id"], now=NOW)
            return exc.value

    assert asyncio.run(run()).code == "cart_checked_out"


def test_stale_sessions_expire(session_factory) -> None:
    async def run():
        async with session_factory() as session:
            ids = await _seed(session)
            ps = await create_payment_session(session, ids["cart_id"], now=NOW)
            count = await expire_stale_sessions(session, now=NOW + timedelta(hours=1))
            stored = await session.get(PaymentSession, ps.id, populate_existing=True)
            return count, stored

    count, stored = asyncio.run(run())
    assert count == 1
    assert stored.status == PaymentSessionStatus.expired


def _order_count(session):
    return session.execute(select(func.count()).select_from(Order))


def test_paid_callback_retries_after_transaction_code_collisions(session_factory, monkeypatch) -> None:
    taken_code = format_transaction_code(business_day(NOW), 1)
    real_next = webhook_handlers.next_transaction_code
    blocked = [True]
    calls: list[str] = []

    async def collide_while_blocked(session, *, now=None):
        code = taken_code if blocked[0] else await real_next(session, now=now)
        calls.append(code)
        return code

    monkeypatch.setattr(settings, "tx_code_max_attempts", 2)
    monkeypatch.setattr(webhook_handlers, "next_transaction_code", collide_while_blocked)

    async def run():
        async with session_factory() as session:
            session.add(build_order_from_snapshot({"totals": {}}, transaction_code=taken_code, placed_at=NOW))
            await session.commit()
            ids = await _seed(session)
            ps = await create_payment_session(session, ids["cart_id"], now=NOW)
            with pytest.raises(ConflictError) as exc:
                await reconcile_payment(session, _paid(ps), now=NOW)
            count_after_failure = (await _order_count(session)).scalar_one()
            unlinked = await session.get(PaymentSession, ps.id, populate_existing=True)
            unlinked_order_id = unlinked.order_id

            # The gateway delivers the callback again once codes are free.
            blocked[0] = False
            order = await reconcile_payment(session, _paid(ps, event_id="evt-1-retry"), now=NOW)
            return exc.value, count_after_failure, unlinked_order_id, order

    error, count_after_failure, unlinked_order_id, order = asyncio.run(run())
    assert error.code == "transaction_code_conflict"
    assert calls[:2] == [taken_code, taken_code]
    assert count_after_failure == 1
    assert unlinked_order_id is None
    assert order.transaction_code == "ARCH-20260310-0002"
    assert order.payment_status == PaymentStatus.paid
    assert metrics.snapshot()["orders_created"] == 1


def test_concurrent_delivery_reuses_the_order_that_won(session_factory, monkeypatch) -> None:
    real_lookup = webhook_handlers._order_for_session
    competitor: list = []

    async def lookup_then_lose_race(session, payment_session):
        if competitor:
            return await real_lookup(session, payment_session)
        # Another worker inserts the order for this session right after our lookup.
        rival = build_order_from_snapshot(
            payment_session.snapshot,
            transaction_code=format_transaction_code(business_day(NOW), 99),
            placed_at=NOW,
            member_id=payment_session.member_id,
            cart_id=payment_session.cart_id,
            table_number="4",
            payment_session_id=payment_session.id,
        )
        session.add(rival)
        await session.commit()
        competitor.append(rival.id)
        return None

    monkeypatch.setattr(webhook_handlers, "_order_for_session", lookup_then_lose_race)

    async def run():
        async with session_factory() as session:
            ids = await _seed(session)
            ps = await create_payment_session(session, ids["cart_id"], now=NOW)
            order = await reconcile_payment(session, _paid(ps), now=NOW)
            count = (await _order_count(session)).scalar_one()
            return order, count

    order, count = asyncio.run(run())
    assert order.id == competitor[0]
    assert order.transaction_code == "ARCH-20260310-0099"
    assert order.payment_status == PaymentStatus.paid
    assert order.status == OrderStatus.accepted
    assert count == 1
    assert metrics.snapshot().get("orders_created", 0) == 0
    assert metrics.snapshot()["payments_reconciled"] == 1


def test_callback_metadata_carries_the_payment_session_id() -> None:
    nested = parse_notification(
        {
            "data": {
                "id": "qr_1",
                "reference_id": "ARCH-QR-1",
                "status": "completed",
                "metadata": {"payment_session_id": "8d1f0c1e-46a2-4a7e-9df5-0a3f5c1b2d10"},
            }
        }
    )
    flat = parse_notification(
        {"external_id": "ARCH-QR-2", "status": "PAID", "metadata": {"payment_session_id": "abc"}}
    )
    bare = parse_notification({"external_id": "ARCH-QR-3", "status": "PAID"})

    assert nested.payment_session_id == "8d1f0c1e-46a2-4a7e-9df5-0a3f5c1b2d10"
    assert nested.status == "COMPLETED"
    assert flat.payment_session_id == "abc"
    assert bare.payment_session_id is None


def test_callback_with_rewritten_reference_matches_by_metadata(session_factory) -> None:
    async def run():
        async with session_factory() as session:
            ids = await _seed(session)
            ps = await create_payment_session(session, ids["cart_id"], now=NOW)
            rewritten = PaymentNotification(
                event_id="evt-meta",
                reference_id="GATEWAY-REF-77",
                status="COMPLETED",
                amount=ps.requested_amount,
                payment_session_id=str(ps.id),
            )
            order = await reconcile_payment(session, rewritten, now=NOW)
            garbage = await reconcile_payment(
                session,
                PaymentNotification(
                    event_id="evt-junk", reference_id="GATEWAY-REF-78", status="COMPLETED", payment_session_id="not-a-uuid"
                ),
                now=NOW,
            )
            stored = await session.get(PaymentSession, ps.id, populate_existing=True)
            return ps, order, garbage, stored

    ps, order, garbage, stored = asyncio.run(run())
    assert ps.provider_payload["metadata"] == {"payment_session_id": str(ps.id)}
    assert order is not None
    assert order.payment_session_id == ps.id
    assert order.payment_status == PaymentStatus.paid
    assert stored.order_id == order.id
    assert stored.status == PaymentSessionStatus.paid
    assert garbage is None
