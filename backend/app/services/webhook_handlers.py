from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import UUID

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import metrics
from app.core.config import settings
from app.core.errors import ConflictError
from app.models.cart import Cart, CartStatus, FulfillmentType
from app.models.order import Order, OrderStatus, PaymentStatus
from app.models.payment import PaymentSession, PaymentSessionStatus
from app.services import loyalty, notifications, payment_sessions, promo_usage, vouchers
from app.services.order import build_order_from_snapshot, get_order_by_id, log_event, require_order
from app.services.payments import PaymentNotification
from app.services.tx_code import next_transaction_code

logger = logging.getLogger(__name__)

PAID_STATUSES = {"PAID", "SUCCEEDED", "SUCCESS", "COMPLETED", "CAPTURED", "SETTLED"}
EXPIRED_STATUSES = {"EXPIRED", "INACTIVE"}
FAILED_STATUSES = {"FAILED", "VOIDED", "CANCELLED"}

PAYMENT_METHOD = "qris"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _is_code_collision(exc: IntegrityError) -> bool:
    return "transaction_code" in str(getattr(exc, "orig", exc))


async def _order_for_session(session: AsyncSession, payment_session: PaymentSession) -> Order | None:
    if payment_session.order_id is not None:
        order = await get_order_by_id(session, payment_session.order_id, refresh=True)
        if order is not None:
            return order
    result = await session.execute(
        select(Order).where(Order.payment_session_id == payment_session.id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _build_order(payment_session: PaymentSession, *, code: str, now: datetime) -> Order:
    cart_meta = (payment_session.snapshot or {}).get("cart") or {}
    return build_order_from_snapshot(
        payment_session.snapshot or {},
        transaction_code=code,
        placed_at=now,
        member_id=payment_session.member_id,
        cart_id=payment_session.cart_id,
        fulfillment_type=FulfillmentType(cart_meta.get("fulfillment_type") or FulfillmentType.dine_in.value),
        table_number=cart_meta.get("table_number"),
        payment_session_id=payment_session.id,
    )


async def _insert_order(session: AsyncSession, payment_session: PaymentSession, *, now: datetime, consume: bool) -> Order:
    code = await next_transaction_code(session, now=now)
    order = _build_order(payment_session, code=code, now=now)
    session.add(order)
    await session.flush()
    if consume:
        await vouchers.consume_claims(session, order=order)
        await promo_usage.record_promo_usage(session, order=order, now=now)
    else:
        log_event(session, order.id, "discount_consumption_failed", "Vouchers or promotion stock were no longer available")
    await session.execute(
        update(PaymentSession)
        .where(PaymentSession.id == payment_session.id, PaymentSession.order_id.is_(None))
        .values(order_id=order.id)
        .execution_options(synchronize_session=False)
    )
    log_event(session, order.id, "created", f"Transaction {code}", data={"payment_session": payment_session.external_id})
    await session.commit()
    return order


async def ensure_order_for_session(
    session: AsyncSession, payment_session: PaymentSession, *, now: datetime
) -> tuple[Order, bool]:
    """Return the order for ``payment_session``, creating it on first sight.

    The unique ``orders.payment_session_id`` makes concurrent deliveries agree
    on one order. Discount consumption joins the creating transaction; if a
    voucher or promotion stock has gone meanwhile the order is still created,
    because the money has already been taken, and the shortfall is logged.
    """
    existing = await _order_for_session(session, payment_session)
    if existing is not None:
        return existing, False

    session_id = payment_session.id
    consume = True
    attempts = max(1, int(settings.tx_code_max_attempts))
    for attempt in range(1, attempts + 1):
        try:
            order = await _insert_order(session, payment_session, now=now, consume=consume)
        except ConflictError as exc:
            await session.rollback()
            logger.warning(
                "discount_consumption_failed",
                extra={"payment_session_id": str(session_id), "error": str(exc)},
            )
            payment_session = await payment_sessions.get_payment_session(session, session_id)
            consume = False
            continue
        except IntegrityError as exc:
            await session.rollback()
            payment_session = await payment_sessions.get_payment_session(session, session_id)
            if _is_code_collision(exc):
                logger.warning(
                    "transaction_code_collision",
                    extra={"payment_session_id": str(session_id), "attempt": attempt},
                )
                continue
            winner = await _order_for_session(session, payment_session)
            if winner is None:
                raise
            return winner, False
        return await require_order(session, order.id), True
    raise ConflictError("Could not allocate a unique transaction code", code="transaction_code_conflict")


def _receipt(notification: PaymentNotification, payment_session: PaymentSession) -> dict[str, Any]:
    return {
        "method": PAYMENT_METHOD,
        "provider_reference": notification.provider_reference or payment_session.provider_reference,
        "external_id": payment_session.external_id,
        "amount": notification.amount if notification.amount is not None else payment_session.requested_amount,
        "status": notification.status,
        "event_id": notification.event_id,
    }


async def _mark_order_paid(
    session: AsyncSession, order: Order, notification: PaymentNotification, payment_session: PaymentSession, *, now: datetime
) -> bool:
    """Flip ``unpaid`` to ``paid`` exactly once; a fresh order is accepted at the same time."""
    result = await session.execute(
        update(Order)
        .where(Order.id == order.id, Order.payment_status == PaymentStatus.unpaid)
        .values(
            payment_status=PaymentStatus.paid,
            paid_at=notification.paid_at or now,
            payment_provider=PAYMENT_METHOD,
            payment_reference=notification.provider_reference or payment_session.provider_reference,
            payment_receipt=_receipt(notification, payment_session),
            status=case(
                (Order.status == OrderStatus.created, OrderStatus.accepted.value),
                else_=Order.status,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await session.commit()
        return False
    log_event(
        session,
        order.id,
        "payment_status_change",
        "unpaid -> paid",
        data={"provider_reference": notification.provider_reference, "event_id": notification.event_id},
    )
    await session.commit()
    return True


async def _clear_cart(session: AsyncSession, payment_session: PaymentSession, order: Order, *, now: datetime) -> None:
    claimed = await session.execute(
        update(PaymentSession)
        .where(PaymentSession.id == payment_session.id, PaymentSession.cart_cleared.is_(False))
        .values(cart_cleared=True)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount == 0:
        await session.commit()
        return
    if payment_session.cart_id is not None:
        await session.execute(
            update(Cart)
            .where(Cart.id == payment_session.cart_id, Cart.order_id.is_(None))
            .values(order_id=order.id, status=CartStatus.checked_out, checked_out_at=now)
            .execution_options(synchronize_session=False)
        )
    await session.commit()


async def _settle_session(session: AsyncSession, payment_session: PaymentSession, notification: PaymentNotification, *, now: datetime) -> None:
    await session.execute(
        update(PaymentSession)
        .where(PaymentSession.id == payment_session.id, PaymentSession.status != PaymentSessionStatus.paid)
        .values(
            status=PaymentSessionStatus.paid,
            provider_status=notification.status,
            paid_at=notification.paid_at or now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def _best_effort(session: AsyncSession, order_id: UUID, step: str, action: Callable[[], Awaitable[Any]]) -> bool:
    try:
        await action()
    except Exception as exc:
        await session.rollback()
        logger.warning(f"{step}_failed", extra={"order_id": str(order_id), "error": str(exc)})
        log_event(session, order_id, f"{step}_failed", str(exc)[:500])
        await session.commit()
        return False
    return True


async def _record_non_paid(session: AsyncSession, payment_session: PaymentSession, notification: PaymentNotification) -> None:
    values: dict[str, Any] = {"provider_status": notification.status}
    if notification.status in EXPIRED_STATUSES:
        values["status"] = PaymentSessionStatus.expired
    elif notification.status in FAILED_STATUSES:
        values["status"] = PaymentSessionStatus.failed
    await session.execute(
        update(PaymentSession)
        .where(PaymentSession.id == payment_session.id, PaymentSession.status == PaymentSessionStatus.pending)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if notification.status in FAILED_STATUSES:
        metrics.record_payment_failure()


async def _find_payment_session(session: AsyncSession, notification: PaymentNotification) -> PaymentSession | None:
    found = await payment_sessions.get_by_external_id(session, notification.reference_id)
    if found is not None or not notification.payment_session_id:
        return found
    try:
        session_id = UUID(notification.payment_session_id)
    except ValueError:
        return None
    # Gateways that rewrite the reference still echo the metadata back.
    result = await session.execute(
        select(PaymentSession).where(PaymentSession.id == session_id).execution_options(populate_existing=True)
    )
    found = result.scalar_one_or_none()
    if found is not None:
        logger.info(
            "payment_session_matched_by_metadata",
            extra={"reference_id": notification.reference_id, "payment_session_id": str(found.id)},
        )
    return found


async def reconcile_payment(
    session: AsyncSession, notification: PaymentNotification, *, now: datetime | None = None
) -> Order | None:
    """Apply a verified gateway callback.

    Safe to run any number of times for the same payment: the order is created
    once, marked paid once, loyalty is credited once and the cart is cleared
    once. Returns the order, or ``None`` for an unknown reference or a
    non-paid status on a session that has no order yet.
    """
    now = now or _now()
    payment_session = await _find_payment_session(session, notification)
    if payment_session is None:
        logger.warning("payment_session_not_found", extra={"reference_id": notification.reference_id})
        return None

    if notification.status not in PAID_STATUSES:
        await _record_non_paid(session, payment_session, notification)
        logger.info(
            "payment_status_ignored",
            extra={"payment_session_id": str(payment_session.id), "provider_status": notification.status},
        )
        return await _order_for_session(session, payment_session)

    if notification.amount is not None and notification.amount != payment_session.requested_amount:
        logger.warning(
            "payment_amount_mismatch",
            extra={
                "payment_session_id": str(payment_session.id),
                "expected": payment_session.requested_amount,
                "received": notification.amount,
            },
        )

    order, created = await ensure_order_for_session(session, payment_session, now=now)
    if created:
        metrics.record_order_created()
        logger.info(
            "order_created",
            extra={
                "order_id": str(order.id),
                "transaction_code": order.transaction_code,
                "payment_session_id": str(payment_session.id),
            },
        )

    paid_now = await _mark_order_paid(session, order, notification, payment_session, now=now)
    order = await require_order(session, order.id)
    if not paid_now and order.payment_status not in (PaymentStatus.paid, PaymentStatus.verified):
        logger.warning(
            "payment_for_closed_order",
            extra={"order_id": str(order.id), "payment_status": order.payment_status.value},
        )
        log_event(session, order.id, "payment_received_after_close", notification.provider_reference)
        await session.commit()
        await _settle_session(session, payment_session, notification, now=now)
        return order

    order_id, session_id = order.id, payment_session.id
    steps = (
        ("loyalty_award", lambda: loyalty.award_loyalty_points(session, order, now=now)),
        ("promo_rewards", lambda: loyalty.grant_promo_rewards(session, order, now=now)),
        ("cart_clear", lambda: _clear_cart(session, payment_session, order, now=now)),
    )
    for step, action in steps:
        if not await _best_effort(session, order_id, step, action):
            order = await require_order(session, order_id)
            payment_session = await payment_sessions.get_payment_session(session, session_id)
    await _settle_session(session, payment_session, notification, now=now)

    order = await require_order(session, order.id)
    if paid_now:
        metrics.record_payment_reconciled()
        logger.info(
            "payment_reconciled",
            extra={
                "order_id": str(order.id),
                "transaction_code": order.transaction_code,
                "payment_session_id": str(payment_session.id),
            },
        )
        await notifications.notify_order("order.paid", order)
    return order
