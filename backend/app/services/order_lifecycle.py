from __future__ import annotations

import enum
import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import GuardError, StateTransitionError
from app.models.cart import FulfillmentType
from app.models.order import DeliveryStatus, Order, OrderStatus, PaymentStatus
from app.services import notifications, promo_usage, vouchers
from app.services.order import log_event, require_order

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.created: {OrderStatus.accepted, OrderStatus.cancelled},
    OrderStatus.accepted: {OrderStatus.preparing, OrderStatus.cancelled},
    OrderStatus.preparing: {OrderStatus.served, OrderStatus.cancelled},
    OrderStatus.served: {OrderStatus.completed, OrderStatus.cancelled},
    OrderStatus.completed: set(),
    OrderStatus.cancelled: set(),
}

PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.unpaid: {PaymentStatus.paid, PaymentStatus.void},
    PaymentStatus.paid: {PaymentStatus.verified, PaymentStatus.refunded, PaymentStatus.void},
    PaymentStatus.verified: {PaymentStatus.refunded, PaymentStatus.void},
    PaymentStatus.refunded: set(),
    PaymentStatus.void: set(),
}

DELIVERY_TRANSITIONS: dict[DeliveryStatus, set[DeliveryStatus]] = {
    DeliveryStatus.pending: {DeliveryStatus.assigned},
    DeliveryStatus.assigned: {DeliveryStatus.picked_up},
    DeliveryStatus.picked_up: {DeliveryStatus.on_the_way},
    DeliveryStatus.on_the_way: {DeliveryStatus.delivered, DeliveryStatus.failed},
    DeliveryStatus.delivered: set(),
    DeliveryStatus.failed: set(),
}

SETTLED_PAYMENT_STATUSES = (PaymentStatus.paid, PaymentStatus.verified)
AUTO_CANCEL_REASON = "AUTO_UNPAID_TIMEOUT"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def check_transition(machine: str, table: dict[Any, set[Any]], current: enum.Enum, target: enum.Enum) -> bool:
    """Return ``False`` for a same-state no-op, ``True`` for a legal move; raise otherwise."""
    if current == target:
        return False
    if target not in table.get(current, set()):
        raise StateTransitionError(machine, current.value, target.value)
    return True


async def _guarded_update(session: AsyncSession, order_id: UUID, *conditions: Any, **values: Any) -> bool:
    result = await session.execute(
        update(Order)
        .where(Order.id == order_id, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def release_order_discounts(session: AsyncSession, order: Order) -> None:
    """Give back voucher uses and promotion stock held by ``order``."""
    await vouchers.release_claims(session, order=order)
    await promo_usage.release_promo_usage(session, order=order)


async def _lost_race(session: AsyncSession, order_id: UUID, machine: str, attr: str, target: enum.Enum) -> Order:
    order = await require_order(session, order_id)
    current = getattr(order, attr)
    if current == target:
        return order
    raise StateTransitionError(machine, current.value if current else "none", target.value)


async def transition_order_status(
    session: AsyncSession,
    order_id: UUID,
    target: OrderStatus | str,
    *,
    reason: str | None = None,
    now: datetime | None = None,
) -> Order:
    target = OrderStatus(target)
    now = now or _now()
    order = await require_order(session, order_id)
    current = OrderStatus(order.status)
    if not check_transition("order", ORDER_TRANSITIONS, current, target):
        return order

    values: dict[str, Any] = {"status": target}
    if target == OrderStatus.cancelled:
        values.update(cancelled_at=now, cancel_reason=reason or order.cancel_reason)
    if not await _guarded_update(session, order.id, Order.status == current, **values):
        return await _lost_race(session, order.id, "order", "status", target)

    log_event(session, order.id, "status_change", f"{current.value} -> {target.value}", data={"reason": reason} if reason else None)
    if target == OrderStatus.cancelled:
        await release_order_discounts(session, order)
    await session.commit()
    order = await require_order(session, order.id)
    logger.info(
        "order_status_changed",
        extra={"order_id": str(order.id), "from_status": current.value, "to_status": target.value},
    )
    await notifications.notify_order("order.status_changed", order)
    return order


async def cancel_order(session: AsyncSession, order_id: UUID, *, reason: str | None = None, now: datetime | None = None) -> Order:
    return await transition_order_status(session, order_id, OrderStatus.cancelled, reason=reason, now=now)


async def transition_payment_status(
    session: AsyncSession,
    order_id: UUID,
    target: PaymentStatus | str,
    *,
    note: str | None = None,
    now: datetime | None = None,
) -> Order:
    target = PaymentStatus(target)
    now = now or _now()
    order = await require_order(session, order_id)
    current = PaymentStatus(order.payment_status)
    if not check_transition("payment", PAYMENT_TRANSITIONS, current, target):
        return order

    values: dict[str, Any] = {"payment_status": target}
    if target == PaymentStatus.paid:
        values["paid_at"] = now
    if not await _guarded_update(session, order.id, Order.payment_status == current, **values):
        return await _lost_race(session, order.id, "payment", "payment_status", target)

    log_event(session, order.id, "payment_status_change", note or f"{current.value} -> {target.value}")
    await session.commit()
    order = await require_order(session, order.id)
    logger.info(
        "order_payment_status_changed",
        extra={"order_id": str(order.id), "from_status": current.value, "to_status": target.value},
    )
    await notifications.notify_order("order.payment_status_changed", order)
    return order


def _require_delivery_order(order: Order) -> None:
    if order.fulfillment_type != FulfillmentType.delivery:
        raise GuardError("Order is not a delivery order", code="not_delivery_order")


def _require_paid(order: Order) -> None:
    if order.payment_status not in SETTLED_PAYMENT_STATUSES:
        raise GuardError("Order has not been paid", code="payment_required")


async def transition_delivery_status(
    session: AsyncSession,
    order_id: UUID,
    target: DeliveryStatus | str,
    *,
    note: str | None = None,
) -> Order:
    target = DeliveryStatus(target)
    order = await require_order(session, order_id)
    _require_delivery_order(order)
    current = DeliveryStatus(order.delivery_status or DeliveryStatus.pending)
    if not check_transition("delivery", DELIVERY_TRANSITIONS, current, target):
        return order
    _require_paid(order)

    current_condition = (
        Order.delivery_status == current
        if order.delivery_status is not None
        else Order.delivery_status.is_(None)
    )
    if not await _guarded_update(
        session,
        order.id,
        current_condition,
        Order.payment_status.in_(SETTLED_PAYMENT_STATUSES),
        delivery_status=target,
    ):
        latest = await require_order(session, order.id)
        _require_paid(latest)
        return await _lost_race(session, order.id, "delivery", "delivery_status", target)

    log_event(session, order.id, "delivery_status_change", note or f"{current.value} -> {target.value}")
    await session.commit()
    order = await require_order(session, order.id)
    logger.info(
        "order_delivery_status_changed",
        extra={"order_id": str(order.id), "from_status": current.value, "to_status": target.value},
    )
    await notifications.notify_order("order.delivery_status_changed", order, "courier")
    return order


async def assign_courier(session: AsyncSession, order_id: UUID, *, courier_id: str, courier_name: str | None = None) -> Order:
    """Attach a courier and move delivery to ``assigned``; re-assigning the same courier is a no-op."""
    order = await require_order(session, order_id)
    _require_delivery_order(order)
    current = DeliveryStatus(order.delivery_status or DeliveryStatus.pending)
    if current == DeliveryStatus.assigned and order.courier_id == courier_id:
        return order
    if current not in (DeliveryStatus.pending, DeliveryStatus.assigned):
        raise StateTransitionError("delivery", current.value, DeliveryStatus.assigned.value)
    _require_paid(order)

    if not await _guarded_update(
        session,
        order.id,
        Order.delivery_status.in_([DeliveryStatus.pending, DeliveryStatus.assigned]) | Order.delivery_status.is_(None),
        Order.payment_status.in_(SETTLED_PAYMENT_STATUSES),
        delivery_status=DeliveryStatus.assigned,
        courier_id=courier_id,
        courier_name=courier_name,
    ):
        latest = await require_order(session, order.id)
        _require_paid(latest)
        raise StateTransitionError("delivery", getattr(latest.delivery_status, "value", "none"), DeliveryStatus.assigned.value)

    log_event(session, order.id, "courier_assigned", courier_name or courier_id, data={"courier_id": courier_id})
    await session.commit()
    order = await require_order(session, order.id)
    logger.info("order_courier_assigned", extra={"order_id": str(order.id), "courier_id": courier_id})
    await notifications.notify_order("order.courier_assigned", order, "courier")
    return order


async def expire_unpaid_order(session: AsyncSession, order: Order, *, now: datetime) -> bool:
    """Cancel and void a stale ``created``/``unpaid`` order. Returns ``False`` if it moved on meanwhile."""
    if not await _guarded_update(
        session,
        order.id,
        Order.status == OrderStatus.created,
        Order.payment_status == PaymentStatus.unpaid,
        status=OrderStatus.cancelled,
        payment_status=PaymentStatus.void,
        cancelled_at=now,
        cancel_reason=AUTO_CANCEL_REASON,
    ):
        await session.commit()
        return False
    log_event(
        session,
        order.id,
        "status_change",
        "created -> cancelled (unpaid timeout)",
        data={"reason": AUTO_CANCEL_REASON, "payment_status": {"from": "unpaid", "to": "void"}},
    )
    await release_order_discounts(session, order)
    await session.commit()
    return True
