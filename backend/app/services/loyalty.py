from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.member import Member
from app.models.order import Order
from app.services.order import log_event
from app.services.pricing import normalize_rate, quantize_money

logger = logging.getLogger(__name__)


def loyalty_base(order: Order) -> int:
    """Spend that earns points: goods plus delivery and service fee, net of discounts."""
    return (
        int(order.items_subtotal or 0)
        + int(order.delivery_fee or 0)
        + int(order.service_fee or 0)
        - int(order.items_discount or 0)
        - int(order.shipping_discount or 0)
    )


def compute_loyalty_points(order: Order) -> int:
    base = loyalty_base(order)
    if base <= int(settings.loyalty_min_base):
        return 0
    return quantize_money(Decimal(base) * normalize_rate(settings.loyalty_rate))


async def award_loyalty_points(session: AsyncSession, order: Order, *, now: datetime) -> int:
    """Credit the member once per order. Returns the points credited by this call."""
    if not settings.loyalty_enabled or order.member_id is None:
        return 0
    points = compute_loyalty_points(order)
    if points <= 0:
        return 0

    claimed = await session.execute(
        update(Order)
        .where(Order.id == order.id, Order.loyalty_awarded_at.is_(None))
        .values(loyalty_awarded_at=now, loyalty_points_awarded=points)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount == 0:
        await session.commit()
        return 0
    await session.execute(
        update(Member)
        .where(Member.id == order.member_id)
        .values(points=Member.points + points, total_spend=Member.total_spend + int(order.grand_total or 0))
        .execution_options(synchronize_session=False)
    )
    log_event(session, order.id, "loyalty_awarded", f"{points} points", data={"points": points})
    await session.commit()
    logger.info("loyalty_awarded", extra={"order_id": str(order.id), "points": points})
    return points


async def grant_promo_rewards(session: AsyncSession, order: Order, *, now: datetime) -> bool:
    """Run point and membership actions carried by the applied promotion, once."""
    actions = list(((order.applied_promo or {}).get("actions")) or [])
    if not actions or order.member_id is None:
        return False

    claimed = await session.execute(
        update(Order)
        .where(Order.id == order.id, Order.rewards_granted_at.is_(None))
        .values(rewards_granted_at=now)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount == 0:
        await session.commit()
        return False

    points = sum(int(action.get("amount") or 0) for action in actions if action.get("type") == "award_points")
    values: dict = {}
    if points > 0:
        values["points"] = Member.points + points
    if any(action.get("type") == "grant_membership" for action in actions):
        values.update(loyalty_card=True, loyalty_granted_at=now)
    if values:
        await session.execute(
            update(Member)
            .where(Member.id == order.member_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
    log_event(session, order.id, "promo_rewards_granted", data={"actions": actions})
    await session.commit()
    return True
