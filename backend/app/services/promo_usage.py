from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConflictError
from app.models.order import Order, OrderEvent
from app.models.promo import Promotion, PromoUsage


class PromoUsageLookup:
    """Usage counts for rolling-window promotion caps, backed by ``promo_usages``."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def count_member_uses(self, promo_id: str, member_id: str, since: datetime) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(PromoUsage)
            .where(
                PromoUsage.promotion_id == uuid.UUID(str(promo_id)),
                PromoUsage.member_id == uuid.UUID(str(member_id)),
                PromoUsage.used_at >= since,
            )
        )
        return int(result.scalar_one())

    async def count_global_uses(self, promo_id: str, since: datetime) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(PromoUsage)
            .where(PromoUsage.promotion_id == uuid.UUID(str(promo_id)), PromoUsage.used_at >= since)
        )
        return int(result.scalar_one())


async def lifetime_usage_by_member(session: AsyncSession, *, member_id: uuid.UUID) -> dict[str, int]:
    result = await session.execute(
        select(PromoUsage.promotion_id, func.count())
        .where(PromoUsage.member_id == member_id)
        .group_by(PromoUsage.promotion_id)
    )
    return {str(promo_id): int(count) for promo_id, count in result.all()}


def _applied_promo_id(order: Order) -> uuid.UUID | None:
    raw = (order.applied_promo or {}).get("promo_id")
    if not raw:
        return None
    return uuid.UUID(str(raw))


async def record_promo_usage(session: AsyncSession, *, order: Order, now: datetime) -> bool:
    """Take one unit of promotion stock and record the member's usage for ``order``.

    Returns ``False`` when the usage was already recorded. Raises
    ``ConflictError`` when the stock ran out after pricing.
    """
    promo_id = _applied_promo_id(order)
    if promo_id is None:
        return False
    existing = await session.execute(
        select(PromoUsage.id).where(PromoUsage.promotion_id == promo_id, PromoUsage.order_id == order.id)
    )
    if existing.scalar_one_or_none() is not None:
        return False

    taken = await session.execute(
        update(Promotion)
        .where(Promotion.id == promo_id, Promotion.global_stock.is_not(None), Promotion.global_stock > 0)
        .values(global_stock=Promotion.global_stock - 1)
        .execution_options(synchronize_session=False)
    )
    if taken.rowcount == 0:
        stock = (
            await session.execute(select(Promotion.global_stock).where(Promotion.id == promo_id))
        ).scalar_one_or_none()
        if stock is not None:
            raise ConflictError("Promotion stock exhausted", code="promo_sold_out")

    session.add(PromoUsage(promotion_id=promo_id, member_id=order.member_id, order_id=order.id, used_at=now))
    session.add(OrderEvent(order_id=order.id, event="promo_counted", note=str(promo_id)))
    return True


async def release_promo_usage(session: AsyncSession, *, order: Order) -> bool:
    """Undo ``record_promo_usage`` for a cancelled order."""
    promo_id = _applied_promo_id(order)
    if promo_id is None:
        return False
    removed = await session.execute(
        delete(PromoUsage)
        .where(PromoUsage.promotion_id == promo_id, PromoUsage.order_id == order.id)
        .execution_options(synchronize_session=False)
    )
    if removed.rowcount == 0:
        return False
    await session.execute(
        update(Promotion)
        .where(Promotion.id == promo_id, Promotion.global_stock.is_not(None))
        .values(global_stock=Promotion.global_stock + 1)
        .execution_options(synchronize_session=False)
    )
    session.add(OrderEvent(order_id=order.id, event="promo_released", note=str(promo_id)))
    return True
