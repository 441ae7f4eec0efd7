from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from fastapi import FastAPI
from sqlalchemy import select

from app.core import metrics
from app.core.config import settings
from app.db.session import SessionLocal
from app.models.order import Order, OrderStatus, PaymentStatus
from app.services import notifications, payment_sessions
from app.services.order import get_order_by_id
from app.services.order_lifecycle import expire_unpaid_order

logger = logging.getLogger(__name__)


def _expiration_config() -> tuple[int, int] | None:
    if not bool(settings.unpaid_order_cancel_enabled):
        return None
    ttl_minutes = int(settings.unpaid_order_cancel_minutes or 0)
    if ttl_minutes <= 0:
        return None
    limit = max(1, int(settings.unpaid_order_cancel_batch_limit or 100))
    return ttl_minutes, limit


async def _stale_unpaid_order_ids(session, *, cutoff: datetime, limit: int) -> list:
    result = await session.execute(
        select(Order.id)
        .where(
            Order.status == OrderStatus.created,
            Order.payment_status == PaymentStatus.unpaid,
            Order.placed_at < cutoff,
        )
        .order_by(Order.placed_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def _run_once(session_factory: Callable[[], Any] = SessionLocal, *, now: datetime | None = None) -> int:
    """Cancel one batch of stale unpaid orders. Returns how many were cancelled.

    Orders that were paid or moved on after being selected are left alone; a
    failure on one order is logged and does not stop the batch.
    """
    config = _expiration_config()
    if config is None:
        return 0
    ttl_minutes, limit = config
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=ttl_minutes)
    cancelled = 0
    async with session_factory() as session:
        for order_id in await _stale_unpaid_order_ids(session, cutoff=cutoff, limit=limit):
            try:
                order = await get_order_by_id(session, order_id, refresh=True)
                if order is None or not await expire_unpaid_order(session, order, now=now):
                    continue
            except Exception as exc:
                await session.rollback()
                logger.warning("order_auto_cancel_failed", extra={"order_id": str(order_id), "error": str(exc)})
                continue
            cancelled += 1
            order = await get_order_by_id(session, order_id, refresh=True)
            logger.info(
                "order_auto_cancelled",
                extra={"order_id": str(order_id), "transaction_code": order.transaction_code},
            )
            await notifications.notify_order("order.status_changed", order)
        await payment_sessions.expire_stale_sessions(session, now=now, limit=limit)
    if cancelled:
        metrics.record_orders_auto_cancelled(cancelled)
    return cancelled


async def _loop(stop: asyncio.Event) -> None:
    interval = max(5, int(settings.unpaid_order_cancel_interval_seconds or 60))
    while not stop.is_set():
        try:
            cancelled = await _run_once()
            if cancelled:
                logger.info("unpaid_orders_cancelled", extra={"count": int(cancelled)})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.warning("order_expiration_scheduler_failed", extra={"error": str(exc)})

        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=interval)


def start(app: FastAPI) -> None:
    if not bool(settings.unpaid_order_cancel_enabled):
        return
    if getattr(app.state, "order_expiration_scheduler_task", None) is not None:
        return

    stop = asyncio.Event()
    task = asyncio.create_task(_loop(stop))
    app.state.order_expiration_scheduler_stop = stop
    app.state.order_expiration_scheduler_task = task


async def stop(app: FastAPI) -> None:
    stop_event = getattr(app.state, "order_expiration_scheduler_stop", None)
    task = getattr(app.state, "order_expiration_scheduler_task", None)
    if stop_event:
        stop_event.set()
    if task:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    if getattr(app.state, "order_expiration_scheduler_stop", None) is not None:
        delattr(app.state, "order_expiration_scheduler_stop")
    if getattr(app.state, "order_expiration_scheduler_task", None) is not None:
        delattr(app.state, "order_expiration_scheduler_task")
