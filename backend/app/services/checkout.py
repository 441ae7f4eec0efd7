from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Sequence
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import metrics
from app.core.config import settings
from app.core.errors import ConflictError, DomainError
from app.models.cart import Cart, CartStatus
from app.models.order import Order
from app.services import notifications, promo_usage, vouchers
from app.services.cart import get_cart
from app.services.order import build_order_from_snapshot, get_order_by_id, log_event
from app.services.price_engine import PricingResult, price_cart_for
from app.services.tx_code import next_transaction_code

logger = logging.getLogger(__name__)


class _CartAlreadyLinked(Exception):
    pass


# Stock or a voucher use ran out between pricing and consumption.
_REPRICE_CODES = frozenset({"promo_sold_out", "voucher_unavailable"})


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _is_code_collision(exc: IntegrityError) -> bool:
    return "transaction_code" in str(getattr(exc, "orig", exc))


async def _replay(session: AsyncSession, cart: Cart, key: str | None) -> Order | None:
    if not key or cart.order_id is None or cart.last_idempotency_key != key:
        return None
    return await get_order_by_id(session, cart.order_id, refresh=True)


async def _create_order(
    session: AsyncSession, cart: Cart, pricing: PricingResult, *, key: str | None, now: datetime
) -> Order:
    code = await next_transaction_code(session, now=now)
    order = build_order_from_snapshot(
        pricing.to_snapshot(),
        transaction_code=code,
        placed_at=now,
        member_id=cart.member_id,
        cart_id=cart.id,
        fulfillment_type=cart.fulfillment_type,
        table_number=cart.table_number,
        idempotency_key=key,
    )
    session.add(order)
    await session.flush()

    await vouchers.consume_claims(session, order=order)
    await promo_usage.record_promo_usage(session, order=order, now=now)

    linked = await session.execute(
        update(Cart)
        .where(Cart.id == cart.id, Cart.order_id.is_(None))
        .values(order_id=order.id, last_idempotency_key=key, status=CartStatus.checked_out, checked_out_at=now)
        .execution_options(synchronize_session=False)
    )
    if linked.rowcount == 0:
        raise _CartAlreadyLinked()
    log_event(session, order.id, "created", f"Transaction {code}", data={"totals": pricing.totals})
    if pricing.reasons:
        log_event(session, order.id, "pricing_adjusted", data={"reasons": list(pricing.reasons)})
    return order


async def checkout(
    session: AsyncSession,
    cart_id: UUID,
    *,
    idempotency_key: str | None = None,
    voucher_claim_ids: Sequence[str] = (),
    selected_promo_id: str | None = None,
    now: datetime | None = None,
) -> Order:
    """Turn a cart into exactly one Order.

    A repeated call carrying the idempotency key already recorded on the cart
    returns the order created the first time. Order creation, voucher
    consumption, promo usage and the cart link commit together; a
    transaction-code collision, or a promotion or voucher running out after
    pricing, restarts the attempt (re-priced in the latter case) a bounded
    number of times.
    """
    now = now or _now()
    key = (idempotency_key or "").strip() or None
    cart = await get_cart(session, cart_id)
    replay = await _replay(session, cart, key)
    if replay is not None:
        logger.info("checkout_replayed", extra={"cart_id": str(cart.id), "order_id": str(replay.id)})
        return replay
    if cart.order_id is not None or cart.status == CartStatus.checked_out:
        raise ConflictError("Cart has already been checked out", code="cart_checked_out")

    pricing = await price_cart_for(
        session, cart, selected_promo_id=selected_promo_id, voucher_claim_ids=voucher_claim_ids, now=now
    )
    attempts = max(1, int(settings.tx_code_max_attempts))
    for attempt in range(1, attempts + 1):
        try:
            order = await _create_order(session, cart, pricing, key=key, now=now)
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            if not _is_code_collision(exc):
                raise ConflictError("Order could not be created", code="order_conflict") from exc
            logger.warning("transaction_code_collision", extra={"cart_id": str(cart_id), "attempt": attempt})
            cart = await get_cart(session, cart_id)
            continue
        except _CartAlreadyLinked:
            await session.rollback()
            cart = await get_cart(session, cart_id)
            replay = await _replay(session, cart, key)
            if replay is not None:
                return replay
            raise ConflictError("Cart has already been checked out", code="cart_checked_out")
        except ConflictError as exc:
            await session.rollback()
            if exc.code not in _REPRICE_CODES:
                raise
            logger.warning(
                "checkout_repriced",
                extra={"cart_id": str(cart_id), "attempt": attempt, "reason": exc.code},
            )
            cart = await get_cart(session, cart_id)
            pricing = await price_cart_for(
                session, cart, selected_promo_id=selected_promo_id, voucher_claim_ids=voucher_claim_ids, now=now
            )
            continue
        except DomainError:
            await session.rollback()
            raise

        order = await get_order_by_id(session, order.id, refresh=True)
        metrics.record_order_created()
        logger.info(
            "order_created",
            extra={
                "order_id": str(order.id),
                "transaction_code": order.transaction_code,
                "cart_id": str(cart_id),
                "grand_total": order.grand_total,
            },
        )
        await notifications.notify_order("order.created", order)
        return order
    raise ConflictError("Could not allocate a unique transaction code", code="transaction_code_conflict")
