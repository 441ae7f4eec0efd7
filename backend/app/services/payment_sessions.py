from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Sequence
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import metrics
from app.core.config import settings
from app.core.errors import ConflictError, DomainError, NotFoundError, ValidationError
from app.models.cart import CartStatus
from app.models.payment import PaymentSession, PaymentSessionStatus
from app.services import payments
from app.services.cart import get_cart
from app.services.price_engine import price_cart_for

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _external_id() -> str:
    prefix = (settings.tx_code_prefix or "ARCH").strip().upper()
    return f"{prefix}-QR-{uuid4().hex[:16].upper()}"


async def create_payment_session(
    session: AsyncSession,
    cart_id: UUID,
    *,
    voucher_claim_ids: Sequence[str] = (),
    selected_promo_id: str | None = None,
    now: datetime | None = None,
) -> PaymentSession:
    """Price the cart, freeze the result and request a QR code for it.

    No order exists until the gateway confirms payment; the frozen snapshot is
    what the order is later built from.
    """
    now = now or _now()
    cart = await get_cart(session, cart_id)
    if cart.order_id is not None or cart.status == CartStatus.checked_out:
        raise ConflictError("Cart has already been checked out", code="cart_checked_out")

    pricing = await price_cart_for(
        session, cart, selected_promo_id=selected_promo_id, voucher_claim_ids=voucher_claim_ids, now=now
    )
    amount = pricing.charges.grand_total
    if amount <= 0:
        raise ValidationError("Nothing to pay for this cart", code="nothing_to_pay")

    snapshot = pricing.to_snapshot()
    snapshot["cart"] = {
        "fulfillment_type": cart.fulfillment_type.value,
        "table_number": cart.table_number,
    }
    payment_session = PaymentSession(
        external_id=_external_id(),
        cart_id=cart.id,
        member_id=cart.member_id,
        requested_amount=amount,
        snapshot=snapshot,
        status=PaymentSessionStatus.pending,
        expires_at=now + timedelta(minutes=int(settings.payment_qr_expiry_minutes)),
    )
    session.add(payment_session)
    await session.commit()

    try:
        intent = await payments.create_payment_intent(
            reference_id=payment_session.external_id,
            amount=amount,
            expires_at=payment_session.expires_at,
            metadata={"payment_session_id": str(payment_session.id)},
        )
    except DomainError as exc:
        payment_session.status = PaymentSessionStatus.failed
        payment_session.provider_status = "REQUEST_FAILED"
        session.add(payment_session)
        await session.commit()
        metrics.record_payment_failure()
        logger.warning(
            "payment_session_request_failed",
            extra={"payment_session_id": str(payment_session.id), "cart_id": str(cart.id), "error": str(exc)},
        )
        raise

    payment_session.provider_reference = intent.provider_id
    payment_session.qr_string = intent.qr_string
    payment_session.provider_payload = intent.raw
    payment_session.provider_status = "ACTIVE"
    session.add(payment_session)
    await session.commit()
    logger.info(
        "payment_session_created",
        extra={
            "payment_session_id": str(payment_session.id),
            "cart_id": str(cart.id),
            "amount": amount,
        },
    )
    return payment_session


async def get_payment_session(session: AsyncSession, session_id: UUID) -> PaymentSession:
    result = await session.execute(
        select(PaymentSession).where(PaymentSession.id == session_id).execution_options(populate_existing=True)
    )
    payment_session = result.scalar_one_or_none()
    if payment_session is None:
        raise NotFoundError("Payment session not found")
    return payment_session


async def get_by_external_id(session: AsyncSession, external_id: str) -> PaymentSession | None:
    result = await session.execute(
        select(PaymentSession)
        .where(PaymentSession.external_id == external_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def expire_stale_sessions(session: AsyncSession, *, now: datetime, limit: int = 100) -> int:
    """Mark pending sessions past their QR expiry as expired."""
    ids = (
        await session.execute(
            select(PaymentSession.id)
            .where(PaymentSession.status == PaymentSessionStatus.pending, PaymentSession.expires_at <= now)
            .order_by(PaymentSession.expires_at)
            .limit(limit)
        )
    ).scalars().all()
    if not ids:
        return 0
    result = await session.execute(
        update(PaymentSession)
        .where(PaymentSession.id.in_(ids), PaymentSession.status == PaymentSessionStatus.pending)
        .values(status=PaymentSessionStatus.expired)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return int(result.rowcount or 0)
