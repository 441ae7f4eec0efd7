import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Header, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import metrics
from app.core.errors import DomainError
from app.db.session import get_session
from app.schemas.payment import PaymentSessionCreate, PaymentSessionRead, WebhookAck
from app.services import payment_sessions, payments
from app.services.webhook_handlers import reconcile_payment

router = APIRouter(prefix="/payments", tags=["payments"])
logger = logging.getLogger(__name__)


@router.post("/sessions", response_model=PaymentSessionRead, status_code=status.HTTP_201_CREATED)
async def create_payment_session(
    payload: PaymentSessionCreate,
    session: AsyncSession = Depends(get_session),
) -> PaymentSessionRead:
    payment_session = await payment_sessions.create_payment_session(
        session,
        payload.cart_id,
        voucher_claim_ids=payload.voucher_claim_ids,
        selected_promo_id=payload.selected_promo_id,
    )
    return PaymentSessionRead.model_validate(payment_session)


@router.post("/webhook", response_model=WebhookAck)
async def payment_webhook(
    payload: dict[str, Any] = Body(...),
    session: AsyncSession = Depends(get_session),
    callback_token: str | None = Header(default=None, alias="x-callback-token"),
) -> WebhookAck:
    payments.verify_callback_token(callback_token)
    notification = payments.parse_notification(payload)
    record = await payments.record_webhook_event(session, notification)
    try:
        order = await reconcile_payment(session, notification)
    except DomainError as exc:
        # Acknowledged anyway; the stored error is left for staff follow-up.
        await session.rollback()
        error = f"{exc.code}: {exc.detail}"
        await payments.mark_webhook_processed(session, record, error=error)
        metrics.record_payment_failure()
        logger.error(
            "payment_webhook_failed",
            extra={
                "event_id": notification.event_id,
                "reference_id": notification.reference_id,
                "error_code": exc.code,
                "error": str(exc.detail),
            },
        )
        return WebhookAck(order_id=None)
    await payments.mark_webhook_processed(session, record)
    return WebhookAck(order_id=order.id if order else None)
