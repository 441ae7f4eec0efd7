from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_session
from app.schemas.order import CourierAssign, DeliveryStatusUpdate, OrderRead, OrderStatusUpdate, PaymentStatusUpdate
from app.services import order_lifecycle
from app.services.order import require_order

router = APIRouter(prefix="/orders", tags=["orders"])


@router.get("/{order_id}", response_model=OrderRead)
async def get_order(order_id: UUID, session: AsyncSession = Depends(get_session)) -> OrderRead:
    return OrderRead.model_validate(await require_order(session, order_id))


@router.post("/{order_id}/status", response_model=OrderRead)
async def update_order_status(
    order_id: UUID,
    payload: OrderStatusUpdate,
    session: AsyncSession = Depends(get_session),
) -> OrderRead:
    order = await order_lifecycle.transition_order_status(session, order_id, payload.status, reason=payload.reason)
    return OrderRead.model_validate(order)


@router.post("/{order_id}/payment-status", response_model=OrderRead)
async def update_payment_status(
    order_id: UUID,
    payload: PaymentStatusUpdate,
    session: AsyncSession = Depends(get_session),
) -> OrderRead:
    order = await order_lifecycle.transition_payment_status(
        session, order_id, payload.payment_status, note=payload.note
    )
    return OrderRead.model_validate(order)


@router.post("/{order_id}/delivery-status", response_model=OrderRead)
async def update_delivery_status(
    order_id: UUID,
    payload: DeliveryStatusUpdate,
    session: AsyncSession = Depends(get_session),
) -> OrderRead:
    order = await order_lifecycle.transition_delivery_status(
        session, order_id, payload.delivery_status, note=payload.note
    )
    return OrderRead.model_validate(order)


@router.post("/{order_id}/courier", response_model=OrderRead)
async def assign_courier(
    order_id: UUID,
    payload: CourierAssign,
    session: AsyncSession = Depends(get_session),
) -> OrderRead:
    order = await order_lifecycle.assign_courier(
        session, order_id, courier_id=payload.courier_id, courier_name=payload.courier_name
    )
    return OrderRead.model_validate(order)
