from uuid import UUID

from fastapi import APIRouter, Depends, Header, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_session
from app.schemas.order import CheckoutRequest, OrderRead
from app.schemas.pricing import PriceRequest, PriceResponse
from app.services import checkout as checkout_service
from app.services.cart import get_cart
from app.services.price_engine import price_cart_for

router = APIRouter(prefix="/carts", tags=["cart"])


@router.post("/{cart_id}/price", response_model=PriceResponse)
async def price_cart(
    cart_id: UUID,
    payload: PriceRequest,
    session: AsyncSession = Depends(get_session),
) -> PriceResponse:
    cart = await get_cart(session, cart_id)
    pricing = await price_cart_for(
        session,
        cart,
        selected_promo_id=payload.selected_promo_id,
        voucher_claim_ids=payload.voucher_claim_ids,
    )
    return PriceResponse.model_validate(pricing.to_snapshot())


@router.post("/{cart_id}/checkout", response_model=OrderRead, status_code=status.HTTP_201_CREATED)
async def checkout_cart(
    cart_id: UUID,
    payload: CheckoutRequest,
    session: AsyncSession = Depends(get_session),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> OrderRead:
    order = await checkout_service.checkout(
        session,
        cart_id,
        idempotency_key=payload.idempotency_key or idempotency_key,
        voucher_claim_ids=payload.voucher_claim_ids,
        selected_promo_id=payload.selected_promo_id,
    )
    return OrderRead.model_validate(order)
