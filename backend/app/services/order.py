from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.core.errors import NotFoundError
from app.models.cart import FulfillmentType
from app.models.order import DeliveryStatus, Order, OrderDiscount, OrderEvent, OrderItem


def build_order_from_snapshot(
    snapshot: dict[str, Any],
    *,
    transaction_code: str,
    placed_at: datetime,
    member_id: UUID | None = None,
    cart_id: UUID | None = None,
    fulfillment_type: FulfillmentType = FulfillmentType.dine_in,
    table_number: str | None = None,
    payment_session_id: UUID | None = None,
    idempotency_key: str | None = None,
) -> Order:
    """Materialize a priced snapshot (``PricingResult.to_snapshot()``) as an unsaved Order."""
    totals = snapshot.get("totals") or {}
    items = [
        OrderItem(
            position=idx,
            menu_id=str(line["menu_id"]),
            name=line.get("name") or str(line["menu_id"]),
            category=line.get("category"),
            quantity=int(line["quantity"]),
            unit_price=int(line.get("unit_price") or 0),
            addons_total=int(line.get("addons_total") or 0),
            line_subtotal=(int(line.get("unit_price") or 0) + int(line.get("addons_total") or 0)) * int(line["quantity"]),
            line_discount=int(line.get("line_discount") or 0),
            is_free=bool(line.get("is_free")),
        )
        for idx, line in enumerate(snapshot.get("lines") or [])
    ]
    discounts = [
        OrderDiscount(
            order_index=int(entry.get("order_index") or 0),
            source=entry["source"],
            reference_id=str(entry["reference_id"]),
            label=entry.get("label") or "",
            target=entry.get("target") or "items",
            amount=int(entry["amount"]),
            allocations=list(entry.get("allocations") or []),
        )
        for entry in snapshot.get("ledger") or []
    ]
    return Order(
        transaction_code=transaction_code,
        member_id=member_id,
        cart_id=cart_id,
        payment_session_id=payment_session_id,
        idempotency_key=idempotency_key,
        fulfillment_type=fulfillment_type,
        table_number=table_number,
        delivery_status=DeliveryStatus.pending if fulfillment_type == FulfillmentType.delivery else None,
        items_subtotal=int(totals.get("items_subtotal") or 0),
        items_discount=int(totals.get("items_discount") or 0),
        delivery_fee=int(totals.get("delivery_fee") or 0),
        shipping_discount=int(totals.get("shipping_discount") or 0),
        service_fee=int(totals.get("service_fee") or 0),
        tax_amount=int(totals.get("tax") or 0),
        total_before_rounding=int(totals.get("total_before_rounding") or 0),
        rounding_delta=int(totals.get("rounding_delta") or 0),
        grand_total=int(totals.get("grand_total") or 0),
        applied_promo=snapshot.get("promo"),
        voucher_claim_ids=list(snapshot.get("chosen_claim_ids") or []),
        placed_at=placed_at,
        items=items,
        discounts=discounts,
    )


async def get_order_by_id(session: AsyncSession, order_id: UUID, *, refresh: bool = False) -> Order | None:
    stmt = select(Order).where(Order.id == order_id)
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def require_order(session: AsyncSession, order_id: UUID, *, refresh: bool = True) -> Order:
    order = await get_order_by_id(session, order_id, refresh=refresh)
    if order is None:
        raise NotFoundError("Order not found")
    return order


def log_event(session: AsyncSession, order_id: UUID, event: str, note: str | None = None, data: dict | None = None) -> None:
    session.add(OrderEvent(order_id=order_id, event=event, note=note, data=data))
