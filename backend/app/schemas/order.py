from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.cart import FulfillmentType
from app.models.order import DeliveryStatus, OrderStatus, PaymentStatus


class OrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    menu_id: str
    name: str
    category: str | None = None
    quantity: int
    unit_price: int
    addons_total: int
    line_subtotal: int
    line_discount: int
    is_free: bool


class OrderDiscountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_index: int
    source: str
    reference_id: str
    label: str
    target: str
    amount: int
    allocations: list[int] = Field(default_factory=list)


class OrderEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event: str
    note: str | None = None
    data: dict | None = None
    created_at: datetime


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    transaction_code: str
    member_id: UUID | None = None
    fulfillment_type: FulfillmentType
    table_number: str | None = None
    status: OrderStatus
    payment_status: PaymentStatus
    delivery_status: DeliveryStatus | None = None
    courier_id: str | None = None
    courier_name: str | None = None
    cancel_reason: str | None = None
    items_subtotal: int
    items_discount: int
    delivery_fee: int
    shipping_discount: int
    service_fee: int
    tax_amount: int
    total_before_rounding: int
    rounding_delta: int
    grand_total: int
    applied_promo: dict | None = None
    voucher_claim_ids: list[str] = Field(default_factory=list)
    placed_at: datetime
    paid_at: datetime | None = None
    cancelled_at: datetime | None = None
    loyalty_points_awarded: int = 0
    items: list[OrderItemRead] = Field(default_factory=list)
    discounts: list[OrderDiscountRead] = Field(default_factory=list)
    events: list[OrderEventRead] = Field(default_factory=list)


class CheckoutRequest(BaseModel):
    idempotency_key: str | None = Field(default=None, max_length=128)
    voucher_claim_ids: list[str] = Field(default_factory=list)
    selected_promo_id: str | None = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    reason: str | None = Field(default=None, max_length=255)


class PaymentStatusUpdate(BaseModel):
    payment_status: PaymentStatus
    note: str | None = Field(default=None, max_length=255)


class DeliveryStatusUpdate(BaseModel):
    delivery_status: DeliveryStatus
    note: str | None = Field(default=None, max_length=255)


class CourierAssign(BaseModel):
    courier_id: str = Field(min_length=1, max_length=64)
    courier_name: str | None = Field(default=None, max_length=120)
