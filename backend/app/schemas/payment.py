from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.payment import PaymentSessionStatus


class PaymentSessionCreate(BaseModel):
    cart_id: UUID
    voucher_claim_ids: list[str] = Field(default_factory=list)
    selected_promo_id: str | None = None


class PaymentSessionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    external_id: str
    cart_id: UUID | None = None
    requested_amount: int
    status: PaymentSessionStatus
    qr_string: str | None = None
    expires_at: datetime
    order_id: UUID | None = None


class WebhookAck(BaseModel):
    received: bool = True
    order_id: UUID | None = None
