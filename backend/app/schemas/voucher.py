from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from app.models.voucher import VoucherClaimStatus


class VoucherClaimRequest(BaseModel):
    member_id: UUID


class VoucherClaimRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    voucher_id: UUID
    member_id: UUID
    status: VoucherClaimStatus
    remaining_use: int
    claimed_at: datetime
    valid_until: datetime | None = None
    spent_points: int = 0
