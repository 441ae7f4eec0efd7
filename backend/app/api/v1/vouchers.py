from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError
from app.db.session import get_session
from app.models.member import Member
from app.schemas.voucher import VoucherClaimRead, VoucherClaimRequest
from app.services import vouchers as voucher_service

router = APIRouter(prefix="/vouchers", tags=["vouchers"])


@router.post("/{voucher_id}/claim", response_model=VoucherClaimRead, status_code=status.HTTP_201_CREATED)
async def claim_voucher(
    voucher_id: UUID,
    payload: VoucherClaimRequest,
    session: AsyncSession = Depends(get_session),
) -> VoucherClaimRead:
    member = await session.get(Member, payload.member_id)
    if member is None:
        raise NotFoundError("Member not found")
    claim = await voucher_service.claim_voucher(
        session, member=member, voucher_id=voucher_id, now=datetime.now(timezone.utc)
    )
    return VoucherClaimRead.model_validate(claim)
