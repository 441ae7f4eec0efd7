from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConflictError, EligibilityError, NotFoundError
from app.models.member import Member
from app.models.order import Order, OrderEvent
from app.models.voucher import (
    Voucher,
    VoucherClaim,
    VoucherClaimEvent,
    VoucherClaimStatus,
    VoucherVisibility,
)
from app.services.promo_engine import as_utc

logger = logging.getLogger(__name__)

CLAIM_ACTION = "CLAIM"
USE_ACTION = "USE"
RELEASE_ACTION = "RELEASE"


def _claim_ids(order: Order) -> list[uuid.UUID]:
    return [uuid.UUID(str(raw)) for raw in (order.voucher_claim_ids or [])]


async def _has_event(session: AsyncSession, *, claim_id: uuid.UUID, action: str, ref: str) -> bool:
    result = await session.execute(
        select(func.count())
        .select_from(VoucherClaimEvent)
        .where(VoucherClaimEvent.claim_id == claim_id, VoucherClaimEvent.action == action, VoucherClaimEvent.ref == ref)
    )
    return int(result.scalar_one()) > 0


async def consume_claims(session: AsyncSession, *, order: Order) -> list[uuid.UUID]:
    """Use one unit of every voucher claim chosen for ``order``.

    Each claim is decremented with a guarded UPDATE so two orders can never
    spend the same last use; a claim flips to ``used`` when its last use goes.
    Raises ``ConflictError`` if a claim is no longer available.
    """
    consumed: list[uuid.UUID] = []
    ref = str(order.id)
    for claim_id in _claim_ids(order):
        if await _has_event(session, claim_id=claim_id, action=USE_ACTION, ref=ref):
            continue
        result = await session.execute(
            update(VoucherClaim)
            .where(
                VoucherClaim.id == claim_id,
                VoucherClaim.member_id == order.member_id,
                VoucherClaim.status == VoucherClaimStatus.claimed,
                VoucherClaim.remaining_use > 0,
            )
            .values(
                remaining_use=VoucherClaim.remaining_use - 1,
                status=case(
                    (VoucherClaim.remaining_use <= 1, VoucherClaimStatus.used.value),
                    else_=VoucherClaim.status,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConflictError(f"Voucher claim {claim_id} is no longer available", code="voucher_unavailable")
        session.add(VoucherClaimEvent(claim_id=claim_id, action=USE_ACTION, ref=ref, note=order.transaction_code))
        consumed.append(claim_id)
    if consumed:
        session.add(
            OrderEvent(order_id=order.id, event="vouchers_consumed", data={"claim_ids": [str(c) for c in consumed]})
        )
    return consumed


async def release_claims(session: AsyncSession, *, order: Order) -> list[uuid.UUID]:
    """Give back the uses taken by ``consume_claims`` for a cancelled order."""
    released: list[uuid.UUID] = []
    ref = str(order.id)
    for claim_id in _claim_ids(order):
        if not await _has_event(session, claim_id=claim_id, action=USE_ACTION, ref=ref):
            continue
        if await _has_event(session, claim_id=claim_id, action=RELEASE_ACTION, ref=ref):
            continue
        result = await session.execute(
            update(VoucherClaim)
            .where(
                VoucherClaim.id == claim_id,
                VoucherClaim.status.in_([VoucherClaimStatus.claimed, VoucherClaimStatus.used]),
            )
            .values(remaining_use=VoucherClaim.remaining_use + 1, status=VoucherClaimStatus.claimed)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning("voucher_release_skipped", extra={"order_id": ref, "claim_id": str(claim_id)})
            continue
        session.add(VoucherClaimEvent(claim_id=claim_id, action=RELEASE_ACTION, ref=ref, note=order.transaction_code))
        released.append(claim_id)
    if released:
        session.add(
            OrderEvent(order_id=order.id, event="vouchers_released", data={"claim_ids": [str(c) for c in released]})
        )
    return released


def _claim_window_reason(voucher: Voucher, now: datetime) -> str | None:
    if voucher.is_deleted or not voucher.is_active:
        return "voucher_inactive"
    if voucher.starts_at and now < as_utc(voucher.starts_at):
        return "not_started"
    if voucher.ends_at and now > as_utc(voucher.ends_at):
        return "expired"
    return None


def _audience_reason(voucher: Voucher, member: Member) -> str | None:
    member_id = str(member.id)
    include = {str(v) for v in (voucher.include_member_ids or [])}
    exclude = {str(v) for v in (voucher.exclude_member_ids or [])}
    if include and member_id not in include:
        return "not_targeted"
    if member_id in exclude:
        return "excluded"
    return None


async def claim_voucher(session: AsyncSession, *, member: Member, voucher_id: uuid.UUID, now: datetime) -> VoucherClaim:
    voucher = await session.get(Voucher, voucher_id)
    if voucher is None:
        raise NotFoundError("Voucher not found")
    now = as_utc(now)
    reason = _claim_window_reason(voucher, now) or _audience_reason(voucher, member)
    if reason:
        raise EligibilityError("Voucher cannot be claimed", code=reason)

    limit = int(voucher.per_member_claim_limit or 0)
    if limit > 0:
        claimed = await session.execute(
            select(func.count())
            .select_from(VoucherClaim)
            .where(VoucherClaim.voucher_id == voucher.id, VoucherClaim.member_id == member.id)
        )
        if int(claimed.scalar_one()) >= limit:
            raise EligibilityError("Claim limit reached", code="claim_limit_reached")

    if voucher.visibility == VoucherVisibility.global_stock:
        taken = await session.execute(
            update(Voucher)
            .where(Voucher.id == voucher.id, Voucher.global_stock > 0)
            .values(global_stock=Voucher.global_stock - 1)
            .execution_options(synchronize_session=False)
        )
        if taken.rowcount == 0:
            await session.rollback()
            raise EligibilityError("Voucher is sold out", code="sold_out")

    cost = int(voucher.required_points or 0)
    if cost > 0:
        paid = await session.execute(
            update(Member)
            .where(Member.id == member.id, Member.points >= cost)
            .values(points=Member.points - cost)
            .execution_options(synchronize_session=False)
        )
        if paid.rowcount == 0:
            await session.rollback()
            raise EligibilityError("Not enough points", code="insufficient_points")

    valid_days = int(voucher.use_valid_days_after_claim or 0)
    valid_until = now + timedelta(days=valid_days) if valid_days > 0 else voucher.ends_at
    claim = VoucherClaim(
        voucher_id=voucher.id,
        member_id=member.id,
        status=VoucherClaimStatus.claimed,
        remaining_use=max(1, int(voucher.max_use_per_claim or 1)),
        claimed_at=now,
        valid_until=valid_until,
        spent_points=cost,
    )
    session.add(claim)
    await session.flush()
    session.add(VoucherClaimEvent(claim_id=claim.id, action=CLAIM_ACTION, note=voucher.name))
    await session.commit()
    logger.info("voucher_claimed", extra={"voucher_id": str(voucher.id), "member_id": str(member.id)})
    return claim
