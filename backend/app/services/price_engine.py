from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.cart import Cart, FulfillmentType
from app.models.member import Member
from app.models.promo import Promotion
from app.models.voucher import VoucherClaim
from app.services import promo_usage
from app.services.cart import CartLine, CartSnapshot, snapshot_from_cart
from app.services.pricing import ChargeBreakdown, compute_charges
from app.services.promo_engine import (
    MemberContext,
    PromoImpact,
    PromoRule,
    PromoSelection,
    evaluate_promotion,
    evaluate_promotions,
    normalize_promotion,
    select_promotion,
)
from app.services.voucher_engine import VoucherOutcome, validate_and_stack


@dataclass(frozen=True)
class LedgerEntry:
    source: str
    reference_id: str
    label: str
    amount: int
    target: str = "items"
    allocations: tuple[int, ...] = ()
    order_index: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "reference_id": self.reference_id,
            "label": self.label,
            "amount": self.amount,
            "target": self.target,
            "allocations": list(self.allocations),
            "order_index": self.order_index,
        }


@dataclass(frozen=True)
class PricingResult:
    lines: tuple[CartLine, ...]
    line_discounts: tuple[int, ...]
    charges: ChargeBreakdown
    ledger: tuple[LedgerEntry, ...]
    chosen_claim_ids: tuple[str, ...]
    promo: PromoSelection
    promo_actions: tuple[dict[str, Any], ...] = ()
    blocks_voucher: bool = False
    reasons: tuple[dict[str, Any], ...] = field(default_factory=tuple)

    @property
    def totals(self) -> dict[str, int]:
        return self.charges.as_dict()

    @property
    def promo_applied(self) -> dict[str, Any] | None:
        if self.promo.rule is None:
            return None
        return {
            "promo_id": self.promo.rule.id,
            "name": self.promo.rule.name,
            "discount": self.promo.impact.total_discount if self.promo.impact else 0,
            "free_items": [
                {"menu_id": item.menu_id, "quantity": item.quantity}
                for item in (self.promo.impact.added_free_items if self.promo.impact else ())
            ],
            "actions": list(self.promo_actions),
            "blocks_voucher": self.blocks_voucher,
            "substituted": self.promo.substituted,
            "requested_id": self.promo.requested_id,
        }

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "lines": [
                {**line.as_dict(), "line_discount": self.line_discounts[idx]} for idx, line in enumerate(self.lines)
            ],
            "totals": self.totals,
            "ledger": [entry.as_dict() for entry in self.ledger],
            "chosen_claim_ids": list(self.chosen_claim_ids),
            "promo": self.promo_applied,
            "reasons": list(self.reasons),
        }


def _pad(values: Sequence[int], size: int) -> tuple[int, ...]:
    padded = list(values)[:size]
    padded.extend([0] * (size - len(padded)))
    return tuple(padded)


def _free_lines(impact: PromoImpact | None) -> list[CartLine]:
    if impact is None:
        return []
    return [
        CartLine(
            menu_id=item.menu_id,
            quantity=item.quantity,
            unit_price=0,
            category=item.category,
            name=item.name or item.menu_id,
            is_free=True,
        )
        for item in impact.added_free_items
    ]


def compose_pricing(
    cart: CartSnapshot,
    *,
    selection: PromoSelection,
    claims: Sequence[VoucherClaim] = (),
    requested_claim_ids: Sequence[str] = (),
    member_id: str | None = None,
    delivery_fee: int = 0,
    now: datetime,
) -> PricingResult:
    """Combine a chosen promotion and voucher claims into final totals.

    The promo is applied first; vouchers are validated against the
    post-promo cart unless the promo blocks them.
    """
    reasons: list[dict[str, Any]] = []
    impact = selection.impact or PromoImpact(line_discounts=tuple(0 for _ in cart.lines))
    rule = selection.rule
    if selection.rejection_reason:
        reasons.append(
            {
                "source": "promo",
                "reference_id": selection.requested_id,
                "reason": selection.rejection_reason,
                "replacement_id": rule.id if (rule and selection.substituted) else None,
            }
        )

    promo_lines = _pad(impact.line_discounts, len(cart.lines))
    post_promo = cart.with_discounts(promo_lines)
    free_lines = _free_lines(impact)
    all_lines = cart.lines + tuple(free_lines)
    size = len(all_lines)

    blocks_voucher = bool(rule and rule.blocks_voucher)
    if blocks_voucher:
        outcome = VoucherOutcome()
        for claim_id in requested_claim_ids:
            reasons.append({"source": "voucher", "reference_id": str(claim_id), "reason": "blocked_by_promo"})
    else:
        outcome = validate_and_stack(
            claims,
            member_id=member_id,
            cart=post_promo,
            delivery_fee=delivery_fee,
            now=now,
            requested_ids=requested_claim_ids,
        )
        reasons.extend(rejection.as_dict() for rejection in outcome.rejections)

    ledger: list[LedgerEntry] = []
    combined = list(_pad(promo_lines, size))
    if rule is not None and impact.total_discount > 0:
        ledger.append(
            LedgerEntry(
                source="promo",
                reference_id=rule.id,
                label=rule.name,
                amount=impact.total_discount,
                allocations=_pad(promo_lines, size),
                order_index=len(ledger),
            )
        )
    for applied in outcome.applied:
        if applied.items_discount > 0:
            allocations = _pad(applied.allocations, size)
            for idx, share in enumerate(allocations):
                combined[idx] += share
            ledger.append(
                LedgerEntry(
                    source="voucher",
                    reference_id=applied.claim_id,
                    label=applied.name,
                    amount=applied.items_discount,
                    allocations=allocations,
                    order_index=len(ledger),
                )
            )
        if applied.shipping_discount > 0:
            ledger.append(
                LedgerEntry(
                    source="voucher",
                    reference_id=applied.claim_id,
                    label=applied.name,
                    amount=applied.shipping_discount,
                    target="delivery",
                    order_index=len(ledger),
                )
            )

    charges = compute_charges(
        items_subtotal=cart.subtotal,
        items_discount=impact.total_discount + outcome.items_discount,
        delivery_fee=delivery_fee,
        shipping_discount=outcome.shipping_discount,
    )
    return PricingResult(
        lines=all_lines,
        line_discounts=tuple(combined),
        charges=charges,
        ledger=tuple(ledger),
        chosen_claim_ids=tuple(outcome.chosen_claim_ids),
        promo=selection,
        promo_actions=tuple(impact.actions_payload()) if rule is not None else (),
        blocks_voucher=blocks_voucher,
        reasons=tuple(reasons),
    )


async def load_member_context(session: AsyncSession, member: Member | None) -> MemberContext | None:
    if member is None:
        return None
    usage = await promo_usage.lifetime_usage_by_member(session, member_id=member.id)
    return MemberContext(
        id=str(member.id),
        level=getattr(member.level, "value", member.level),
        birthday=member.birthday,
        lifetime_usage=usage,
    )


async def load_active_promotions(session: AsyncSession) -> list[PromoRule]:
    stmt = select(Promotion).where(Promotion.is_active.is_(True)).execution_options(populate_existing=True)
    rows = (await session.execute(stmt)).scalars().all()
    return [normalize_promotion(row) for row in rows]


def _parse_ids(raw_ids: Sequence[str | uuid.UUID]) -> list[uuid.UUID]:
    parsed: list[uuid.UUID] = []
    for raw in raw_ids:
        try:
            parsed.append(raw if isinstance(raw, uuid.UUID) else uuid.UUID(str(raw)))
        except ValueError:
            continue
    return parsed


async def load_claims(session: AsyncSession, claim_ids: Sequence[str | uuid.UUID]) -> list[VoucherClaim]:
    ids = _parse_ids(claim_ids)
    if not ids:
        return []
    result = await session.execute(
        select(VoucherClaim).where(VoucherClaim.id.in_(ids)).execution_options(populate_existing=True)
    )
    claims = {claim.id: claim for claim in result.scalars().all()}
    return [claims[claim_id] for claim_id in ids if claim_id in claims]


async def price_cart(
    session: AsyncSession,
    cart: CartSnapshot,
    *,
    member: Member | None = None,
    selected_promo_id: str | None = None,
    voucher_claim_ids: Sequence[str | uuid.UUID] = (),
    delivery_fee: int = 0,
    now: datetime | None = None,
    auto_apply: bool | None = None,
) -> PricingResult:
    now = now or datetime.now(timezone.utc)
    auto_apply = settings.promo_auto_apply if auto_apply is None else auto_apply
    member_ctx = await load_member_context(session, member)
    usage_lookup = promo_usage.PromoUsageLookup(session)
    evaluation = await evaluate_promotions(
        await load_active_promotions(session),
        cart,
        member=member_ctx,
        now=now,
        usage_lookup=usage_lookup,
    )

    async def _reevaluate(promo_id: str) -> tuple[PromoRule | None, str | None]:
        parsed = _parse_ids([promo_id])
        if not parsed:
            return None, "not_found"
        row = (
            await session.execute(
                select(Promotion).where(Promotion.id == parsed[0]).execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if row is None:
            return None, "not_found"
        rule = normalize_promotion(row)
        reason = await evaluate_promotion(rule, cart, member=member_ctx, now=now, usage_lookup=usage_lookup)
        return (None, reason) if reason else (rule, None)

    selection = await select_promotion(
        evaluation.eligible,
        cart,
        requested_id=selected_promo_id,
        auto_apply=auto_apply,
        reevaluate=_reevaluate,
        rejected=evaluation.rejected,
    )
    requested = [str(claim_id) for claim_id in voucher_claim_ids]
    claims = await load_claims(session, requested)
    return compose_pricing(
        cart,
        selection=selection,
        claims=claims,
        requested_claim_ids=requested,
        member_id=str(member.id) if member else None,
        delivery_fee=delivery_fee,
        now=now,
    )


def delivery_fee_for(cart: Cart) -> int:
    if cart.fulfillment_type == FulfillmentType.delivery:
        return int(settings.delivery_flat_fee)
    return 0


async def price_cart_for(
    session: AsyncSession,
    cart: Cart,
    *,
    selected_promo_id: str | None = None,
    voucher_claim_ids: Sequence[str | uuid.UUID] = (),
    now: datetime | None = None,
) -> PricingResult:
    return await price_cart(
        session,
        snapshot_from_cart(cart),
        member=cart.member,
        selected_promo_id=selected_promo_id,
        voucher_claim_ids=voucher_claim_ids,
        delivery_fee=delivery_fee_for(cart),
        now=now,
    )
