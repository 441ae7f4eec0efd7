from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_DOWN
from typing import Any, Sequence

from app.models.voucher import VoucherClaim, VoucherClaimStatus, VoucherScope, VoucherType, VoucherVisibility
from app.services.cart import CartLine, CartSnapshot
from app.services.discounts import distribute_discount
from app.services.promo_engine import as_utc


@dataclass(frozen=True)
class VoucherTerms:
    id: str
    name: str
    type: str
    percent: int = 0
    amount: int = 0
    max_discount: int | None = None
    shipping_percent: int | None = None
    shipping_max_amount: int = 0
    applies_to: str = "all"
    menu_ids: frozenset[str] = frozenset()
    categories: frozenset[str] = frozenset()
    visibility: str = "periodic"
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    min_transaction: int = 0
    is_active: bool = True
    is_deleted: bool = False

    @property
    def is_shipping(self) -> bool:
        return self.type == VoucherType.shipping.value

    def in_scope(self, line: CartLine) -> bool:
        if self.applies_to == VoucherScope.menus.value:
            return str(line.menu_id) in self.menu_ids
        if self.applies_to == VoucherScope.category.value:
            return (line.category or "") in self.categories
        return True


@dataclass(frozen=True)
class VoucherRejection:
    claim_id: str
    reason: str
    voucher_name: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"source": "voucher", "reference_id": self.claim_id, "name": self.voucher_name, "reason": self.reason}


@dataclass(frozen=True)
class AppliedVoucher:
    claim_id: str
    voucher_id: str
    name: str
    type: str
    items_discount: int = 0
    shipping_discount: int = 0
    allocations: tuple[int, ...] = ()


@dataclass
class VoucherOutcome:
    applied: list[AppliedVoucher] = field(default_factory=list)
    rejections: list[VoucherRejection] = field(default_factory=list)

    @property
    def chosen_claim_ids(self) -> list[str]:
        return [entry.claim_id for entry in self.applied]

    @property
    def items_discount(self) -> int:
        return sum(entry.items_discount for entry in self.applied)

    @property
    def shipping_discount(self) -> int:
        return sum(entry.shipping_discount for entry in self.applied)


def _enum_value(value: Any, default: str) -> str:
    if value is None:
        return default
    return str(getattr(value, "value", value))


def voucher_terms(claim: VoucherClaim) -> VoucherTerms:
    voucher = claim.voucher
    return VoucherTerms(
        id=str(voucher.id),
        name=voucher.name,
        type=_enum_value(voucher.type, VoucherType.amount.value),
        percent=int(voucher.percent or 0),
        amount=int(voucher.amount or 0),
        max_discount=int(voucher.max_discount) if voucher.max_discount else None,
        shipping_percent=int(voucher.shipping_percent) if voucher.shipping_percent is not None else None,
        shipping_max_amount=int(voucher.shipping_max_amount or 0),
        applies_to=_enum_value(voucher.applies_to, VoucherScope.all.value),
        menu_ids=frozenset(str(v) for v in (voucher.applies_to_menu_ids or [])),
        categories=frozenset(str(v) for v in (voucher.applies_to_categories or [])),
        visibility=_enum_value(voucher.visibility, VoucherVisibility.periodic.value),
        starts_at=as_utc(voucher.starts_at) if voucher.starts_at else None,
        ends_at=as_utc(voucher.ends_at) if voucher.ends_at else None,
        min_transaction=int(voucher.min_transaction or 0),
        is_active=voucher.is_active is not False,
        is_deleted=bool(voucher.is_deleted),
    )


def _claim_reason(claim: VoucherClaim, terms: VoucherTerms, *, member_id: str | None, cart: CartSnapshot, now: datetime) -> str | None:
    if member_id is None:
        return "member_required"
    if str(claim.member_id) != str(member_id):
        return "not_owner"
    if terms.is_deleted or not terms.is_active:
        return "voucher_inactive"
    if terms.visibility == VoucherVisibility.periodic.value:
        if terms.starts_at and now < terms.starts_at:
            return "not_started"
        if terms.ends_at and now > terms.ends_at:
            return "expired"
    if claim.valid_until and now > as_utc(claim.valid_until):
        return "claim_expired"
    if _enum_value(claim.status, VoucherClaimStatus.claimed.value) != VoucherClaimStatus.claimed.value:
        return "not_available"
    if int(claim.remaining_use or 0) < 1:
        return "not_available"
    if terms.min_transaction > cart.net_subtotal:
        return "min_transaction_not_met"
    return None


def _floor_percent(base: int, percent: int) -> int:
    return int((Decimal(base) * Decimal(percent) / Decimal("100")).quantize(Decimal("1"), rounding=ROUND_DOWN))


def items_benefit(terms: VoucherTerms, cart: CartSnapshot) -> int:
    net = cart.net_values()
    scoped = sum(value for value, line in zip(net, cart.lines) if terms.in_scope(line))
    if scoped <= 0:
        return 0
    if terms.type == VoucherType.percent.value:
        amount = _floor_percent(scoped, terms.percent)
        if terms.max_discount:
            amount = min(amount, terms.max_discount)
        return max(0, amount)
    if terms.type == VoucherType.amount.value:
        return max(0, min(terms.amount, scoped))
    return 0


def shipping_benefit(terms: VoucherTerms, delivery_fee: int) -> int:
    if not terms.is_shipping or delivery_fee <= 0:
        return 0
    if terms.shipping_percent is None and terms.amount > 0:
        amount = terms.amount
    else:
        percent = 100 if terms.shipping_percent is None else terms.shipping_percent
        amount = _floor_percent(delivery_fee, percent)
    if terms.shipping_max_amount > 0:
        amount = min(amount, terms.shipping_max_amount)
    return max(0, min(amount, delivery_fee))


def _pick_best(candidates: list[tuple[VoucherClaim, VoucherTerms, int]]) -> tuple[VoucherClaim, VoucherTerms, int] | None:
    best = None
    for candidate in candidates:
        if best is None or candidate[2] > best[2]:
            best = candidate
    return best


def validate_and_stack(
    claims: Sequence[VoucherClaim],
    *,
    member_id: str | None,
    cart: CartSnapshot,
    delivery_fee: int,
    now: datetime,
    requested_ids: Sequence[str] = (),
) -> VoucherOutcome:
    """Filter usable claims and enforce the stacking policy.

    At most one non-shipping voucher (the one with the largest item benefit)
    and one shipping voucher (largest delivery benefit) are kept. Item
    benefits are computed on the post-promo line values, their allocations
    on the original line values.
    """
    now = as_utc(now)
    outcome = VoucherOutcome()
    loaded = {str(claim.id) for claim in claims}
    for requested in requested_ids:
        if str(requested) not in loaded:
            outcome.rejections.append(VoucherRejection(claim_id=str(requested), reason="not_found"))

    non_shipping: list[tuple[VoucherClaim, VoucherTerms, int]] = []
    shipping: list[tuple[VoucherClaim, VoucherTerms, int]] = []
    for claim in claims:
        terms = voucher_terms(claim)
        reason = _claim_reason(claim, terms, member_id=member_id, cart=cart, now=now)
        if reason:
            outcome.rejections.append(VoucherRejection(claim_id=str(claim.id), reason=reason, voucher_name=terms.name))
            continue
        benefit = shipping_benefit(terms, delivery_fee) if terms.is_shipping else items_benefit(terms, cart)
        # A claim that would discount nothing is never spent.
        if benefit <= 0:
            outcome.rejections.append(VoucherRejection(claim_id=str(claim.id), reason="no_benefit", voucher_name=terms.name))
            continue
        (shipping if terms.is_shipping else non_shipping).append((claim, terms, benefit))

    original_values = [line.value for line in cart.lines]
    best_items = _pick_best(non_shipping)
    if best_items is not None:
        claim, terms, amount = best_items
        mask = [terms.in_scope(line) for line in cart.lines]
        allocations = distribute_discount([v if hit else 0 for v, hit in zip(original_values, mask)], amount)
        outcome.applied.append(
            AppliedVoucher(
                claim_id=str(claim.id),
                voucher_id=terms.id,
                name=terms.name,
                type=terms.type,
                items_discount=sum(allocations),
                allocations=tuple(allocations),
            )
        )
        for other, other_terms, _ in non_shipping:
            if other is not claim:
                outcome.rejections.append(
                    VoucherRejection(claim_id=str(other.id), reason="stacking_limit", voucher_name=other_terms.name)
                )

    best_shipping = _pick_best(shipping)
    if best_shipping is not None:
        claim, terms, amount = best_shipping
        outcome.applied.append(
            AppliedVoucher(
                claim_id=str(claim.id),
                voucher_id=terms.id,
                name=terms.name,
                type=terms.type,
                shipping_discount=amount,
            )
        )
        for other, other_terms, _ in shipping:
            if other is not claim:
                outcome.rejections.append(
                    VoucherRejection(claim_id=str(other.id), reason="shipping_stacking_limit", voucher_name=other_terms.name)
                )
    return outcome
