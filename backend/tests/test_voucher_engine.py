import uuid
from datetime import datetime, timedelta, timezone

from app.models.voucher import Voucher, VoucherClaim, VoucherClaimStatus, VoucherScope, VoucherType
from app.services.cart import CartLine, build_snapshot
from app.services.voucher_engine import shipping_benefit, validate_and_stack, voucher_terms

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
MEMBER_ID = uuid.uuid4()


def _cart(line_discounts=()):
    snapshot = build_snapshot(
        [
            CartLine(menu_id="nasi-goreng", quantity=2, unit_price=30_000, category="food"),
            CartLine(menu_id="es-teh", quantity=4, unit_price=10_000, category="drink"),
        ]
    )
    return snapshot.with_discounts(line_discounts) if line_discounts else snapshot


def _claim(name: str, *, member_id=MEMBER_ID, remaining_use: int = 1, status=VoucherClaimStatus.claimed, valid_until=None, **voucher_fields):
    voucher = Voucher(id=uuid.uuid4(), name=name, **voucher_fields)
    return VoucherClaim(
        id=uuid.uuid4(),
        voucher_id=voucher.id,
        member_id=member_id,
        status=status,
        remaining_use=remaining_use,
        claimed_at=NOW - timedelta(days=1),
        valid_until=valid_until,
        voucher=voucher,
    )


def test_one_item_voucher_and_one_shipping_voucher_stack() -> None:
    flat = _claim("Flat 5K", type=VoucherType.amount, amount=5_000)
    tenth = _claim("Ten percent", type=VoucherType.percent, percent=10, max_discount=8_000)
    ongkir = _claim("Free delivery", type=VoucherType.shipping)

    outcome = validate_and_stack(
        [flat, tenth, ongkir],
        member_id=str(MEMBER_ID),
        cart=_cart(),
        delivery_fee=5_000,
        now=NOW,
        requested_ids=[str(flat.id), str(tenth.id), str(ongkir.id)],
    )

    assert outcome.chosen_claim_ids == [str(tenth.id), str(ongkir.id)]
    assert outcome.items_discount == 8_000
    assert outcome.shipping_discount == 5_000
    assert [(r.claim_id, r.reason) for r in outcome.rejections] == [(str(flat.id), "stacking_limit")]


def test_second_shipping_voucher_is_rejected() -> None:
    half = _claim("Half delivery", type=VoucherType.shipping, shipping_percent=50)
    capped = _claim("Delivery 4K", type=VoucherType.shipping, shipping_percent=100, shipping_max_amount=4_000)
    outcome = validate_and_stack([half, capped], member_id=str(MEMBER_ID), cart=_cart(), delivery_fee=5_000, now=NOW)
    assert outcome.chosen_claim_ids == [str(capped.id)]
    assert outcome.shipping_discount == 4_000
    assert outcome.rejections[0].reason == "shipping_stacking_limit"


def test_benefit_uses_post_promo_values_and_allocates_over_original() -> None:
    scoped = _claim(
        "Food 50%",
        type=VoucherType.percent,
        percent=50,
        applies_to=VoucherScope.category,
        applies_to_categories=["food"],
    )
    outcome = validate_and_stack(
        [scoped], member_id=str(MEMBER_ID), cart=_cart(line_discounts=(6_000, 0)), delivery_fee=0, now=NOW
    )
    applied = outcome.applied[0]
    assert applied.items_discount == 27_000
    assert applied.allocations == (27_000, 0)


def test_rejection_reasons() -> None:
    stranger = _claim("Not mine", member_id=uuid.uuid4(), type=VoucherType.amount, amount=1_000)
    used = _claim("Used", status=VoucherClaimStatus.used, remaining_use=0, type=VoucherType.amount, amount=1_000)
    lapsed = _claim("Lapsed", valid_until=NOW - timedelta(minutes=1), type=VoucherType.amount, amount=1_000)
    ended = _claim("Ended", ends_at=NOW - timedelta(days=1), type=VoucherType.amount, amount=1_000)
    big_spend = _claim("Big spend", min_transaction=200_000, type=VoucherType.amount, amount=1_000)
    disabled = _claim("Disabled", is_active=False, type=VoucherType.amount, amount=1_000)
    missing = str(uuid.uuid4())

    outcome = validate_and_stack(
        [stranger, used, lapsed, ended, big_spend, disabled],
        member_id=str(MEMBER_ID),
        cart=_cart(),
        delivery_fee=0,
        now=NOW,
        requested_ids=[missing],
    )
    reasons = {r.claim_id: r.reason for r in outcome.rejections}
    assert outcome.applied == []
    assert reasons == {
        missing: "not_found",
        str(stranger.id): "not_owner",
        str(used.id): "not_available",
        str(lapsed.id): "claim_expired",
        str(ended.id): "expired",
        str(big_spend.id): "min_transaction_not_met",
        str(disabled.id): "voucher_inactive",
    }


def test_guest_cannot_use_vouchers() -> None:
    claim = _claim("Flat", type=VoucherType.amount, amount=1_000)
    outcome = validate_and_stack([claim], member_id=None, cart=_cart(), delivery_fee=0, now=NOW)
    assert outcome.rejections[0].reason == "member_required"


def test_shipping_benefit_amount_form_and_cap() -> None:
    fixed = voucher_terms(_claim("Ongkir 3K", type=VoucherType.shipping, amount=3_000))
    assert shipping_benefit(fixed, 5_000) == 3_000
    assert shipping_benefit(fixed, 2_000) == 2_000
    assert shipping_benefit(fixed, 0) == 0


def test_claims_that_discount_nothing_are_not_chosen() -> None:
    ongkir = _claim("Free delivery", type=VoucherType.shipping)
    coffee = _claim(
        "Coffee 20%",
        type=VoucherType.percent,
        percent=20,
        applies_to=VoucherScope.category,
        applies_to_categories=["coffee"],
    )
    flat = _claim("Flat 2K", type=VoucherType.amount, amount=2_000)

    # Dine-in: no delivery fee for the shipping voucher to cover.
    outcome = validate_and_stack(
        [ongkir, coffee, flat], member_id=str(MEMBER_ID), cart=_cart(), delivery_fee=0, now=NOW
    )

    assert outcome.chosen_claim_ids == [str(flat.id)]
    assert outcome.shipping_discount == 0
    assert {r.claim_id: r.reason for r in outcome.rejections} == {
        str(ongkir.id): "no_benefit",
        str(coffee.id): "no_benefit",
    }
