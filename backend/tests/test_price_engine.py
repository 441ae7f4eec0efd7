import asyncio
import uuid
from datetime import datetime, timedelta, timezone

from app.models.voucher import Voucher, VoucherClaim, VoucherClaimStatus, VoucherType
from app.services.cart import CartLine, build_snapshot
from app.services.price_engine import compose_pricing
from app.services.promo_engine import PromoSelection, normalize_promotion, select_promotion

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
MEMBER_ID = uuid.uuid4()


def _cart():
    return build_snapshot(
        [
            CartLine(menu_id="nasi-goreng", quantity=2, unit_price=30_000, category="food", name="Nasi Goreng"),
            CartLine(menu_id="es-teh", quantity=4, unit_price=10_000, category="drink", name="Es Teh"),
        ]
    )


def _food_promo(**overrides):
    raw = {
        "id": "food-10",
        "name": "Food 10%",
        "type": "cart_percent",
        "rewards": [{"percent": 10, "applies_to": "category", "applies_to_category": "food"}],
    }
    raw.update(overrides)
    return normalize_promotion(raw)


def _flat_voucher():
    voucher = Voucher(id=uuid.uuid4(), name="Flat 5K", type=VoucherType.amount, amount=5_000, min_transaction=50_000)
    return VoucherClaim(
        id=uuid.uuid4(),
        voucher_id=voucher.id,
        member_id=MEMBER_ID,
        status=VoucherClaimStatus.claimed,
        remaining_use=1,
        claimed_at=NOW - timedelta(days=1),
        voucher=voucher,
    )


def test_reference_scenario_totals_and_ledger() -> None:
    cart = _cart()
    selection = asyncio.run(select_promotion([_food_promo()], cart))
    claim = _flat_voucher()

    result = compose_pricing(
        cart,
        selection=selection,
        claims=[claim],
        requested_claim_ids=[str(claim.id)],
        member_id=str(MEMBER_ID),
        delivery_fee=5_000,
        now=NOW,
    )

    totals = result.totals
    assert totals["items_subtotal"] == 100_000
    assert totals["items_discount"] == 11_000
    assert totals["items_after_discount"] == 89_000
    assert totals["service_fee"] == 1_780
    assert totals["tax"] == 9_790
    assert totals["delivery_fee"] == 5_000
    assert totals["total_before_rounding"] == 105_570
    assert totals["grand_total"] == 105_500
    assert totals["rounding_delta"] == -70

    assert [(e.source, e.amount, e.order_index) for e in result.ledger] == [
        ("promo", 6_000, 0),
        ("voucher", 5_000, 1),
    ]
    for entry in result.ledger:
        assert sum(entry.allocations) == entry.amount
    assert result.ledger[1].allocations == (3_000, 2_000)
    assert result.line_discounts == (9_000, 2_000)
    assert result.chosen_claim_ids == (str(claim.id),)
    assert result.reasons == ()

    snapshot = result.to_snapshot()
    assert snapshot["promo"]["promo_id"] == "food-10"
    assert snapshot["lines"][0]["line_discount"] == 9_000


def test_blocking_promo_rejects_requested_vouchers() -> None:
    cart = _cart()
    selection = asyncio.run(select_promotion([_food_promo(blocks_voucher=True)], cart))
    claim = _flat_voucher()
    result = compose_pricing(
        cart,
        selection=selection,
        claims=[claim],
        requested_claim_ids=[str(claim.id)],
        member_id=str(MEMBER_ID),
        now=NOW,
    )
    assert result.chosen_claim_ids == ()
    assert result.totals["items_discount"] == 6_000
    assert result.reasons == ({"source": "voucher", "reference_id": str(claim.id), "reason": "blocked_by_promo"},)
    assert result.promo_applied["blocks_voucher"] is True


def test_free_item_line_is_appended_at_zero_price() -> None:
    cart = _cart()
    promo = normalize_promotion(
        {"id": "krupuk", "name": "Free krupuk", "type": "free_item", "rewards": [{"free_menu_id": "krupuk", "free_qty": 2}]}
    )
    selection = asyncio.run(select_promotion([promo], cart))
    result = compose_pricing(cart, selection=selection, now=NOW)

    assert len(result.lines) == 3
    free = result.lines[2]
    assert free.is_free and free.unit_price == 0 and free.quantity == 2
    assert result.totals["items_subtotal"] == 100_000
    assert result.ledger == ()
    assert result.promo_applied["free_items"] == [{"menu_id": "krupuk", "quantity": 2}]


def test_substituted_promo_is_reported() -> None:
    cart = _cart()
    selection = PromoSelection(requested_id="missing", rejection_reason="not_found")
    result = compose_pricing(cart, selection=selection, now=NOW)
    assert result.reasons == (
        {"source": "promo", "reference_id": "missing", "reason": "not_found", "replacement_id": None},
    )
    assert result.totals["items_discount"] == 0


def test_discounts_never_exceed_subtotal() -> None:
    cart = build_snapshot([CartLine(menu_id="air", quantity=1, unit_price=4_000)])
    promo = normalize_promotion({"id": "big", "name": "Big", "type": "cart_amount", "rewards": [{"amount": 100_000}]})
    selection = asyncio.run(select_promotion([promo], cart))
    result = compose_pricing(cart, selection=selection, now=NOW)
    assert result.totals["items_discount"] == 4_000
    assert result.totals["grand_total"] == 0
