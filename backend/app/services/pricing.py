from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Literal

from app.core.config import settings


MONEY_QUANT = Decimal("1")

MoneyRounding = Literal["half_up", "down"]


_ROUNDING_MAP: dict[str, str] = {
    "half_up": ROUND_HALF_UP,
    "down": ROUND_DOWN,
}


def quantize_money(value: Decimal | int, *, rounding: MoneyRounding = "half_up") -> int:
    """Quantize to whole rupiah."""
    mode = _ROUNDING_MAP.get(str(rounding), ROUND_HALF_UP)
    return int(Decimal(value).quantize(MONEY_QUANT, rounding=mode))


def normalize_rate(rate: Decimal | float | int | str | None) -> Decimal:
    """Accept either a fraction (0.11) or a percentage (11) and return the fraction."""
    if rate is None:
        return Decimal("0")
    value = Decimal(str(rate))
    if value <= 0:
        return Decimal("0")
    if value > 1:
        value = value / Decimal("100")
    return value


def round_currency(value: int, *, unit: int) -> int:
    """Snap ``value`` to the cash denomination ``unit``.

    A remainder up to a quarter of the unit rounds down, above three quarters
    rounds up, and anything in between lands on the half unit.
    """
    value = int(value)
    unit = int(unit)
    if unit <= 1:
        return value
    base = (value // unit) * unit
    remainder = value - base
    if remainder * 4 <= unit:
        return base
    if remainder * 4 > unit * 3:
        return base + unit
    return base + unit // 2


@dataclass(frozen=True)
class ChargeBreakdown:
    items_subtotal: int
    items_discount: int
    items_after_discount: int
    delivery_fee: int
    shipping_discount: int
    delivery_after_discount: int
    service_fee: int
    tax: int
    total_before_rounding: int
    rounding_delta: int
    grand_total: int

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def compute_service_fee(*, items_after_discount: int, rate: Decimal) -> int:
    rate = normalize_rate(rate)
    if rate <= 0 or items_after_discount <= 0:
        return 0
    return quantize_money(Decimal(items_after_discount) * rate)


def compute_tax(
    *,
    items_after_discount: int,
    delivery_after_discount: int,
    rate: Decimal,
    include_delivery: bool,
) -> int:
    rate = normalize_rate(rate)
    base = items_after_discount
    if include_delivery:
        base += delivery_after_discount
    if rate <= 0 or base <= 0:
        return 0
    return quantize_money(Decimal(base) * rate)


def compute_charges(
    *,
    items_subtotal: int,
    items_discount: int,
    delivery_fee: int = 0,
    shipping_discount: int = 0,
    service_fee_rate: Decimal | None = None,
    tax_rate: Decimal | None = None,
    rounding_unit: int | None = None,
    tax_base_includes_delivery: bool | None = None,
) -> ChargeBreakdown:
    """Derive fees, tax and the rounded payable amount.

    Every pricing call site goes through this function so the tax base
    convention stays a single deployment-wide setting.
    """
    service_fee_rate = settings.service_fee_rate if service_fee_rate is None else service_fee_rate
    tax_rate = settings.tax_rate if tax_rate is None else tax_rate
    rounding_unit = settings.rounding_unit if rounding_unit is None else rounding_unit
    if tax_base_includes_delivery is None:
        tax_base_includes_delivery = settings.tax_base_includes_delivery

    items_subtotal = max(0, int(items_subtotal))
    items_discount = min(max(0, int(items_discount)), items_subtotal)
    items_after_discount = items_subtotal - items_discount
    delivery_fee = max(0, int(delivery_fee))
    shipping_discount = min(max(0, int(shipping_discount)), delivery_fee)
    delivery_after_discount = delivery_fee - shipping_discount

    service_fee = compute_service_fee(items_after_discount=items_after_discount, rate=service_fee_rate)
    tax = compute_tax(
        items_after_discount=items_after_discount,
        delivery_after_discount=delivery_after_discount,
        rate=tax_rate,
        include_delivery=bool(tax_base_includes_delivery),
    )
    total_before_rounding = items_after_discount + service_fee + delivery_after_discount + tax
    grand_total = max(0, round_currency(total_before_rounding, unit=rounding_unit))
    return ChargeBreakdown(
        items_subtotal=items_subtotal,
        items_discount=items_discount,
        items_after_discount=items_after_discount,
        delivery_fee=delivery_fee,
        shipping_discount=shipping_discount,
        delivery_after_discount=delivery_after_discount,
        service_fee=service_fee,
        tax=tax,
        total_before_rounding=total_before_rounding,
        rounding_delta=grand_total - total_before_rounding,
        grand_total=grand_total,
    )
