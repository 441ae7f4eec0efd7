from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Sequence


def distribute_discount(values: Sequence[int], amount: int) -> list[int]:
    """Spread ``amount`` over ``values`` proportionally to each value.

    Shares are rounded half-up; whatever rounding leaves over (or overshoots)
    is settled on the first positive line, spilling to the following lines
    only when a line cannot absorb it. Zero-value lines always get zero, no
    line is ever allocated more than its own value, and the allocations sum to
    ``min(amount, sum(values))`` exactly.
    """
    line_values = [max(0, int(value)) for value in values]
    total = sum(line_values)
    target = min(max(0, int(amount)), total)
    if total <= 0 or target <= 0:
        return [0] * len(line_values)

    shares: list[int] = []
    for value in line_values:
        raw = Decimal(value) * Decimal(target) / Decimal(total)
        shares.append(min(value, int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))))

    remainder = target - sum(shares)
    for idx, value in enumerate(line_values):
        if remainder == 0:
            break
        if value <= 0:
            continue
        if remainder > 0:
            step = min(remainder, value - shares[idx])
        else:
            step = -min(-remainder, shares[idx])
        shares[idx] += step
        remainder -= step
    return shares
