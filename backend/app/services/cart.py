from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Iterable
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from app.core.errors import NotFoundError, ValidationError
from app.models.cart import Cart

MAX_LINE_QUANTITY = 999


@dataclass(frozen=True)
class CartLine:
    menu_id: str
    quantity: int
    unit_price: int
    addons_total: int = 0
    category: str | None = None
    name: str = ""
    is_free: bool = False

    @property
    def value(self) -> int:
        return (self.unit_price + self.addons_total) * self.quantity

    def as_dict(self) -> dict:
        return {
            "menu_id": self.menu_id,
            "name": self.name,
            "category": self.category,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "addons_total": self.addons_total,
            "is_free": self.is_free,
        }


@dataclass(frozen=True)
class CartSnapshot:
    """Immutable view of a cart used as pricing input.

    ``line_discounts`` is empty for a fresh snapshot and carries the per-line
    promo allocation once a promotion has been applied.
    """

    lines: tuple[CartLine, ...]
    line_discounts: tuple[int, ...] = field(default_factory=tuple)

    @property
    def subtotal(self) -> int:
        return sum(line.value for line in self.lines)

    @property
    def total_quantity(self) -> int:
        return sum(line.quantity for line in self.lines if not line.is_free)

    def discount_for(self, idx: int) -> int:
        if idx < len(self.line_discounts):
            return self.line_discounts[idx]
        return 0

    def net_values(self) -> list[int]:
        return [max(0, line.value - self.discount_for(idx)) for idx, line in enumerate(self.lines)]

    @property
    def net_subtotal(self) -> int:
        return sum(self.net_values())

    def with_discounts(self, discounts: Iterable[int]) -> "CartSnapshot":
        return replace(self, line_discounts=tuple(int(v) for v in discounts))

    def with_free_lines(self, free_lines: Iterable[CartLine]) -> "CartSnapshot":
        extra = tuple(free_lines)
        if not extra:
            return self
        discounts = list(self.line_discounts) + [0] * (len(self.lines) - len(self.line_discounts))
        discounts.extend(0 for _ in extra)
        return CartSnapshot(lines=self.lines + extra, line_discounts=tuple(discounts))


def _validate_line(line: CartLine) -> None:
    if not (line.menu_id or "").strip():
        raise ValidationError("Cart line is missing menu_id")
    if line.quantity < 1 or line.quantity > MAX_LINE_QUANTITY:
        raise ValidationError(f"Invalid quantity {line.quantity} for {line.menu_id}")
    if line.unit_price < 0 or line.addons_total < 0:
        raise ValidationError(f"Negative price for {line.menu_id}")


def build_snapshot(lines: Iterable[CartLine]) -> CartSnapshot:
    snapshot = CartSnapshot(lines=tuple(lines))
    for line in snapshot.lines:
        _validate_line(line)
    return snapshot


def snapshot_from_cart(cart: Cart) -> CartSnapshot:
    if not cart.items:
        raise ValidationError("Cart is empty", code="cart_empty")
    return build_snapshot(
        CartLine(
            menu_id=str(item.menu_id),
            quantity=int(item.quantity or 0),
            unit_price=int(item.unit_price or 0),
            addons_total=int(item.addons_total or 0),
            category=item.category,
            name=item.name,
        )
        for item in cart.items
    )


async def get_cart(session: AsyncSession, cart_id: UUID) -> Cart:
    result = await session.execute(
        select(Cart)
        .options(selectinload(Cart.items), selectinload(Cart.member))
        .where(Cart.id == cart_id)
        .execution_options(populate_existing=True)
    )
    cart = result.scalar_one_or_none()
    if cart is None:
        raise NotFoundError("Cart not found")
    return cart
