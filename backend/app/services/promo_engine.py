from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, ROUND_DOWN
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol, Sequence, Union

from app.core.errors import ConfigurationError
from app.models.promo import Promotion
from app.services.cart import CartLine, CartSnapshot
from app.services.discounts import distribute_discount

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_FREE_ITEM_TYPES = {"free_item", "buy_x_get_y", "bundling", "composite"}


# --- canonical schema ------------------------------------------------------


@dataclass(frozen=True)
class ItemRequirement:
    menu_id: str | None = None
    category: str | None = None
    quantity: int = 1

    def matches(self, line: CartLine) -> bool:
        if self.menu_id:
            return str(line.menu_id) == self.menu_id
        if self.category:
            return (line.category or "") == self.category
        return False


@dataclass(frozen=True)
class PromoConditions:
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    audience: str = "all"
    member_levels: tuple[str, ...] = ()
    birthday_window_days: int = 0
    min_subtotal: int = 0
    min_quantity: int = 0
    items: tuple[ItemRequirement, ...] = ()
    usage_window_days: int = 0
    window_member_limit: int = 0
    window_global_limit: int = 0

    @property
    def needs_usage_lookup(self) -> bool:
        return self.usage_window_days > 0 and (self.window_member_limit > 0 or self.window_global_limit > 0)


@dataclass(frozen=True)
class Scope:
    mode: str = "all"
    menu_id: str | None = None
    category: str | None = None

    def matches(self, line: CartLine) -> bool:
        if self.mode == "menu":
            return str(line.menu_id) == (self.menu_id or "")
        if self.mode == "category":
            return (line.category or "") == (self.category or "")
        return True

    @property
    def is_whole_cart(self) -> bool:
        return self.mode == "all"


@dataclass(frozen=True)
class FreeItem:
    menu_id: str
    quantity: int = 1
    name: str | None = None
    category: str | None = None


@dataclass(frozen=True)
class PercentDiscount:
    percent: Decimal
    scope: Scope = Scope()
    max_amount: int | None = None


@dataclass(frozen=True)
class AmountDiscount:
    amount: int
    scope: Scope = Scope()


@dataclass(frozen=True)
class FixedPriceBundle:
    price: int
    group: ItemRequirement


@dataclass(frozen=True)
class AwardPoints:
    fixed: int | None = None
    percent: Decimal | None = None


@dataclass(frozen=True)
class GrantMembership:
    pass


PromoEffect = Union[FreeItem, PercentDiscount, AmountDiscount, FixedPriceBundle, AwardPoints, GrantMembership]


@dataclass(frozen=True)
class PromoRule:
    id: str
    name: str
    type: str
    conditions: PromoConditions
    effects: tuple[PromoEffect, ...]
    auto_apply: bool = True
    blocks_voucher: bool = False
    priority: int = 0
    per_member_limit: int | None = None
    global_stock: int | None = None
    is_active: bool = True
    created_at: datetime | None = None


@dataclass(frozen=True)
class MemberContext:
    id: str
    level: str | None = None
    birthday: date | None = None
    lifetime_usage: Mapping[str, int] = field(default_factory=dict)


class UsageLookup(Protocol):
    async def count_member_uses(self, promo_id: str, member_id: str, since: datetime) -> int: ...

    async def count_global_uses(self, promo_id: str, since: datetime) -> int: ...


# --- boundary normalization ------------------------------------------------


def _pick(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(Decimal(str(value)))
    except Exception:
        return None


def _as_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except Exception:
        return None


def _as_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    return as_utc(parsed)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _requirement(data: Mapping[str, Any]) -> ItemRequirement | None:
    menu_id = _pick(data, "menu_id", "menuId", "menu")
    category = _pick(data, "category")
    if menu_id is None and category is None:
        return None
    quantity = _as_int(_pick(data, "quantity", "qty")) or 1
    return ItemRequirement(
        menu_id=str(menu_id) if menu_id is not None else None,
        category=str(category) if category is not None else None,
        quantity=max(1, quantity),
    )


def _normalize_conditions(raw: Mapping[str, Any] | None) -> PromoConditions:
    data = dict(raw or {})
    items = tuple(
        req for req in (_requirement(entry) for entry in data.get("items") or [] if isinstance(entry, Mapping)) if req
    )
    levels = _pick(data, "member_levels", "memberLevels") or ()
    return PromoConditions(
        starts_at=_as_datetime(_pick(data, "starts_at", "start_at", "startAt")),
        ends_at=_as_datetime(_pick(data, "ends_at", "end_at", "endAt")),
        audience=str(_pick(data, "audience") or "all"),
        member_levels=tuple(str(level) for level in levels),
        birthday_window_days=_as_int(_pick(data, "birthday_window_days", "birthdayWindowDays")) or 0,
        min_subtotal=_as_int(_pick(data, "min_subtotal", "minSubtotal", "min_total", "minTotal")) or 0,
        min_quantity=_as_int(_pick(data, "min_quantity", "min_qty", "minQty")) or 0,
        items=items,
        usage_window_days=_as_int(_pick(data, "usage_window_days", "usageWindowDays")) or 0,
        window_member_limit=_as_int(
            _pick(data, "window_member_limit", "perMemberWindowLimit", "per_member_window_limit")
        )
        or 0,
        window_global_limit=_as_int(_pick(data, "window_global_limit", "globalWindowLimit", "global_window_limit"))
        or 0,
    )


def _scope(data: Mapping[str, Any]) -> Scope:
    mode = str(_pick(data, "applies_to", "appliesTo") or "all").lower()
    if mode in {"menu", "menus"}:
        menu_id = _pick(data, "applies_to_menu_id", "appliesToMenuId")
        return Scope(mode="menu", menu_id=str(menu_id) if menu_id is not None else None)
    if mode == "category":
        category = _pick(data, "applies_to_category", "appliesToCategory")
        return Scope(mode="category", category=str(category) if category is not None else None)
    return Scope()


def _normalize_reward(promo_type: str, data: Mapping[str, Any], conditions: PromoConditions) -> list[PromoEffect]:
    effects: list[PromoEffect] = []
    scope = _scope(data)

    free_keys = ("free_menu_id", "freeMenuId")
    if promo_type in _FREE_ITEM_TYPES:
        free_keys += ("menu_id", "menuId")
    free_menu = _pick(data, *free_keys)
    if free_menu is not None:
        effects.append(
            FreeItem(
                menu_id=str(free_menu),
                quantity=max(1, _as_int(_pick(data, "free_qty", "freeQty", "qty", "quantity")) or 1),
                name=_pick(data, "free_name", "freeName", "name"),
                category=_pick(data, "free_category", "freeCategory"),
            )
        )

    percent = _as_decimal(_pick(data, "percent", "discount_percent", "discountPercent", "percentage"))
    if percent is not None:
        cap = _as_int(_pick(data, "max_discount_amount", "maxDiscountAmount", "max_discount", "maxDiscount"))
        effects.append(
            PercentDiscount(
                percent=min(Decimal("100"), max(Decimal("0"), percent)),
                scope=scope,
                max_amount=cap if cap and cap > 0 else None,
            )
        )

    amount = _as_int(_pick(data, "amount", "discount_amount", "discountAmount"))
    if amount is not None:
        effects.append(AmountDiscount(amount=max(0, amount), scope=scope))

    bundle_price = _as_int(_pick(data, "fixed_price_bundle", "fixedPriceBundle", "bundle_price", "bundlePrice"))
    if bundle_price is not None:
        group = _requirement(data.get("group") or {}) if isinstance(data.get("group"), Mapping) else None
        if group is None and conditions.items:
            group = conditions.items[0]
        if group is not None:
            effects.append(FixedPriceBundle(price=max(0, bundle_price), group=group))

    points_fixed = _as_int(_pick(data, "points_fixed", "pointsFixed", "points"))
    points_percent = _as_decimal(_pick(data, "points_percent", "pointsPercent"))
    if points_fixed is not None:
        effects.append(AwardPoints(fixed=max(0, points_fixed)))
    elif points_percent is not None:
        effects.append(AwardPoints(percent=max(Decimal("0"), points_percent)))

    if bool(_pick(data, "grant_membership", "grantMembership")) or (promo_type == "grant_membership" and not effects):
        effects.append(GrantMembership())
    return effects


def normalize_promotion(promotion: Promotion | Mapping[str, Any]) -> PromoRule:
    """Resolve a stored promotion (ORM row or raw dict) into a ``PromoRule``."""
    if isinstance(promotion, Mapping):
        raw = dict(promotion)
    else:
        raw = {
            "id": promotion.id,
            "name": promotion.name,
            "type": promotion.type,
            "conditions": promotion.conditions,
            "rewards": promotion.rewards,
            "auto_apply": promotion.auto_apply,
            "blocks_voucher": promotion.blocks_voucher,
            "priority": promotion.priority,
            "per_member_limit": promotion.per_member_limit,
            "global_stock": promotion.global_stock,
            "is_active": promotion.is_active,
            "created_at": promotion.created_at,
        }
    promo_type = getattr(raw.get("type"), "value", raw.get("type")) or ""
    conditions = _normalize_conditions(raw.get("conditions"))
    rewards = raw.get("rewards")
    if rewards is None:
        rewards = raw.get("reward")
    if isinstance(rewards, Mapping):
        rewards = [rewards]
    effects: list[PromoEffect] = []
    for entry in rewards or []:
        if isinstance(entry, Mapping):
            effects.extend(_normalize_reward(str(promo_type), entry, conditions))
    per_member_limit = _as_int(raw.get("per_member_limit"))
    return PromoRule(
        id=str(raw.get("id")),
        name=str(raw.get("name") or ""),
        type=str(promo_type),
        conditions=conditions,
        effects=tuple(effects),
        auto_apply=bool(raw.get("auto_apply", True)),
        blocks_voucher=bool(raw.get("blocks_voucher", False)),
        priority=_as_int(raw.get("priority")) or 0,
        per_member_limit=per_member_limit if per_member_limit and per_member_limit > 0 else None,
        global_stock=_as_int(raw.get("global_stock")),
        is_active=bool(raw.get("is_active", True)),
        created_at=_as_datetime(raw.get("created_at")),
    )


# --- eligibility -----------------------------------------------------------


@dataclass(frozen=True)
class PromoEvaluation:
    eligible: list[PromoRule]
    rejected: dict[str, str]


def _birthday_in_window(birthday: date, now: datetime, days: int) -> bool:
    try:
        start = birthday.replace(year=now.year)
    except ValueError:
        start = date(now.year, 2, 28)
    end = start + timedelta(days=days)
    return start <= now.date() <= end


def _static_reason(rule: PromoRule, cart: CartSnapshot, member: MemberContext | None, now: datetime) -> str | None:
    cond = rule.conditions
    if not rule.is_active:
        return "inactive"
    if cond.starts_at and cond.starts_at > now:
        return "not_started"
    if cond.ends_at and cond.ends_at < now:
        return "expired"
    if cond.audience == "members" and member is None:
        return "members_only"
    if cond.member_levels and (member is None or (member.level or "") not in cond.member_levels):
        return "member_level_not_allowed"
    if cond.birthday_window_days > 0:
        if member is None or member.birthday is None:
            return "birthday_required"
        if not _birthday_in_window(member.birthday, now, cond.birthday_window_days):
            return "outside_birthday_window"
    if cond.min_subtotal and cart.subtotal < cond.min_subtotal:
        return "min_subtotal_not_met"
    if cond.min_quantity and cart.total_quantity < cond.min_quantity:
        return "min_quantity_not_met"
    for requirement in cond.items:
        found = sum(line.quantity for line in cart.lines if requirement.matches(line))
        if found < requirement.quantity:
            return "item_requirement_not_met"
    if rule.per_member_limit and member is not None:
        if int(member.lifetime_usage.get(rule.id, 0)) >= rule.per_member_limit:
            return "member_limit_reached"
    return None


async def _window_reason(
    rule: PromoRule, member: MemberContext | None, now: datetime, usage_lookup: UsageLookup | None
) -> str | None:
    cond = rule.conditions
    if not cond.needs_usage_lookup:
        return None
    if usage_lookup is None:
        raise ConfigurationError(f"Promotion {rule.id} has usage window caps but no usage lookup is configured")
    since = now - timedelta(days=cond.usage_window_days)
    try:
        if cond.window_member_limit > 0 and member is not None:
            used = await usage_lookup.count_member_uses(rule.id, member.id, since)
            if int(used) >= cond.window_member_limit:
                return "window_member_limit_reached"
        if cond.window_global_limit > 0:
            used = await usage_lookup.count_global_uses(rule.id, since)
            if int(used) >= cond.window_global_limit:
                return "window_global_limit_reached"
    except Exception as exc:
        logger.warning("promo_usage_lookup_failed", extra={"promo_id": rule.id, "error": str(exc)})
        return "usage_lookup_failed"
    return None


async def evaluate_promotion(
    rule: PromoRule,
    cart: CartSnapshot,
    *,
    member: MemberContext | None,
    now: datetime,
    usage_lookup: UsageLookup | None = None,
) -> str | None:
    """Return the first failing condition for ``rule`` or ``None`` when eligible."""
    reason = _static_reason(rule, cart, member, now)
    if reason:
        return reason
    reason = await _window_reason(rule, member, now, usage_lookup)
    if reason:
        return reason
    if rule.global_stock is not None and rule.global_stock <= 0:
        return "sold_out"
    return None


def _rank_key(rule: PromoRule) -> tuple[int, datetime]:
    return rule.priority, rule.created_at or _EPOCH


async def evaluate_promotions(
    rules: Iterable[PromoRule],
    cart: CartSnapshot,
    *,
    member: MemberContext | None,
    now: datetime,
    usage_lookup: UsageLookup | None = None,
) -> PromoEvaluation:
    now = as_utc(now)
    eligible: list[PromoRule] = []
    rejected: dict[str, str] = {}
    for rule in rules:
        reason = await evaluate_promotion(rule, cart, member=member, now=now, usage_lookup=usage_lookup)
        if reason:
            rejected[rule.id] = reason
        else:
            eligible.append(rule)
    eligible.sort(key=_rank_key, reverse=True)
    return PromoEvaluation(eligible=eligible, rejected=rejected)


async def find_applicable_promotions(
    rules: Iterable[PromoRule],
    cart: CartSnapshot,
    *,
    member: MemberContext | None,
    now: datetime,
    usage_lookup: UsageLookup | None = None,
) -> list[PromoRule]:
    evaluation = await evaluate_promotions(rules, cart, member=member, now=now, usage_lookup=usage_lookup)
    return evaluation.eligible


# --- effects ---------------------------------------------------------------


@dataclass(frozen=True)
class PointAward:
    amount: int
    promo_id: str


@dataclass(frozen=True)
class PromoImpact:
    items_discount: int = 0
    cart_discount: int = 0
    line_discounts: tuple[int, ...] = ()
    added_free_items: tuple[FreeItem, ...] = ()
    point_actions: tuple[PointAward, ...] = ()
    membership_grant: bool = False

    @property
    def total_discount(self) -> int:
        return self.items_discount + self.cart_discount

    def actions_payload(self) -> list[dict[str, Any]]:
        actions: list[dict[str, Any]] = [
            {"type": "award_points", "amount": award.amount, "promo_id": award.promo_id}
            for award in self.point_actions
        ]
        if self.membership_grant:
            actions.append({"type": "grant_membership"})
        return actions


def _floor_percent(base: int, percent: Decimal) -> int:
    return int((Decimal(base) * percent / Decimal("100")).quantize(Decimal("1"), rounding=ROUND_DOWN))


def _bundle_discount(effect: FixedPriceBundle, cart: CartSnapshot) -> int:
    need = effect.group.quantity
    units: list[int] = []
    for line in cart.lines:
        if effect.group.matches(line):
            units.extend([line.unit_price + line.addons_total] * line.quantity)
    groups = len(units) // need
    if groups <= 0:
        return 0
    units.sort()
    bundled = sum(units[: groups * need])
    return max(0, bundled - effect.price * groups)


def apply_promotion(rule: PromoRule, cart: CartSnapshot) -> PromoImpact:
    """Compute the impact of ``rule`` on ``cart`` without side effects."""
    values = [line.value for line in cart.lines]
    subtotal = sum(values)
    per_line = [0] * len(values)
    items_discount = 0
    cart_discount = 0
    free_items: list[FreeItem] = []
    points: list[PointAward] = []
    membership = False

    def _allocate(amount: int, mask: Sequence[bool]) -> int:
        scoped = [value if hit else 0 for value, hit in zip(values, mask)]
        shares = distribute_discount(scoped, amount)
        for idx, share in enumerate(shares):
            per_line[idx] += share
        return sum(shares)

    for effect in rule.effects:
        if isinstance(effect, FreeItem):
            free_items.append(effect)
        elif isinstance(effect, (PercentDiscount, AmountDiscount)):
            mask = [effect.scope.matches(line) for line in cart.lines]
            scoped_subtotal = sum(value for value, hit in zip(values, mask) if hit)
            if isinstance(effect, PercentDiscount):
                amount = _floor_percent(scoped_subtotal, effect.percent)
                if effect.max_amount is not None:
                    amount = min(amount, effect.max_amount)
            else:
                amount = min(effect.amount, scoped_subtotal)
            applied = _allocate(amount, mask)
            if effect.scope.is_whole_cart:
                cart_discount += applied
            else:
                items_discount += applied
        elif isinstance(effect, FixedPriceBundle):
            mask = [effect.group.matches(line) for line in cart.lines]
            items_discount += _allocate(_bundle_discount(effect, cart), mask)
        elif isinstance(effect, AwardPoints):
            amount = effect.fixed if effect.fixed is not None else _floor_percent(subtotal, effect.percent or Decimal("0"))
            if amount > 0:
                points.append(PointAward(amount=amount, promo_id=rule.id))
        elif isinstance(effect, GrantMembership):
            membership = True

    # Stacked clauses may overlap on a line; no line goes below zero.
    for idx, value in enumerate(values):
        per_line[idx] = min(per_line[idx], value)
    excess = items_discount + cart_discount - sum(per_line)
    if excess > 0:
        cut = min(excess, cart_discount)
        cart_discount -= cut
        items_discount -= excess - cut

    return PromoImpact(
        items_discount=items_discount,
        cart_discount=cart_discount,
        line_discounts=tuple(per_line),
        added_free_items=tuple(free_items),
        point_actions=tuple(points),
        membership_grant=membership,
    )


# --- selection -------------------------------------------------------------


@dataclass(frozen=True)
class PromoSelection:
    rule: PromoRule | None = None
    impact: PromoImpact | None = None
    requested_id: str | None = None
    rejection_reason: str | None = None
    substituted: bool = False

    def as_dict(self) -> dict[str, Any] | None:
        if self.rule is None and self.requested_id is None:
            return None
        return {
            "promo_id": self.rule.id if self.rule else None,
            "name": self.rule.name if self.rule else None,
            "requested_id": self.requested_id,
            "rejection_reason": self.rejection_reason,
            "substituted": self.substituted,
        }


Reevaluator = Callable[[str], Awaitable[tuple[PromoRule | None, str | None]]]


def best_promotion(rules: Sequence[PromoRule], cart: CartSnapshot) -> tuple[PromoRule, PromoImpact] | None:
    best: tuple[tuple[int, int, datetime], PromoRule, PromoImpact] | None = None
    for rule in rules:
        impact = apply_promotion(rule, cart)
        key = (impact.total_discount, rule.priority, rule.created_at or _EPOCH)
        if best is None or key > best[0]:
            best = (key, rule, impact)
    if best is None:
        return None
    return best[1], best[2]


async def select_promotion(
    eligible: Sequence[PromoRule],
    cart: CartSnapshot,
    *,
    requested_id: str | None = None,
    auto_apply: bool = True,
    reevaluate: Reevaluator | None = None,
    rejected: Mapping[str, str] | None = None,
) -> PromoSelection:
    """Pick the promotion to apply.

    An explicit request wins while it is eligible. A request that no longer
    qualifies is re-checked once against fresh state through ``reevaluate``;
    when that fails too, the best auto-apply promotion takes its place and the
    substitution is reported. Without a request, the best auto-apply
    promotion is used when ``auto_apply`` is on.
    """
    auto_candidates = [rule for rule in eligible if rule.auto_apply]
    if requested_id:
        requested_id = str(requested_id)
        for rule in eligible:
            if rule.id == requested_id:
                return PromoSelection(rule=rule, impact=apply_promotion(rule, cart), requested_id=requested_id)
        reason = (rejected or {}).get(requested_id, "not_found")
        if reevaluate is not None:
            fresh, fresh_reason = await reevaluate(requested_id)
            if fresh is not None:
                return PromoSelection(rule=fresh, impact=apply_promotion(fresh, cart), requested_id=requested_id)
            reason = fresh_reason or reason
        fallback = best_promotion(auto_candidates, cart)
        if fallback is None:
            return PromoSelection(requested_id=requested_id, rejection_reason=reason)
        rule, impact = fallback
        return PromoSelection(
            rule=rule,
            impact=impact,
            requested_id=requested_id,
            rejection_reason=reason,
            substituted=True,
        )
    if not auto_apply:
        return PromoSelection()
    picked = best_promotion(auto_candidates, cart)
    if picked is None:
        return PromoSelection()
    rule, impact = picked
    return PromoSelection(rule=rule, impact=impact)
