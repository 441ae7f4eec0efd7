from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Iterable

logger = logging.getLogger(__name__)

Handler = Callable[[str, dict[str, Any]], Awaitable[None]]


class NotificationBus:
    """Fire-and-forget fan-out of order events to subscribed handlers.

    A failing handler is logged and skipped; it never reaches the caller.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, audience: str, handler: Handler) -> None:
        self._handlers[audience].append(handler)

    def clear(self) -> None:
        self._handlers.clear()

    async def publish(self, event: str, payload: dict[str, Any], audiences: Iterable[str] = ("staff",)) -> int:
        delivered = 0
        for audience in audiences:
            for handler in list(self._handlers.get(audience, ())):
                try:
                    await handler(event, payload)
                    delivered += 1
                except Exception as exc:
                    logger.warning(
                        "notification_publish_failed",
                        extra={"notification_event": event, "audience": audience, "error": str(exc)},
                    )
        return delivered


bus = NotificationBus()


def order_payload(order: Any) -> dict[str, Any]:
    return {
        "order_id": str(order.id),
        "transaction_code": order.transaction_code,
        "status": getattr(order.status, "value", order.status),
        "payment_status": getattr(order.payment_status, "value", order.payment_status),
        "delivery_status": getattr(order.delivery_status, "value", order.delivery_status),
        "table_number": order.table_number,
        "member_id": str(order.member_id) if order.member_id else None,
    }


def audiences_for(order: Any, *extra: str) -> tuple[str, ...]:
    audiences = ["staff"]
    if order.member_id:
        audiences.append("member")
    if order.table_number:
        audiences.append("table")
    audiences.extend(extra)
    return tuple(dict.fromkeys(audiences))


async def notify_order(event: str, order: Any, *extra_audiences: str) -> None:
    await bus.publish(event, order_payload(order), audiences_for(order, *extra_audiences))
