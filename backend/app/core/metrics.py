from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str, amount: int = 1) -> None:
    with _lock:
        _metrics[key] += amount


def record_order_created() -> None:
    _inc("orders_created")


def record_payment_reconciled() -> None:
    _inc("payments_reconciled")


def record_payment_failure() -> None:
    _inc("payment_failures")


def record_orders_auto_cancelled(count: int) -> None:
    _inc("orders_auto_cancelled", count)


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
