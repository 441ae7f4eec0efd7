from fastapi import APIRouter

from app.api.v1 import carts
from app.api.v1 import orders
from app.api.v1 import payments
from app.api.v1 import vouchers
from app.core.metrics import snapshot as metrics_snapshot

api_router = APIRouter()

api_router.include_router(carts.router)
api_router.include_router(orders.router)
api_router.include_router(payments.router)
api_router.include_router(vouchers.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@api_router.get("/metrics", tags=["metrics"])
def metrics() -> dict:
    return metrics_snapshot()
