from app.db.base import Base  # noqa: F401
from app.models.member import Member, MemberLevel  # noqa: F401
from app.models.cart import Cart, CartItem, CartStatus, FulfillmentType  # noqa: F401
from app.models.promo import Promotion, PromotionType, PromoUsage  # noqa: F401
from app.models.voucher import (
    Voucher,
    VoucherAudience,
    VoucherClaim,
    VoucherClaimEvent,
    VoucherClaimStatus,
    VoucherScope,
    VoucherType,
    VoucherVisibility,
)  # noqa: F401
from app.models.order import (
    DeliveryStatus,
    Order,
    OrderDiscount,
    OrderEvent,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    TransactionCounter,
)  # noqa: F401
from app.models.payment import PaymentSession, PaymentSessionStatus, PaymentWebhookEvent  # noqa: F401

__all__ = [
    "Base",
    "Member",
    "MemberLevel",
    "Cart",
    "CartItem",
    "CartStatus",
    "FulfillmentType",
    "Promotion",
    "PromotionType",
    "PromoUsage",
    "Voucher",
    "VoucherAudience",
    "VoucherClaim",
    "VoucherClaimEvent",
    "VoucherClaimStatus",
    "VoucherScope",
    "VoucherType",
    "VoucherVisibility",
    "DeliveryStatus",
    "Order",
    "OrderDiscount",
    "OrderEvent",
    "OrderItem",
    "OrderStatus",
    "PaymentStatus",
    "TransactionCounter",
    "PaymentSession",
    "PaymentSessionStatus",
    "PaymentWebhookEvent",
]
