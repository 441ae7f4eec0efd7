import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class PromotionType(str, enum.Enum):
    free_item = "free_item"
    buy_x_get_y = "buy_x_get_y"
    bundling = "bundling"
    cart_percent = "cart_percent"
    cart_amount = "cart_amount"
    fixed_price_bundle = "fixed_price_bundle"
    award_points = "award_points"
    grant_membership = "grant_membership"
    composite = "composite"


class Promotion(Base):
    """Operator-managed promotion.

    ``conditions`` and ``rewards`` are stored as loosely-shaped JSON (legacy
    imports use several synonyms per field); ``app.services.promo_engine``
    normalizes them before any evaluation.
    """

    __tablename__ = "promotions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[PromotionType] = mapped_column(Enum(PromotionType, native_enum=False), nullable=False)
    conditions: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    rewards: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    auto_apply: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    blocks_voucher: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    per_member_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    global_stock: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class PromoUsage(Base):
    __tablename__ = "promo_usages"
    __table_args__ = (UniqueConstraint("promotion_id", "order_id", name="uq_promo_usages_promotion_order"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    promotion_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("promotions.id"), nullable=False, index=True
    )
    member_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("members.id"), nullable=True, index=True
    )
    order_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False)
    used_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
