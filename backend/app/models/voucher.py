import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base


class VoucherType(str, enum.Enum):
    percent = "percent"
    amount = "amount"
    shipping = "shipping"


class VoucherScope(str, enum.Enum):
    all = "all"
    menus = "menus"
    category = "category"


class VoucherVisibility(str, enum.Enum):
    periodic = "periodic"
    global_stock = "global_stock"


class VoucherAudience(str, enum.Enum):
    all = "all"
    members = "members"


class VoucherClaimStatus(str, enum.Enum):
    claimed = "claimed"
    used = "used"
    expired = "expired"
    revoked = "revoked"


class Voucher(Base):
    __tablename__ = "vouchers"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[VoucherType] = mapped_column(Enum(VoucherType, native_enum=False), nullable=False)

    percent: Mapped[int | None] = mapped_column(Integer, nullable=True)
    amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_discount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    shipping_percent: Mapped[int | None] = mapped_column(Integer, nullable=True)
    shipping_max_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)

    applies_to: Mapped[VoucherScope] = mapped_column(
        Enum(VoucherScope, native_enum=False), nullable=False, default=VoucherScope.all
    )
    applies_to_menu_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    applies_to_categories: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    visibility: Mapped[VoucherVisibility] = mapped_column(
        Enum(VoucherVisibility, native_enum=False), nullable=False, default=VoucherVisibility.periodic
    )
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    global_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    per_member_claim_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    max_use_per_claim: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    use_valid_days_after_claim: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    claim_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    audience: Mapped[VoucherAudience] = mapped_column(
        Enum(VoucherAudience, native_enum=False), nullable=False, default=VoucherAudience.all
    )
    include_member_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    exclude_member_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    min_transaction: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    required_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class VoucherClaim(Base):
    __tablename__ = "voucher_claims"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    voucher_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("vouchers.id"), nullable=False, index=True)
    member_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("members.id"), nullable=False, index=True)
    status: Mapped[VoucherClaimStatus] = mapped_column(
        Enum(VoucherClaimStatus, native_enum=False), nullable=False, default=VoucherClaimStatus.claimed
    )
    remaining_use: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    claimed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    spent_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    voucher: Mapped[Voucher] = relationship("Voucher", lazy="selectin")
    history: Mapped[list["VoucherClaimEvent"]] = relationship(
        "VoucherClaimEvent",
        back_populates="claim",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="VoucherClaimEvent.created_at",
    )


class VoucherClaimEvent(Base):
    __tablename__ = "voucher_claim_events"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    claim_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("voucher_claims.id"), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    claim: Mapped[VoucherClaim] = relationship("VoucherClaim", back_populates="history")
