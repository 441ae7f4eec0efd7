import enum
import uuid
from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, Enum, Integer, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class MemberLevel(str, enum.Enum):
    bronze = "bronze"
    silver = "silver"
    gold = "gold"


class Member(Base):
    __tablename__ = "members"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(32), unique=True, nullable=True)
    level: Mapped[MemberLevel] = mapped_column(
        Enum(MemberLevel, native_enum=False), nullable=False, default=MemberLevel.bronze
    )
    birthday: Mapped[date | None] = mapped_column(Date, nullable=True)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    loyalty_card: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    loyalty_granted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    total_spend: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
