from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import ConflictError
from app.models.order import Order, TransactionCounter

_MAX_SKIPS = 50


def business_day(now: datetime) -> date:
    local = timezone(timedelta(hours=int(settings.tx_code_utc_offset_hours)))
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(local).date()


def format_transaction_code(day: date, seq: int, *, prefix: str | None = None) -> str:
    prefix = (prefix or settings.tx_code_prefix or "ARCH").strip().upper()
    return f"{prefix}-{day:%Y%m%d}-{seq:04d}"


async def increment_counter(session: AsyncSession, key: str) -> int:
    """Atomically bump the counter ``key`` and return its new value."""
    dialect = session.get_bind().dialect.name
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
    stmt = insert(TransactionCounter).values(key=key, seq=1)
    stmt = stmt.on_conflict_do_update(
        index_elements=[TransactionCounter.key],
        set_={"seq": TransactionCounter.seq + 1},
    ).returning(TransactionCounter.seq)
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def next_transaction_code(session: AsyncSession, *, now: datetime, prefix: str | None = None) -> str:
    """Return the next ``PREFIX-YYYYMMDD-NNNN`` code for the business day of ``now``.

    Codes already taken (a counter row that was reset, for instance) are
    skipped. Concurrent writers are still resolved by the unique constraint
    on ``orders.transaction_code``.
    """
    day = business_day(now)
    key = f"TX:{day:%Y%m%d}"
    for _ in range(_MAX_SKIPS):
        code = format_transaction_code(day, await increment_counter(session, key), prefix=prefix)
        taken = await session.execute(select(Order.id).where(Order.transaction_code == code))
        if taken.scalar_one_or_none() is None:
            return code
    raise ConflictError("Could not allocate a transaction code", code="transaction_code_exhausted")
