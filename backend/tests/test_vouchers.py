import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.core.errors import EligibilityError
from app.db.base import Base
from app.db.session import get_session
from app.main import app
from app.models.member import Member
from app.models.voucher import Voucher, VoucherType, VoucherVisibility
from app.services.vouchers import claim_voucher

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    return SessionLocal


async def _seed(session, *, points: int = 0, **voucher_fields) -> tuple[Member, Voucher]:
    member = Member(name="Wayan", phone=f"08{uuid.uuid4().int % 10**9}", points=points, total_spend=0)
    voucher = Voucher(name="Ngopi 10K", type=VoucherType.amount, amount=10_000, **voucher_fields)
    session.add_all([member, voucher])
    await session.commit()
    return member, voucher


def test_claim_spends_points_and_sets_validity(session_factory) -> None:
    async def run():
        async with session_factory() as session:
            member, voucher = await _seed(session, points=500, required_points=300, use_valid_days_after_claim=7)
            claim = await claim_voucher(session, member=member, voucher_id=voucher.id, now=NOW)
            refreshed = await session.get(Member, member.id, populate_existing=True)
            return claim, refreshed

    claim, member = asyncio.run(run())
    assert claim.spent_points == 300
    assert claim.remaining_use == 1
    assert claim.valid_until.replace(tzinfo=timezone.utc) == NOW + timedelta(days=7)
    assert member.points == 200


@pytest.mark.parametrize(
    ("points", "fields", "code"),
    [
        (0, {"required_points": 100}, "insufficient_points"),
        (0, {"visibility": VoucherVisibility.global_stock, "global_stock": 0}, "sold_out"),
        (0, {"is_active": False}, "voucher_inactive"),
        (0, {"ends_at": NOW - timedelta(days=1)}, "expired"),
    ],
)
def test_claim_rejections(session_factory, points: int, fields: dict, code: str) -> None:
    async def run():
        async with session_factory() as session:
            member, voucher = await _seed(session, points=points, **fields)
            with pytest.raises(EligibilityError) as exc:
                await claim_voucher(session, member=member, voucher_id=voucher.id, now=NOW)
            return exc.value

    assert asyncio.run(run()).code == code


def test_claim_limit_per_member(session_factory) -> None:
    async def run():
        async with session_factory() as session:
            member, voucher = await _seed(session, per_member_claim_limit=1)
            member_id, voucher_id = member.id, voucher.id
            await claim_voucher(session, member=member, voucher_id=voucher_id, now=NOW)
            member = await session.get(Member, member_id)
            with pytest.raises(EligibilityError) as exc:
                await claim_voucher(session, member=member, voucher_id=voucher_id, now=NOW)
            return exc.value

    assert asyncio.run(run()).code == "claim_limit_reached"


@pytest.fixture
def test_app() -> Dict[str, object]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())

    async def override_get_session():
        async with SessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    client = TestClient(app)
    yield {"client": client, "session_factory": SessionLocal}
    client.close()
    app.dependency_overrides.clear()


def test_claim_endpoint(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]

    async def seed():
        async with test_app["session_factory"]() as session:  # type: ignore[operator]
            member, voucher = await _seed(session, visibility=VoucherVisibility.global_stock, global_stock=1)
            return str(member.id), str(voucher.id)

    member_id, voucher_id = asyncio.run(seed())

    res = client.post(f"/api/v1/vouchers/{voucher_id}/claim", json={"member_id": member_id})
    assert res.status_code == 201, res.text
    assert res.json()["status"] == "claimed"

    again = client.post(f"/api/v1/vouchers/{voucher_id}/claim", json={"member_id": member_id})
    assert again.status_code == 422
    assert again.json()["code"] == "claim_limit_reached"

    missing = client.post(f"/api/v1/vouchers/{voucher_id}/claim", json={"member_id": str(uuid.uuid4())})
    assert missing.status_code == 404
