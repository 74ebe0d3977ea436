import uuid
from datetime import timedelta

import pytest
from sqlalchemy import text

from app.models.base import utcnow
from app.services import session_service, session_store
from app.services.conflict_resolver import check_conflict


async def _insert_active(db, user_id, device_id, created_at):
    return await session_store.insert_session(
        user_id=user_id,
        device_id=device_id,
        device_info={"user_agent": "pytest"},
        token_hash=uuid.uuid4().hex,
        ip_address=None,
        now=created_at,
        expires_at=created_at + timedelta(days=1),
        db=db,
    )


@pytest.mark.asyncio
async def test_no_live_sessions_means_no_conflict(db):
    outcome = await check_conflict("user-1", "device-a", db, utcnow())
    assert outcome.has_conflict is False
    assert outcome.same_device_session is None


@pytest.mark.asyncio
async def test_same_device_is_not_a_conflict(db):
    existing = await _insert_active(db, "user-1", "device-a", utcnow())
    await db.commit()

    outcome = await check_conflict("user-1", "device-a", db, utcnow())

    assert outcome.has_conflict is False
    assert outcome.same_device_session.id == existing.id


@pytest.mark.asyncio
async def test_other_device_is_a_conflict(db):
    existing = await _insert_active(db, "user-1", "device-a", utcnow())
    await db.commit()

    outcome = await check_conflict("user-1", "device-b", db, utcnow())

    assert outcome.has_conflict is True
    assert outcome.conflicting_session.id == existing.id


@pytest.mark.asyncio
async def test_duplicate_live_sessions_are_repaired(db, fetch_session, caplog):
    # Simulate a store that lost the single-active guarantee
    await db.execute(text("DROP INDEX uq_user_sessions_single_active"))
    now = utcnow()
    older = await _insert_active(db, "user-1", "device-a", now - timedelta(minutes=5))
    newer = await _insert_active(db, "user-1", "device-b", now)
    await db.commit()

    outcome = await check_conflict("user-1", "device-c", db, utcnow())
    await db.commit()

    assert outcome.conflicting_session.id == newer.id
    assert (await fetch_session(older.id)).is_active is False
    assert (await fetch_session(newer.id)).is_active is True
    assert "Integrity violation" in caplog.text


@pytest.mark.asyncio
async def test_listing_flags_duplicate_active_sessions(db):
    await db.execute(text("DROP INDEX uq_user_sessions_single_active"))
    now = utcnow()
    await _insert_active(db, "user-1", "device-a", now - timedelta(minutes=5))
    await _insert_active(db, "user-1", "device-b", now)
    await db.commit()

    active = await session_service.list_active_sessions("user-1", db)

    assert active.integrity_warning is True
    assert [s.device_id for s in active.sessions] == ["device-b", "device-a"]
