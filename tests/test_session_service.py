import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.core.config import settings
from app.core.exceptions import (
    InvalidInputError,
    SessionForbiddenError,
    SessionNotFoundError,
    StoreUnavailableError,
)
from app.core.security import generate_session_token, hash_token
from app.models.session import UserSession
from app.services import session_service, session_store
from app.services.session_service import IssuedSession, SessionConflict


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(settings, "STORE_RETRY_BACKOFF_SECONDS", 0.0)


@pytest.fixture
def create(session_factory, device_info):
    """Each call runs in its own AsyncSession, like a separate request."""

    async def _create(user_id, device_id, force_takeover=False, info=None):
        async with session_factory() as db:
            return await session_service.create_session(
                user_id=user_id,
                device_id=device_id,
                device_info=info or device_info,
                ip_address="203.0.113.7",
                db=db,
                force_takeover=force_takeover,
            )

    return _create


@pytest.fixture
def validate(session_factory):
    async def _validate(token):
        async with session_factory() as db:
            return await session_service.validate_session(token, db)

    return _validate


@pytest.fixture
def terminate(session_factory):
    async def _terminate(token, user_id, is_admin=False):
        async with session_factory() as db:
            return await session_service.terminate_session(token, user_id, db, is_admin=is_admin)

    return _terminate


async def _active_rows(session_factory, user_id):
    async with session_factory() as db:
        result = await db.execute(
            select(UserSession).where(
                UserSession.user_id == user_id,
                UserSession.is_active == True,  # noqa: E712
            )
        )
        return list(result.scalars().all())


# ── Create ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_issues_session_with_ttl(create):
    result = await create("user-1", "device-a")

    assert isinstance(result, IssuedSession)
    session = result.session
    assert session.user_id == "user-1"
    assert session.device_id == "device-a"
    assert session.is_active is True
    assert session.ip_address == "203.0.113.7"
    assert session.device_info["platform"] == "Win32"
    assert session.expires_at - session.created_at == timedelta(
        days=settings.SESSION_TTL_DAYS
    )
    # Only the hash is stored
    assert session.session_token_hash == hash_token(result.session_token)
    assert result.session_token not in session.session_token_hash


@pytest.mark.asyncio
async def test_create_rejects_invalid_fingerprint(create, session_factory):
    with pytest.raises(InvalidInputError):
        await create("user-1", "device-a", info={"platform": "Win32"})
    assert await _active_rows(session_factory, "user-1") == []


@pytest.mark.asyncio
async def test_validate_after_create(create, validate):
    issued = await create("user-1", "device-a")

    session = await validate(issued.session_token)

    assert session is not None
    assert session.id == issued.session.id
    assert session.device_id == "device-a"


@pytest.mark.asyncio
async def test_same_device_reauth_is_not_a_conflict(create, validate, session_factory):
    first = await create("user-1", "device-a")
    second = await create("user-1", "device-a")

    assert isinstance(second, IssuedSession)
    assert second.session_token != first.session_token
    # The new token supersedes the old one on the same device
    assert await validate(first.session_token) is None
    assert await validate(second.session_token) is not None
    active = await _active_rows(session_factory, "user-1")
    assert [s.id for s in active] == [second.session.id]


@pytest.mark.asyncio
async def test_takeover_scenario(create, validate):
    t1 = await create("user-u", "device-a")
    assert isinstance(t1, IssuedSession)

    blocked = await create("user-u", "device-b")
    assert isinstance(blocked, SessionConflict)
    assert blocked.existing_session.device_id == "device-a"
    assert blocked.message == "Your account is already active on another device."
    assert await validate(t1.session_token) is not None

    t2 = await create("user-u", "device-b", force_takeover=True)
    assert isinstance(t2, IssuedSession)
    assert await validate(t1.session_token) is None
    assert await validate(t2.session_token) is not None


@pytest.mark.asyncio
async def test_conflict_leaves_store_untouched(create, session_factory):
    first = await create("user-1", "device-a")
    await create("user-1", "device-b")

    active = await _active_rows(session_factory, "user-1")
    assert [s.id for s in active] == [first.session.id]
    async with session_factory() as db:
        total = await db.scalar(select(func.count(UserSession.id)))
    assert total == 1


@pytest.mark.asyncio
async def test_expired_session_on_other_device_does_not_conflict(create, expire_session, fetch_session):
    old = await create("user-1", "device-a")
    await expire_session(old.session.id)

    new = await create("user-1", "device-b")

    assert isinstance(new, IssuedSession)
    assert (await fetch_session(old.session.id)).is_active is False


@pytest.mark.asyncio
async def test_users_do_not_conflict_with_each_other(create):
    a = await create("user-1", "device-a")
    b = await create("user-2", "device-b")
    assert isinstance(a, IssuedSession)
    assert isinstance(b, IssuedSession)


@pytest.mark.asyncio
async def test_concurrent_creates_without_takeover_admit_exactly_one(create, session_factory):
    results = await asyncio.gather(
        *(create("user-race", f"device-{i}") for i in range(5))
    )

    issued = [r for r in results if isinstance(r, IssuedSession)]
    conflicts = [r for r in results if isinstance(r, SessionConflict)]
    assert len(issued) == 1
    assert len(conflicts) == 4
    active = await _active_rows(session_factory, "user-race")
    assert [s.id for s in active] == [issued[0].session.id]


@pytest.mark.asyncio
async def test_concurrent_takeovers_leave_exactly_one_active(create, validate, session_factory):
    results = await asyncio.gather(
        *(create("user-race", f"device-{i}", force_takeover=True) for i in range(5))
    )

    assert all(isinstance(r, IssuedSession) for r in results)
    active = await _active_rows(session_factory, "user-race")
    assert len(active) == 1
    valid = [r for r in results if await validate(r.session_token) is not None]
    assert len(valid) == 1
    assert valid[0].session.id == active[0].id


@pytest.mark.asyncio
async def test_create_gives_up_after_transient_errors(create, monkeypatch):
    async def broken(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("connection reset"))

    monkeypatch.setattr(session_store, "get_live_sessions", broken)

    with pytest.raises(StoreUnavailableError):
        await create("user-1", "device-a")


# ── Tokens ───────────────────────────────────────────────────────────


def test_generated_tokens_are_unique_and_long():
    tokens = {generate_session_token() for _ in range(10_000)}
    assert len(tokens) == 10_000
    # 32 random bytes → 43 url-safe characters
    assert all(len(t) >= 43 for t in tokens)


@pytest.mark.asyncio
async def test_issued_session_tokens_are_unique(create):
    results = [await create(f"user-{i}", "device-a") for i in range(50)]
    assert len({r.session_token for r in results}) == 50
    assert len({r.session.session_token_hash for r in results}) == 50


# ── Validate ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_validate_unknown_or_empty_token(validate):
    assert await validate("not-a-real-token") is None
    assert await validate("") is None


@pytest.mark.asyncio
async def test_validate_rejects_expired_session_still_marked_active(
    create, validate, expire_session, fetch_session,
):
    issued = await create("user-1", "device-a")
    await expire_session(issued.session.id)

    assert await validate(issued.session_token) is None
    assert (await fetch_session(issued.session.id)).is_active is True


@pytest.mark.asyncio
async def test_validate_touches_last_activity(create, validate, fetch_session):
    issued = await create("user-1", "device-a")
    before = (await fetch_session(issued.session.id)).last_activity

    await asyncio.sleep(0.01)
    await validate(issued.session_token)

    after = (await fetch_session(issued.session.id)).last_activity
    assert after > before


@pytest.mark.asyncio
async def test_validate_survives_failed_touch(create, validate, monkeypatch):
    issued = await create("user-1", "device-a")

    async def broken_touch(*args, **kwargs):
        raise OperationalError("UPDATE", {}, Exception("disk I/O error"))

    monkeypatch.setattr(session_store, "touch_session", broken_touch)

    session = await validate(issued.session_token)
    assert session is not None
    assert session.device_id == "device-a"


@pytest.mark.asyncio
async def test_validate_fails_closed_when_store_is_down(create, validate, monkeypatch):
    issued = await create("user-1", "device-a")
    calls = []

    async def broken_lookup(*args, **kwargs):
        calls.append(1)
        raise OperationalError("SELECT", {}, Exception("connection refused"))

    monkeypatch.setattr(session_store, "get_live_session_by_token_hash", broken_lookup)

    with pytest.raises(StoreUnavailableError):
        await validate(issued.session_token)
    assert len(calls) == settings.STORE_MAX_ATTEMPTS


# ── Terminate ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_terminate_is_idempotent(create, validate, terminate, fetch_session):
    issued = await create("user-1", "device-a")

    assert await terminate(issued.session_token, "user-1") is True
    assert await terminate(issued.session_token, "user-1") is True
    assert await validate(issued.session_token) is None
    assert (await fetch_session(issued.session.id)).is_active is False


@pytest.mark.asyncio
async def test_terminate_unknown_token(terminate):
    with pytest.raises(SessionNotFoundError):
        await terminate("missing", "user-1")


@pytest.mark.asyncio
async def test_terminate_someone_elses_session_is_forbidden(create, validate, terminate):
    issued = await create("user-1", "device-a")

    with pytest.raises(SessionForbiddenError):
        await terminate(issued.session_token, "user-2")
    assert await validate(issued.session_token) is not None


@pytest.mark.asyncio
async def test_admin_may_terminate_any_session(create, validate, terminate):
    issued = await create("user-1", "device-a")

    assert await terminate(issued.session_token, "admin-1", is_admin=True) is True
    assert await validate(issued.session_token) is None


@pytest.mark.asyncio
async def test_terminate_by_id(create, session_factory, fetch_session):
    issued = await create("user-1", "device-a")

    async with session_factory() as db:
        assert await session_service.terminate_session_by_id(issued.session.id, db) is True
    assert (await fetch_session(issued.session.id)).is_active is False

    async with session_factory() as db:
        with pytest.raises(SessionNotFoundError):
            await session_service.terminate_session_by_id(uuid.uuid4(), db)


# ── Listing ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_list_active_sessions_only_returns_active(create, terminate, session_factory):
    first = await create("user-1", "device-a")
    await terminate(first.session_token, "user-1")
    second = await create("user-1", "device-b")

    async with session_factory() as db:
        active = await session_service.list_active_sessions("user-1", db)

    assert [s.id for s in active.sessions] == [second.session.id]
    assert active.integrity_warning is False


@pytest.mark.asyncio
async def test_admin_listing_filters_and_stats(create, terminate, expire_session, session_factory):
    a = await create("user-1", "device-a")
    b = await create("user-2", "device-b")
    await terminate(a.session_token, "user-1")
    await expire_session(b.session.id)
    await create("user-3", "device-c")

    async with session_factory() as db:
        everything = await session_service.list_sessions(db)
        active = await session_service.list_sessions(db, status="active")
        inactive = await session_service.list_sessions(db, status="inactive")
        stats = await session_service.session_stats(db)

    assert len(everything) == 3
    assert {s.user_id for s in active} == {"user-2", "user-3"}
    assert [s.user_id for s in inactive] == ["user-1"]
    # Newest first
    assert everything[0].user_id == "user-3"
    assert stats == {"active": 2, "total": 3, "expired": 1}
