import asyncio

import pytest

from app.services import session_service
from app.services.expiry_reaper import ExpiryReaper, sweep_expired_sessions


@pytest.fixture
def issue(session_factory, device_info):
    async def _issue(user_id, device_id="device-a"):
        async with session_factory() as db:
            return await session_service.create_session(
                user_id=user_id,
                device_id=device_id,
                device_info=device_info,
                ip_address=None,
                db=db,
            )

    return _issue


@pytest.mark.asyncio
async def test_sweep_deactivates_only_expired_sessions(issue, expire_session, fetch_session, db):
    stale = await issue("user-1")
    fresh = await issue("user-2")
    await expire_session(stale.session.id)

    assert (await fetch_session(stale.session.id)).is_active is True

    count = await sweep_expired_sessions(db)

    assert count == 1
    assert (await fetch_session(stale.session.id)).is_active is False
    assert (await fetch_session(fresh.session.id)).is_active is True


@pytest.mark.asyncio
async def test_sweep_is_repeatable(issue, expire_session, db):
    stale = await issue("user-1")
    await expire_session(stale.session.id)

    assert await sweep_expired_sessions(db) == 1
    assert await sweep_expired_sessions(db) == 0


@pytest.mark.asyncio
async def test_reaper_run_once(issue, expire_session, session_factory):
    stale = await issue("user-1")
    await expire_session(stale.session.id)

    reaper = ExpiryReaper(session_factory, interval_seconds=60)

    assert await reaper.run_once() == 1
    assert reaper.running is False


@pytest.mark.asyncio
async def test_reaper_runs_in_background_until_stopped(issue, expire_session, fetch_session, session_factory):
    stale = await issue("user-1")
    await expire_session(stale.session.id)

    reaper = ExpiryReaper(session_factory, interval_seconds=0.01)
    reaper.start()
    try:
        assert reaper.running is True
        for _ in range(100):
            if not (await fetch_session(stale.session.id)).is_active:
                break
            await asyncio.sleep(0.01)
    finally:
        await reaper.stop()

    assert reaper.running is False
    assert (await fetch_session(stale.session.id)).is_active is False


@pytest.mark.asyncio
async def test_reaper_survives_a_failed_sweep(session_factory, monkeypatch):
    calls = []

    async def flaky_sweep(db, now=None):
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("database went away")
        return 0

    monkeypatch.setattr("app.services.expiry_reaper.sweep_expired_sessions", flaky_sweep)

    reaper = ExpiryReaper(session_factory, interval_seconds=0.01)
    reaper.start()
    try:
        for _ in range(100):
            if len(calls) >= 2:
                break
            await asyncio.sleep(0.01)
    finally:
        await reaper.stop()

    assert len(calls) >= 2
