import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.models import Base
from app.models.session import UserSession

CHROME_DESKTOP = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@pytest_asyncio.fixture
async def engine(tmp_path):
    # File-backed so each AsyncSession gets its own connection, like
    # concurrent workers hitting a shared database.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sessions.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def device_info():
    return {
        "userAgent": CHROME_DESKTOP,
        "platform": "Win32",
        "screenResolution": "1920x1080",
        "timezone": "Asia/Kolkata",
        "language": "en-IN",
    }


@pytest.fixture
def expire_session(session_factory):
    """Push a session's expiry into the past without touching is_active.

    Accepts a UUID or its string form (as returned by the API).
    """

    async def _expire(session_id):
        async with session_factory() as db:
            await db.execute(
                update(UserSession)
                .where(UserSession.id == uuid.UUID(str(session_id)))
                .values(expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
            )
            await db.commit()

    return _expire


@pytest.fixture
def fetch_session(session_factory):
    async def _fetch(session_id) -> UserSession:
        async with session_factory() as db:
            return await db.get(UserSession, session_id)

    return _fetch
