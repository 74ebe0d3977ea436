"""
Async engine & session factory.

One engine per process; every request gets its own AsyncSession via
the `get_db` dependency.  Services flush, the dependency commits on
success and rolls back on error.  Operations that must own their
transaction boundary (session creation, validation touch, expiry
sweep) commit explicitly.
"""

from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(engine, expire_on_commit=False)


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency — yields a session bound to the request."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
