"""
One-shot expiry sweep — deactivates every expired session and exits.

Usage:
    python -m app.scripts.sweep_expired_sessions

For deployments that run the sweep from cron instead of the in-app
background task (set EXPIRY_SWEEP_ENABLED=false on the app).
"""

import asyncio
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.core.config import settings
from app.services.expiry_reaper import sweep_expired_sessions

logger = logging.getLogger("sweep_expired_sessions")


async def sweep() -> int:
    engine = create_async_engine(settings.DATABASE_URL, echo=False)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)

    try:
        async with session_factory() as session:
            count = await sweep_expired_sessions(session)
    finally:
        await engine.dispose()

    logger.info("Sweep complete: %d session(s) deactivated", count)
    return count


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )
    asyncio.run(sweep())
