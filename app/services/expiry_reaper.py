"""
Expiry reaper — background sweep that deactivates sessions past
`expires_at`.

The sweep is one set-based UPDATE that only ever flips true → false on
rows already expired, so it can run concurrently with itself and with
session creation (a new session always carries a future expiry).
"""

import asyncio
import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.base import utcnow
from app.services import session_store

logger = logging.getLogger(__name__)


async def sweep_expired_sessions(
    db: AsyncSession,
    now: datetime | None = None,
) -> int:
    """Deactivate every expired active session.  Returns the count."""
    count = await session_store.deactivate_expired_sessions(now or utcnow(), db)
    await db.commit()
    if count:
        logger.info("Deactivated %d expired session(s)", count)
    return count


class ExpiryReaper:
    """Runs `sweep_expired_sessions` on a fixed interval in its own task."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval_seconds: float = 3600,
    ):
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        async with self.session_factory() as db:
            return await sweep_expired_sessions(db)

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Expired-session sweep failed")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="session-expiry-reaper")
        logger.info("Expiry reaper started (interval=%ss)", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Expiry reaper stopped.")
