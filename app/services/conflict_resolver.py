"""
Conflict resolver — decides whether a new session for
(user, device) collides with a live session on another device.

Must run inside the creating transaction, after the per-user lock has
been taken, so the answer cannot go stale before the insert.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.session import UserSession
from app.services import session_store

logger = logging.getLogger(__name__)


@dataclass
class ConflictOutcome:
    """
    - conflicting_session: live session on a *different* device, if any.
    - same_device_session: live session on the requesting device, if any
      (benign re-authentication).
    """

    conflicting_session: UserSession | None = None
    same_device_session: UserSession | None = None

    @property
    def has_conflict(self) -> bool:
        return self.conflicting_session is not None


async def repair_duplicate_live_sessions(
    user_id: str,
    live_sessions: list[UserSession],
    db: AsyncSession,
) -> UserSession:
    """
    Keep the newest live session, deactivate the rest.

    `live_sessions` must be ordered newest first.  Only reachable when the
    single-active-session guarantee was bypassed (manual DB edits, a
    store without the partial unique index).
    """
    survivor, *extras = live_sessions
    logger.error(
        "Integrity violation: user %s has %d live sessions; keeping %s, "
        "deactivating %s",
        user_id,
        len(live_sessions),
        survivor.id,
        [str(s.id) for s in extras],
    )
    await session_store.deactivate_sessions_by_id([s.id for s in extras], db)
    for extra in extras:
        extra.is_active = False
    return survivor


async def check_conflict(
    user_id: str,
    device_id: str,
    db: AsyncSession,
    now: datetime,
) -> ConflictOutcome:
    live = await session_store.get_live_sessions(user_id, now, db)
    if not live:
        return ConflictOutcome()

    existing = live[0]
    if len(live) > 1:
        existing = await repair_duplicate_live_sessions(user_id, live, db)

    if existing.device_id == device_id:
        return ConflictOutcome(same_device_session=existing)

    logger.info(
        "Session conflict for user %s: device %s requested, active on %s",
        user_id,
        device_id,
        existing.device_id,
    )
    return ConflictOutcome(conflicting_session=existing)
