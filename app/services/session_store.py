"""
Session store — every read & write against `user_sessions`.

Handles:
- Live-session queries (active AND unexpired) for conflict checks
- Token-keyed lookups (by SHA-256 hash, never the raw token)
- Set-based deactivation (logout, takeover, expiry sweep)
- The per-user serialization point used by session creation

All mutation goes through these helpers; they flush but never commit,
the caller owns the transaction.  Deactivation is always an UPDATE
that only sets `is_active = false`, so it can never revive a row.
"""

import hashlib
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.session import UserSession

# Bulk UPDATEs skip in-memory synchronization; callers that hold a
# loaded row update it themselves.
_NO_SYNC = {"synchronize_session": False}
# Reads always overwrite identity-map state with what the DB holds.
_FRESH = {"populate_existing": True}


def _advisory_lock_key(user_id: str) -> int:
    """Stable signed 64-bit key for `pg_advisory_xact_lock`."""
    digest = hashlib.sha256(user_id.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


async def lock_user(user_id: str, db: AsyncSession) -> None:
    """
    Serialize session creation for one user until the transaction ends.

    PostgreSQL takes a transaction-scoped advisory lock.  Other dialects
    rely on the partial unique index on active sessions; a concurrent
    winner surfaces as an IntegrityError at insert time.
    """
    if db.get_bind().dialect.name == "postgresql":
        await db.execute(
            text("SELECT pg_advisory_xact_lock(:key)"),
            {"key": _advisory_lock_key(user_id)},
        )


# ── Reads ────────────────────────────────────────────────────────────


async def get_live_sessions(
    user_id: str,
    now: datetime,
    db: AsyncSession,
) -> list[UserSession]:
    """Active, unexpired sessions for a user — newest first."""
    stmt = (
        select(UserSession)
        .where(
            UserSession.user_id == user_id,
            UserSession.is_active == True,  # noqa: E712
            UserSession.expires_at > now,
        )
        .order_by(UserSession.created_at.desc())
    )
    result = await db.execute(stmt, execution_options=_FRESH)
    return list(result.scalars().all())


async def get_active_sessions(
    user_id: str,
    db: AsyncSession,
) -> list[UserSession]:
    """All `is_active` sessions for a user, expired or not — newest first."""
    stmt = (
        select(UserSession)
        .where(
            UserSession.user_id == user_id,
            UserSession.is_active == True,  # noqa: E712
        )
        .order_by(UserSession.created_at.desc())
    )
    result = await db.execute(stmt, execution_options=_FRESH)
    return list(result.scalars().all())


async def get_live_session_by_token_hash(
    token_hash: str,
    now: datetime,
    db: AsyncSession,
) -> UserSession | None:
    stmt = select(UserSession).where(
        UserSession.session_token_hash == token_hash,
        UserSession.is_active == True,  # noqa: E712
        UserSession.expires_at > now,
    )
    result = await db.execute(stmt, execution_options=_FRESH)
    return result.scalar_one_or_none()


async def get_session_by_token_hash(
    token_hash: str,
    db: AsyncSession,
) -> UserSession | None:
    """Any session (active or not) by token hash."""
    stmt = select(UserSession).where(UserSession.session_token_hash == token_hash)
    result = await db.execute(stmt, execution_options=_FRESH)
    return result.scalar_one_or_none()


async def get_session_by_id(
    session_id: uuid.UUID,
    db: AsyncSession,
) -> UserSession | None:
    stmt = select(UserSession).where(UserSession.id == session_id)
    result = await db.execute(stmt, execution_options=_FRESH)
    return result.scalar_one_or_none()


async def list_sessions(
    db: AsyncSession,
    is_active: bool | None = None,
    skip: int = 0,
    limit: int = 50,
) -> list[UserSession]:
    """All users' sessions, newest first (admin only — enforced at controller)."""
    stmt = select(UserSession)
    if is_active is not None:
        stmt = stmt.where(UserSession.is_active == is_active)
    stmt = stmt.order_by(UserSession.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt, execution_options=_FRESH)
    return list(result.scalars().all())


async def count_sessions(db: AsyncSession, now: datetime) -> dict[str, int]:
    """Active / total / expired counts for the admin dashboard."""
    stmt = select(
        func.count(UserSession.id).filter(UserSession.is_active == True),  # noqa: E712
        func.count(UserSession.id),
        func.count(UserSession.id).filter(UserSession.expires_at < now),
    )
    active, total, expired = (await db.execute(stmt)).one()
    return {"active": active, "total": total, "expired": expired}


# ── Writes ───────────────────────────────────────────────────────────


async def insert_session(
    *,
    user_id: str,
    device_id: str,
    device_info: dict[str, Any],
    token_hash: str,
    ip_address: str | None,
    now: datetime,
    expires_at: datetime,
    db: AsyncSession,
) -> UserSession:
    """
    Insert a new active session.

    Raises IntegrityError at flush when another active session for the
    same user was committed concurrently, or on a token-hash collision.
    """
    session = UserSession(
        id=uuid.uuid4(),
        user_id=user_id,
        device_id=device_id,
        device_info=device_info,
        session_token_hash=token_hash,
        ip_address=ip_address,
        is_active=True,
        last_activity=now,
        created_at=now,
        expires_at=expires_at,
    )
    db.add(session)
    await db.flush()
    return session


async def touch_session(
    session_id: uuid.UUID,
    now: datetime,
    db: AsyncSession,
) -> None:
    """Bump `last_activity` — the only field validation ever writes."""
    stmt = (
        update(UserSession)
        .where(UserSession.id == session_id)
        .values(last_activity=now)
    )
    await db.execute(stmt, execution_options=_NO_SYNC)
    await db.flush()


async def deactivate_session(
    session_id: uuid.UUID,
    db: AsyncSession,
) -> int:
    """Mark a single session as inactive (logout).  Idempotent."""
    stmt = (
        update(UserSession)
        .where(
            UserSession.id == session_id,
            UserSession.is_active == True,  # noqa: E712
        )
        .values(is_active=False)
    )
    result = await db.execute(stmt, execution_options=_NO_SYNC)
    await db.flush()
    return result.rowcount


async def deactivate_sessions_by_id(
    session_ids: list[uuid.UUID],
    db: AsyncSession,
) -> int:
    if not session_ids:
        return 0
    stmt = (
        update(UserSession)
        .where(
            UserSession.id.in_(session_ids),
            UserSession.is_active == True,  # noqa: E712
        )
        .values(is_active=False)
    )
    result = await db.execute(stmt, execution_options=_NO_SYNC)
    await db.flush()
    return result.rowcount


async def deactivate_user_sessions(
    user_id: str,
    db: AsyncSession,
    device_id: str | None = None,
) -> int:
    """
    Deactivate every active session for a user.

    With `device_id`, only that device's sessions are touched (same-device
    re-authentication supersedes the previous token).  Returns the number
    of sessions affected.
    """
    stmt = update(UserSession).where(
        UserSession.user_id == user_id,
        UserSession.is_active == True,  # noqa: E712
    )
    if device_id is not None:
        stmt = stmt.where(UserSession.device_id == device_id)
    result = await db.execute(stmt.values(is_active=False), execution_options=_NO_SYNC)
    await db.flush()
    return result.rowcount


async def deactivate_expired_sessions(
    now: datetime,
    db: AsyncSession,
    user_id: str | None = None,
) -> int:
    """
    Flip `is_active` off on sessions already past `expires_at`.

    Scoped to one user during creation, global for the expiry sweep.
    """
    stmt = update(UserSession).where(
        UserSession.is_active == True,  # noqa: E712
        UserSession.expires_at <= now,
    )
    if user_id is not None:
        stmt = stmt.where(UserSession.user_id == user_id)
    result = await db.execute(stmt.values(is_active=False), execution_options=_NO_SYNC)
    await db.flush()
    return result.rowcount
