"""
Session lifecycle service.

Handles:
- Creation with single-device enforcement and optional takeover
- Validation (liveness check + best-effort activity touch)
- Termination (owner logout, admin force-logout)
- Listing for display and the admin console

Concurrency rules:
- One active device per user.  Same device → the previous token is
  superseded; different device → conflict unless `force_takeover`.
- Creation is serialized per user: the conflict check and the insert
  run in one transaction behind `session_store.lock_user`, and the
  partial unique index on active sessions turns any race that slips
  through into an IntegrityError, which is retried from the top.
- Validation and termination take no lock.

Expected outcomes come back as values: `SessionConflict` from
`create_session`, `None` from `validate_session`.  Store failures are
retried a few times and then raised as StoreUnavailableError, never
read as "no conflict" or "valid".

Every mutating operation commits its own transaction.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, TypeVar

from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from app.core.config import settings
from app.core.exceptions import SessionForbiddenError, SessionNotFoundError, StoreUnavailableError
from app.core.security import generate_session_token, hash_token
from app.models.base import utcnow
from app.models.session import UserSession
from app.services import session_store
from app.services.conflict_resolver import check_conflict
from app.services.fingerprint import DeviceFingerprint, ingest_fingerprint

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors worth retrying: lost connections, lock timeouts, serialization
# failures.  Anything else propagates.
TRANSIENT_STORE_ERRORS = (OperationalError, InterfaceError)

CONFLICT_MESSAGE = "Your account is already active on another device."


@dataclass
class IssuedSession:
    """A freshly created session plus the only copy of its bearer token."""

    session: UserSession
    session_token: str


@dataclass
class SessionConflict:
    existing_session: UserSession
    message: str = CONFLICT_MESSAGE


@dataclass
class ActiveSessions:
    sessions: list[UserSession] = field(default_factory=list)
    integrity_warning: bool = False


# ── Helpers ──────────────────────────────────────────────────────────


def _backoff(attempt: int) -> float:
    return settings.STORE_RETRY_BACKOFF_SECONDS * (2 ** (attempt - 1))


async def _run_with_store_retries(
    operation: Callable[[], Awaitable[T]],
    db: AsyncSession,
    description: str,
) -> T:
    """Run `operation`, retrying transient store errors with backoff."""
    max_attempts = max(1, settings.STORE_MAX_ATTEMPTS)
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except TRANSIENT_STORE_ERRORS as exc:
            await db.rollback()
            if attempt == max_attempts:
                logger.error("%s failed after %d attempts: %s", description, attempt, exc)
                raise StoreUnavailableError() from exc
            logger.warning(
                "%s hit a transient store error (attempt %d/%d), retrying",
                description,
                attempt,
                max_attempts,
            )
            await asyncio.sleep(_backoff(attempt))
    raise StoreUnavailableError()


async def _mark_inactive(session_id: uuid.UUID, db: AsyncSession) -> None:
    await session_store.deactivate_session(session_id, db)
    await db.commit()


# ── Create ───────────────────────────────────────────────────────────


async def _create_once(
    user_id: str,
    fingerprint: DeviceFingerprint,
    ip_address: str | None,
    force_takeover: bool,
    db: AsyncSession,
) -> IssuedSession | SessionConflict:
    now = utcnow()
    await session_store.lock_user(user_id, db)

    outcome = await check_conflict(user_id, fingerprint.device_id, db, now)

    if outcome.has_conflict and not force_takeover:
        # Persists an integrity repair if the resolver made one; live
        # sessions are left untouched.
        await db.commit()
        return SessionConflict(existing_session=outcome.conflicting_session)

    if outcome.has_conflict:
        taken_over = await session_store.deactivate_user_sessions(user_id, db)
        logger.info(
            "Takeover for user %s: device %s replaced %d session(s) on device %s",
            user_id,
            fingerprint.device_id,
            taken_over,
            outcome.conflicting_session.device_id,
        )
    else:
        await session_store.deactivate_user_sessions(
            user_id, db, device_id=fingerprint.device_id,
        )

    # Expired-but-active rows would otherwise block the single-active index
    await session_store.deactivate_expired_sessions(now, db, user_id=user_id)

    token = generate_session_token()
    session = await session_store.insert_session(
        user_id=user_id,
        device_id=fingerprint.device_id,
        device_info=fingerprint.device_info,
        token_hash=hash_token(token),
        ip_address=ip_address,
        now=now,
        expires_at=now + timedelta(days=settings.SESSION_TTL_DAYS),
        db=db,
    )
    await db.commit()

    logger.info(
        "Created session %s for user %s on device %s",
        session.id,
        user_id,
        fingerprint.device_id,
    )
    return IssuedSession(session=session, session_token=token)


async def create_session(
    user_id: str,
    device_id: str,
    device_info: dict[str, Any],
    ip_address: str | None,
    db: AsyncSession,
    force_takeover: bool = False,
) -> IssuedSession | SessionConflict:
    """
    Issue a new session for (user, device).

    Returns SessionConflict when another device holds the live session
    and `force_takeover` is false; nothing is changed in that case.
    Raises InvalidInputError for a bad fingerprint and
    StoreUnavailableError when retries are exhausted.
    """
    fingerprint = ingest_fingerprint(device_id, device_info)

    max_attempts = max(1, settings.SESSION_CREATE_MAX_ATTEMPTS)
    for attempt in range(1, max_attempts + 1):
        try:
            return await _create_once(user_id, fingerprint, ip_address, force_takeover, db)
        except IntegrityError:
            await db.rollback()
            logger.warning(
                "Concurrent session write for user %s (attempt %d/%d), retrying",
                user_id,
                attempt,
                max_attempts,
            )
        except TRANSIENT_STORE_ERRORS:
            await db.rollback()
            logger.warning(
                "Transient store error creating session for user %s (attempt %d/%d)",
                user_id,
                attempt,
                max_attempts,
                exc_info=True,
            )
            await asyncio.sleep(_backoff(attempt))

    logger.error("Giving up creating session for user %s after %d attempts", user_id, max_attempts)
    raise StoreUnavailableError()


# ── Validate ─────────────────────────────────────────────────────────


async def validate_session(
    session_token: str,
    db: AsyncSession,
) -> UserSession | None:
    """
    Return the live session for `session_token`, or None.

    Expired, terminated and unknown tokens are indistinguishable.
    """
    if not session_token:
        return None

    token_hash = hash_token(session_token)
    now = utcnow()
    session = await _run_with_store_retries(
        lambda: session_store.get_live_session_by_token_hash(token_hash, now, db),
        db,
        "Session validation",
    )
    if session is None:
        return None

    # Best-effort: a failed touch never fails the validation
    try:
        await session_store.touch_session(session.id, now, db)
        await db.commit()
    except SQLAlchemyError:
        logger.warning("Could not record activity for session %s", session.id, exc_info=True)
        db.expunge(session)
        await db.rollback()
    else:
        set_committed_value(session, "last_activity", now)

    return session


# ── Terminate ────────────────────────────────────────────────────────


async def terminate_session(
    session_token: str,
    requesting_user_id: str,
    db: AsyncSession,
    is_admin: bool = False,
) -> bool:
    """
    Deactivate the session behind `session_token`.

    Owners may terminate their own sessions; admins any session.
    Terminating an already inactive session succeeds.
    """
    if not session_token:
        raise SessionNotFoundError()

    token_hash = hash_token(session_token)
    session = await _run_with_store_retries(
        lambda: session_store.get_session_by_token_hash(token_hash, db),
        db,
        "Session termination",
    )
    if session is None:
        raise SessionNotFoundError()

    session_id, owner_id = session.id, session.user_id
    if owner_id != requesting_user_id and not is_admin:
        logger.warning(
            "User %s attempted to terminate session %s owned by %s",
            requesting_user_id,
            session_id,
            owner_id,
        )
        raise SessionForbiddenError()

    await _run_with_store_retries(
        lambda: _mark_inactive(session_id, db), db, "Session termination",
    )
    logger.info("Terminated session %s (requested by %s)", session_id, requesting_user_id)
    return True


async def terminate_session_by_id(
    session_id: uuid.UUID,
    db: AsyncSession,
) -> bool:
    """Admin force-logout by primary key.  Idempotent."""
    session = await _run_with_store_retries(
        lambda: session_store.get_session_by_id(session_id, db),
        db,
        "Admin session termination",
    )
    if session is None:
        raise SessionNotFoundError()

    owner_id = session.user_id
    await _run_with_store_retries(
        lambda: _mark_inactive(session_id, db), db, "Admin session termination",
    )
    logger.info("Admin terminated session %s of user %s", session_id, owner_id)
    return True


# ── Listing ──────────────────────────────────────────────────────────


async def list_active_sessions(
    user_id: str,
    db: AsyncSession,
) -> ActiveSessions:
    """Every active session of the user, newest first."""
    sessions = await _run_with_store_retries(
        lambda: session_store.get_active_sessions(user_id, db),
        db,
        "Session listing",
    )
    integrity_warning = len(sessions) > 1
    if integrity_warning:
        logger.warning("User %s has %d active sessions", user_id, len(sessions))
    return ActiveSessions(sessions=sessions, integrity_warning=integrity_warning)


async def list_sessions(
    db: AsyncSession,
    status: str = "all",
    skip: int = 0,
    limit: int = 50,
) -> list[UserSession]:
    """Admin console listing across all users.  `status`: all / active / inactive."""
    is_active = {"active": True, "inactive": False}.get(status)
    return await _run_with_store_retries(
        lambda: session_store.list_sessions(db, is_active=is_active, skip=skip, limit=limit),
        db,
        "Admin session listing",
    )


async def session_stats(
    db: AsyncSession,
    now: datetime | None = None,
) -> dict[str, int]:
    now = now or utcnow()
    return await _run_with_store_retries(
        lambda: session_store.count_sessions(db, now),
        db,
        "Session stats",
    )
