"""
Admin controller — session console & expiry cleanup.

Every route uses `Depends(require_admin)` for enforcement.
Controllers are THIN — they delegate to services and return schemas.
"""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.rbac.dependencies import CallerIdentity, require_admin
from app.schemas import (
    AdminSessionOut,
    CleanupResponse,
    SessionStatsOut,
    SessionStatusFilter,
    SessionTokenRequest,
    TerminateSessionResponse,
)
from app.services import session_service
from app.services.expiry_reaper import sweep_expired_sessions

router = APIRouter(prefix="/api/admin/sessions", tags=["Admin"])


@router.get("", response_model=list[AdminSessionOut])
async def list_sessions(
    caller: CallerIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    status_filter: SessionStatusFilter = Query(SessionStatusFilter.ALL, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    sessions = await session_service.list_sessions(db, status_filter.value, skip, limit)
    return [AdminSessionOut.from_model(s) for s in sessions]


@router.get("/stats", response_model=SessionStatsOut)
async def session_stats(
    caller: CallerIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return SessionStatsOut(**await session_service.session_stats(db))


@router.post("/terminate", response_model=TerminateSessionResponse)
async def terminate_session_by_token(
    body: SessionTokenRequest,
    caller: CallerIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Force-logout any user's session by its token."""
    success = await session_service.terminate_session(
        body.session_token, caller.user_id, db, is_admin=True,
    )
    return TerminateSessionResponse(success=success)


@router.delete("/{session_id}", response_model=TerminateSessionResponse)
async def terminate_session(
    session_id: uuid.UUID,
    caller: CallerIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Force-logout any user's session by id (admin console)."""
    success = await session_service.terminate_session_by_id(session_id, db)
    return TerminateSessionResponse(success=success)


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_expired(
    caller: CallerIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Run the expiry sweep now instead of waiting for the next interval."""
    count = await sweep_expired_sessions(db)
    return CleanupResponse(deactivated_count=count)
