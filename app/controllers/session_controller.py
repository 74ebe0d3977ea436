"""
Session controller — create, validate, terminate & list device sessions.

Create / terminate / list require the identity-provider bearer token;
the user id always comes from that token, never from the body.
Validate is authenticated by the session token itself.

Controllers are THIN — they delegate to `session_service` and map its
typed results onto responses.
"""

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.rbac.dependencies import CallerIdentity, get_caller_identity
from app.schemas import (
    CreateSessionRequest,
    CreateSessionResponse,
    IssuedSessionOut,
    SessionConflictOut,
    SessionListResponse,
    SessionOut,
    SessionTokenRequest,
    TerminateSessionResponse,
    ValidateSessionResponse,
)
from app.services import session_service

router = APIRouter(prefix="/api/sessions", tags=["Sessions"])


@router.post(
    "",
    response_model=CreateSessionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={status.HTTP_409_CONFLICT: {"model": SessionConflictOut}},
)
async def create_session(
    body: CreateSessionRequest,
    request: Request,
    caller: CallerIdentity = Depends(get_caller_identity),
    db: AsyncSession = Depends(get_db),
):
    """
    Start a session for this device.

    409 means another device holds the account; resubmit with
    `force_takeover: true` once the user confirms.
    """
    ip_address = body.ip_address or (request.client.host if request.client else None)
    result = await session_service.create_session(
        user_id=caller.user_id,
        device_id=body.device_id,
        device_info=body.device_info,
        ip_address=ip_address,
        db=db,
        force_takeover=body.force_takeover,
    )

    if isinstance(result, session_service.SessionConflict):
        conflict = SessionConflictOut(
            existing_session_summary=SessionOut.from_model(result.existing_session),
            message=result.message,
        )
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=conflict.model_dump(mode="json"),
        )

    issued = IssuedSessionOut(
        session_token=result.session_token,
        **SessionOut.from_model(result.session).model_dump(),
    )
    return CreateSessionResponse(session=issued)


@router.post("/validate", response_model=ValidateSessionResponse)
async def validate_session(
    body: SessionTokenRequest,
    db: AsyncSession = Depends(get_db),
):
    """Check a session token; `valid: false` covers expired and unknown alike."""
    session = await session_service.validate_session(body.session_token, db)
    if session is None:
        return ValidateSessionResponse(valid=False)
    return ValidateSessionResponse(valid=True, session=SessionOut.from_model(session))


@router.post("/terminate", response_model=TerminateSessionResponse)
async def terminate_session(
    body: SessionTokenRequest,
    caller: CallerIdentity = Depends(get_caller_identity),
    db: AsyncSession = Depends(get_db),
):
    """Log a session out.  Only its owner may do this here."""
    success = await session_service.terminate_session(
        body.session_token, caller.user_id, db,
    )
    return TerminateSessionResponse(success=success)


@router.get("", response_model=SessionListResponse)
async def list_sessions(
    caller: CallerIdentity = Depends(get_caller_identity),
    db: AsyncSession = Depends(get_db),
):
    """The caller's active sessions, newest first."""
    active = await session_service.list_active_sessions(caller.user_id, db)
    return SessionListResponse(
        sessions=[SessionOut.from_model(s) for s in active.sessions],
        integrity_warning=active.integrity_warning,
    )
