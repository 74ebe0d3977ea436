"""
Pydantic schemas for request / response serialization.

Kept in a single file for now — split per-domain when it grows.
Schemas are deliberately decoupled from SQLAlchemy models so the
API surface can evolve independently of the DB layer.

`session_token` appears in exactly one response: `IssuedSessionOut`,
returned at creation.  Every other session representation omits it.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from app.models.session import UserSession
from app.services.fingerprint import browser_name, classify_device_type


# ── Session ──────────────────────────────────────────────────────────
class CreateSessionRequest(BaseModel):
    device_id: str = Field(max_length=256)
    device_info: dict[str, Any]
    ip_address: str | None = Field(default=None, max_length=45)
    force_takeover: bool = False


class SessionTokenRequest(BaseModel):
    session_token: str = Field(min_length=1)


class SessionOut(BaseModel):
    id: uuid.UUID
    device_id: str
    device_info: dict[str, Any]
    ip_address: str | None = None
    is_active: bool
    last_activity: datetime
    created_at: datetime
    expires_at: datetime
    device_type: str
    browser: str

    @classmethod
    def from_model(cls, session: UserSession) -> "SessionOut":
        return cls(
            id=session.id,
            device_id=session.device_id,
            device_info=session.device_info or {},
            ip_address=session.ip_address,
            is_active=session.is_active,
            last_activity=session.last_activity,
            created_at=session.created_at,
            expires_at=session.expires_at,
            device_type=classify_device_type(session.device_info),
            browser=browser_name(session.device_info),
        )


class AdminSessionOut(SessionOut):
    user_id: str

    @classmethod
    def from_model(cls, session: UserSession) -> "AdminSessionOut":
        base = SessionOut.from_model(session)
        return cls(user_id=session.user_id, **base.model_dump())


class IssuedSessionOut(SessionOut):
    session_token: str


class CreateSessionResponse(BaseModel):
    session: IssuedSessionOut


class SessionConflictOut(BaseModel):
    error: Literal["conflict"] = "conflict"
    existing_session_summary: SessionOut
    message: str


class ValidateSessionResponse(BaseModel):
    valid: bool
    session: SessionOut | None = None


class TerminateSessionResponse(BaseModel):
    success: bool


class SessionListResponse(BaseModel):
    sessions: list[SessionOut]
    integrity_warning: bool = False


# ── Admin ────────────────────────────────────────────────────────────
class SessionStatusFilter(str, Enum):
    ALL = "all"
    ACTIVE = "active"
    INACTIVE = "inactive"


class SessionStatsOut(BaseModel):
    active: int
    total: int
    expired: int


class CleanupResponse(BaseModel):
    deactivated_count: int


# ── Generic ──────────────────────────────────────────────────────────
class MessageResponse(BaseModel):
    detail: str
