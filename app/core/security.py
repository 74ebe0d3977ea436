"""
Token helpers.

- Identity-provider JWTs are decoded with python-jose; the `sub`
  claim is the authenticated user id.  This service never verifies
  passwords itself.
- Session tokens are opaque bearer credentials: 256 bits from
  `secrets`, stored only as a SHA-256 hash.
"""

import hashlib
import secrets
from typing import Any

from fastapi import HTTPException, status
from fastapi.security import HTTPBearer
from jose import JWTError, jwt

from app.core.config import settings

# ── Session tokens ───────────────────────────────────────────────────


def generate_session_token() -> str:
    """Cryptographically secure URL-safe token (32 random bytes)."""
    return secrets.token_urlsafe(32)


def hash_token(token: str) -> str:
    """SHA-256 hash — suitable for high-entropy tokens."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ── Identity-provider JWT ────────────────────────────────────────────
bearer_scheme = HTTPBearer(auto_error=False)


def decode_identity_token(token: str) -> dict[str, Any]:
    """Decode & validate an identity JWT.  Raises HTTPException on failure."""
    try:
        payload = jwt.decode(
            token,
            settings.IDENTITY_JWT_SECRET,
            algorithms=[settings.IDENTITY_JWT_ALGORITHM],
            options={"verify_aud": False},
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


def extract_role_names(payload: dict[str, Any]) -> set[str]:
    """Roles may arrive as a `role_names` list or a single `role` string."""
    roles = payload.get("role_names") or []
    if isinstance(roles, str):
        roles = [roles]
    names = {str(r) for r in roles}
    if payload.get("role"):
        names.add(str(payload["role"]))
    return names
