"""
Caller identity dependencies.

`get_caller_identity` turns the identity-provider bearer token into a
`CallerIdentity`.  `require_admin` additionally demands the admin
role and is the ONLY way into the administrative session routes.

Usage in a route:
    @router.get("/sessions")
    async def list_sessions(caller: CallerIdentity = Depends(get_caller_identity)): ...

    @router.post("/sessions/cleanup")
    async def cleanup(caller: CallerIdentity = Depends(require_admin)): ...
"""

import logging
from dataclasses import dataclass, field

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials

from app.core.config import settings
from app.core.security import bearer_scheme, decode_identity_token, extract_role_names

logger = logging.getLogger("rbac")


@dataclass
class CallerIdentity:
    """
    The already-authenticated caller.

    - user_id: identity-provider subject, owner key for sessions.
    - is_admin: may terminate any session and run the expiry sweep.
    """

    user_id: str
    is_admin: bool = False
    role_names: set[str] = field(default_factory=set)


async def get_caller_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> CallerIdentity:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_identity_token(credentials.credentials)
    user_id = payload.get("sub") or payload.get("user_id")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    role_names = extract_role_names(payload)
    return CallerIdentity(
        user_id=str(user_id),
        is_admin=settings.ADMIN_ROLE_NAME in role_names,
        role_names=role_names,
    )


async def require_admin(
    caller: CallerIdentity = Depends(get_caller_identity),
) -> CallerIdentity:
    if not caller.is_admin:
        logger.warning("Admin route denied for user %s", caller.user_id)
        # Intentionally vague
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions",
        )
    return caller
