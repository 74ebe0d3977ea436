"""
Error taxonomy for the session subsystem.

Services raise these; `app.main` maps them onto HTTP responses.
Expected outcomes (a conflicting session on another device, a token
that does not resolve to a live session) are NOT exceptions — they
come back as typed results from the lifecycle service.
"""

from fastapi import status


class SessionServiceError(Exception):
    """Base class — carries the HTTP status the handler should use."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail: str = "Session service error"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class InvalidInputError(SessionServiceError):
    """Malformed device id / device info.  Caller-correctable."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = "Invalid device fingerprint"


class SessionNotFoundError(SessionServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Session not found"


class SessionForbiddenError(SessionServiceError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Not allowed to terminate this session"


class StoreUnavailableError(SessionServiceError):
    """Transient store failure after retries.  Never an auth decision."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Session store unavailable, try again"
