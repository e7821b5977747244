"""
Impersonation error taxonomy.

Services raise these directly (the same way other services raise
`HTTPException`), so FastAPI renders them without extra handlers.  Each
class carries a stable `code` for UI messaging; the human-readable
reason is passed through verbatim as `detail`.
"""

from fastapi import HTTPException, status


class ImpersonationError(HTTPException):
    """Base class for every error raised by the impersonation subsystem."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "impersonation_error"

    def __init__(self, detail: str, headers: dict[str, str] | None = None):
        super().__init__(status_code=self.status_code, detail=detail, headers=headers)

    @property
    def reason(self) -> str:
        return self.detail

    def __str__(self) -> str:
        return f"{self.code}: {self.detail}"


class NotFound(ImpersonationError):
    """Actor, target or session is missing (or the session is already terminal)."""

    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class PermissionDenied(ImpersonationError):
    """The permission matrix rejected the request."""

    status_code = status.HTTP_403_FORBIDDEN
    code = "permission_denied"


class Conflict(ImpersonationError):
    """An exclusivity invariant blocked the request."""

    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


class InvalidState(ImpersonationError):
    """Operation attempted against a session that is not active."""

    status_code = status.HTTP_409_CONFLICT
    code = "invalid_state"


class InternalError(ImpersonationError):
    """Storage or transport failure."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "internal"


class CredentialRejected(ImpersonationError):
    """Impersonation credential is malformed, tampered with or expired."""

    status_code = status.HTTP_401_UNAUTHORIZED
    code = "credential_rejected"

    def __init__(self, detail: str = "Invalid or expired impersonation credential"):
        super().__init__(detail, headers={"WWW-Authenticate": "Bearer"})
