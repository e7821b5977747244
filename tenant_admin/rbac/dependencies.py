"""
RBAC dependencies — request-level guards for the impersonation API.

`require_role` is a *dependency factory*: call it with one or more
roles and it returns a FastAPI dependency that will:

1. Decode the operator JWT (via `get_current_user_token`).
2. Load the caller through the identity directory.
3. Reject callers that are not ACTIVE.
4. Verify the caller's role is one of the allowed roles.
5. Return 403 on failure — with NO details about which roles qualify.

`get_impersonation_context` is the counterpart for requests made WITH
an impersonation credential: the token must verify on its own (expiry
included) AND its session must still be ACTIVE in the store.  Responses
served under a credential carry the X-Impersonation-* headers.

Usage in a route:
    @router.post("/start")
    async def start(user: Identity = Depends(require_role(UserRole.ADMIN))): ...
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import Depends, HTTPException, Request, Response, status

from tenant_admin.core.exceptions import CredentialRejected
from tenant_admin.core.security import get_current_user_token, oauth2_scheme
from tenant_admin.models.impersonation import ImpersonationSession, SessionStatus
from tenant_admin.models.user import UserRole, UserStatus
from tenant_admin.services.credential_service import CredentialClaims
from tenant_admin.services.directory_service import Identity
from tenant_admin.services.impersonation_service import ImpersonationManager

logger = logging.getLogger("rbac")


def get_manager(request: Request) -> ImpersonationManager:
    """The manager wired up by the app factory."""
    return request.app.state.impersonation_manager


async def get_current_active_user(
    token_payload: dict[str, Any] = Depends(get_current_user_token),
    manager: ImpersonationManager = Depends(get_manager),
) -> Identity:
    """Dependency that returns the current operator WITHOUT role checks."""
    raw_id = token_payload.get("sub") or token_payload.get("user_id")
    try:
        user_id = uuid.UUID(str(raw_id))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    user = await manager.directory.find_by_id(user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    if user.status != UserStatus.ACTIVE:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account disabled")
    return user


class require_role:
    """
    Dependency factory.

    Can be used as:
        Depends(require_role(UserRole.SUPERADMIN))
        Depends(require_role(UserRole.SUPERADMIN, UserRole.ADMIN, UserRole.CSM))
    """

    def __init__(self, *roles: UserRole):
        self.allowed_roles = set(roles)

    async def __call__(self, user: Identity = Depends(get_current_active_user)) -> Identity:
        if user.role not in self.allowed_roles:
            logger.warning(
                "Role check failed for user %s: role %s not in %s",
                user.id,
                user.role.value,
                sorted(role.value for role in self.allowed_roles),
            )
            # Intentionally vague
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return user


@dataclass
class ImpersonationContext:
    claims: CredentialClaims
    session: ImpersonationSession


def set_impersonation_headers(response: Response, session: ImpersonationSession | None) -> None:
    """Tag a response with the impersonation session it was served under."""
    if session is None:
        response.headers["X-Impersonation-Active"] = "false"
        return
    response.headers["X-Impersonation-Active"] = "true"
    response.headers["X-Impersonation-Session"] = session.session_id
    response.headers["X-Impersonator-Id"] = str(session.actor_id)
    response.headers["X-Target-User-Id"] = str(session.target_id)


async def get_impersonation_context(
    response: Response,
    token: str = Depends(oauth2_scheme),
    manager: ImpersonationManager = Depends(get_manager),
) -> ImpersonationContext:
    claims = manager.issuer.verify(token)

    session = await manager.store.fetch(claims.session_id)
    if session is None or session.status != SessionStatus.ACTIVE:
        raise CredentialRejected("Impersonation session has ended or is invalid")
    if session.credential_id != claims.credential_id:
        raise CredentialRejected("Impersonation credential was not issued for this session")

    set_impersonation_headers(response, session)
    return ImpersonationContext(claims=claims, session=session)
