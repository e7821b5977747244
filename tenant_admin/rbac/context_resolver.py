"""
Context resolver — visibility scope for impersonation listings.

Every read endpoint (active sessions, history) MUST pass through
`resolve_session_scope` so that:
- Superadmins see every session.
- Everyone else sees only the sessions they started as actor.

Usage in a controller:
    scope = resolve_session_scope(current_user)
    actor_filter = scope.restrict_actor(requested_actor_id)
"""

import uuid
from dataclasses import dataclass

from fastapi import HTTPException, status

from tenant_admin.models.user import UserRole
from tenant_admin.services.directory_service import Identity


@dataclass
class SessionScope:
    """
    Encapsulates the data-access boundaries for the current request.

    - see_all: superadmin, no filters needed.
    - actor_id: set for everyone else — every session query must filter on this.
    """

    see_all: bool = False
    actor_id: uuid.UUID | None = None

    def restrict_actor(self, requested: uuid.UUID | None) -> uuid.UUID | None:
        """Merge a caller-supplied actor filter with the scope."""
        if self.see_all:
            return requested
        if requested is not None and requested != self.actor_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Cannot view another operator's impersonation sessions",
            )
        return self.actor_id

    def can_manage(self, session_actor_id: uuid.UUID) -> bool:
        return self.see_all or session_actor_id == self.actor_id


def resolve_session_scope(user: Identity) -> SessionScope:
    # Superadmin → unrestricted
    if user.role == UserRole.SUPERADMIN:
        return SessionScope(see_all=True)

    # Admin / CSM → locked to their own sessions
    return SessionScope(actor_id=user.id)
