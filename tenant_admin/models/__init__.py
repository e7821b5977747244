"""
Models package — import every model so SQLAlchemy's Base.metadata
knows about all tables (critical for `create_all` / Alembic).
"""

from tenant_admin.models.base import Base, TimestampMixin, UTCDateTime, UUIDPrimaryKeyMixin
from tenant_admin.models.account import Account, csm_assignments, user_accounts
from tenant_admin.models.user import User, UserRole, UserStatus
from tenant_admin.models.impersonation import EndReason, ImpersonationSession, SessionStatus
from tenant_admin.models.audit import AuditLog

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "UUIDPrimaryKeyMixin",
    "Account",
    "csm_assignments",
    "user_accounts",
    "User",
    "UserRole",
    "UserStatus",
    "EndReason",
    "ImpersonationSession",
    "SessionStatus",
    "AuditLog",
]
