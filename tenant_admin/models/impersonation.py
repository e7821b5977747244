"""
Impersonation session model — authoritative session registry.

One row per impersonation session, never deleted.  Exclusivity is
enforced by the database itself through two partial unique indexes:
at most one ACTIVE row per actor and at most one ACTIVE row per target.
State transitions are conditional updates (`WHERE status = 'active'`),
so the second writer to reach a terminal session changes nothing.
"""

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, CheckConstraint, Enum, ForeignKey, Index, String, text
from sqlalchemy.orm import Mapped, mapped_column

from tenant_admin.models.base import Base, utcnow


class SessionStatus(str, enum.Enum):
    ACTIVE = "active"
    ENDED = "ended"
    EXPIRED = "expired"


class EndReason(str, enum.Enum):
    MANUAL_STOP = "manual_stop"
    SUPERSEDED_BY_NEW_SESSION = "superseded_by_new_session"
    EXPIRED = "expired"
    ADMIN_REVOKED = "admin_revoked"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


_ACTIVE_ONLY = text("status = 'active'")


class ImpersonationSession(Base):
    __tablename__ = "impersonation_sessions"

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    actor_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )
    target_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )
    actor_role_snapshot: Mapped[str] = mapped_column(String(32), nullable=False)
    target_role_snapshot: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str] = mapped_column(String(1024), nullable=False)

    started_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(nullable=True)

    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus, name="impersonation_status", values_callable=_enum_values),
        default=SessionStatus.ACTIVE,
        nullable=False,
    )
    end_reason: Mapped[EndReason | None] = mapped_column(
        Enum(EndReason, name="impersonation_end_reason", values_callable=_enum_values),
        nullable=True,
    )
    ended_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)

    # Credential issuance record; NULL means minting never completed.
    credential_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    credential_issued_at: Mapped[datetime | None] = mapped_column(nullable=True)

    actions_performed: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )

    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)

    __table_args__ = (
        CheckConstraint("actor_id <> target_id", name="ck_impersonation_not_self"),
        Index(
            "uq_impersonation_active_actor",
            "actor_id",
            unique=True,
            postgresql_where=_ACTIVE_ONLY,
            sqlite_where=_ACTIVE_ONLY,
        ),
        Index(
            "uq_impersonation_active_target",
            "target_id",
            unique=True,
            postgresql_where=_ACTIVE_ONLY,
            sqlite_where=_ACTIVE_ONLY,
        ),
        Index("ix_impersonation_actor_status", "actor_id", "status"),
        Index("ix_impersonation_target_status", "target_id", "status"),
        Index("ix_impersonation_started_at", "started_at"),
    )

    @property
    def duration_seconds(self) -> int | None:
        if self.ended_at is None:
            return None
        return int((self.ended_at - self.started_at).total_seconds())

    def __repr__(self) -> str:
        return (
            f"<ImpersonationSession {self.session_id} "
            f"actor={self.actor_id} target={self.target_id} [{self.status.value}]>"
        )
