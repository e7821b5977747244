from __future__ import annotations

"""
User model.

Design decisions:
- A single `role` column drives the impersonation hierarchy
  (superadmin > admin > csm > user).
- Status is an ENUM (ACTIVE / INACTIVE / SUSPENDED); only ACTIVE users
  can be impersonated.
- `current_impersonator_id` is a denormalized back-reference written by
  the impersonation manager in the same transaction as the session row.
  It is informational only: "is this user impersonated?" is always
  answered by the impersonation_sessions table.
"""

import enum
import uuid

from sqlalchemy import Enum, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from typing import TYPE_CHECKING

from tenant_admin.models.account import csm_assignments, user_accounts
from tenant_admin.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from tenant_admin.models.account import Account


class UserRole(str, enum.Enum):
    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    CSM = "csm"
    USER = "user"


class UserStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class User(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(256), unique=True, index=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String(256), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, name="user_role", values_callable=_enum_values),
        default=UserRole.USER,
        nullable=False,
    )
    status: Mapped[UserStatus] = mapped_column(
        Enum(UserStatus, name="user_status", values_callable=_enum_values),
        default=UserStatus.ACTIVE,
        nullable=False,
    )
    current_impersonator_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    # ── Relationships ────────────────────────────────────────────────
    accounts: Mapped[list["Account"]] = relationship(  # noqa: F821
        secondary=user_accounts,
        lazy="selectin",
    )
    managed_accounts: Mapped[list["Account"]] = relationship(  # noqa: F821
        secondary=csm_assignments,
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<User {self.email} [{self.role.value}]>"
