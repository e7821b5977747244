from __future__ import annotations

"""
Account model & assignment tables.

Accounts are the tenants of the dashboard.  Two plain association
tables link identities to accounts:

- `user_accounts`   — end users belonging to an account.
- `csm_assignments` — customer-success managers assigned to an account.

A CSM may only impersonate users that share at least one account with
one of the CSM's assignments.
"""

from sqlalchemy import Column, ForeignKey, String, Table
from sqlalchemy.orm import Mapped, mapped_column

from tenant_admin.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

# ── Association tables ───────────────────────────────────────────────
user_accounts = Table(
    "user_accounts",
    Base.metadata,
    Column("user_id", ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("account_id", ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True),
)

csm_assignments = Table(
    "csm_assignments",
    Base.metadata,
    Column("csm_id", ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("account_id", ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True),
)


class Account(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "accounts"

    name: Mapped[str] = mapped_column(String(256), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="active", nullable=False)

    def __repr__(self) -> str:
        return f"<Account {self.name}>"
