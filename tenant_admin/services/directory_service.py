"""
Directory service — identity and account-scope lookups.

The impersonation manager never touches the users table directly for
reads; it goes through two small capabilities so tests can swap them:

- `IdentityDirectory.find_by_id`  → `Identity | None`
- `ScopeLookup.shares_account`    → does a CSM share an account with a user?

Both SQL implementations open their own short-lived sessions from the
injected session factory.
"""

import uuid
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import and_, exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenant_admin.models.account import csm_assignments, user_accounts
from tenant_admin.models.user import User, UserRole, UserStatus


@dataclass(frozen=True)
class Identity:
    """Read-only view of a user as seen by the impersonation subsystem."""

    id: uuid.UUID
    role: UserRole
    status: UserStatus
    email: str = ""
    full_name: str = ""

    @classmethod
    def from_user(cls, user: User) -> "Identity":
        return cls(
            id=user.id,
            role=user.role,
            status=user.status,
            email=user.email,
            full_name=user.full_name,
        )


class IdentityDirectory(Protocol):
    async def find_by_id(self, user_id: uuid.UUID) -> Identity | None: ...


class ScopeLookup(Protocol):
    async def shares_account(self, actor_id: uuid.UUID, target_id: uuid.UUID) -> bool: ...


class UserDirectory:
    """`IdentityDirectory` backed by the `users` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def find_by_id(self, user_id: uuid.UUID) -> Identity | None:
        async with self._session_factory() as db:
            result = await db.execute(select(User).where(User.id == user_id))
            user = result.scalar_one_or_none()
            return Identity.from_user(user) if user is not None else None


class AccountScopeLookup:
    """
    `ScopeLookup` over `csm_assignments` × `user_accounts`.

    True when at least one account the actor is assigned to (as CSM) is
    also an account the target belongs to.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def shares_account(self, actor_id: uuid.UUID, target_id: uuid.UUID) -> bool:
        shared = exists().where(
            and_(
                csm_assignments.c.csm_id == actor_id,
                user_accounts.c.user_id == target_id,
                csm_assignments.c.account_id == user_accounts.c.account_id,
            )
        )
        async with self._session_factory() as db:
            result = await db.execute(select(shared))
            return bool(result.scalar())


async def set_current_impersonator(
    db: AsyncSession,
    target_id: uuid.UUID,
    impersonator_id: uuid.UUID | None,
    *,
    only_if: uuid.UUID | None = None,
) -> None:
    """
    Maintain the denormalized `users.current_impersonator_id` column.

    Runs inside the caller's transaction so the back-reference commits
    or rolls back together with the session row.  `only_if` restricts
    clearing to a back-reference that still points at that actor.
    """
    stmt = update(User).where(User.id == target_id)
    if only_if is not None:
        stmt = stmt.where(User.current_impersonator_id == only_if)
    await db.execute(
        stmt.values(current_impersonator_id=impersonator_id).execution_options(
            synchronize_session=False
        )
    )
