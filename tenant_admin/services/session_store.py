"""
Session store — the only component that reads or writes
impersonation_sessions rows.

Handles:
- Write transactions (`transaction()`), serialized per process by an
  asyncio lock and guarded across processes by the partial unique
  indexes on the table.
- Conditional state transitions: `end` only touches a row that is still
  ACTIVE and reports whether it did, so concurrent stoppers cannot both
  win.
- Read-side queries for active sessions, history pagination, sweeping
  and statistics.

Write helpers take the `AsyncSession` of the caller's transaction so
the manager can compose supersede + create + mint into one commit.
"""

import asyncio
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenant_admin.models.impersonation import EndReason, ImpersonationSession, SessionStatus


@dataclass
class HistoryFilters:
    actor_id: uuid.UUID | None = None
    target_id: uuid.UUID | None = None
    status: SessionStatus | None = None
    started_from: datetime | None = None
    started_to: datetime | None = None


@dataclass
class SessionStats:
    total_sessions: int
    active_sessions: int
    unique_actors: int
    unique_targets: int
    avg_duration_minutes: float


class SessionStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._write_lock = asyncio.Lock()

    # ── Transactions ─────────────────────────────────────────────────

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Open a write transaction; commits on clean exit, rolls back on error."""
        async with self._write_lock:
            async with self._session_factory() as db:
                async with db.begin():
                    yield db

    # ── Lookups inside a transaction ─────────────────────────────────

    async def get(
        self,
        db: AsyncSession,
        session_id: str,
        *,
        for_update: bool = False,
    ) -> ImpersonationSession | None:
        stmt = select(ImpersonationSession).where(ImpersonationSession.session_id == session_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def find_active_by_target(
        self,
        db: AsyncSession,
        target_id: uuid.UUID,
    ) -> ImpersonationSession | None:
        stmt = select(ImpersonationSession).where(
            ImpersonationSession.target_id == target_id,
            ImpersonationSession.status == SessionStatus.ACTIVE,
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def find_active_by_actor(
        self,
        db: AsyncSession,
        actor_id: uuid.UUID,
    ) -> ImpersonationSession | None:
        stmt = select(ImpersonationSession).where(
            ImpersonationSession.actor_id == actor_id,
            ImpersonationSession.status == SessionStatus.ACTIVE,
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    # ── Writes inside a transaction ──────────────────────────────────

    async def create(self, db: AsyncSession, session: ImpersonationSession) -> ImpersonationSession:
        db.add(session)
        await db.flush()
        return session

    async def end(
        self,
        db: AsyncSession,
        session_id: str,
        *,
        end_reason: EndReason,
        ended_at: datetime,
        ended_by: uuid.UUID | None = None,
    ) -> ImpersonationSession | None:
        """
        Move an ACTIVE session to its terminal state.

        Returns the updated row, or None when the session does not exist
        or another writer already ended it.
        """
        terminal = SessionStatus.EXPIRED if end_reason == EndReason.EXPIRED else SessionStatus.ENDED
        stmt = (
            update(ImpersonationSession)
            .where(
                ImpersonationSession.session_id == session_id,
                ImpersonationSession.status == SessionStatus.ACTIVE,
            )
            .values(
                status=terminal,
                end_reason=end_reason,
                ended_at=ended_at,
                ended_by=ended_by,
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount != 1:
            return None
        return await self.get(db, session_id)

    async def record_issuance(
        self,
        db: AsyncSession,
        session: ImpersonationSession,
        *,
        credential_id: str,
        issued_at: datetime,
    ) -> None:
        session.credential_id = credential_id
        session.credential_issued_at = issued_at
        await db.flush()

    async def append_action(
        self,
        db: AsyncSession,
        session_id: str,
        entry: dict[str, Any],
    ) -> ImpersonationSession | None:
        """Append to `actions_performed` if the session is ACTIVE; None otherwise."""
        session = await self.get(db, session_id, for_update=True)
        if session is None or session.status != SessionStatus.ACTIVE:
            return None
        # Reassign so the JSON column is flagged dirty.
        session.actions_performed = [*session.actions_performed, entry]
        await db.flush()
        return session

    # ── Read-side queries ────────────────────────────────────────────

    async def fetch(self, session_id: str) -> ImpersonationSession | None:
        async with self._session_factory() as db:
            return await self.get(db, session_id)

    async def list_active(self, actor_id: uuid.UUID | None = None) -> list[ImpersonationSession]:
        stmt = select(ImpersonationSession).where(
            ImpersonationSession.status == SessionStatus.ACTIVE,
        )
        if actor_id is not None:
            stmt = stmt.where(ImpersonationSession.actor_id == actor_id)
        stmt = stmt.order_by(ImpersonationSession.started_at.desc())
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def list_history(
        self,
        filters: HistoryFilters,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[list[ImpersonationSession], int]:
        """Return one page of sessions (newest first) and the total match count."""
        conditions = []
        if filters.actor_id is not None:
            conditions.append(ImpersonationSession.actor_id == filters.actor_id)
        if filters.target_id is not None:
            conditions.append(ImpersonationSession.target_id == filters.target_id)
        if filters.status is not None:
            conditions.append(ImpersonationSession.status == filters.status)
        if filters.started_from is not None:
            conditions.append(ImpersonationSession.started_at >= filters.started_from)
        if filters.started_to is not None:
            conditions.append(ImpersonationSession.started_at <= filters.started_to)

        count_stmt = select(func.count()).select_from(ImpersonationSession).where(*conditions)
        page_stmt = (
            select(ImpersonationSession)
            .where(*conditions)
            .order_by(ImpersonationSession.started_at.desc(), ImpersonationSession.session_id)
            .offset(skip)
            .limit(limit)
        )
        async with self._session_factory() as db:
            total = (await db.execute(count_stmt)).scalar_one()
            rows = (await db.execute(page_stmt)).scalars().all()
            return list(rows), int(total)

    async def find_sweepable(
        self,
        now: datetime,
        issuance_cutoff: datetime,
    ) -> list[str]:
        """
        IDs of ACTIVE sessions that must be force-terminated: past their
        deadline, or started before `issuance_cutoff` without a recorded
        credential issuance.
        """
        stmt = (
            select(ImpersonationSession.session_id)
            .where(
                ImpersonationSession.status == SessionStatus.ACTIVE,
                or_(
                    ImpersonationSession.expires_at <= now,
                    and_(
                        ImpersonationSession.credential_id.is_(None),
                        ImpersonationSession.started_at <= issuance_cutoff,
                    ),
                ),
            )
            .order_by(ImpersonationSession.expires_at)
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def stats(self, since: datetime, now: datetime) -> SessionStats:
        stmt = select(
            ImpersonationSession.actor_id,
            ImpersonationSession.target_id,
            ImpersonationSession.status,
            ImpersonationSession.started_at,
            ImpersonationSession.ended_at,
        ).where(ImpersonationSession.started_at > since)
        async with self._session_factory() as db:
            rows = (await db.execute(stmt)).all()

        if not rows:
            return SessionStats(0, 0, 0, 0, 0.0)

        durations = [((row.ended_at or now) - row.started_at).total_seconds() / 60 for row in rows]
        return SessionStats(
            total_sessions=len(rows),
            active_sessions=sum(1 for row in rows if row.status == SessionStatus.ACTIVE),
            unique_actors=len({row.actor_id for row in rows}),
            unique_targets=len({row.target_id for row in rows}),
            avg_duration_minutes=round(sum(durations) / len(durations), 2),
        )
