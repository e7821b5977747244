"""
Impersonation service — session lifecycle orchestration.

Handles:
- Starting a session: identity lookup, policy check, supersession of
  the actor's previous session, row creation, credential minting.
- Stopping a session (manual stop, supersession, admin revoke, expiry).
- Recording actions performed while impersonating.
- Read-side views: active sessions, paginated history, statistics,
  status of a presented credential.

State machine:  ACTIVE ──stop / supersede / revoke──► ENDED
                ACTIVE ──sweeper──────────────────────► EXPIRED
No transition leaves ENDED or EXPIRED.

Every write path runs inside one store transaction; audit events are
queued only after that transaction commits, so a rolled-back start
leaves neither a row nor an audit record behind.
"""

import asyncio
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_admin.core.config import Settings, settings as default_settings
from tenant_admin.core.exceptions import (
    Conflict,
    ImpersonationError,
    InternalError,
    InvalidState,
    NotFound,
    PermissionDenied,
)
from tenant_admin.models.base import Clock, utcnow
from tenant_admin.models.impersonation import EndReason, ImpersonationSession, SessionStatus
from tenant_admin.rbac.impersonation_policy import RULE_TARGET_IMPERSONATED, can_impersonate
from tenant_admin.services.audit_service import AuditEvent, AuditSink
from tenant_admin.services.credential_service import CredentialIssuer, IssuedCredential
from tenant_admin.services.directory_service import (
    Identity,
    IdentityDirectory,
    ScopeLookup,
    set_current_impersonator,
)
from tenant_admin.services.session_store import HistoryFilters, SessionStats, SessionStore

logger = logging.getLogger(__name__)

STATS_TIMEFRAMES = {"7d": 7, "30d": 30, "90d": 90}

# Partial unique indexes on impersonation_sessions, as named on PostgreSQL
# and as reported by SQLite ("UNIQUE constraint failed: <table>.<column>").
_ACTIVE_ACTOR_MARKERS = ("uq_impersonation_active_actor", "impersonation_sessions.actor_id")
_ACTIVE_TARGET_MARKERS = ("uq_impersonation_active_target", "impersonation_sessions.target_id")


@dataclass
class StartResult:
    session: ImpersonationSession
    target: Identity
    credential: IssuedCredential

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def expires_at(self) -> datetime:
        return self.session.expires_at


@dataclass
class StopResult:
    session_id: str
    duration_seconds: int
    end_reason: EndReason


@dataclass
class HistoryPage:
    sessions: list[ImpersonationSession]
    total_count: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return (self.total_count + self.limit - 1) // self.limit if self.limit else 0


@dataclass
class ImpersonationStatus:
    is_impersonating: bool
    session: ImpersonationSession | None = None
    actor: Identity | None = None
    target: Identity | None = None


@dataclass
class _PendingAudit:
    events: list[AuditEvent] = field(default_factory=list)


def new_session_id() -> str:
    return f"imp_{secrets.token_hex(16)}"


def _blocked_invariant(exc: IntegrityError) -> str | None:
    """Name the exclusivity rule a failed insert ran into, if it was one."""
    message = str(exc.orig)
    if any(marker in message for marker in _ACTIVE_ACTOR_MARKERS):
        return "actor already has an active session"
    if any(marker in message for marker in _ACTIVE_TARGET_MARKERS):
        return "target already impersonated"
    return None


class ImpersonationManager:
    def __init__(
        self,
        store: SessionStore,
        directory: IdentityDirectory,
        scope_lookup: ScopeLookup,
        issuer: CredentialIssuer,
        audit: AuditSink,
        *,
        clock: Clock = utcnow,
        settings: Settings = default_settings,
    ):
        self.store = store
        self.directory = directory
        self.scope_lookup = scope_lookup
        self.issuer = issuer
        self.audit = audit
        self._clock = clock
        self._settings = settings

    @property
    def session_duration(self) -> timedelta:
        return timedelta(minutes=self._settings.IMPERSONATION_SESSION_MINUTES)

    # ── Identity lookups ─────────────────────────────────────────────

    async def _lookup(self, user_id: uuid.UUID, label: str) -> Identity:
        try:
            identity = await asyncio.wait_for(
                self.directory.find_by_id(user_id),
                timeout=self._settings.IDENTITY_LOOKUP_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.error("Identity lookup timed out for %s %s", label, user_id)
            raise InternalError(f"{label} lookup timed out")
        except SQLAlchemyError as exc:
            logger.exception("Identity lookup failed for %s %s", label, user_id)
            raise InternalError(f"{label} lookup failed") from exc
        if identity is None:
            raise NotFound(f"{label} not found")
        return identity

    # ── Start ────────────────────────────────────────────────────────

    async def start(
        self,
        actor_id: uuid.UUID,
        target_id: uuid.UUID,
        reason: str | None = None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> StartResult:
        actor = await self._lookup(actor_id, "actor")
        target = await self._lookup(target_id, "target")
        reason = (reason or "").strip() or self._settings.DEFAULT_IMPERSONATION_REASON

        pending = _PendingAudit()
        try:
            async with self.store.transaction() as db:
                occupied = await self.store.find_active_by_target(db, target.id)
                decision = await can_impersonate(
                    actor,
                    target,
                    self.scope_lookup,
                    target_impersonated=occupied is not None,
                )
                if not decision.allowed:
                    logger.warning(
                        "Impersonation denied: %s -> %s (%s)", actor.id, target.id, decision.reason,
                    )
                    if decision.rule == RULE_TARGET_IMPERSONATED:
                        raise Conflict(decision.reason)
                    raise PermissionDenied(decision.reason)

                previous = await self.store.find_active_by_actor(db, actor.id)
                if previous is not None:
                    # A concurrent stop or sweep may end it first; that writer audits it.
                    await self._end_in_transaction(
                        db,
                        previous.session_id,
                        EndReason.SUPERSEDED_BY_NEW_SESSION,
                        requested_by=actor.id,
                        pending=pending,
                        missing_ok=True,
                    )

                now = self._clock()
                session = await self.store.create(
                    db,
                    ImpersonationSession(
                        session_id=new_session_id(),
                        actor_id=actor.id,
                        target_id=target.id,
                        actor_role_snapshot=actor.role.value,
                        target_role_snapshot=target.role.value,
                        reason=reason,
                        started_at=now,
                        expires_at=now + self.session_duration,
                        status=SessionStatus.ACTIVE,
                        actions_performed=[],
                        ip_address=ip_address,
                        user_agent=user_agent,
                    ),
                )
                await set_current_impersonator(db, target.id, actor.id)

                credential = await self.issuer.issue(db, session.session_id)
                await self.store.record_issuance(
                    db,
                    session,
                    credential_id=credential.credential_id,
                    issued_at=credential.issued_at,
                )
        except ImpersonationError:
            raise
        except IntegrityError as exc:
            blocked = _blocked_invariant(exc)
            if blocked is None:
                logger.exception("Impersonation start failed: %s -> %s", actor.id, target.id)
                raise InternalError("failed to start impersonation session") from exc
            # Another process won the race for the same actor or target.
            logger.warning(
                "Impersonation start lost a race: %s -> %s (%s)", actor.id, target.id, blocked,
            )
            raise Conflict(blocked) from exc
        except SQLAlchemyError as exc:
            logger.exception("Impersonation start failed: %s -> %s", actor.id, target.id)
            raise InternalError("failed to start impersonation session") from exc

        pending.events.append(
            {
                "event": "impersonation_started",
                "actor_id": actor.id,
                "target_id": target.id,
                "session_id": session.session_id,
                "reason": reason,
                "expires_at": session.expires_at,
            }
        )
        self._flush_audit(pending)
        logger.info(
            "Impersonation started: session=%s actor=%s target=%s expires_at=%s",
            session.session_id,
            actor.id,
            target.id,
            session.expires_at.isoformat(),
        )
        return StartResult(session=session, target=target, credential=credential)

    # ── Stop ─────────────────────────────────────────────────────────

    async def stop(
        self,
        session_id: str,
        requested_by: uuid.UUID | None = None,
        end_reason: EndReason = EndReason.MANUAL_STOP,
    ) -> StopResult:
        pending = _PendingAudit()
        try:
            async with self.store.transaction() as db:
                result = await self._end_in_transaction(
                    db, session_id, end_reason, requested_by=requested_by, pending=pending,
                )
        except ImpersonationError:
            raise
        except SQLAlchemyError as exc:
            logger.exception("Impersonation stop failed: session=%s", session_id)
            raise InternalError("failed to stop impersonation session") from exc

        self._flush_audit(pending)
        logger.info(
            "Impersonation ended: session=%s reason=%s duration=%ss",
            result.session_id,
            result.end_reason.value,
            result.duration_seconds,
        )
        return result

    async def force_end(self, session_id: str, requested_by: uuid.UUID) -> StopResult:
        return await self.stop(session_id, requested_by, EndReason.ADMIN_REVOKED)

    async def _end_in_transaction(
        self,
        db: AsyncSession,
        session_id: str,
        end_reason: EndReason,
        *,
        requested_by: uuid.UUID | None,
        pending: _PendingAudit,
        missing_ok: bool = False,
    ) -> StopResult | None:
        """
        End one ACTIVE session inside `db`'s transaction and queue its audit
        event.  When the session is absent or already terminal, raises
        `NotFound`, or returns None with `missing_ok`.
        """
        session = await self.store.end(
            db,
            session_id,
            end_reason=end_reason,
            ended_at=self._clock(),
            ended_by=requested_by,
        )
        if session is None:
            if missing_ok:
                logger.info("Session %s already ended by another writer", session_id)
                return None
            raise NotFound("session not found or already ended")

        await set_current_impersonator(db, session.target_id, None, only_if=session.actor_id)

        duration = session.duration_seconds or 0
        pending.events.append(
            {
                "event": "impersonation_ended",
                "actor_id": session.actor_id,
                "target_id": session.target_id,
                "session_id": session.session_id,
                "duration": duration,
                "end_reason": end_reason.value,
                "ended_by": requested_by,
                "actions_performed": list(session.actions_performed),
            }
        )
        return StopResult(session_id=session.session_id, duration_seconds=duration, end_reason=end_reason)

    # ── In-session actions ───────────────────────────────────────────

    async def record_action(
        self,
        session_id: str,
        action: str,
        detail: dict[str, Any] | None = None,
    ) -> ImpersonationSession:
        entry = {
            "action": action,
            "detail": detail or {},
            "timestamp": self._clock().isoformat(),
        }
        try:
            async with self.store.transaction() as db:
                session = await self.store.append_action(db, session_id, entry)
                if session is None:
                    raise InvalidState("session is not active")
                if session.expires_at <= self._clock():
                    raise InvalidState("session has expired")
        except ImpersonationError:
            raise
        except SQLAlchemyError as exc:
            logger.exception("Recording action failed: session=%s", session_id)
            raise InternalError("failed to record impersonation action") from exc

        self.audit.append(
            {
                "event": "impersonation_action",
                "actor_id": session.actor_id,
                "target_id": session.target_id,
                "session_id": session.session_id,
                "action": action,
                "detail": entry["detail"],
                "as_impersonated": True,
            }
        )
        return session

    # ── Read side ────────────────────────────────────────────────────

    async def get_session(self, session_id: str) -> ImpersonationSession:
        session = await self.store.fetch(session_id)
        if session is None:
            raise NotFound("session not found")
        return session

    async def get_active_sessions(self, actor_id: uuid.UUID | None = None) -> list[ImpersonationSession]:
        return await self.store.list_active(actor_id)

    async def get_history(
        self,
        filters: HistoryFilters,
        page: int = 1,
        limit: int = 10,
    ) -> HistoryPage:
        page = max(page, 1)
        sessions, total = await self.store.list_history(filters, skip=(page - 1) * limit, limit=limit)
        return HistoryPage(sessions=sessions, total_count=total, page=page, limit=limit)

    async def get_stats(self, timeframe: str = "30d") -> SessionStats:
        days = STATS_TIMEFRAMES.get(timeframe)
        if days is None:
            raise InvalidState(f"unsupported timeframe {timeframe!r}")
        now = self._clock()
        return await self.store.stats(since=now - timedelta(days=days), now=now)

    async def get_status(self, credential: str) -> ImpersonationStatus:
        """Resolve a presented credential; both the token and the row must be live."""
        claims = self.issuer.verify(credential)
        session = await self.store.fetch(claims.session_id)
        if session is None or session.status != SessionStatus.ACTIVE:
            return ImpersonationStatus(is_impersonating=False)
        if session.credential_id != claims.credential_id:
            return ImpersonationStatus(is_impersonating=False)
        actor = await self.directory.find_by_id(session.actor_id)
        target = await self.directory.find_by_id(session.target_id)
        return ImpersonationStatus(is_impersonating=True, session=session, actor=actor, target=target)

    # ── Audit ────────────────────────────────────────────────────────

    def _flush_audit(self, pending: _PendingAudit) -> None:
        for event in pending.events:
            self.audit.append(event)
