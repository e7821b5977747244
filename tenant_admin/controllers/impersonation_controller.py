"""
Impersonation controller — start / stop / revoke, listings, in-session actions.

Operator routes authenticate with the operator's own access token and
use `Depends(require_role(...))` for enforcement.  In-session routes
(`/actions`, `/status`) authenticate with the impersonation credential.
Controllers are THIN — they delegate to the manager and return schemas.
"""

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from tenant_admin.core.security import oauth2_scheme
from tenant_admin.models.impersonation import ImpersonationSession, SessionStatus
from tenant_admin.models.user import UserRole
from tenant_admin.rbac.context_resolver import resolve_session_scope
from tenant_admin.rbac.dependencies import (
    ImpersonationContext,
    get_impersonation_context,
    get_manager,
    require_role,
    set_impersonation_headers,
)
from tenant_admin.schemas import (
    ActionOut,
    HistoryOut,
    IdentitySummaryOut,
    ImpersonationStatusOut,
    MessageResponse,
    RecordActionRequest,
    SessionSummaryOut,
    StartImpersonationRequest,
    StartImpersonationResponse,
    StatsOut,
    StopImpersonationRequest,
    StopImpersonationResponse,
)
from tenant_admin.services.directory_service import Identity
from tenant_admin.services.impersonation_service import ImpersonationManager
from tenant_admin.services.session_store import HistoryFilters

router = APIRouter(prefix="/api/impersonation", tags=["Impersonation"])

IMPERSONATORS = (UserRole.SUPERADMIN, UserRole.ADMIN, UserRole.CSM)


def _identity_out(identity: Identity) -> IdentitySummaryOut:
    return IdentitySummaryOut(
        id=identity.id,
        email=identity.email,
        full_name=identity.full_name,
        role=identity.role.value,
    )


def _session_out(session: ImpersonationSession) -> SessionSummaryOut:
    return SessionSummaryOut(
        session_id=session.session_id,
        actor_id=session.actor_id,
        target_id=session.target_id,
        actor_role_snapshot=session.actor_role_snapshot,
        target_role_snapshot=session.target_role_snapshot,
        reason=session.reason,
        status=session.status.value,
        end_reason=session.end_reason.value if session.end_reason else None,
        started_at=session.started_at,
        expires_at=session.expires_at,
        ended_at=session.ended_at,
        duration_seconds=session.duration_seconds,
        actions_performed=[ActionOut(**entry) for entry in session.actions_performed],
    )


# ── Lifecycle ────────────────────────────────────────────────────────
@router.post("/start", response_model=StartImpersonationResponse)
async def start_impersonation(
    body: StartImpersonationRequest,
    request: Request,
    user: Identity = Depends(require_role(*IMPERSONATORS)),
    manager: ImpersonationManager = Depends(get_manager),
):
    """Start acting as another user; returns the scoped credential."""
    result = await manager.start(
        user.id,
        body.target_user_id,
        body.reason,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    return StartImpersonationResponse(
        session_id=result.session_id,
        target=_identity_out(result.target),
        expires_at=result.expires_at,
        credential=result.credential.token,
    )


@router.post("/stop", response_model=StopImpersonationResponse)
async def stop_impersonation(
    body: StopImpersonationRequest,
    user: Identity = Depends(require_role(*IMPERSONATORS)),
    manager: ImpersonationManager = Depends(get_manager),
):
    """End one of your own sessions (superadmins may end any session)."""
    session = await manager.get_session(body.session_id)
    if not resolve_session_scope(user).can_manage(session.actor_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the impersonating operator can stop this session",
        )
    result = await manager.stop(body.session_id, requested_by=user.id)
    return StopImpersonationResponse(
        session_id=result.session_id,
        duration_seconds=result.duration_seconds,
        end_reason=result.end_reason.value,
    )


@router.post("/force-end/{session_id}", response_model=StopImpersonationResponse)
async def force_end_impersonation(
    session_id: str,
    user: Identity = Depends(require_role(UserRole.SUPERADMIN)),
    manager: ImpersonationManager = Depends(get_manager),
):
    """Revoke any active session."""
    result = await manager.force_end(session_id, requested_by=user.id)
    return StopImpersonationResponse(
        session_id=result.session_id,
        duration_seconds=result.duration_seconds,
        end_reason=result.end_reason.value,
    )


# ── Listings ─────────────────────────────────────────────────────────
@router.get("/active", response_model=list[SessionSummaryOut])
async def list_active_sessions(
    actor_id: uuid.UUID | None = Query(None),
    user: Identity = Depends(require_role(*IMPERSONATORS)),
    manager: ImpersonationManager = Depends(get_manager),
):
    scope = resolve_session_scope(user)
    sessions = await manager.get_active_sessions(scope.restrict_actor(actor_id))
    return [_session_out(s) for s in sessions]


@router.get("/history", response_model=HistoryOut)
async def get_history(
    actor_id: uuid.UUID | None = Query(None),
    target_id: uuid.UUID | None = Query(None),
    session_status: SessionStatus | None = Query(None, alias="status"),
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=200),
    user: Identity = Depends(require_role(*IMPERSONATORS)),
    manager: ImpersonationManager = Depends(get_manager),
):
    scope = resolve_session_scope(user)
    filters = HistoryFilters(
        actor_id=scope.restrict_actor(actor_id),
        target_id=target_id,
        status=session_status,
        started_from=start_date,
        started_to=end_date,
    )
    history = await manager.get_history(filters, page=page, limit=limit)
    return HistoryOut(
        sessions=[_session_out(s) for s in history.sessions],
        total_count=history.total_count,
        page=history.page,
        limit=history.limit,
        total_pages=history.total_pages,
    )


@router.get("/stats", response_model=StatsOut)
async def get_stats(
    timeframe: str = Query("30d", pattern="^(7d|30d|90d)$"),
    user: Identity = Depends(require_role(UserRole.SUPERADMIN)),
    manager: ImpersonationManager = Depends(get_manager),
):
    stats = await manager.get_stats(timeframe)
    return StatsOut(
        timeframe=timeframe,
        total_sessions=stats.total_sessions,
        active_sessions=stats.active_sessions,
        unique_actors=stats.unique_actors,
        unique_targets=stats.unique_targets,
        avg_duration_minutes=stats.avg_duration_minutes,
    )


# ── In-session (impersonation credential) ────────────────────────────
@router.post("/actions", response_model=MessageResponse)
async def record_action(
    body: RecordActionRequest,
    context: ImpersonationContext = Depends(get_impersonation_context),
    manager: ImpersonationManager = Depends(get_manager),
):
    """Record an action performed while acting as the target."""
    await manager.record_action(context.session.session_id, body.action, body.detail)
    return MessageResponse(detail="Action logged successfully")


@router.get("/status", response_model=ImpersonationStatusOut)
async def get_status(
    response: Response,
    token: str = Depends(oauth2_scheme),
    manager: ImpersonationManager = Depends(get_manager),
):
    """Describe the impersonation session behind the presented credential."""
    current = await manager.get_status(token)
    set_impersonation_headers(response, current.session if current.is_impersonating else None)
    if not current.is_impersonating:
        return ImpersonationStatusOut(is_impersonating=False)
    return ImpersonationStatusOut(
        is_impersonating=True,
        session_id=current.session.session_id,
        expires_at=current.session.expires_at,
        actor=_identity_out(current.actor) if current.actor else None,
        target=_identity_out(current.target) if current.target else None,
    )
