"""
Pydantic schemas for request / response serialization.

Kept in a single file for now — split per-domain when it grows.
Schemas are deliberately decoupled from SQLAlchemy models so the
API surface can evolve independently of the DB layer.
"""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


# ── Impersonation requests ───────────────────────────────────────────
class StartImpersonationRequest(BaseModel):
    target_user_id: uuid.UUID
    reason: str | None = Field(default=None, max_length=1024)


class StopImpersonationRequest(BaseModel):
    session_id: str


class RecordActionRequest(BaseModel):
    action: str = Field(min_length=1, max_length=128)
    detail: dict[str, Any] | None = None


# ── Identities ───────────────────────────────────────────────────────
class IdentitySummaryOut(BaseModel):
    id: uuid.UUID
    email: str
    full_name: str
    role: str

    model_config = {"from_attributes": True}


# ── Impersonation responses ──────────────────────────────────────────
class StartImpersonationResponse(BaseModel):
    session_id: str
    target: IdentitySummaryOut
    expires_at: datetime
    credential: str
    token_type: str = "bearer"


class StopImpersonationResponse(BaseModel):
    session_id: str
    duration_seconds: int
    end_reason: str


class ActionOut(BaseModel):
    action: str
    detail: dict[str, Any] = {}
    timestamp: datetime


class SessionSummaryOut(BaseModel):
    session_id: str
    actor_id: uuid.UUID
    target_id: uuid.UUID
    actor_role_snapshot: str
    target_role_snapshot: str
    reason: str
    status: str
    end_reason: str | None = None
    started_at: datetime
    expires_at: datetime
    ended_at: datetime | None = None
    duration_seconds: int | None = None
    actions_performed: list[ActionOut] = []

    model_config = {"from_attributes": True}


class HistoryOut(BaseModel):
    sessions: list[SessionSummaryOut]
    total_count: int
    page: int
    limit: int
    total_pages: int


class StatsOut(BaseModel):
    timeframe: str
    total_sessions: int
    active_sessions: int
    unique_actors: int
    unique_targets: int
    avg_duration_minutes: float


class ImpersonationStatusOut(BaseModel):
    is_impersonating: bool
    session_id: str | None = None
    expires_at: datetime | None = None
    actor: IdentitySummaryOut | None = None
    target: IdentitySummaryOut | None = None


# ── Generic ──────────────────────────────────────────────────────────
class MessageResponse(BaseModel):
    detail: str
