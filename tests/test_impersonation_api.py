"""HTTP-level tests for /api/impersonation, driven through httpx's ASGI transport."""

import uuid
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from conftest import FakeClock, operator_token
from tenant_admin.core.config import settings
from tenant_admin.main import create_app
from tenant_admin.models.audit import AuditLog
from tenant_admin.models.user import UserRole, UserStatus

pytestmark = pytest.mark.integration


@pytest.fixture
def clock() -> FakeClock:
    # Credentials reach the operator guard, which checks exp against the wall clock.
    return FakeClock(datetime.now(timezone.utc))


@pytest.fixture
def api_app(session_factory, test_settings, clock):
    # Operator tokens are signed with the process-wide key.
    app_settings = test_settings.model_copy(update={"SECRET_KEY": settings.SECRET_KEY})
    return create_app(app_settings, session_factory=session_factory, clock=clock)


@pytest_asyncio.fixture
async def client(api_app):
    transport = ASGITransport(app=api_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def auth(identity) -> dict[str, str]:
    return {"Authorization": f"Bearer {operator_token(str(identity.id))}"}


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.mark.asyncio
async def test_start_action_status_stop_roundtrip(client, api_app, seed_user, session_factory):
    admin = await seed_user(UserRole.ADMIN)
    target = await seed_user(UserRole.USER)

    resp = await client.post(
        "/api/impersonation/start",
        json={"target_user_id": str(target.id), "reason": "billing dispute"},
        headers=auth(admin),
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["session_id"].startswith("imp_")
    assert body["target"]["id"] == str(target.id)
    assert body["token_type"] == "bearer"
    credential = body["credential"]

    resp = await client.post(
        "/api/impersonation/actions",
        json={"action": "view_invoice", "detail": {"invoice": 9}},
        headers=bearer(credential),
    )
    assert resp.status_code == 200, resp.text

    resp = await client.get("/api/impersonation/status", headers=bearer(credential))
    assert resp.json()["is_impersonating"] is True
    assert resp.json()["actor"]["id"] == str(admin.id)

    resp = await client.post(
        "/api/impersonation/stop",
        json={"session_id": body["session_id"]},
        headers=auth(admin),
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["end_reason"] == "manual_stop"

    # The credential dies with its session.
    resp = await client.post(
        "/api/impersonation/actions",
        json={"action": "too_late"},
        headers=bearer(credential),
    )
    assert resp.status_code == 401
    assert resp.json()["code"] == "credential_rejected"

    await api_app.state.audit_sink.drain()
    async with session_factory() as db:
        events = (await db.execute(select(AuditLog.event).order_by(AuditLog.created_at))).scalars().all()
    assert sorted(events) == sorted(
        ["impersonation_started", "impersonation_action", "impersonation_ended"]
    )


@pytest.mark.asyncio
async def test_error_mapping(client, seed_user):
    admin = await seed_user(UserRole.ADMIN)
    peer = await seed_user(UserRole.ADMIN)
    user = await seed_user(UserRole.USER)
    superadmin = await seed_user(UserRole.SUPERADMIN)

    resp = await client.post(
        "/api/impersonation/start",
        json={"target_user_id": str(peer.id)},
        headers=auth(admin),
    )
    assert resp.status_code == 403
    assert resp.json() == {
        "detail": "admin cannot impersonate peers or superiors",
        "code": "permission_denied",
    }

    resp = await client.post(
        "/api/impersonation/start",
        json={"target_user_id": str(uuid.uuid4())},
        headers=auth(admin),
    )
    assert resp.status_code == 404
    assert resp.json()["code"] == "not_found"

    resp = await client.post(
        "/api/impersonation/start",
        json={"target_user_id": str(user.id)},
        headers=auth(superadmin),
    )
    assert resp.status_code == 200
    resp = await client.post(
        "/api/impersonation/start",
        json={"target_user_id": str(user.id)},
        headers=auth(admin),
    )
    assert resp.status_code == 409
    assert resp.json() == {"detail": "target already impersonated", "code": "conflict"}

    resp = await client.post(
        "/api/impersonation/stop",
        json={"session_id": "imp_missing"},
        headers=auth(admin),
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_plain_users_and_disabled_operators_are_refused(client, seed_user):
    user = await seed_user(UserRole.USER)
    other = await seed_user(UserRole.USER)
    disabled = await seed_user(UserRole.ADMIN, status=UserStatus.INACTIVE)

    resp = await client.post(
        "/api/impersonation/start",
        json={"target_user_id": str(other.id)},
        headers=auth(user),
    )
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Insufficient permissions"

    resp = await client.post(
        "/api/impersonation/start",
        json={"target_user_id": str(other.id)},
        headers=auth(disabled),
    )
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Account disabled"

    resp = await client.get("/api/impersonation/active")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_credential_cannot_start_chained_impersonation(client, seed_user):
    superadmin = await seed_user(UserRole.SUPERADMIN)
    admin = await seed_user(UserRole.ADMIN)
    user = await seed_user(UserRole.USER)

    resp = await client.post(
        "/api/impersonation/start",
        json={"target_user_id": str(admin.id)},
        headers=auth(superadmin),
    )
    credential = resp.json()["credential"]

    resp = await client.post(
        "/api/impersonation/start",
        json={"target_user_id": str(user.id)},
        headers=bearer(credential),
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_only_owner_or_superadmin_may_stop(client, seed_user):
    superadmin = await seed_user(UserRole.SUPERADMIN)
    admin = await seed_user(UserRole.ADMIN)
    other_admin = await seed_user(UserRole.ADMIN)
    user = await seed_user(UserRole.USER)

    resp = await client.post(
        "/api/impersonation/start",
        json={"target_user_id": str(user.id)},
        headers=auth(admin),
    )
    session_id = resp.json()["session_id"]

    resp = await client.post(
        "/api/impersonation/stop", json={"session_id": session_id}, headers=auth(other_admin)
    )
    assert resp.status_code == 403

    resp = await client.post(
        f"/api/impersonation/force-end/{session_id}", headers=auth(admin)
    )
    assert resp.status_code == 403

    resp = await client.post(
        f"/api/impersonation/force-end/{session_id}", headers=auth(superadmin)
    )
    assert resp.status_code == 200
    assert resp.json()["end_reason"] == "admin_revoked"


@pytest.mark.asyncio
async def test_listings_are_scoped_to_the_caller(client, seed_user):
    superadmin = await seed_user(UserRole.SUPERADMIN)
    admin = await seed_user(UserRole.ADMIN)
    u1 = await seed_user(UserRole.USER)
    u2 = await seed_user(UserRole.USER)

    for actor, target in ((superadmin, u1), (admin, u2)):
        resp = await client.post(
            "/api/impersonation/start",
            json={"target_user_id": str(target.id)},
            headers=auth(actor),
        )
        assert resp.status_code == 200

    resp = await client.get("/api/impersonation/active", headers=auth(superadmin))
    assert len(resp.json()) == 2

    resp = await client.get("/api/impersonation/active", headers=auth(admin))
    assert [s["actor_id"] for s in resp.json()] == [str(admin.id)]

    resp = await client.get(
        "/api/impersonation/active", params={"actor_id": str(superadmin.id)}, headers=auth(admin)
    )
    assert resp.status_code == 403

    resp = await client.get(
        "/api/impersonation/history", params={"status": "active", "limit": 1}, headers=auth(superadmin)
    )
    body = resp.json()
    assert body["total_count"] == 2
    assert body["total_pages"] == 2
    assert len(body["sessions"]) == 1

    resp = await client.get("/api/impersonation/stats", params={"timeframe": "7d"}, headers=auth(superadmin))
    assert resp.status_code == 200
    assert resp.json()["total_sessions"] == 2

    resp = await client.get("/api/impersonation/stats", headers=auth(admin))
    assert resp.status_code == 403

    resp = await client.get("/api/impersonation/stats", params={"timeframe": "1y"}, headers=auth(superadmin))
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_credential_responses_carry_impersonation_headers(client, seed_user):
    admin = await seed_user(UserRole.ADMIN)
    target = await seed_user(UserRole.USER)
    resp = await client.post(
        "/api/impersonation/start",
        json={"target_user_id": str(target.id)},
        headers=auth(admin),
    )
    body = resp.json()
    credential = body["credential"]

    for resp in (
        await client.post(
            "/api/impersonation/actions",
            json={"action": "open_settings"},
            headers=bearer(credential),
        ),
        await client.get("/api/impersonation/status", headers=bearer(credential)),
    ):
        assert resp.status_code == 200, resp.text
        assert resp.headers["X-Impersonation-Active"] == "true"
        assert resp.headers["X-Impersonation-Session"] == body["session_id"]
        assert resp.headers["X-Impersonator-Id"] == str(admin.id)
        assert resp.headers["X-Target-User-Id"] == str(target.id)

    await client.post(
        "/api/impersonation/stop", json={"session_id": body["session_id"]}, headers=auth(admin)
    )
    resp = await client.get("/api/impersonation/status", headers=bearer(credential))
    assert resp.json()["is_impersonating"] is False
    assert resp.headers["X-Impersonation-Active"] == "false"
    assert "X-Impersonator-Id" not in resp.headers

    # Operator routes are not served under a credential.
    resp = await client.get("/api/impersonation/active", headers=auth(admin))
    assert "X-Impersonation-Active" not in resp.headers
