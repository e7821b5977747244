"""Tests for the expiry sweeper."""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import select

from tenant_admin.models.impersonation import EndReason, ImpersonationSession, SessionStatus
from tenant_admin.models.user import User, UserRole
from tenant_admin.services.impersonation_service import new_session_id
from tenant_admin.services.sweeper import ExpirySweeper


@pytest_asyncio.fixture
async def sweeper(manager, clock, test_settings):
    sweeper = ExpirySweeper(manager, interval_seconds=0.01, clock=clock, settings=test_settings)
    yield sweeper
    await sweeper.stop()


@pytest.mark.asyncio
async def test_expired_session_swept_exactly_once(manager, sweeper, seed_user, clock, audit, session_factory):
    actor = await seed_user(UserRole.SUPERADMIN)
    target = await seed_user(UserRole.USER)
    result = await manager.start(actor.id, target.id)

    clock.advance(minutes=58)
    assert await sweeper.sweep_once() == 0

    clock.advance(minutes=1)
    assert await sweeper.sweep_once() == 1
    assert await sweeper.sweep_once() == 0

    session = await manager.get_session(result.session_id)
    assert session.status == SessionStatus.EXPIRED
    assert session.end_reason == EndReason.EXPIRED
    assert session.ended_at == result.expires_at
    assert session.ended_by is None

    ended = audit.of("impersonation_ended")
    assert len(ended) == 1
    assert ended[0]["end_reason"] == "expired"
    assert ended[0]["duration"] == 59 * 60

    async with session_factory() as db:
        back_ref = (
            await db.execute(select(User.current_impersonator_id).where(User.id == target.id))
        ).scalar_one()
    assert back_ref is None


@pytest.mark.asyncio
async def test_sweep_racing_manual_stop_records_one_end(manager, sweeper, seed_user, clock, audit):
    actor = await seed_user(UserRole.SUPERADMIN)
    target = await seed_user(UserRole.USER)
    result = await manager.start(actor.id, target.id)
    clock.advance(hours=2)

    outcomes = await asyncio.gather(
        sweeper.sweep_once(),
        manager.stop(result.session_id, actor.id),
        return_exceptions=True,
    )

    assert len(audit.of("impersonation_ended")) == 1
    session = await manager.get_session(result.session_id)
    if outcomes[0] == 1:
        assert session.status == SessionStatus.EXPIRED
    else:
        assert session.status == SessionStatus.ENDED


@pytest.mark.asyncio
async def test_only_past_deadline_sessions_are_swept(manager, sweeper, seed_user, clock):
    actor_a = await seed_user(UserRole.SUPERADMIN)
    actor_b = await seed_user(UserRole.ADMIN)
    early = await manager.start(actor_a.id, (await seed_user(UserRole.USER)).id)
    clock.advance(minutes=30)
    late = await manager.start(actor_b.id, (await seed_user(UserRole.USER)).id)
    clock.advance(minutes=30)

    assert await sweeper.sweep_once() == 1

    assert (await manager.get_session(early.session_id)).status == SessionStatus.EXPIRED
    assert (await manager.get_session(late.session_id)).status == SessionStatus.ACTIVE


@pytest.mark.asyncio
async def test_session_without_issuance_swept_after_grace(manager, sweeper, seed_user, clock, store):
    actor = await seed_user(UserRole.SUPERADMIN)
    target = await seed_user(UserRole.USER)
    orphan_id = new_session_id()
    async with store.transaction() as db:
        await store.create(
            db,
            ImpersonationSession(
                session_id=orphan_id,
                actor_id=actor.id,
                target_id=target.id,
                actor_role_snapshot="superadmin",
                target_role_snapshot="user",
                reason="interrupted start",
                started_at=clock.now,
                expires_at=clock.now + timedelta(minutes=59),
                status=SessionStatus.ACTIVE,
                actions_performed=[],
            ),
        )

    clock.advance(seconds=30)
    assert await sweeper.sweep_once() == 0

    clock.advance(seconds=31)
    assert await sweeper.sweep_once() == 1
    assert (await manager.get_session(orphan_id)).status == SessionStatus.EXPIRED


@pytest.mark.asyncio
async def test_background_loop_sweeps_and_stops(manager, sweeper, seed_user, clock):
    actor = await seed_user(UserRole.SUPERADMIN)
    target = await seed_user(UserRole.USER)
    result = await manager.start(actor.id, target.id)
    clock.advance(hours=1)

    sweeper.start()
    assert sweeper.running
    for _ in range(100):
        if (await manager.get_session(result.session_id)).status == SessionStatus.EXPIRED:
            break
        await asyncio.sleep(0.02)

    await sweeper.stop()
    assert not sweeper.running
    assert (await manager.get_session(result.session_id)).status == SessionStatus.EXPIRED


@pytest.mark.asyncio
async def test_failed_pass_does_not_kill_loop(manager, sweeper, clock):
    calls = []

    async def flaky(now, cutoff):
        calls.append(now)
        if len(calls) == 1:
            raise RuntimeError("database went away")
        return []

    manager.store.find_sweepable = flaky
    sweeper.start()
    for _ in range(100):
        if len(calls) >= 2:
            break
        await asyncio.sleep(0.02)

    assert len(calls) >= 2
    assert sweeper.running
