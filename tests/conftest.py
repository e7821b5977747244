"""
Shared pytest fixtures.

Store-backed tests run against a throw-away SQLite file through
aiosqlite; the schema comes straight from the models' metadata.  Time is
driven by `FakeClock` so expiry never depends on the wall clock.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from jose import jwt
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from tenant_admin.core.config import Settings, settings
from tenant_admin.models import Account, Base, User, UserRole, UserStatus, csm_assignments, user_accounts
from tenant_admin.services.credential_service import CredentialIssuer
from tenant_admin.services.directory_service import AccountScopeLookup, Identity, UserDirectory
from tenant_admin.services.impersonation_service import ImpersonationManager
from tenant_admin.services.session_store import SessionStore

TEST_SECRET = "test-secret-key"


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingAuditSink:
    def __init__(self):
        self.events: list[dict] = []

    def append(self, event: dict) -> None:
        self.events.append(event)

    def of(self, name: str) -> list[dict]:
        return [e for e in self.events if e["event"] == name]


class StaticScope:
    """Scope lookup answering from a fixed set of (actor, target) pairs."""

    def __init__(self, shared: set[tuple[uuid.UUID, uuid.UUID]] | None = None):
        self.shared = shared or set()
        self.calls = 0

    async def shares_account(self, actor_id: uuid.UUID, target_id: uuid.UUID) -> bool:
        self.calls += 1
        return (actor_id, target_id) in self.shared


def make_identity(role: UserRole, status: UserStatus = UserStatus.ACTIVE) -> Identity:
    return Identity(id=uuid.uuid4(), role=role, status=status, email=f"{role.value}@example.com")


def operator_token(subject: str, **claims) -> str:
    """Stand-in for the dashboard's identity provider: a signed operator access token."""
    payload = {
        "sub": subject,
        "type": "access",
        "exp": datetime.now(timezone.utc) + timedelta(minutes=60),
        **claims,
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        SECRET_KEY=TEST_SECRET,
        IMPERSONATION_SWEEPER_ENABLED=False,
        IDENTITY_LOOKUP_TIMEOUT_SECONDS=1.0,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'tenant_admin.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def audit() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def store(session_factory) -> SessionStore:
    return SessionStore(session_factory)


@pytest.fixture
def issuer(store, clock) -> CredentialIssuer:
    return CredentialIssuer(store, secret_key=TEST_SECRET, algorithm="HS256", clock=clock)


@pytest.fixture
def manager(session_factory, store, issuer, audit, clock, test_settings) -> ImpersonationManager:
    return ImpersonationManager(
        store,
        UserDirectory(session_factory),
        AccountScopeLookup(session_factory),
        issuer,
        audit,
        clock=clock,
        settings=test_settings,
    )


@pytest.fixture
def seed_user(session_factory):
    """Insert a user and return its Identity."""

    async def _seed(
        role: UserRole,
        status: UserStatus = UserStatus.ACTIVE,
        name: str | None = None,
    ) -> Identity:
        name = name or f"{role.value}-{uuid.uuid4().hex[:8]}"
        async with session_factory() as db:
            async with db.begin():
                user = User(
                    id=uuid.uuid4(),
                    email=f"{name}@example.com",
                    full_name=name.title(),
                    role=role,
                    status=status,
                )
                db.add(user)
        return Identity.from_user(user)

    return _seed


@pytest.fixture
def assign_account(session_factory):
    """Create an account linking a CSM and a set of users."""

    async def _assign(csm: Identity | None = None, users: list[Identity] = ()) -> uuid.UUID:
        async with session_factory() as db:
            async with db.begin():
                account = Account(id=uuid.uuid4(), name=f"acct-{uuid.uuid4().hex[:8]}")
                db.add(account)
                await db.flush()
                if csm is not None:
                    await db.execute(
                        csm_assignments.insert().values(csm_id=csm.id, account_id=account.id)
                    )
                for user in users:
                    await db.execute(
                        user_accounts.insert().values(user_id=user.id, account_id=account.id)
                    )
        return account.id

    return _assign
