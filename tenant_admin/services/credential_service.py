"""
Credential issuer — scoped, time-bound impersonation tokens.

An impersonation credential is a signed JWT that lets the actor act
with the target's effective identity for one session:

    sub  → target id (effective identity)
    act  → {"sub": actor id} (who is really acting)
    sid  → impersonation session id
    jti  → credential id, persisted on the session as the issuance record
    iat / exp → issued-at / session expires_at
    type → "impersonation"

Expiry is checked here against the injected clock, independently of the
session row: a credential past `exp` is rejected even if the sweeper
has not ended the session yet.  Minting only succeeds for a session
that exists and is ACTIVE within the caller's transaction.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_admin.core.config import settings
from tenant_admin.core.exceptions import CredentialRejected, InvalidState
from tenant_admin.models.base import Clock, utcnow
from tenant_admin.models.impersonation import SessionStatus
from tenant_admin.services.session_store import SessionStore

TOKEN_TYPE = "impersonation"


@dataclass(frozen=True)
class IssuedCredential:
    token: str
    credential_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class CredentialClaims:
    session_id: str
    actor_id: uuid.UUID
    target_id: uuid.UUID
    credential_id: str
    issued_at: datetime
    expires_at: datetime


class CredentialIssuer:
    def __init__(
        self,
        store: SessionStore,
        *,
        secret_key: str | None = None,
        algorithm: str | None = None,
        clock: Clock = utcnow,
    ):
        self._store = store
        self._secret_key = secret_key or settings.SECRET_KEY
        self._algorithm = algorithm or settings.JWT_ALGORITHM
        self._clock = clock

    async def issue(self, db: AsyncSession, session_id: str) -> IssuedCredential:
        """Mint a credential for an ACTIVE session visible in `db`'s transaction."""
        session = await self._store.get(db, session_id)
        if session is None:
            raise InvalidState(f"cannot issue credential: session {session_id} does not exist")
        if session.status != SessionStatus.ACTIVE:
            raise InvalidState(f"cannot issue credential: session {session_id} is {session.status.value}")

        issued_at = self._clock()
        if session.expires_at <= issued_at:
            raise InvalidState(f"cannot issue credential: session {session_id} is past its deadline")

        credential_id = uuid.uuid4().hex
        claims = {
            "sub": str(session.target_id),
            "act": {"sub": str(session.actor_id)},
            "sid": session.session_id,
            "jti": credential_id,
            "iat": int(issued_at.timestamp()),
            "exp": int(session.expires_at.timestamp()),
            "type": TOKEN_TYPE,
        }
        token = jwt.encode(claims, self._secret_key, algorithm=self._algorithm)
        return IssuedCredential(
            token=token,
            credential_id=credential_id,
            issued_at=issued_at,
            expires_at=session.expires_at,
        )

    def verify(self, token: str) -> CredentialClaims:
        """Check signature, token type and expiry.  Does not consult the store."""
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                options={"verify_exp": False},
            )
        except JWTError:
            raise CredentialRejected()

        if payload.get("type") != TOKEN_TYPE:
            raise CredentialRejected("Not an impersonation credential")

        try:
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
            claims = CredentialClaims(
                session_id=str(payload["sid"]),
                actor_id=uuid.UUID(payload["act"]["sub"]),
                target_id=uuid.UUID(payload["sub"]),
                credential_id=str(payload["jti"]),
                issued_at=issued_at,
                expires_at=expires_at,
            )
        except (KeyError, TypeError, ValueError):
            raise CredentialRejected("Malformed impersonation credential")

        if claims.expires_at <= self._clock():
            raise CredentialRejected("Impersonation credential has expired")
        return claims
