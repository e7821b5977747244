"""
JWT helpers for operator access tokens.

- Operator tokens are issued by the dashboard's identity provider with
  the shared secret; this service only decodes and validates them.
- Tokens carry `sub` / `user_id` and a `type`.  Impersonation
  credentials share the signing key but are typed "impersonation" and
  are rejected here, so an impersonated identity can never call the
  operator endpoints (no chained impersonation).
"""

from typing import Any

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from tenant_admin.core.config import settings

IMPERSONATION_TOKEN_TYPE = "impersonation"

# ── JWT ──────────────────────────────────────────────────────────────
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


def decode_access_token(token: str) -> dict[str, Any]:
    """Decode & validate a JWT.  Raises HTTPException on failure."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
        return payload
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


# ── Per-request validation ──────────────────────────────────────────


async def get_current_user_token(token: str = Depends(oauth2_scheme)) -> dict[str, Any]:
    """
    FastAPI dependency — decodes an operator access token.

    Checks performed on every protected request:
      1. JWT signature & expiry.
      2. The token is not an impersonation credential.
      3. The payload names a user.
    """
    payload = decode_access_token(token)

    if payload.get("type") == IMPERSONATION_TOKEN_TYPE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Impersonation credentials cannot be used for this operation",
        )

    if not (payload.get("sub") or payload.get("user_id")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload: missing subject",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload
