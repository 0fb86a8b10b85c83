# teamhub/core/security.py
"""
Bearer identity boundary.

Users sign in with an upstream identity provider; this service only verifies
the signed access token and reads the user id from `sub`. When JWT_ISSUER or
JWT_AUDIENCE is configured, tokens must carry a matching `iss` / `aud` claim.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from fastapi import HTTPException, status
from fastapi.security import HTTPBearer
from jose import JWTError, jwt

from teamhub.core.config import settings

bearer_scheme = HTTPBearer(auto_error=True)


def _unauthorized(detail: str = "Invalid token") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_access_token(token: str) -> uuid.UUID:
    """Verify an access token and return the id of the user it was issued for."""
    try:
        claims = jwt.decode(
            token.strip(),
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            options={
                "require_sub": True,
                "require_exp": True,
                "require_aud": settings.JWT_AUDIENCE is not None,
                "require_iss": settings.JWT_ISSUER is not None,
            },
        )
    except JWTError:
        # expired, bad signature, wrong algorithm, missing or mismatched claims
        raise _unauthorized()

    try:
        return uuid.UUID(claims["sub"])
    except ValueError:
        raise _unauthorized("Invalid token subject")


def create_access_token(user_id: uuid.UUID | str, *, expires_minutes: Optional[int] = None) -> str:
    """
    Sign a token the way the identity provider does. Used by tests and local
    development; production tokens never come from here.
    """
    now = datetime.now(timezone.utc)
    claims: dict[str, Any] = {
        "sub": str(user_id),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES)).timestamp()),
    }
    if settings.JWT_ISSUER is not None:
        claims["iss"] = settings.JWT_ISSUER
    if settings.JWT_AUDIENCE is not None:
        claims["aud"] = settings.JWT_AUDIENCE
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
