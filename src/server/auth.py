"""Identity from JWT bearer tokens."""

from datetime import datetime, timedelta, timezone

import jwt
import structlog
from fastapi import Depends, Header, HTTPException, Request

from src.coordination.models import Identity

from .config import Settings

logger = structlog.get_logger()


def issue_token(identity: Identity, settings: Settings, ttl: timedelta = timedelta(hours=12)) -> str:
    """Sign a token for ``identity``. Used by dev tooling and tests."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": identity.user_id,
        "name": identity.display_name,
        "role": identity.role,
        "iat": int(now.timestamp()),
        "exp": int((now + ttl).timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> Identity | None:
    """Identity carried by ``token``, or None if it is invalid."""
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.InvalidTokenError as e:
        logger.info("Rejected token", error=str(e))
        return None

    if not claims.get("sub"):
        return None

    return Identity(
        user_id=str(claims["sub"]),
        display_name=claims.get("name") or str(claims["sub"]),
        role=claims.get("role", "staff"),
    )


def current_identity(
    request: Request,
    authorization: str | None = Header(None),
) -> Identity:
    """FastAPI dependency: the caller's identity, or 401."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")

    identity = decode_token(authorization.removeprefix("Bearer "), request.app.state.settings)
    if identity is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return identity


def require_admin(identity: Identity = Depends(current_identity)) -> Identity:
    """FastAPI dependency: an admin caller, or 403."""
    if not identity.is_admin:
        raise HTTPException(status_code=403, detail="Admin role required")
    return identity
