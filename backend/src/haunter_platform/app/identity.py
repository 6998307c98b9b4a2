"""Bearer-token identity: who is acting, and under which role.

Tokens are issued by the identity provider. This service only verifies
them and turns ``sub`` / ``role`` into an ``Actor``; ownership and turn
checks in the engine compare ``Actor.ref`` values and nothing else.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException, Request, status
from jose import JWTError, jwt

from haunter_platform.app.config import get_settings
from haunter_platform.domain.enums import ActorRole


@dataclass(frozen=True)
class Actor:
    ref: str
    role: ActorRole


def create_access_token(actor_ref: str, role: str, expires_minutes: int = 60) -> str:
    """Sign a token the way the identity provider does (dev tooling and tests)."""
    settings = get_settings()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {"sub": actor_ref, "role": role, "exp": expire}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict | None:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


async def get_current_actor(request: Request) -> Actor:
    """Dependency: extract the acting identity from the Bearer token."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid token",
        )
    payload = decode_token(auth_header.removeprefix("Bearer "))
    if not payload or "sub" not in payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    try:
        role = ActorRole(payload.get("role", ""))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token carries no recognised role",
        )
    if role == ActorRole.SYSTEM:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="System identity cannot call the API",
        )
    return Actor(ref=payload["sub"], role=role)


def require_role(*roles: ActorRole):
    """Factory: dependency that checks the actor has one of the required roles."""

    async def checker(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return actor

    return checker
