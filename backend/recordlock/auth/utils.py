# backend/recordlock/auth/utils.py
# Identity is issued elsewhere; we only read the bearer token it hands out.
from __future__ import annotations
from dataclasses import dataclass, field
import datetime as dt
import jwt
from fastapi import Depends, Header, HTTPException
from ..shared.config import settings

ACCESS_TTL_MIN = 60


@dataclass(frozen=True)
class Actor:
    id: str
    name: str | None = None
    tenant_id: str | None = None
    domain: str | None = None
    roles: tuple[str, ...] = field(default_factory=tuple)

    @property
    def display_name(self) -> str:
        return self.name or self.id


def create_token(actor: Actor, ttl_minutes: int = ACCESS_TTL_MIN) -> str:
    now = dt.datetime.now(dt.timezone.utc)
    payload = {
        "sub": actor.id,
        "name": actor.name,
        "tenant": actor.tenant_id,
        "domain": actor.domain,
        "roles": list(actor.roles),
        "iat": now,
        "exp": now + dt.timedelta(minutes=ttl_minutes),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def decode_token(token: str) -> Actor:
    try:
        data = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except jwt.ExpiredSignatureError:
        raise HTTPException(401, "Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(401, "Invalid token")
    if not data.get("sub"):
        raise HTTPException(401, "Invalid token")
    return Actor(
        id=str(data["sub"]),
        name=data.get("name"),
        tenant_id=data.get("tenant"),
        domain=data.get("domain"),
        roles=tuple(data.get("roles") or ()),
    )


def current_actor(authorization: str | None = Header(None)) -> Actor:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(401, "Not authenticated")
    return decode_token(authorization.split(" ", 1)[1])


def require_roles(*roles: str):
    def _dep(actor: Actor = Depends(current_actor)):
        if roles and not set(roles) & set(actor.roles):
            raise HTTPException(403, "Forbidden")
        return actor

    return _dep
