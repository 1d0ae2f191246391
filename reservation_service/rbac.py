import json

from fastapi import HTTPException, Request, status

from .domain import Actor


def get_actor(request: Request) -> Actor:
    """
    Identity is asserted by the gateway (X-User-Sub / X-User-Roles) and
    trusted as-is; no credentials are checked here.
    """
    sub = request.headers.get("X-User-Sub")
    if not sub:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Sub header",
        )

    raw_roles = request.headers.get("X-User-Roles")
    roles: list = []
    if raw_roles:
        try:
            roles = json.loads(raw_roles)
        except ValueError:
            roles = [r for r in raw_roles.split(",") if r]
        if not isinstance(roles, list):
            roles = []

    request.state.user_sub = sub
    request.state.user_roles = roles
    return Actor(user_id=sub, roles=frozenset(str(r).strip().lower() for r in roles))


def require_role(actor: Actor, allowed_roles: list[str]):
    allowed = {r.lower() for r in allowed_roles}

    if not actor.roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Roles missing",
        )

    if actor.roles.isdisjoint(allowed):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access forbidden for this role",
        )
