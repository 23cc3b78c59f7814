from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from pulse.tickets import Actor, Role

bearer_scheme = HTTPBearer(auto_error=False)

# Stand-in for the external identity provider.
TOKEN_ACTORS: dict[str, Actor] = {
    "user-token": Actor(id=1, name="Grace User", email="grace.user@example.com", role=Role.GENERAL_USER),
    "digital-token": Actor(id=2, name="Dana Digital", email="dana.digital@example.com", role=Role.DIGITAL_TEAM),
    "manager-token": Actor(id=3, name="Morgan Manager", email="morgan.manager@example.com", role=Role.MANAGER),
    "admin-token": Actor(id=4, name="Alex Admin", email="alex.admin@example.com", role=Role.ADMIN),
}


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)]
) -> Actor:
    """Resolve the bearer token to the acting user.

    Tokens map to fixed actors here; a deployment would verify the token with
    its identity provider and load the user record instead.
    """

    if credentials is None:
        raise HTTPException(status_code=401, detail="Authentication required")

    actor = TOKEN_ACTORS.get(credentials.credentials)
    if actor is None:
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")
    return actor


def roles_required(*roles: Role) -> Callable[[Actor], Actor]:
    """Dependency factory ensuring the current actor holds one of ``roles``."""

    allowed = frozenset(roles)

    async def dependency(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
        if actor.role not in allowed:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return actor

    return dependency


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
