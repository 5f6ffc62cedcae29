from typing import Annotated

from fastapi import Depends, Header

from src.core.auth.models import Actor, ActorRole
from src.core.exceptions import AuthorizationError, ValidationError


async def get_current_actor(
    x_actor_id: Annotated[int | None, Header()] = None,
    x_actor_role: Annotated[str | None, Header()] = None,
    x_account_id: Annotated[int | None, Header()] = None,
    x_agency_id: Annotated[int | None, Header()] = None,
) -> Actor:
    """
    Dependency building the caller's Actor from trusted gateway headers.

    Usage:
        @router.get("/things")
        async def list_things(actor: CurrentActor):
            ...
    """
    if x_actor_id is None:
        raise AuthorizationError("X-Actor-Id header required")
    if x_account_id is None:
        raise AuthorizationError("X-Account-Id header required")

    raw_role = (x_actor_role or ActorRole.USER.value).lower()
    try:
        role = ActorRole(raw_role)
    except ValueError:
        raise ValidationError(f"Unknown actor role: {x_actor_role}", field="X-Actor-Role")

    return Actor(
        id=x_actor_id,
        role=role,
        account_id=x_account_id,
        agency_id=x_agency_id,
    )


def require_roles(*roles: ActorRole):
    """
    Dependency factory to require specific roles.

    Usage:
        @router.patch("/events/{event_id}/hide")
        async def hide(actor: Actor = Depends(require_roles(ActorRole.SUPER_ADMIN))):
            ...
    """

    async def role_checker(
        actor: Actor = Depends(get_current_actor),
    ) -> Actor:
        if not actor.has_role(*roles):
            allowed = ", ".join(r.value for r in roles)
            raise AuthorizationError(f"Required role: {allowed}")
        return actor

    return role_checker


# Convenience dependencies
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
BillingAdmin = Annotated[
    Actor,
    Depends(
        require_roles(ActorRole.SUPER_ADMIN, ActorRole.ACCOUNT_ADMIN, ActorRole.AGENCY_ADMIN)
    ),
]
