from src.core.auth.models import ADMIN_ROLES, Actor, ActorRole
from src.core.auth.dependencies import (
    BillingAdmin,
    CurrentActor,
    get_current_actor,
    require_roles,
)

__all__ = [
    "ADMIN_ROLES",
    "Actor",
    "ActorRole",
    "BillingAdmin",
    "CurrentActor",
    "get_current_actor",
    "require_roles",
]
