from dataclasses import dataclass
from enum import StrEnum


class ActorRole(StrEnum):
    """Roles an upstream gateway may assert for the calling actor."""

    SUPER_ADMIN = "super_admin"
    ACCOUNT_ADMIN = "account_admin"
    AGENCY_ADMIN = "agency_admin"
    MANAGER = "manager"
    USER = "user"


ADMIN_ROLES = frozenset({ActorRole.SUPER_ADMIN, ActorRole.ACCOUNT_ADMIN})


@dataclass(frozen=True)
class Actor:
    """
    Caller identity and tenant context.

    Authentication happens upstream; this service trusts the identity it is
    handed. `agency_id` is None for account-wide callers.
    """

    id: int
    role: ActorRole
    account_id: int
    agency_id: int | None = None

    def has_role(self, *roles: ActorRole) -> bool:
        """Check if actor has any of the specified roles."""
        return self.role in roles

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES
