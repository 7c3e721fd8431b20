"""
Roles and Caller Identity

Callers are resolved once at the system boundary into an ``Actor``: a user id
plus an explicit set of roles. The engine checks permissions against that
value and never looks roles up by name at runtime.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable

from .errors import Forbidden, ValidationError


class Role(Enum):
    """Cooperative roles"""
    CLIENT = "client"                    # Can borrow, not a cooperative member
    MEMBER = "member"                    # Cooperative member, member loan rate
    PROJECT_MANAGER = "project_manager"
    ADMIN = "admin"                      # Back-office administrator
    PAYING_AGENT = "paying_agent"


class Permission(Enum):
    """Engine permissions"""
    REQUEST_LOAN = "request_loan"
    REVIEW_LOAN = "review_loan"
    DISBURSE_LOAN = "disburse_loan"
    CANCEL_ANY_LOAN = "cancel_any_loan"
    DEFAULT_LOAN = "default_loan"
    DELETE_LOAN = "delete_loan"
    MANAGE_SCHEDULE = "manage_schedule"
    MANAGE_WALLETS = "manage_wallets"


ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.CLIENT: frozenset({Permission.REQUEST_LOAN}),
    Role.MEMBER: frozenset({Permission.REQUEST_LOAN}),
    Role.PROJECT_MANAGER: frozenset({Permission.REQUEST_LOAN}),
    Role.PAYING_AGENT: frozenset({Permission.MANAGE_WALLETS}),
    Role.ADMIN: frozenset(Permission),
}


@dataclass(frozen=True)
class Actor:
    """Authenticated caller"""
    user_id: str
    roles: FrozenSet[Role] = field(default_factory=frozenset)

    def __post_init__(self):
        if not self.user_id:
            raise ValidationError("Actor must have a user id")
        object.__setattr__(self, 'roles', frozenset(self.roles))

    @classmethod
    def of(cls, user_id: str, *roles: Role) -> 'Actor':
        return cls(user_id=user_id, roles=frozenset(roles))

    def has_role(self, role: Role) -> bool:
        return role in self.roles

    def has_permission(self, permission: Permission) -> bool:
        return any(permission in ROLE_PERMISSIONS[role] for role in self.roles)

    def require(self, permission: Permission) -> None:
        """Raise Forbidden unless one of the actor's roles grants the permission"""
        if not self.has_permission(permission):
            raise Forbidden(f"User {self.user_id} lacks permission {permission.value}")

    @property
    def is_admin(self) -> bool:
        return Role.ADMIN in self.roles


def roles_from_names(names: Iterable[str]) -> FrozenSet[Role]:
    """Resolve role names (e.g. from a token) into Role values"""
    resolved = set()
    for name in names:
        try:
            resolved.add(Role(name.lower()))
        except ValueError:
            raise ValidationError(f"Unknown role: {name}")
    return frozenset(resolved)
