"""
Identity context: the authenticated principal behind a request.
Pure data - resolved once per request by auth.get_principal and never persisted.
"""

import enum
from dataclasses import dataclass


class Role(str, enum.Enum):
    viewer  = "viewer"
    member  = "member"
    manager = "manager"
    admin   = "admin"
    # Reserved for internal writers (audit recorder). Never assigned to a Principal.
    system  = "system"


_ROLE_RANK = {
    Role.viewer:  0,
    Role.member:  1,
    Role.manager: 2,
    Role.admin:   3,
    Role.system:  99,
}

HUMAN_ROLES: tuple[Role, ...] = (Role.viewer, Role.member, Role.manager, Role.admin)


def role_rank(role: Role) -> int:
    return _ROLE_RANK[Role(role)]


def role_at_least(role: Role, required: Role) -> bool:
    """True if `role` is at or above `required` in viewer < member < manager < admin."""
    return role_rank(role) >= role_rank(required)


@dataclass(frozen=True)
class Principal:
    id: str
    tenant_id: str
    role: Role
    is_super_admin: bool = False

    def __post_init__(self):
        role = Role(self.role)
        if role not in HUMAN_ROLES:
            raise ValueError(f"role '{role.value}' cannot be assigned to a principal")
        object.__setattr__(self, "role", role)
