"""
Field Mutation Guard.

Runs after the evaluator has allowed an update and narrows the decision to the
fields that actually change:

  diff_keys = {k in proposed ∩ current | proposed[k] != current[k]}
  diff_keys ∩ immutable_fields          → DENY IMMUTABLE_FIELD_VIOLATION
  allow-list for actor class, diff ⊄ it → DENY FIELD_NOT_ALLOWED
  otherwise                             → ALLOW, narrowed_fields = diff_keys

Keys absent from current_fields are never part of diff_keys, so the caller
never writes them through an update.
"""

import enum
from typing import Any, Optional

from attendx.services.access.decisions import Decision, ResourceDescriptor
from attendx.services.access.evaluator import is_owner
from attendx.services.access.policy_table import PolicyTable, get_policy
from attendx.services.shared.errors import ReasonCode
from attendx.services.shared.identity import Principal, Role, role_at_least


class ActorClass(str, enum.Enum):
    owner = "owner"
    admin = "admin"
    other = "other"


def actor_class_for(principal: Principal, resource: ResourceDescriptor) -> ActorClass:
    """Admins (and super-admins) first, then the resource owner, then everyone else."""
    if principal.is_super_admin or role_at_least(principal.role, Role.admin):
        return ActorClass.admin
    if is_owner(principal, resource):
        return ActorClass.owner
    return ActorClass.other


def changed_keys(current_fields: dict[str, Any], proposed_fields: dict[str, Any]) -> set[str]:
    return {
        key for key, value in proposed_fields.items()
        if key in current_fields and current_fields[key] != value
    }


def narrow(
    decision: Decision,
    resource_type: str,
    current_fields: dict[str, Any],
    proposed_fields: dict[str, Any],
    actor_class: ActorClass = ActorClass.other,
    policy: Optional[PolicyTable] = None,
) -> Decision:
    if not decision.allowed:
        return decision
    policy = policy or get_policy()

    diff_keys = changed_keys(current_fields, proposed_fields)

    immutable = diff_keys & policy.immutable_fields(resource_type)
    if immutable:
        return Decision.deny(
            ReasonCode.IMMUTABLE_FIELD_VIOLATION,
            f"immutable fields: {', '.join(sorted(immutable))}",
        )

    allow_list = policy.allow_list(resource_type, ActorClass(actor_class).value)
    if allow_list is not None:
        not_allowed = diff_keys - allow_list
        if not_allowed:
            return Decision.deny(
                ReasonCode.FIELD_NOT_ALLOWED,
                f"fields not allowed for {ActorClass(actor_class).value}: {', '.join(sorted(not_allowed))}",
            )

    return Decision.allow(decision.reason_code, narrowed_fields=diff_keys, detail=decision.detail)
