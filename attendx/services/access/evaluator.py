"""
RBAC Policy Evaluator.

Decides whether a principal may perform an operation on a tenant-scoped resource.
Evaluation order (first deny wins):
  1. tenant mismatch (not super-admin)        → DENY TENANT_MISMATCH
  2. no rule for (resource_type, kind)        → DENY POLICY_NOT_DEFINED
  3. owner + rule.owner_override              → ALLOW ALLOWED_AS_OWNER
  4. role >= rule.min_role                    → ALLOW ALLOWED_BY_ROLE
     otherwise                                → DENY INSUFFICIENT_ROLE
  5. status gate: current_status not open and
     role < gate.min_role                     → DENY INSUFFICIENT_ROLE

Pure function: no I/O, no hidden state. Safe to call speculatively
(e.g. to decide which buttons the UI shows) and from any number of threads.
"""

from typing import Optional

from attendx.services.access.decisions import (
    Decision, OperationRequest, ResourceDescriptor,
)
from attendx.services.access.policy_table import PolicyTable, get_policy
from attendx.services.shared.errors import ReasonCode
from attendx.services.shared.identity import Principal, role_at_least


def is_owner(principal: Principal, resource: ResourceDescriptor) -> bool:
    return resource.owner_id is not None and resource.owner_id == principal.id


def evaluate(
    principal: Principal,
    resource: ResourceDescriptor,
    operation: OperationRequest,
    policy: Optional[PolicyTable] = None,
) -> Decision:
    policy = policy or get_policy()

    # Rule 1: tenant isolation
    if resource.tenant_id != principal.tenant_id and not principal.is_super_admin:
        return Decision.deny(
            ReasonCode.TENANT_MISMATCH,
            f"resource tenant '{resource.tenant_id}' != principal tenant '{principal.tenant_id}'",
        )

    # Rule 2: static policy lookup
    rule = policy.rule_for(resource.resource_type, operation.kind)
    if rule is None:
        return Decision.deny(
            ReasonCode.POLICY_NOT_DEFINED,
            f"no policy for {operation.kind.value} on '{resource.resource_type}'",
        )

    # Rules 3-4: ownership, then role threshold
    if rule.owner_override and is_owner(principal, resource):
        decision = Decision.allow(ReasonCode.ALLOWED_AS_OWNER)
    elif role_at_least(principal.role, rule.min_role):
        decision = Decision.allow(ReasonCode.ALLOWED_BY_ROLE)
    else:
        return Decision.deny(
            ReasonCode.INSUFFICIENT_ROLE,
            f"{operation.kind.value} on '{resource.resource_type}' requires role >= {rule.min_role.value}",
        )

    # Rule 5: status gate applies to owners too
    gate = rule.status_gate
    if gate is not None and resource.current_status not in gate.open_statuses:
        if not role_at_least(principal.role, gate.min_role):
            return Decision.deny(
                ReasonCode.INSUFFICIENT_ROLE,
                f"status '{resource.current_status}' requires role >= {gate.min_role.value}",
            )

    return decision
