"""
Access Service: the request-path entry point of the access core.

  principal → evaluate() → narrow() (updates) → caller writes → audit

authorize()  returns the final Decision and audits it: one record per call,
             success = the decision was ALLOW.
guard()      context manager for the full operation: raises AccessDenied on
             DENY, otherwise yields the Decision and audits the primary
             operation's outcome (success = the block did not raise).
record_outcome()  for callers that authorize() first and write later; adds the
             outcome record of the primary operation.

Exactly one audit record is produced per authorize()/guard() call;
detail["stage"] tells a decision record from an operation-outcome record.
evaluate() and narrow() themselves stay pure; call them directly for
speculative checks (UI affordances) that must not be audited.
"""

from contextlib import contextmanager
from typing import Iterator, Optional

import structlog

from attendx.services.access.audit import AuditEvent, AuditRecorder
from attendx.services.access.decisions import (
    Decision, OperationKind, OperationRequest, ResourceDescriptor,
)
from attendx.services.access.evaluator import evaluate
from attendx.services.access.field_guard import actor_class_for, narrow
from attendx.services.access.policy_table import PolicyTable, get_policy
from attendx.services.shared.errors import AccessDenied
from attendx.services.shared.identity import Principal

logger = structlog.get_logger()


def decide(
    principal: Principal,
    resource: ResourceDescriptor,
    operation: OperationRequest,
    policy: Optional[PolicyTable] = None,
) -> Decision:
    """evaluate(), then narrow() for updates. Pure."""
    policy = policy or get_policy()
    decision = evaluate(principal, resource, operation, policy)
    if decision.allowed and operation.kind == OperationKind.update:
        decision = narrow(
            decision,
            resource.resource_type,
            resource.current_fields,
            operation.proposed_fields,
            actor_class=actor_class_for(principal, resource),
            policy=policy,
        )
    return decision


class AccessService:

    def __init__(self, recorder: AuditRecorder, policy: Optional[PolicyTable] = None):
        self._recorder = recorder
        self._policy = policy

    @property
    def policy(self) -> PolicyTable:
        return self._policy or get_policy()

    def authorize(
        self,
        principal: Principal,
        resource: ResourceDescriptor,
        operation: OperationRequest,
    ) -> Decision:
        decision = self._decide(principal, resource, operation)
        self._audit(principal, resource, operation, decision, success=decision.allowed)
        return decision

    def _decide(
        self,
        principal: Principal,
        resource: ResourceDescriptor,
        operation: OperationRequest,
    ) -> Decision:
        decision = decide(principal, resource, operation, self.policy)
        if not decision.allowed:
            logger.info(
                "access_denied",
                tenant_id=principal.tenant_id,
                principal_id=principal.id,
                resource_type=resource.resource_type,
                operation=operation.kind.value,
                reason_code=decision.reason_code.value,
            )
        elif principal.is_super_admin and resource.tenant_id != principal.tenant_id:
            logger.warning(
                "super_admin_cross_tenant_access",
                principal_id=principal.id,
                principal_tenant=principal.tenant_id,
                resource_tenant=resource.tenant_id,
                resource_type=resource.resource_type,
            )
        return decision

    def record_outcome(
        self,
        principal: Principal,
        resource: ResourceDescriptor,
        operation: OperationRequest,
        decision: Decision,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        """Audit the outcome of an operation that authorize() allowed (a second record after the decision's)."""
        self._audit(principal, resource, operation, decision, success=success, error=error, stage="operation")

    @contextmanager
    def guard(
        self,
        principal: Principal,
        resource: ResourceDescriptor,
        operation: OperationRequest,
    ) -> Iterator[Decision]:
        decision = self._decide(principal, resource, operation)
        if not decision.allowed:
            self._audit(principal, resource, operation, decision, success=False)
            raise AccessDenied(decision)
        try:
            yield decision
        except BaseException as exc:
            self.record_outcome(principal, resource, operation, decision, success=False, error=type(exc).__name__)
            raise
        self.record_outcome(principal, resource, operation, decision, success=True)

    def _audit(
        self,
        principal: Principal,
        resource: ResourceDescriptor,
        operation: OperationRequest,
        decision: Decision,
        success: bool,
        error: Optional[str] = None,
        stage: str = "decision",
    ) -> None:
        detail = {
            "stage":          stage,
            "outcome":        decision.outcome.value,
            "resource_id":    resource.resource_id,
            "resource_tenant": resource.tenant_id,
            "owner_id":       resource.owner_id,
            "status":         resource.current_status,
            "role":           principal.role.value,
            "super_admin":    principal.is_super_admin,
        }
        if decision.narrowed_fields is not None:
            detail["narrowed_fields"] = sorted(decision.narrowed_fields)
        if decision.detail:
            detail["reason"] = decision.detail
        if error:
            detail["error"] = error
        self._recorder.record(AuditEvent(
            tenant_id=principal.tenant_id,
            principal_id=principal.id,
            resource_type=resource.resource_type,
            action=operation.kind.value,
            success=success,
            reason_code=decision.reason_code,
            detail=detail,
        ))
