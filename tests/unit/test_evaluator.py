"""
Unit tests for the RBAC policy evaluator.

evaluate() is pure: no DB, no clock. All tests run against the bundled
policy table (access/policy.yaml) or a small table parsed inline.
"""

import pytest

from attendx.services.access.decisions import (
    Decision, DecisionOutcome, OperationKind, OperationRequest, ResourceDescriptor,
)
from attendx.services.access.evaluator import evaluate, is_owner
from attendx.services.access.policy_table import parse_policy
from attendx.services.shared.errors import ReasonCode
from attendx.services.shared.identity import HUMAN_ROLES, Principal, Role, role_rank


# ── Helpers ────────────────────────────────────────────────────────────────────

def make_principal(**kwargs) -> Principal:
    defaults = {"id": "u1", "tenant_id": "t1", "role": Role.member}
    defaults.update(kwargs)
    return Principal(**defaults)


def make_resource(**kwargs) -> ResourceDescriptor:
    defaults = {
        "resource_type":  "leave_request",
        "tenant_id":      "t1",
        "owner_id":       "u1",
        "current_fields": {"reason": "cold", "status": "pending"},
        "current_status": "pending",
    }
    defaults.update(kwargs)
    return ResourceDescriptor(**defaults)


def op(kind: str, **proposed) -> OperationRequest:
    return OperationRequest(kind=kind, proposed_fields=proposed)


# ── Tenant isolation ───────────────────────────────────────────────────────────

class TestTenantIsolation:

    @pytest.mark.parametrize("role", HUMAN_ROLES)
    @pytest.mark.parametrize("kind", list(OperationKind))
    def test_cross_tenant_always_denied(self, policy, role, kind):
        """Role and ownership never get a principal into another tenant."""
        principal = make_principal(role=role)
        for resource_type in policy.resource_types:
            resource = make_resource(resource_type=resource_type, tenant_id="t2", owner_id=principal.id)
            decision = evaluate(principal, resource, op(kind.value), policy)
            assert decision.outcome == DecisionOutcome.deny
            assert decision.reason_code == ReasonCode.TENANT_MISMATCH

    def test_tenant_checked_before_policy_lookup(self, policy):
        decision = evaluate(make_principal(), make_resource(resource_type="no_such_type", tenant_id="t2"), op("read"), policy)
        assert decision.reason_code == ReasonCode.TENANT_MISMATCH

    def test_super_admin_crosses_tenants(self, policy):
        principal = make_principal(role=Role.admin, is_super_admin=True)
        decision = evaluate(principal, make_resource(tenant_id="t2", owner_id="someone"), op("read"), policy)
        assert decision.allowed
        assert decision.reason_code == ReasonCode.ALLOWED_BY_ROLE

    def test_super_admin_still_bound_by_role(self, policy):
        """Super-admin skips the tenant check only; the role rules still apply."""
        principal = make_principal(role=Role.member, is_super_admin=True)
        decision = evaluate(principal, make_resource(tenant_id="t2", owner_id="someone"), op("delete"), policy)
        assert decision.reason_code == ReasonCode.INSUFFICIENT_ROLE


# ── Role thresholds ────────────────────────────────────────────────────────────

class TestRoleThreshold:

    def test_member_owner_updates_pending_leave_request(self, policy):
        decision = evaluate(make_principal(), make_resource(), op("update", reason="flu"), policy)
        assert decision.allowed
        assert decision.reason_code == ReasonCode.ALLOWED_AS_OWNER

    def test_non_owner_member_cannot_read_leave_request(self, policy):
        decision = evaluate(make_principal(id="u2"), make_resource(), op("read"), policy)
        assert decision.reason_code == ReasonCode.INSUFFICIENT_ROLE
        assert "manager" in decision.detail

    def test_manager_reads_any_leave_request_in_tenant(self, policy):
        decision = evaluate(make_principal(id="m1", role=Role.manager), make_resource(), op("read"), policy)
        assert decision.allowed
        assert decision.reason_code == ReasonCode.ALLOWED_BY_ROLE

    def test_owner_without_override_uses_role(self, policy):
        """attendance update has no owner_override: owning the record is not enough."""
        resource = make_resource(resource_type="attendance", current_status=None)
        decision = evaluate(make_principal(), resource, op("update"), policy)
        assert decision.reason_code == ReasonCode.INSUFFICIENT_ROLE

    def test_viewer_reads_events(self, policy):
        resource = make_resource(resource_type="event", owner_id="someone")
        assert evaluate(make_principal(role=Role.viewer), resource, op("read"), policy).allowed

    @pytest.mark.parametrize("kind", ["create", "delete"])
    def test_system_only_operations_denied_to_admin(self, policy, kind):
        resource = make_resource(resource_type="organization", owner_id="u1")
        decision = evaluate(make_principal(role=Role.admin), resource, op(kind), policy)
        assert decision.reason_code == ReasonCode.INSUFFICIENT_ROLE

    @pytest.mark.parametrize("kind", ["create", "update", "delete"])
    def test_audit_records_not_writable_by_principals(self, policy, kind):
        principal = make_principal(role=Role.admin, is_super_admin=True)
        resource = make_resource(resource_type="audit_record", owner_id=principal.id)
        assert evaluate(principal, resource, op(kind), policy).reason_code == ReasonCode.INSUFFICIENT_ROLE

    def test_system_role_cannot_be_assigned_to_principal(self):
        with pytest.raises(ValueError):
            make_principal(role=Role.system)


# ── Role monotonicity ──────────────────────────────────────────────────────────

class TestRoleMonotonicity:

    @pytest.mark.parametrize("owner_id", ["u1", "someone-else", None])
    @pytest.mark.parametrize("status", ["pending", "approved", "draft", None])
    def test_higher_role_never_loses_access(self, policy, owner_id, status):
        ranked = sorted(HUMAN_ROLES, key=role_rank)
        for resource_type in policy.resource_types:
            resource = make_resource(resource_type=resource_type, owner_id=owner_id, current_status=status)
            for kind in OperationKind:
                allowed = False
                for role in ranked:
                    decision = evaluate(make_principal(role=role), resource, op(kind.value), policy)
                    if allowed:
                        assert decision.allowed, (resource_type, kind, role)
                    allowed = decision.allowed


# ── Purity ─────────────────────────────────────────────────────────────────────

class TestPurity:

    def test_identical_inputs_identical_decisions(self, policy):
        principal = make_principal(role=Role.manager)
        resource = make_resource(current_status="approved")
        first = evaluate(principal, resource, op("update", reason="x"), policy)
        second = evaluate(principal, resource, op("update", reason="x"), policy)
        assert first == second

    def test_does_not_touch_inputs(self, policy):
        resource = make_resource()
        operation = op("update", reason="flu")
        evaluate(make_principal(), resource, operation, policy)
        assert resource.current_fields == {"reason": "cold", "status": "pending"}
        assert operation.proposed_fields == {"reason": "flu"}


# ── Status gates ───────────────────────────────────────────────────────────────

class TestStatusGate:

    def test_owner_blocked_after_approval(self, policy):
        decision = evaluate(make_principal(), make_resource(current_status="approved"), op("update", reason="flu"), policy)
        assert decision.reason_code == ReasonCode.INSUFFICIENT_ROLE
        assert "approved" in decision.detail

    def test_manager_passes_gate(self, policy):
        principal = make_principal(id="m1", role=Role.manager)
        decision = evaluate(principal, make_resource(current_status="approved"), op("update"), policy)
        assert decision.allowed

    def test_missing_status_is_closed(self, policy):
        decision = evaluate(make_principal(), make_resource(current_status=None), op("update"), policy)
        assert decision.reason_code == ReasonCode.INSUFFICIENT_ROLE

    def test_timesheet_rejected_is_reopened_for_owner(self, policy):
        resource = make_resource(resource_type="timesheet", current_status="rejected")
        assert evaluate(make_principal(), resource, op("update"), policy).allowed

    def test_timesheet_delete_gate_requires_admin(self, policy):
        resource = make_resource(resource_type="timesheet", current_status="submitted", owner_id="someone")
        assert not evaluate(make_principal(role=Role.manager), resource, op("delete"), policy).allowed
        assert evaluate(make_principal(role=Role.admin), resource, op("delete"), policy).allowed


# ── Undefined policy ───────────────────────────────────────────────────────────

class TestPolicyNotDefined:

    def test_unknown_resource_type(self, policy):
        decision = evaluate(make_principal(role=Role.admin), make_resource(resource_type="payroll"), op("read"), policy)
        assert decision.reason_code == ReasonCode.POLICY_NOT_DEFINED

    def test_unlisted_operation(self, policy):
        resource = make_resource(resource_type="verification_token")
        decision = evaluate(make_principal(role=Role.admin), resource, op("delete"), policy)
        assert decision.reason_code == ReasonCode.POLICY_NOT_DEFINED

    def test_empty_table_denies_everything(self):
        empty = parse_policy({})
        decision = evaluate(make_principal(role=Role.admin), make_resource(), op("read"), empty)
        assert decision == Decision.deny(ReasonCode.POLICY_NOT_DEFINED, decision.detail)


def test_is_owner_requires_owner_id():
    assert not is_owner(make_principal(), make_resource(owner_id=None))
    assert is_owner(make_principal(), make_resource(owner_id="u1"))
