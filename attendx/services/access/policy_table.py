"""
Declarative access policy table.

The table is external configuration (YAML), loaded once at process start:

    resource_types:
      leave_request:
        immutable_fields: [id, tenantId, userId, createdAt, createdBy]
        field_allow_lists:
          other: [comment]
        operations:
          update:
            min_role: manager
            owner_override: true
            status_gate: {open_statuses: [pending], min_role: manager}

Changing access policy means editing the file (POLICY_FILE) and restarting;
the evaluator code does not change.
"""

from functools import lru_cache
from typing import Optional

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field

from attendx.services.access.decisions import OperationKind
from attendx.services.shared.identity import Role
from attendx.services.shared.settings import POLICY_FILE

logger = structlog.get_logger()


class StatusGate(BaseModel):
    """Once current_status leaves open_statuses, only min_role and above may act."""
    model_config = ConfigDict(frozen=True)

    open_statuses: frozenset[str]
    min_role: Role


class OperationRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_role: Role
    owner_override: bool = False
    status_gate: Optional[StatusGate] = None


class ResourcePolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    operations: dict[OperationKind, OperationRule] = Field(default_factory=dict)
    immutable_fields: frozenset[str] = frozenset()
    # actor class ("owner" | "admin" | "other") → fields that class may change
    field_allow_lists: dict[str, frozenset[str]] = Field(default_factory=dict)


class PolicyTable(BaseModel):
    model_config = ConfigDict(frozen=True)

    resource_types: dict[str, ResourcePolicy] = Field(default_factory=dict)

    def rule_for(self, resource_type: str, kind: OperationKind) -> Optional[OperationRule]:
        policy = self.resource_types.get(resource_type)
        if policy is None:
            return None
        return policy.operations.get(OperationKind(kind))

    def immutable_fields(self, resource_type: str) -> frozenset[str]:
        policy = self.resource_types.get(resource_type)
        return policy.immutable_fields if policy else frozenset()

    def allow_list(self, resource_type: str, actor_class: str) -> Optional[frozenset[str]]:
        policy = self.resource_types.get(resource_type)
        if policy is None:
            return None
        return policy.field_allow_lists.get(actor_class)


def parse_policy(data: dict) -> PolicyTable:
    return PolicyTable.model_validate(data or {})


def load_policy(path: str = POLICY_FILE) -> PolicyTable:
    """Read and validate a policy file. Raises on malformed input - a bad table must not start."""
    with open(path, encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    table = parse_policy(data)
    logger.info("policy_table_loaded", path=path, resource_types=sorted(table.resource_types))
    return table


@lru_cache(maxsize=1)
def get_policy() -> PolicyTable:
    """Process-wide policy table, loaded on first use."""
    return load_policy()
