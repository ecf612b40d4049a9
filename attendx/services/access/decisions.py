"""
Value types shared by the policy evaluator, the field guard and the access service.
All frozen: a Decision computed for one request can be handed around freely.
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Optional

from attendx.services.shared.errors import ReasonCode


class OperationKind(str, enum.Enum):
    read   = "read"
    create = "create"
    update = "update"
    delete = "delete"


class DecisionOutcome(str, enum.Enum):
    allow = "allow"
    deny  = "deny"


@dataclass(frozen=True)
class ResourceDescriptor:
    """Snapshot of the resource as stored before the operation."""
    resource_type: str
    tenant_id: str
    owner_id: Optional[str] = None
    current_fields: dict[str, Any] = field(default_factory=dict)
    current_status: Optional[str] = None
    resource_id: Optional[str] = None


@dataclass(frozen=True)
class OperationRequest:
    kind: OperationKind
    proposed_fields: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "kind", OperationKind(self.kind))

    @property
    def is_mutation(self) -> bool:
        return self.kind != OperationKind.read


@dataclass(frozen=True)
class Decision:
    outcome: DecisionOutcome
    reason_code: ReasonCode
    narrowed_fields: Optional[frozenset[str]] = None
    detail: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.outcome == DecisionOutcome.allow

    @classmethod
    def allow(cls, reason_code: ReasonCode, narrowed_fields=None, detail=None) -> "Decision":
        if narrowed_fields is not None:
            narrowed_fields = frozenset(narrowed_fields)
        return cls(DecisionOutcome.allow, reason_code, narrowed_fields, detail)

    @classmethod
    def deny(cls, reason_code: ReasonCode, detail=None) -> "Decision":
        return cls(DecisionOutcome.deny, reason_code, None, detail)

    def as_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "reason_code": self.reason_code.value,
            "narrowed_fields": sorted(self.narrowed_fields) if self.narrowed_fields is not None else None,
            "detail": self.detail,
        }
