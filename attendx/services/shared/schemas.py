"""
Pydantic request/response schemas for the access-core HTTP surface.
All API responses use these schemas for type safety and documentation.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from attendx.services.shared.models import TokenPurpose


# ── Authorization ─────────────────────────────────────────────────────────────

class ResourceIn(BaseModel):
    resource_type: str = Field(..., examples=["leave_request"])
    tenant_id: str
    resource_id: Optional[str] = None
    owner_id: Optional[str] = None
    current_fields: dict[str, Any] = {}
    current_status: Optional[str] = None


class AuthzRequest(BaseModel):
    resource: ResourceIn
    operation: str = Field(..., examples=["update"], pattern="^(read|create|update|delete)$")
    proposed_fields: dict[str, Any] = {}


class DecisionOut(BaseModel):
    outcome: str
    reason_code: str
    narrowed_fields: Optional[list[str]] = None
    detail: Optional[str] = None


# ── Verification tokens ───────────────────────────────────────────────────────

class TokenIssueRequest(BaseModel):
    principal_id: str
    purpose: TokenPurpose = TokenPurpose.email_verify
    tenant_id: Optional[str] = None


class TokenIssueOut(BaseModel):
    """The secret is never part of this response; it goes to the principal out of band."""
    token_id: str
    purpose: TokenPurpose
    expires_at: datetime
    delivered: bool


class TokenValidateRequest(BaseModel):
    token: str
    purpose: TokenPurpose = TokenPurpose.email_verify


class TokenValidateOut(BaseModel):
    principal_id: str
    purpose: str


# ── Audit ─────────────────────────────────────────────────────────────────────

class AuditRecordOut(BaseModel):
    id: int
    tenant_id: str
    principal_id: Optional[str]
    resource_type: str
    action: str
    success: bool
    reason_code: Optional[str]
    suspicious_flag: bool
    detail: dict[str, Any]
    timestamp: datetime
    record_hash: str

    model_config = ConfigDict(from_attributes=True)


class ChainVerificationOut(BaseModel):
    ok: bool
    checked: int
    broken_at: Optional[int] = None
