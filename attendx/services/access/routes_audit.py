"""
Audit query routes.
Read-only access to the caller's tenant audit trail; there is no write endpoint.
Access is itself decided by the policy table (resource type audit_record).
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from attendx.services.access.audit import list_records, verify_chain
from attendx.services.access.decisions import OperationKind, OperationRequest, ResourceDescriptor
from attendx.services.access.dependencies import get_access_service
from attendx.services.access.service import AccessService
from attendx.services.shared.auth import get_principal
from attendx.services.shared.database import get_db
from attendx.services.shared.errors import AccessDenied
from attendx.services.shared.identity import Principal
from attendx.services.shared.schemas import AuditRecordOut, ChainVerificationOut

router = APIRouter()


def _require_audit_read(principal: Principal, access: AccessService) -> None:
    resource = ResourceDescriptor(resource_type="audit_record", tenant_id=principal.tenant_id)
    decision = access.authorize(principal, resource, OperationRequest(kind=OperationKind.read))
    if not decision.allowed:
        raise AccessDenied(decision)


@router.get("/audit", response_model=list[AuditRecordOut])
def list_audit_records(
    principal_id: Optional[str] = None,
    action: Optional[str] = None,
    success: Optional[bool] = None,
    suspicious: Optional[bool] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(default=50, le=500),
    offset: int = 0,
    principal: Principal = Depends(get_principal),
    access: AccessService = Depends(get_access_service),
    db=Depends(get_db),
):
    """
    Query the audit trail of the caller's tenant, newest first.
    Supports filtering by principal, action (e.g. "update", "token_validate"),
    success and the suspicious flag.
    """
    _require_audit_read(principal, access)
    rows = list_records(
        db,
        principal.tenant_id,
        principal_id=principal_id,
        action=action,
        success=success,
        suspicious=suspicious,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    )
    return [AuditRecordOut.model_validate(r) for r in rows]


@router.get("/audit/verify", response_model=ChainVerificationOut)
def verify_audit_chain(
    principal: Principal = Depends(get_principal),
    access: AccessService = Depends(get_access_service),
    db=Depends(get_db),
):
    """Recompute the tenant's hash chain and report the first tampered record, if any."""
    _require_audit_read(principal, access)
    result = verify_chain(db, principal.tenant_id)
    return ChainVerificationOut(ok=result.ok, checked=result.checked, broken_at=result.broken_at)
