"""
Authorization routes.

  POST /api/authz/evaluate  evaluate (+ field narrowing for updates) for the session
                            principal; every decision is audited, DENY is returned
                            as an error body
  POST /api/authz/check     same decision, returned as data and NOT audited;
                            used by the UI to decide which actions to offer
"""

from fastapi import APIRouter, Depends

from attendx.services.access.decisions import OperationRequest, ResourceDescriptor
from attendx.services.access.dependencies import get_access_service
from attendx.services.access.service import AccessService, decide
from attendx.services.shared.auth import get_principal
from attendx.services.shared.errors import AccessDenied
from attendx.services.shared.identity import Principal
from attendx.services.shared.schemas import AuthzRequest, DecisionOut

router = APIRouter()


def _to_domain(req: AuthzRequest) -> tuple[ResourceDescriptor, OperationRequest]:
    resource = ResourceDescriptor(
        resource_type=req.resource.resource_type,
        tenant_id=req.resource.tenant_id,
        owner_id=req.resource.owner_id,
        current_fields=dict(req.resource.current_fields),
        current_status=req.resource.current_status,
        resource_id=req.resource.resource_id,
    )
    return resource, OperationRequest(kind=req.operation, proposed_fields=dict(req.proposed_fields))


@router.post("/authz/evaluate", response_model=DecisionOut)
def evaluate_access(
    req: AuthzRequest,
    principal: Principal = Depends(get_principal),
    access: AccessService = Depends(get_access_service),
):
    resource, operation = _to_domain(req)
    decision = access.authorize(principal, resource, operation)
    if not decision.allowed:
        raise AccessDenied(decision)
    return DecisionOut(**decision.as_dict())


@router.post("/authz/check", response_model=DecisionOut)
def check_access(
    req: AuthzRequest,
    principal: Principal = Depends(get_principal),
    access: AccessService = Depends(get_access_service),
):
    resource, operation = _to_domain(req)
    return DecisionOut(**decide(principal, resource, operation, access.policy).as_dict())
