"""
Verification token routes.

  POST /api/tokens           issue a token for a principal (self, or anyone for admins)
                             201 {token_id, purpose, expires_at, delivered} | 429 RATE_LIMIT_EXCEEDED
                             the secret is handed to the delivery hook, never returned
  POST /api/tokens/validate  consume a token; no session required - the token itself
                             authenticates the caller for this one action
"""

from typing import Callable

from fastapi import APIRouter, Depends

from attendx.services.access.decisions import OperationKind, OperationRequest, ResourceDescriptor
from attendx.services.access.dependencies import get_access_service, get_token_delivery, get_token_service
from attendx.services.access.service import AccessService
from attendx.services.access.tokens import TokenService
from attendx.services.shared.auth import get_principal
from attendx.services.shared.errors import AccessDenied
from attendx.services.shared.identity import Principal
from attendx.services.shared.schemas import (
    TokenIssueOut, TokenIssueRequest, TokenValidateOut, TokenValidateRequest,
)

router = APIRouter()


@router.post("/tokens", response_model=TokenIssueOut, status_code=201)
def issue_token(
    req: TokenIssueRequest,
    principal: Principal = Depends(get_principal),
    access: AccessService = Depends(get_access_service),
    tokens: TokenService = Depends(get_token_service),
    deliver: Callable = Depends(get_token_delivery),
):
    tenant_id = req.tenant_id or principal.tenant_id
    resource = ResourceDescriptor(
        resource_type="verification_token",
        tenant_id=tenant_id,
        owner_id=req.principal_id,
    )
    operation = OperationRequest(kind=OperationKind.create, proposed_fields={"purpose": req.purpose.value})
    decision = access.authorize(principal, resource, operation)
    if not decision.allowed:
        raise AccessDenied(decision)

    issued = tokens.issue(req.principal_id, req.purpose, tenant_id=tenant_id)
    return TokenIssueOut(
        token_id=issued.token_id,
        purpose=issued.purpose,
        expires_at=issued.expires_at,
        delivered=deliver(issued, tenant_id),
    )


@router.post("/tokens/validate", response_model=TokenValidateOut)
def validate_token(
    req: TokenValidateRequest,
    tokens: TokenService = Depends(get_token_service),
):
    result = tokens.validate(req.token, req.purpose).raise_for_failure()
    return TokenValidateOut(principal_id=result.principal_id, purpose=result.purpose)
