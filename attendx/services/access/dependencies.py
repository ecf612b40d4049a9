"""FastAPI dependencies resolving the per-process access-core services from app.state."""

from typing import Callable, Optional

from fastapi import Request

from attendx.services.access.audit import AuditRecorder
from attendx.services.access.service import AccessService
from attendx.services.access.tokens import IssuedToken, TokenService


def get_recorder(request: Request) -> AuditRecorder:
    return request.app.state.recorder


def get_access_service(request: Request) -> AccessService:
    return request.app.state.access_service


def get_token_service(request: Request) -> TokenService:
    return request.app.state.token_service


def get_token_delivery(request: Request) -> Callable[[IssuedToken, Optional[str]], bool]:
    return request.app.state.token_delivery
