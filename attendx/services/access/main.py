"""
AttendX Access Core Service (port 8400)
----------------------------------------
Authorization decisions, verification tokens and the audit trail for the
attendance application. Every other AttendX service calls this one (or embeds
AccessService directly) before touching tenant-scoped data.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from attendx.services.access.audit import AuditRecorder
from attendx.services.access.delivery import WebhookDelivery
from attendx.services.access.policy_table import PolicyTable, get_policy
from attendx.services.access.service import AccessService
from attendx.services.access.tokens import TokenService
from attendx.services.shared.database import SessionLocal, create_all_tables
from attendx.services.shared.errors import AccessCoreError, RateLimitExceeded
from attendx.services.shared.settings import LOG_LEVEL

logging.basicConfig(level=getattr(logging, LOG_LEVEL.upper(), logging.INFO))
logger = structlog.get_logger()


async def access_core_error_handler(request: Request, exc: AccessCoreError) -> JSONResponse:
    headers = {}
    if isinstance(exc, RateLimitExceeded):
        delta = exc.next_allowed_at - datetime.now(timezone.utc)
        headers["Retry-After"] = str(max(1, int(delta.total_seconds())))
    return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()}, headers=headers)


def create_app(
    session_factory: Callable = SessionLocal,
    policy: Optional[PolicyTable] = None,
    recorder: Optional[AuditRecorder] = None,
    token_service: Optional[TokenService] = None,
    token_delivery: Optional[Callable] = None,
    init_storage: bool = True,
) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("attendx_access_starting")
        if init_storage:
            create_all_tables(bind=getattr(session_factory, "kw", {}).get("bind"))
            logger.info("attendx_access_tables_ready")
        app.state.recorder.start()
        yield
        logger.info("attendx_access_stopping")
        app.state.recorder.stop()

    app = FastAPI(
        title="AttendX Access Core",
        version="0.1.0",
        description="Tenant-scoped authorization, single-use verification tokens and the audit trail.",
        lifespan=lifespan,
    )

    policy = policy or get_policy()
    recorder = recorder or AuditRecorder(session_factory=session_factory)
    app.state.policy = policy
    app.state.recorder = recorder
    app.state.access_service = AccessService(recorder, policy)
    app.state.token_service = token_service or TokenService(session_factory=session_factory, recorder=recorder)
    app.state.token_delivery = token_delivery or WebhookDelivery()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(AccessCoreError, access_core_error_handler)

    from attendx.services.access.routes_authz  import router as authz_router   # noqa: E402
    from attendx.services.access.routes_tokens import router as tokens_router  # noqa: E402
    from attendx.services.access.routes_audit  import router as audit_router   # noqa: E402

    app.include_router(authz_router,  prefix="/api", tags=["Authorization"])
    app.include_router(tokens_router, prefix="/api", tags=["Verification Tokens"])
    app.include_router(audit_router,  prefix="/api", tags=["Audit"])

    @app.get("/health", tags=["Health"])
    def health():
        return {
            "status": "healthy",
            "service": "attendx-access",
            "version": "0.1.0",
            "audit_queue": app.state.recorder.pending,
        }

    return app


app = create_app()
