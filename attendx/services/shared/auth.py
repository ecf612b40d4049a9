"""
AttendX Identity Context
------------------------
Provides the `get_principal` FastAPI dependency used by every access-core endpoint.

When REQUIRE_SIGNED_SESSION=false (default for local dev):
  - the principal is taken from X-User-Id / X-Tenant-Id / X-Role headers
  - X-Super-Admin: true marks a super-admin
  - Suitable for docker-compose local development and demos

When REQUIRE_SIGNED_SESSION=true (production):
  - Authorization: Bearer <session> is required
  - the session is an HS256 JWT signed with SESSION_SECRET, claims:
      sub  user id
      tid  tenant id
      role viewer | member | manager | admin
      sa   super-admin flag (optional)
  - identity headers are IGNORED so tenant/role cannot be spoofed
  - Returns HTTP 401 if the session is missing, expired or forged

Mint a session for testing:
    python attendx/scripts/issue_session.py --user-id u1 --tenant-id t1 --role manager
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Header

from attendx.services.shared import settings
from attendx.services.shared.errors import Unauthenticated
from attendx.services.shared.identity import HUMAN_ROLES, Principal, Role


def encode_session(
    principal: Principal,
    ttl: timedelta = timedelta(hours=8),
    secret: Optional[str] = None,
) -> str:
    now = datetime.now(timezone.utc)
    claims = {
        "sub":  principal.id,
        "tid":  principal.tenant_id,
        "role": principal.role.value,
        "sa":   principal.is_super_admin,
        "iat":  now,
        "exp":  now + ttl,
    }
    return jwt.encode(claims, secret or settings.SESSION_SECRET, algorithm=settings.SESSION_ALGORITHM)


def decode_session(token: str, secret: Optional[str] = None) -> Principal:
    """Verify signature + expiry and build the Principal. Raises Unauthenticated."""
    try:
        claims = jwt.decode(
            token,
            secret or settings.SESSION_SECRET,
            algorithms=[settings.SESSION_ALGORITHM],
            options={"require": ["sub", "tid", "role", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        raise Unauthenticated(detail="Session expired") from None
    except jwt.InvalidTokenError:
        raise Unauthenticated(detail="Invalid session") from None
    return _principal_from(claims.get("sub"), claims.get("tid"), claims.get("role"), bool(claims.get("sa", False)))


def _principal_from(user_id, tenant_id, role, is_super_admin: bool) -> Principal:
    if not user_id or not tenant_id:
        raise Unauthenticated(detail="Session has no user or tenant")
    try:
        role = Role(role or Role.viewer.value)
    except ValueError:
        raise Unauthenticated(detail=f"Unknown role '{role}'") from None
    if role not in HUMAN_ROLES:
        raise Unauthenticated(detail=f"Role '{role.value}' cannot be assumed by a session")
    return Principal(id=str(user_id), tenant_id=str(tenant_id), role=role, is_super_admin=is_super_admin)


def get_principal(
    authorization: str | None = Header(None),
    x_user_id: str | None = Header(None, alias="X-User-Id"),
    x_tenant_id: str | None = Header(None, alias="X-Tenant-Id"),
    x_role: str | None = Header(None, alias="X-Role"),
    x_super_admin: str | None = Header(None, alias="X-Super-Admin"),
) -> Principal:
    """
    FastAPI dependency: resolves the authenticated principal for the current request.
    The returned Principal is immutable for the lifetime of the request.
    """
    if not settings.REQUIRE_SIGNED_SESSION and not authorization:
        # Local dev / demo mode: trust the identity headers
        return _principal_from(
            x_user_id, x_tenant_id or "default", x_role,
            (x_super_admin or "").lower() == "true",
        )

    if not authorization or not authorization.lower().startswith("bearer "):
        raise Unauthenticated(detail="Authorization: Bearer <session> header is required")

    # Security: identity comes from the signed claims - never from headers
    return decode_session(authorization.split(" ", 1)[1].strip())
