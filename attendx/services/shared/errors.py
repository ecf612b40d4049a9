"""
Error taxonomy for the access core.

Every deny / failure carries a ReasonCode. ERROR_CATALOG maps each failure
code to the stable (http_status, message, hint) triple returned to
front-end callers, so the UI can render consistent guidance.

Exceptions:
  AccessCoreError            base; carries code + extra payload
    AccessDenied             policy evaluator / field guard said DENY
    TokenValidationFailed    validate() terminal failure
    RateLimitExceeded        issue() throttled; retryable after next_allowed_at
    StorageUnavailable       storage retries exhausted; request fails closed
    Unauthenticated          no usable session on the request
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional


class ReasonCode(str, enum.Enum):
    # allow
    ALLOWED_BY_ROLE           = "ALLOWED_BY_ROLE"
    ALLOWED_AS_OWNER          = "ALLOWED_AS_OWNER"
    # policy denials
    TENANT_MISMATCH           = "TENANT_MISMATCH"
    INSUFFICIENT_ROLE         = "INSUFFICIENT_ROLE"
    POLICY_NOT_DEFINED        = "POLICY_NOT_DEFINED"
    IMMUTABLE_FIELD_VIOLATION = "IMMUTABLE_FIELD_VIOLATION"
    FIELD_NOT_ALLOWED         = "FIELD_NOT_ALLOWED"
    # token lifecycle
    TOKEN_VALID               = "TOKEN_VALID"
    TOKEN_ISSUED              = "TOKEN_ISSUED"
    TOKEN_NOT_FOUND           = "TOKEN_NOT_FOUND"
    TOKEN_EXPIRED             = "TOKEN_EXPIRED"
    TOKEN_ALREADY_USED        = "TOKEN_ALREADY_USED"
    PURPOSE_MISMATCH          = "PURPOSE_MISMATCH"
    RATE_LIMIT_EXCEEDED       = "RATE_LIMIT_EXCEEDED"
    # internal
    UNAUTHENTICATED           = "UNAUTHENTICATED"
    STORAGE_UNAVAILABLE       = "STORAGE_UNAVAILABLE"
    AUDIT_WRITE_FAILED        = "AUDIT_WRITE_FAILED"


@dataclass(frozen=True)
class ErrorSpec:
    http_status: int
    message: str
    hint: Optional[str] = None


ERROR_CATALOG: dict[ReasonCode, ErrorSpec] = {
    ReasonCode.TENANT_MISMATCH: ErrorSpec(
        403, "This resource belongs to another organization."),
    ReasonCode.INSUFFICIENT_ROLE: ErrorSpec(
        403, "Your role does not allow this action."),
    ReasonCode.POLICY_NOT_DEFINED: ErrorSpec(
        403, "No access policy is defined for this action."),
    ReasonCode.IMMUTABLE_FIELD_VIOLATION: ErrorSpec(
        422, "One or more fields cannot be changed after creation.",
        "Remove the protected fields from the form and submit again."),
    ReasonCode.FIELD_NOT_ALLOWED: ErrorSpec(
        422, "You are not allowed to change one or more of these fields.",
        "Remove the restricted fields from the form and submit again."),
    ReasonCode.TOKEN_NOT_FOUND: ErrorSpec(
        400, "This verification link is invalid."),
    ReasonCode.TOKEN_EXPIRED: ErrorSpec(
        400, "This verification link has expired.",
        "Request a new one."),
    ReasonCode.TOKEN_ALREADY_USED: ErrorSpec(
        400, "This verification link has already been used."),
    ReasonCode.PURPOSE_MISMATCH: ErrorSpec(
        400, "This verification link cannot be used for this action."),
    ReasonCode.RATE_LIMIT_EXCEEDED: ErrorSpec(
        429, "Too many requests.",
        "Wait until next_allowed_at before requesting another link."),
    ReasonCode.UNAUTHENTICATED: ErrorSpec(
        401, "Authentication is required.",
        "Sign in again."),
    ReasonCode.STORAGE_UNAVAILABLE: ErrorSpec(
        503, "The service is temporarily unavailable.",
        "Try again in a few moments."),
    ReasonCode.AUDIT_WRITE_FAILED: ErrorSpec(
        500, "Internal error."),
}


def error_spec(code: ReasonCode) -> ErrorSpec:
    try:
        return ERROR_CATALOG[ReasonCode(code)]
    except KeyError:
        raise ValueError(f"{code} is not a failure code") from None


class AccessCoreError(Exception):
    """Base error: carries a ReasonCode plus extra fields for the response body."""

    code: ReasonCode = ReasonCode.STORAGE_UNAVAILABLE

    def __init__(self, code: ReasonCode | None = None, detail: str | None = None, **extra: Any):
        if code is not None:
            self.code = ReasonCode(code)
        self.extra = extra
        spec = error_spec(self.code)
        super().__init__(detail or spec.message)

    @property
    def http_status(self) -> int:
        return error_spec(self.code).http_status

    def to_dict(self) -> dict[str, Any]:
        spec = error_spec(self.code)
        body: dict[str, Any] = {
            "code": self.code.value,
            "message": spec.message,
            "hint": spec.hint,
        }
        for key, value in self.extra.items():
            body[key] = value.isoformat() if isinstance(value, datetime) else value
        return body


class AccessDenied(AccessCoreError):
    code = ReasonCode.INSUFFICIENT_ROLE

    def __init__(self, decision):
        self.decision = decision
        extra = {}
        if decision.detail:
            extra["reason"] = decision.detail
        super().__init__(decision.reason_code, **extra)


class TokenValidationFailed(AccessCoreError):
    code = ReasonCode.TOKEN_NOT_FOUND


class RateLimitExceeded(AccessCoreError):
    code = ReasonCode.RATE_LIMIT_EXCEEDED

    def __init__(self, next_allowed_at: datetime):
        self.next_allowed_at = next_allowed_at
        super().__init__(next_allowed_at=next_allowed_at)


class StorageUnavailable(AccessCoreError):
    code = ReasonCode.STORAGE_UNAVAILABLE


class Unauthenticated(AccessCoreError):
    code = ReasonCode.UNAUTHENTICATED
