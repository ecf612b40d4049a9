"""
AttendX access-core SQLAlchemy ORM models - all persisted entities in one file.
Uses SQLAlchemy 2.0 Mapped + mapped_column for full type-checker support.

  VerificationToken       single-use token record; keyed by sha256(secret), never deleted
  IssuanceThrottleState   one row per (principal_id, purpose); owned by the token service
  AuditRecord             append-only; written only by the audit recorder

Immutability invariant:
  AuditRecord rows are never updated or deleted by any actor. The ORM listeners
  at the bottom of this module raise on any attempt to flush such a change.
"""

import enum
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, DateTime, Enum as SAEnum, Index, Integer, JSON, String,
    UniqueConstraint, event,
)
from sqlalchemy.orm import Mapped, mapped_column

from attendx.services.shared.database import Base


# ── Enumerations ──────────────────────────────────────────────────────────────

class TokenPurpose(str, enum.Enum):
    email_verify   = "email_verify"
    password_reset = "password_reset"
    invitation     = "invitation"


class TokenState(str, enum.Enum):
    issued  = "issued"
    used    = "used"
    # Never stored: computed from expires_at by VerificationToken.effective_state
    expired = "expired"


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Verification Tokens ───────────────────────────────────────────────────────

class VerificationToken(Base):
    """
    One row per issued token. token_id is the sha256 hex digest of the secret;
    the secret itself is never stored.
    state moves issued → used exactly once via a conditional UPDATE.
    Expiry is computed against expires_at, not written.
    """
    __tablename__ = "verification_tokens"

    token_id:     Mapped[str]                = mapped_column(String(64), primary_key=True)
    principal_id: Mapped[str]                = mapped_column(String(255), nullable=False, index=True)
    tenant_id:    Mapped[Optional[str]]      = mapped_column(String(255), nullable=True, index=True)
    purpose:      Mapped[TokenPurpose]       = mapped_column(SAEnum(TokenPurpose), nullable=False)
    issued_at:    Mapped[datetime]           = mapped_column(DateTime(timezone=True), default=_now, nullable=False)
    expires_at:   Mapped[datetime]           = mapped_column(DateTime(timezone=True), nullable=False)
    state:        Mapped[TokenState]         = mapped_column(SAEnum(TokenState), default=TokenState.issued, nullable=False)
    used_at:      Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    single_use:   Mapped[bool]               = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index("ix_verification_token_principal_purpose", "principal_id", "purpose"),
    )

    def effective_state(self, now: datetime) -> TokenState:
        if self.state == TokenState.used:
            return TokenState.used
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if now > expires_at:
            return TokenState.expired
        return TokenState.issued


# ── Issuance Throttle ─────────────────────────────────────────────────────────

class IssuanceThrottleState(Base):
    """
    Fixed-window issuance counter per (principal_id, purpose).
    Read-modify-written under a row lock by TokenService.issue.
    """
    __tablename__ = "issuance_throttle_states"

    id:               Mapped[int]                = mapped_column(Integer, primary_key=True)
    principal_id:     Mapped[str]                = mapped_column(String(255), nullable=False)
    purpose:          Mapped[TokenPurpose]       = mapped_column(SAEnum(TokenPurpose), nullable=False)
    window_start:     Mapped[datetime]           = mapped_column(DateTime(timezone=True), default=_now, nullable=False)
    count_in_window:  Mapped[int]                = mapped_column(Integer, default=0, nullable=False)
    next_allowed_at:  Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("principal_id", "purpose", name="uq_throttle_principal_purpose"),
    )


# ── Audit ─────────────────────────────────────────────────────────────────────

class AuditRecord(Base):
    """
    Immutable audit trail for every authorization decision and token lifecycle event.
    Records of one tenant form a hash chain: record_hash = sha256(previous_hash + canonical body).
    The first record of a tenant has previous_hash = "".

    Consumers must order by timestamp, not by id (writes are unordered across components).
    """
    __tablename__ = "audit_records"

    id:              Mapped[int]             = mapped_column(Integer, primary_key=True, index=True)
    tenant_id:       Mapped[str]             = mapped_column(String(255), nullable=False, index=True)
    principal_id:    Mapped[Optional[str]]   = mapped_column(String(255), nullable=True, index=True)
    resource_type:   Mapped[str]             = mapped_column(String(255), nullable=False)
    action:          Mapped[str]             = mapped_column(String(255), nullable=False)
    success:         Mapped[bool]            = mapped_column(Boolean, nullable=False)
    reason_code:     Mapped[Optional[str]]   = mapped_column(String(64), nullable=True)
    suspicious_flag: Mapped[bool]            = mapped_column(Boolean, default=False, nullable=False)
    detail:          Mapped[dict[str, Any]]  = mapped_column(JSON, default=dict)
    timestamp:       Mapped[datetime]        = mapped_column(DateTime(timezone=True), default=_now, index=True)
    previous_hash:   Mapped[str]             = mapped_column(String(64), nullable=False, default="")
    record_hash:     Mapped[str]             = mapped_column(String(64), nullable=False)

    __table_args__ = (
        Index("ix_audit_record_tenant_ts", "tenant_id", "timestamp"),
        Index("ix_audit_record_principal_ts", "principal_id", "timestamp"),
        # one successor per record: concurrent writers cannot fork a tenant chain
        UniqueConstraint("tenant_id", "previous_hash", name="uq_audit_record_chain_link"),
    )


class AuditImmutableError(RuntimeError):
    pass


@event.listens_for(AuditRecord, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise AuditImmutableError(f"audit record {target.id} is append-only")


@event.listens_for(AuditRecord, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise AuditImmutableError(f"audit record {target.id} is append-only")
