"""
Verification Token Service
--------------------------
Issues and validates single-use tokens bound to a principal and a purpose
(email verification, password reset, invitation).

Token format:
  secret   = 32 random bytes rendered as 64 lowercase hex chars; returned once by issue()
  token_id = sha256(secret) hex; the only value stored

Lifecycle:
  issued → used      conditional UPDATE ... WHERE state = 'issued' (exactly one winner)
  issued → used      superseded: a new issue() for the same principal + purpose
                     consumes every earlier unused token in the same transaction
  issued → expired   computed from expires_at, never written
  used   → used      every further validation fails with TOKEN_ALREADY_USED

Issuance throttle (fixed window per principal + purpose):
  count_in_window < ceiling          → issue, count += 1
  count_in_window >= ceiling         → next_allowed_at = max(now + cooldown, window end)
  now < next_allowed_at              → RATE_LIMIT_EXCEEDED
The read-modify-write of the throttle row runs under an in-process per-key lock
and a SELECT ... FOR UPDATE row lock.

Storage failures are retried with backoff, then fail closed:
  issue()    → StorageUnavailable
  validate() → TOKEN_NOT_FOUND
"""

import hashlib
import re
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from urllib.parse import quote, urlparse

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from attendx.services.access.audit import SYSTEM_TENANT, AuditEvent, AuditRecorder
from attendx.services.shared.database import SessionLocal, utc, with_storage_retry
from attendx.services.shared.errors import (
    RateLimitExceeded, ReasonCode, StorageUnavailable, TokenValidationFailed,
)
from attendx.services.shared.models import (
    IssuanceThrottleState, TokenPurpose, TokenState, VerificationToken,
)
from attendx.services.shared.settings import (
    STORAGE_MAX_RETRIES,
    STORAGE_RETRY_BACKOFF_SECONDS,
    STORAGE_TIMEOUT_SECONDS,
    TOKEN_ISSUE_CEILING,
    TOKEN_ISSUE_COOLDOWN_MINUTES,
    TOKEN_ISSUE_WINDOW_MINUTES,
    TOKEN_TTL_MINUTES,
    VERIFICATION_BASE_URL,
)

logger = structlog.get_logger()

TOKEN_BYTES = 32
_SECRET_RE = re.compile(r"^[0-9a-f]{%d}$" % (TOKEN_BYTES * 2))

VERIFICATION_ROUTES: dict[TokenPurpose, str] = {
    TokenPurpose.email_verify:   "/verify-email",
    TokenPurpose.password_reset: "/reset-password",
    TokenPurpose.invitation:     "/accept-invitation",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_secret(token_secret: str) -> str:
    return hashlib.sha256(token_secret.encode()).hexdigest()


def is_well_formed(token_secret) -> bool:
    return isinstance(token_secret, str) and bool(_SECRET_RE.match(token_secret))


def _coerce_purpose(purpose) -> Optional[TokenPurpose]:
    try:
        return TokenPurpose(purpose)
    except ValueError:
        return None


# ── Results ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class IssuedToken:
    token_secret: str
    token_id: str
    principal_id: str
    purpose: TokenPurpose
    issued_at: datetime
    expires_at: datetime
    # earlier unused tokens for the same (principal, purpose) consumed by this issuance
    superseded: int = 0


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    reason_code: ReasonCode
    principal_id: Optional[str] = None
    token_id: Optional[str] = None
    tenant_id: Optional[str] = None
    purpose: Optional[str] = None

    def raise_for_failure(self) -> "ValidationResult":
        if not self.ok:
            raise TokenValidationFailed(self.reason_code)
        return self


# ── Per-key lock ──────────────────────────────────────────────────────────────

class KeyedLock:
    """
    One lock per key, created on demand. Bounded wait: acquire() returns False on timeout.
    An entry lives only while some thread holds or waits on it, so the map stays
    as large as the set of keys in flight.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[tuple, list] = {}   # key → [lock, holders + waiters]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def acquire(self, key: tuple, timeout: float) -> bool:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        if entry[0].acquire(timeout=timeout):
            return True
        self._unref(key, entry)
        return False

    def release(self, key: tuple) -> None:
        with self._guard:
            entry = self._locks[key]
        entry[0].release()
        self._unref(key, entry)

    def _unref(self, key: tuple, entry: list) -> None:
        with self._guard:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]


# ── URL helpers ───────────────────────────────────────────────────────────────

def normalize_base_url(base_url: str) -> str:
    """'example.com' → 'https://example.com'; trailing slash removed; only http(s) accepted."""
    if not base_url or not base_url.strip():
        raise ValueError("Base URL is required")
    base_url = base_url.strip()
    if "://" not in base_url:
        base_url = f"https://{base_url}"
    parsed = urlparse(base_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Invalid base URL: {base_url}")
    return base_url.rstrip("/")


def build_verification_url(
    token_secret: str,
    purpose: TokenPurpose = TokenPurpose.email_verify,
    base_url: str = VERIFICATION_BASE_URL,
    route_path: Optional[str] = None,
) -> str:
    route = route_path or VERIFICATION_ROUTES[TokenPurpose(purpose)]
    if not route.startswith("/"):
        route = "/" + route
    return f"{normalize_base_url(base_url)}{route}?token={quote(token_secret, safe='')}"


# ── Service ───────────────────────────────────────────────────────────────────

class TokenService:

    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        recorder: Optional[AuditRecorder] = None,
        ttl_minutes: Optional[dict] = None,
        ceiling: int = TOKEN_ISSUE_CEILING,
        window: timedelta = timedelta(minutes=TOKEN_ISSUE_WINDOW_MINUTES),
        cooldown: timedelta = timedelta(minutes=TOKEN_ISSUE_COOLDOWN_MINUTES),
        clock: Callable[[], datetime] = _utcnow,
        lock_timeout_seconds: float = STORAGE_TIMEOUT_SECONDS,
        retry_attempts: int = STORAGE_MAX_RETRIES,
        retry_backoff_seconds: float = STORAGE_RETRY_BACKOFF_SECONDS,
    ):
        if ceiling < 1:
            raise ValueError("ceiling must be >= 1")
        if cooldown <= timedelta(0) or window <= timedelta(0):
            raise ValueError("window and cooldown must be positive")
        self._session_factory = session_factory
        self._recorder = recorder
        self._ttl = {TokenPurpose(k): timedelta(minutes=v) for k, v in (ttl_minutes or TOKEN_TTL_MINUTES).items()}
        self._ceiling = ceiling
        self._window = window
        self._cooldown = cooldown
        self._clock = clock
        self._locks = KeyedLock()
        self._lock_timeout = lock_timeout_seconds
        self._retry_attempts = retry_attempts
        self._retry_backoff = retry_backoff_seconds

    # ── issue ─────────────────────────────────────────────────────────────────

    def issue(self, principal_id: str, purpose, tenant_id: Optional[str] = None) -> IssuedToken:
        """
        Create a token for (principal_id, purpose).
        Raises RateLimitExceeded (carrying next_allowed_at) or StorageUnavailable.
        """
        purpose = TokenPurpose(purpose)
        if purpose not in self._ttl:
            raise ValueError(f"no TTL configured for purpose '{purpose.value}'")
        key = (principal_id, purpose.value)

        if not self._locks.acquire(key, self._lock_timeout):
            logger.error("token_issue_lock_timeout", principal_id=principal_id, purpose=purpose.value)
            raise StorageUnavailable()
        try:
            issued = with_storage_retry(
                lambda: self._issue_once(principal_id, purpose, tenant_id),
                "token_issue",
                attempts=self._retry_attempts,
                backoff_seconds=self._retry_backoff,
            )
        except RateLimitExceeded as exc:
            logger.warning(
                "token_issue_rate_limited",
                principal_id=principal_id,
                purpose=purpose.value,
                next_allowed_at=exc.next_allowed_at.isoformat(),
            )
            self._audit(
                tenant_id, principal_id, "token_issue", False, ReasonCode.RATE_LIMIT_EXCEEDED,
                {"purpose": purpose.value, "next_allowed_at": exc.next_allowed_at.isoformat()},
            )
            raise
        except (SQLAlchemyError, TimeoutError) as exc:
            logger.error("token_issue_storage_failed", principal_id=principal_id, purpose=purpose.value, error=str(exc))
            raise StorageUnavailable() from exc
        finally:
            self._locks.release(key)

        logger.info(
            "token_issued",
            principal_id=principal_id,
            purpose=purpose.value,
            token_id=issued.token_id,
            expires_at=issued.expires_at.isoformat(),
            superseded=issued.superseded,
        )
        self._audit(
            tenant_id, principal_id, "token_issue", True, ReasonCode.TOKEN_ISSUED,
            {
                "purpose":    purpose.value,
                "token_id":   issued.token_id,
                "expires_at": issued.expires_at.isoformat(),
                "superseded": issued.superseded,
            },
        )
        return issued

    def _issue_once(self, principal_id: str, purpose: TokenPurpose, tenant_id: Optional[str]) -> IssuedToken:
        db = self._session_factory()
        try:
            now = self._clock()
            state = self._locked_throttle_state(db, principal_id, purpose, now)

            next_allowed_at = utc(state.next_allowed_at)
            if next_allowed_at is not None and now < next_allowed_at:
                db.rollback()
                raise RateLimitExceeded(next_allowed_at)

            window_end = utc(state.window_start) + self._window
            if now >= window_end:
                state.window_start = now
                state.count_in_window = 0
                window_end = now + self._window

            if state.count_in_window >= self._ceiling:
                next_allowed_at = max(now + self._cooldown, window_end)
                state.next_allowed_at = next_allowed_at
                db.commit()
                raise RateLimitExceeded(next_allowed_at)

            state.count_in_window += 1
            state.next_allowed_at = None

            superseded = db.execute(
                update(VerificationToken)
                .where(
                    VerificationToken.principal_id == principal_id,
                    VerificationToken.purpose == purpose,
                    VerificationToken.state == TokenState.issued,
                )
                .values(state=TokenState.used, used_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount

            token_secret = secrets.token_hex(TOKEN_BYTES)
            token_id = hash_secret(token_secret)
            expires_at = now + self._ttl[purpose]
            token = VerificationToken(
                token_id=token_id,
                principal_id=principal_id,
                tenant_id=tenant_id,
                purpose=purpose,
                issued_at=now,
                expires_at=expires_at,
                state=TokenState.issued,
                single_use=True,
            )
            db.add(token)
            db.commit()
            return IssuedToken(
                token_secret=token_secret,
                token_id=token_id,
                principal_id=principal_id,
                purpose=purpose,
                issued_at=now,
                expires_at=expires_at,
                superseded=superseded,
            )
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _locked_throttle_state(self, db, principal_id: str, purpose: TokenPurpose, now: datetime) -> IssuanceThrottleState:
        """Fetch the throttle row under a row lock, creating it on first issuance."""
        def _select():
            return (
                db.query(IssuanceThrottleState)
                .filter_by(principal_id=principal_id, purpose=purpose)
                .with_for_update()
                .first()
            )

        state = _select()
        if state is not None:
            return state
        state = IssuanceThrottleState(
            principal_id=principal_id,
            purpose=purpose,
            window_start=now,
            count_in_window=0,
        )
        db.add(state)
        try:
            db.flush()
        except IntegrityError:
            # another process created the row first
            db.rollback()
            state = _select()
        return state

    # ── validate ──────────────────────────────────────────────────────────────

    def validate(self, token_secret: str, purpose) -> ValidationResult:
        """
        Check a presented secret. Failure reasons in priority order:
        TOKEN_NOT_FOUND, TOKEN_ALREADY_USED, TOKEN_EXPIRED, PURPOSE_MISMATCH.
        On success the token is atomically consumed.
        """
        try:
            result = with_storage_retry(
                lambda: self._validate_once(token_secret, purpose),
                "token_validate",
                attempts=self._retry_attempts,
                backoff_seconds=self._retry_backoff,
            )
        except (SQLAlchemyError, TimeoutError) as exc:
            logger.error("token_validate_failed_closed", error=str(exc))
            token_id = hash_secret(token_secret) if is_well_formed(token_secret) else None
            result = ValidationResult(ok=False, reason_code=ReasonCode.TOKEN_NOT_FOUND, token_id=token_id)

        log = logger.info if result.ok else logger.warning
        log(
            "token_validated" if result.ok else "token_validation_failed",
            reason_code=result.reason_code.value,
            principal_id=result.principal_id,
            token_id=result.token_id,
        )
        self._audit(
            result.tenant_id, result.principal_id, "token_validate", result.ok, result.reason_code,
            {"token_id": result.token_id, "purpose": result.purpose, "requested_purpose": str(getattr(purpose, "value", purpose))},
        )
        return result

    def _validate_once(self, token_secret: str, purpose) -> ValidationResult:
        if not is_well_formed(token_secret):
            return ValidationResult(ok=False, reason_code=ReasonCode.TOKEN_NOT_FOUND)
        token_id = hash_secret(token_secret)

        db = self._session_factory()
        try:
            token = db.get(VerificationToken, token_id)
            if token is None:
                return ValidationResult(ok=False, reason_code=ReasonCode.TOKEN_NOT_FOUND, token_id=token_id)

            bound = {
                "principal_id": token.principal_id,
                "token_id":     token_id,
                "tenant_id":    token.tenant_id,
                "purpose":      token.purpose.value,
            }

            def _failure(code: ReasonCode) -> ValidationResult:
                return ValidationResult(ok=False, reason_code=code, **bound)

            now = self._clock()
            state = token.effective_state(now)
            if state == TokenState.used:
                return _failure(ReasonCode.TOKEN_ALREADY_USED)
            if state == TokenState.expired:
                return _failure(ReasonCode.TOKEN_EXPIRED)
            if token.purpose != _coerce_purpose(purpose):
                return _failure(ReasonCode.PURPOSE_MISMATCH)

            # compare-and-set: only one concurrent validation can move issued → used
            res = db.execute(
                update(VerificationToken)
                .where(
                    VerificationToken.token_id == token_id,
                    VerificationToken.state == TokenState.issued,
                )
                .values(state=TokenState.used, used_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if res.rowcount != 1:
                return _failure(ReasonCode.TOKEN_ALREADY_USED)

            return ValidationResult(ok=True, reason_code=ReasonCode.TOKEN_VALID, **bound)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ── status ────────────────────────────────────────────────────────────────

    def token_status(self, token_secret: str) -> Optional[TokenState]:
        """Computed state of a token, or None if unknown. Does not consume it."""
        if not is_well_formed(token_secret):
            return None
        db = self._session_factory()
        try:
            token = db.get(VerificationToken, hash_secret(token_secret))
            return token.effective_state(self._clock()) if token else None
        finally:
            db.close()

    # ── audit ─────────────────────────────────────────────────────────────────

    def _audit(self, tenant_id, principal_id, action, success, reason_code, detail) -> None:
        if self._recorder is None:
            return
        self._recorder.record(AuditEvent(
            tenant_id=tenant_id or SYSTEM_TENANT,
            principal_id=principal_id,
            resource_type="verification_token",
            action=action,
            success=success,
            reason_code=reason_code,
            detail=detail,
            timestamp=self._clock(),
        ))
