"""
Audit Recorder
--------------
The only writer of AuditRecord rows.

record(event) is fire-and-forget: it computes the suspicious flag, enqueues the
event on a bounded in-process queue and returns. A single background writer
thread drains the queue, chains each record to the previous record of the same
tenant (sha256) and inserts it. A failed write is retried with backoff, then
logged as audit_write_failed. It never propagates to the primary operation.

Suspicious flag:
  - the principal accrued >= AUDIT_DENY_THRESHOLD denials (decision outcome
    "deny" or a denial reason code) within AUDIT_DENY_WINDOW_SECONDS, or
  - a token validation failed with TOKEN_ALREADY_USED (possible replay).

Chain integrity across writers (any number of processes):
  audit_records has UNIQUE (tenant_id, previous_hash). Two writers that read the
  same chain head collide on insert; the loser re-reads the head and retries, so
  every tenant chain stays linear. The first record of a chain links to GENESIS_HASH.

Write order across threads is not causal; readers order by timestamp.
"""

import hashlib
import json
import queue
import threading
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from attendx.services.shared.database import SessionLocal, utc, with_storage_retry
from attendx.services.shared.errors import ReasonCode
from attendx.services.shared.models import AuditRecord
from attendx.services.shared.settings import (
    AUDIT_CHAIN_MAX_RETRIES,
    AUDIT_DENY_THRESHOLD,
    AUDIT_DENY_TRACKED_MAX,
    AUDIT_DENY_WINDOW_SECONDS,
    AUDIT_MAX_RETRIES,
    AUDIT_QUEUE_SIZE,
    STORAGE_RETRY_BACKOFF_SECONDS,
)

logger = structlog.get_logger()

# Tenant recorded for events that are not scoped to a tenant (e.g. pre-signup tokens)
SYSTEM_TENANT = "_system"

# previous_hash of the first record in a tenant chain
GENESIS_HASH = ""

DENIAL_CODES = frozenset({
    ReasonCode.TENANT_MISMATCH.value,
    ReasonCode.INSUFFICIENT_ROLE.value,
    ReasonCode.POLICY_NOT_DEFINED.value,
    ReasonCode.IMMUTABLE_FIELD_VIOLATION.value,
    ReasonCode.FIELD_NOT_ALLOWED.value,
    ReasonCode.RATE_LIMIT_EXCEEDED.value,
})

_STOP = object()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _json_safe(detail: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(detail or {}, default=str))


@dataclass(frozen=True)
class AuditEvent:
    tenant_id: str
    principal_id: Optional[str]
    resource_type: str
    action: str
    success: bool
    reason_code: Optional[str] = None
    detail: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        if isinstance(self.reason_code, ReasonCode):
            object.__setattr__(self, "reason_code", self.reason_code.value)
        object.__setattr__(self, "detail", _json_safe(self.detail))


def is_denial(event: AuditEvent) -> bool:
    """A refused request. Failed primary operations after an ALLOW are not denials."""
    if event.success:
        return False
    return event.detail.get("outcome") == "deny" or event.reason_code in DENIAL_CODES


# ── Hash chain ────────────────────────────────────────────────────────────────

def _canonical_timestamp(ts: datetime) -> str:
    return utc(ts).astimezone(timezone.utc).isoformat()


def compute_record_hash(
    previous_hash: Optional[str],
    tenant_id: str,
    principal_id: Optional[str],
    resource_type: str,
    action: str,
    success: bool,
    reason_code: Optional[str],
    suspicious_flag: bool,
    detail: dict[str, Any],
    timestamp: datetime,
) -> str:
    body = json.dumps(
        {
            "tenant_id":       tenant_id,
            "principal_id":    principal_id,
            "resource_type":   resource_type,
            "action":          action,
            "success":         bool(success),
            "reason_code":     reason_code,
            "suspicious_flag": bool(suspicious_flag),
            "detail":          detail or {},
            "timestamp":       _canonical_timestamp(timestamp),
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(((previous_hash or "") + body).encode()).hexdigest()


def _hash_of(record: AuditRecord, previous_hash: Optional[str]) -> str:
    return compute_record_hash(
        previous_hash,
        record.tenant_id,
        record.principal_id,
        record.resource_type,
        record.action,
        record.success,
        record.reason_code,
        record.suspicious_flag,
        record.detail,
        record.timestamp,
    )


@dataclass(frozen=True)
class ChainVerification:
    ok: bool
    checked: int
    broken_at: Optional[int] = None


def verify_chain(db, tenant_id: str) -> ChainVerification:
    """Recompute the tenant's hash chain in write order; report the first broken record id."""
    rows = (
        db.query(AuditRecord)
        .filter(AuditRecord.tenant_id == tenant_id)
        .order_by(AuditRecord.id.asc())
        .all()
    )
    previous_hash = GENESIS_HASH
    for checked, row in enumerate(rows, start=1):
        if row.previous_hash != previous_hash or row.record_hash != _hash_of(row, previous_hash):
            return ChainVerification(ok=False, checked=checked, broken_at=row.id)
        previous_hash = row.record_hash
    return ChainVerification(ok=True, checked=len(rows))


# ── Queries ───────────────────────────────────────────────────────────────────

def list_records(
    db,
    tenant_id: str,
    principal_id: Optional[str] = None,
    action: Optional[str] = None,
    success: Optional[bool] = None,
    suspicious: Optional[bool] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = 100,
    offset: int = 0,
) -> list[AuditRecord]:
    """Read-only view of one tenant's audit trail, newest first."""
    q = db.query(AuditRecord).filter(AuditRecord.tenant_id == tenant_id)
    if principal_id:
        q = q.filter(AuditRecord.principal_id == principal_id)
    if action:
        q = q.filter(AuditRecord.action == action)
    if success is not None:
        q = q.filter(AuditRecord.success == success)
    if suspicious is not None:
        q = q.filter(AuditRecord.suspicious_flag == suspicious)
    if since:
        q = q.filter(AuditRecord.timestamp >= since)
    if until:
        q = q.filter(AuditRecord.timestamp < until)
    return q.order_by(AuditRecord.timestamp.desc()).offset(offset).limit(limit).all()


# ── Recorder ──────────────────────────────────────────────────────────────────

class AuditRecorder:

    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        deny_threshold: int = AUDIT_DENY_THRESHOLD,
        deny_window_seconds: int = AUDIT_DENY_WINDOW_SECONDS,
        queue_size: int = AUDIT_QUEUE_SIZE,
        max_retries: int = AUDIT_MAX_RETRIES,
        retry_backoff_seconds: float = STORAGE_RETRY_BACKOFF_SECONDS,
        chain_max_retries: int = AUDIT_CHAIN_MAX_RETRIES,
        deny_tracked_max: int = AUDIT_DENY_TRACKED_MAX,
    ):
        if deny_tracked_max < 1:
            raise ValueError("deny_tracked_max must be >= 1")
        self._session_factory = session_factory
        self._deny_threshold = deny_threshold
        self._deny_window = timedelta(seconds=deny_window_seconds)
        self._deny_tracked_max = deny_tracked_max
        self._max_retries = max_retries
        self._retry_backoff = retry_backoff_seconds
        self._chain_max_retries = chain_max_retries
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        # principal_id → denial timestamps in the window; least recently denied first
        self._denials: OrderedDict[str, deque] = OrderedDict()
        self._denials_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._worker: Optional[threading.Thread] = None

    # ── public API ────────────────────────────────────────────────────────────

    def record(self, event: AuditEvent) -> None:
        """Enqueue one event. Never raises; failures go to the operational log."""
        try:
            suspicious = self._is_suspicious(event)
            self._queue.put_nowait((event, suspicious))
        except queue.Full:
            logger.error(
                "audit_write_failed",
                reason="queue_full",
                action=event.action,
                tenant_id=event.tenant_id,
                principal_id=event.principal_id,
            )
        except Exception as exc:
            logger.error("audit_write_failed", reason="enqueue_error", action=event.action, error=str(exc))

    def start(self) -> None:
        if self._worker and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._run, name="audit-recorder", daemon=True)
        self._worker.start()
        logger.info("audit_recorder_started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the writer thread, then write whatever is still queued."""
        if self._worker and self._worker.is_alive():
            self._queue.put(_STOP)
            self._worker.join(timeout)
        self._worker = None
        self.drain()
        logger.info("audit_recorder_stopped")

    def drain(self) -> int:
        """Write every queued event in the calling thread. Returns the number written."""
        written = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return written
            try:
                if item is not _STOP:
                    self._write(*item)
                    written += 1
            finally:
                self._queue.task_done()

    def flush(self, timeout: float = 5.0) -> bool:
        """Block until the queue is empty (or timeout). True if everything was written."""
        if not (self._worker and self._worker.is_alive()):
            self.drain()
            return True
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # ── internals ─────────────────────────────────────────────────────────────

    def _is_suspicious(self, event: AuditEvent) -> bool:
        if event.reason_code == ReasonCode.TOKEN_ALREADY_USED.value:
            return True
        if not event.principal_id or not is_denial(event):
            return False
        ts = utc(event.timestamp)
        cutoff = ts - self._deny_window
        with self._denials_lock:
            window = self._denials.setdefault(event.principal_id, deque())
            self._denials.move_to_end(event.principal_id)
            window.append(ts)
            while window and window[0] < cutoff:
                window.popleft()
            self._forget_denials(cutoff)
            return len(window) >= self._deny_threshold

    def _forget_denials(self, cutoff: datetime) -> None:
        """Drop principals whose latest denial left the window, then cap the map size."""
        while self._denials:
            oldest = next(iter(self._denials.values()))
            if len(self._denials) <= self._deny_tracked_max and oldest[-1] >= cutoff:
                return
            self._denials.popitem(last=False)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._write(*item)
            finally:
                self._queue.task_done()

    def _write(self, event: AuditEvent, suspicious: bool) -> None:
        try:
            with self._write_lock:
                self._append(event, suspicious)
        except (SQLAlchemyError, TimeoutError) as exc:
            logger.error(
                "audit_write_failed",
                reason="storage_error",
                code=ReasonCode.AUDIT_WRITE_FAILED.value,
                action=event.action,
                tenant_id=event.tenant_id,
                principal_id=event.principal_id,
                error=str(exc),
            )
        except Exception as exc:
            logger.error("audit_write_failed", reason="unexpected_error", action=event.action, error=str(exc))

    def _append(self, event: AuditEvent, suspicious: bool) -> None:
        """Insert at the tenant's chain head; another writer taking the head first means re-read and retry."""
        attempt = 0
        while True:
            try:
                with_storage_retry(
                    lambda: self._insert(event, suspicious),
                    "audit_append",
                    attempts=self._max_retries,
                    backoff_seconds=self._retry_backoff,
                )
                return
            except IntegrityError:
                attempt += 1
                if attempt > self._chain_max_retries:
                    raise
                logger.info("audit_chain_head_moved", tenant_id=event.tenant_id, attempt=attempt)

    def _insert(self, event: AuditEvent, suspicious: bool) -> None:
        db = self._session_factory()
        try:
            last = (
                db.query(AuditRecord.record_hash)
                .filter(AuditRecord.tenant_id == event.tenant_id)
                .order_by(AuditRecord.id.desc())
                .first()
            )
            previous_hash = last[0] if last else GENESIS_HASH
            # SQLite drops the offset, so only UTC wall-clock times read back unchanged
            timestamp = utc(event.timestamp).astimezone(timezone.utc)
            record = AuditRecord(
                tenant_id=event.tenant_id,
                principal_id=event.principal_id,
                resource_type=event.resource_type,
                action=event.action,
                success=event.success,
                reason_code=event.reason_code,
                suspicious_flag=suspicious,
                detail=event.detail,
                timestamp=timestamp,
                previous_hash=previous_hash,
            )
            record.record_hash = _hash_of(record, previous_hash)
            db.add(record)
            db.commit()
            if suspicious:
                logger.warning(
                    "audit_suspicious_activity",
                    tenant_id=event.tenant_id,
                    principal_id=event.principal_id,
                    action=event.action,
                    reason_code=event.reason_code,
                )
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
