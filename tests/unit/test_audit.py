"""
Unit tests for the audit recorder: append-only storage, hash chaining,
the suspicious flag and failure isolation from the primary operation.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError
from structlog.testing import capture_logs

from attendx.services.access.audit import (
    GENESIS_HASH, AuditEvent, AuditRecorder, compute_record_hash, is_denial, list_records, verify_chain,
)
from attendx.services.shared.errors import ReasonCode
from attendx.services.shared.models import AuditImmutableError, AuditRecord


# ── Helpers ────────────────────────────────────────────────────────────────────

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def make_event(**kwargs) -> AuditEvent:
    defaults = {
        "tenant_id":     "t1",
        "principal_id":  "u1",
        "resource_type": "leave_request",
        "action":        "update",
        "success":       True,
        "reason_code":   ReasonCode.ALLOWED_AS_OWNER,
        "detail":        {"resource_id": "lr-1"},
        "timestamp":     T0,
    }
    defaults.update(kwargs)
    return AuditEvent(**defaults)


def failing_session_factory():
    raise OperationalError("INSERT", {}, Exception("disk I/O error"))


# ── AuditEvent ─────────────────────────────────────────────────────────────────

class TestAuditEvent:

    def test_reason_code_stored_as_string(self):
        assert make_event().reason_code == "ALLOWED_AS_OWNER"

    def test_detail_made_json_safe(self):
        event = make_event(detail={"at": T0, "fields": ("a", "b")})
        assert event.detail == {"at": str(T0), "fields": ["a", "b"]}


# ── Recording ──────────────────────────────────────────────────────────────────

class TestRecord:

    def test_drain_writes_queued_events(self, recorder, db):
        recorder.record(make_event())
        recorder.record(make_event(success=False, reason_code=ReasonCode.INSUFFICIENT_ROLE))
        assert recorder.pending == 2
        assert recorder.drain() == 2
        assert recorder.pending == 0

        rows = db.query(AuditRecord).order_by(AuditRecord.id).all()
        assert [r.success for r in rows] == [True, False]
        assert rows[1].reason_code == "INSUFFICIENT_ROLE"
        assert rows[0].detail == {"resource_id": "lr-1"}

    def test_background_writer(self, recorder, db):
        recorder.start()
        try:
            recorder.record(make_event())
            assert recorder.flush(timeout=5)
        finally:
            recorder.stop()
        assert db.query(AuditRecord).count() == 1

    def test_stop_writes_remaining_events(self, recorder, db):
        recorder.start()
        for i in range(20):
            recorder.record(make_event(detail={"n": i}))
        recorder.stop()
        assert db.query(AuditRecord).count() == 20

    def test_queue_full_is_logged_not_raised(self, session_factory):
        recorder = AuditRecorder(session_factory=session_factory, queue_size=1)
        recorder.record(make_event())
        with capture_logs() as logs:
            recorder.record(make_event(action="delete"))
        assert recorder.pending == 1
        assert logs[0]["event"] == "audit_write_failed"
        assert logs[0]["reason"] == "queue_full"
        assert logs[0]["action"] == "delete"

    def test_storage_failure_is_logged_not_raised(self):
        recorder = AuditRecorder(session_factory=failing_session_factory, max_retries=1, retry_backoff_seconds=0)
        recorder.record(make_event())
        with capture_logs() as logs:
            recorder.drain()
        failed = [e for e in logs if e["event"] == "audit_write_failed"]
        assert len(failed) == 1
        assert failed[0]["code"] == "AUDIT_WRITE_FAILED"
        assert failed[0]["tenant_id"] == "t1"


# ── Immutability ───────────────────────────────────────────────────────────────

class TestImmutability:

    def test_update_rejected(self, recorder, db):
        recorder.record(make_event())
        recorder.drain()
        row = db.query(AuditRecord).one()
        row.success = False
        with pytest.raises(AuditImmutableError):
            db.commit()
        db.rollback()

    def test_delete_rejected(self, recorder, db):
        recorder.record(make_event())
        recorder.drain()
        db.delete(db.query(AuditRecord).one())
        with pytest.raises(AuditImmutableError):
            db.commit()
        db.rollback()
        assert db.query(AuditRecord).count() == 1


# ── Hash chain ─────────────────────────────────────────────────────────────────

class TestHashChain:

    def test_records_chain_per_tenant(self, recorder, db):
        recorder.record(make_event(tenant_id="t1"))
        recorder.record(make_event(tenant_id="t2"))
        recorder.record(make_event(tenant_id="t1", action="read"))
        recorder.drain()

        t1 = db.query(AuditRecord).filter_by(tenant_id="t1").order_by(AuditRecord.id).all()
        t2 = db.query(AuditRecord).filter_by(tenant_id="t2").one()
        assert t1[0].previous_hash == GENESIS_HASH
        assert t1[1].previous_hash == t1[0].record_hash
        assert t2.previous_hash == GENESIS_HASH

    def test_verify_intact_chain(self, recorder, db):
        for i in range(4):
            recorder.record(make_event(detail={"n": i}, timestamp=T0 + timedelta(seconds=i)))
        recorder.drain()
        result = verify_chain(db, "t1")
        assert result.ok
        assert result.checked == 4
        assert result.broken_at is None

    def test_verify_detects_tampering(self, recorder, db):
        for i in range(3):
            recorder.record(make_event(detail={"n": i}))
        recorder.drain()
        ids = [r.id for r in db.query(AuditRecord).order_by(AuditRecord.id).all()]

        # raw SQL bypasses the ORM listeners, as a direct database edit would
        db.execute(text("UPDATE audit_records SET success = 0 WHERE id = :id"), {"id": ids[1]})
        db.commit()
        db.expire_all()

        result = verify_chain(db, "t1")
        assert not result.ok
        assert result.broken_at == ids[1]
        assert result.checked == 2

    def test_hash_depends_on_previous(self):
        args = ("t1", "u1", "leave_request", "update", True, None, False, {}, T0)
        assert compute_record_hash(None, *args) != compute_record_hash("ab" * 32, *args)
        assert compute_record_hash(None, *args) == compute_record_hash(None, *args)

    def test_hash_ignores_timestamp_representation(self):
        naive = T0.replace(tzinfo=None)
        args = ("t1", "u1", "leave_request", "update", True, None, False, {"k": 1})
        assert compute_record_hash(None, *args, T0) == compute_record_hash(None, *args, naive)

    def test_non_utc_timestamp_stored_as_utc(self, recorder, db):
        paris = timezone(timedelta(hours=2))
        recorder.record(make_event(timestamp=T0.astimezone(paris)))
        recorder.drain()
        row = db.query(AuditRecord).one()
        assert row.timestamp.replace(tzinfo=timezone.utc) == T0
        assert verify_chain(db, "t1").ok

    def test_second_successor_rejected(self, recorder, db):
        recorder.record(make_event())
        recorder.drain()
        head = db.query(AuditRecord).one()
        db.add(AuditRecord(
            tenant_id="t1",
            resource_type="leave_request",
            action="update",
            success=True,
            detail={},
            timestamp=T0,
            previous_hash=GENESIS_HASH,
            record_hash="ab" * 32,
        ))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()
        assert db.query(AuditRecord).one().id == head.id

    def test_concurrent_recorders_keep_one_chain(self, session_factory, db):
        recorders = [
            AuditRecorder(session_factory=session_factory, max_retries=20, retry_backoff_seconds=0)
            for _ in range(2)
        ]
        for writer, recorder in enumerate(recorders):
            for i in range(30):
                recorder.record(make_event(detail={"writer": writer, "n": i}))

        barrier = threading.Barrier(len(recorders))

        def drain(recorder):
            barrier.wait()
            recorder.drain()

        threads = [threading.Thread(target=drain, args=(r,)) for r in recorders]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert db.query(AuditRecord).count() == 60
        result = verify_chain(db, "t1")
        assert result.ok
        assert result.checked == 60


# ── Suspicious flag ────────────────────────────────────────────────────────────

class TestSuspicious:

    def test_repeated_denials_flagged(self, session_factory, db):
        recorder = AuditRecorder(session_factory=session_factory, deny_threshold=3, deny_window_seconds=60)
        for i in range(4):
            recorder.record(make_event(success=False, reason_code="INSUFFICIENT_ROLE", timestamp=T0 + timedelta(seconds=i)))
        with capture_logs() as logs:
            recorder.drain()
        flags = [r.suspicious_flag for r in db.query(AuditRecord).order_by(AuditRecord.id).all()]
        assert flags == [False, False, True, True]
        assert sum(1 for e in logs if e["event"] == "audit_suspicious_activity") == 2

    def test_denials_outside_window_forgotten(self, session_factory, db):
        recorder = AuditRecorder(session_factory=session_factory, deny_threshold=3, deny_window_seconds=60)
        for minutes in (0, 2, 4, 6):
            recorder.record(make_event(success=False, reason_code="INSUFFICIENT_ROLE", timestamp=T0 + timedelta(minutes=minutes)))
        recorder.drain()
        assert not any(r.suspicious_flag for r in db.query(AuditRecord).all())

    def test_denials_counted_per_principal(self, session_factory, db):
        recorder = AuditRecorder(session_factory=session_factory, deny_threshold=2)
        recorder.record(make_event(principal_id="u1", success=False, reason_code="INSUFFICIENT_ROLE"))
        recorder.record(make_event(principal_id="u2", success=False, reason_code="INSUFFICIENT_ROLE"))
        recorder.record(make_event(principal_id="u1", success=True))
        recorder.drain()
        assert not any(r.suspicious_flag for r in db.query(AuditRecord).all())

    def test_token_replay_flagged(self, recorder, db):
        recorder.record(make_event(
            resource_type="verification_token",
            action="token_validate",
            success=False,
            reason_code=ReasonCode.TOKEN_ALREADY_USED,
        ))
        recorder.drain()
        assert db.query(AuditRecord).one().suspicious_flag is True

    def test_failed_operations_not_counted(self, session_factory, db):
        recorder = AuditRecorder(session_factory=session_factory, deny_threshold=2)
        for i in range(3):
            recorder.record(make_event(
                success=False,
                reason_code=ReasonCode.ALLOWED_AS_OWNER,
                detail={"outcome": "allow", "error": "OperationalError"},
                timestamp=T0 + timedelta(seconds=i),
            ))
        recorder.drain()
        assert not any(r.suspicious_flag for r in db.query(AuditRecord).all())

    @pytest.mark.parametrize("kwargs,expected", [
        ({"success": False, "reason_code": ReasonCode.INSUFFICIENT_ROLE}, True),
        ({"success": False, "reason_code": ReasonCode.RATE_LIMIT_EXCEEDED}, True),
        ({"success": False, "reason_code": None, "detail": {"outcome": "deny"}}, True),
        ({"success": False, "reason_code": ReasonCode.ALLOWED_BY_ROLE, "detail": {"outcome": "allow"}}, False),
        ({"success": False, "reason_code": ReasonCode.TOKEN_EXPIRED}, False),
        ({"success": True, "reason_code": ReasonCode.ALLOWED_AS_OWNER}, False),
    ])
    def test_is_denial(self, kwargs, expected):
        assert is_denial(make_event(**kwargs)) is expected

    def test_tracking_forgets_principals_outside_window(self, session_factory):
        recorder = AuditRecorder(session_factory=session_factory, deny_threshold=3, deny_window_seconds=60)
        for i in range(100):
            recorder.record(make_event(principal_id=f"p{i}", success=False, reason_code="INSUFFICIENT_ROLE"))
        assert len(recorder._denials) == 100

        recorder.record(make_event(
            principal_id="late", success=False, reason_code="INSUFFICIENT_ROLE", timestamp=T0 + timedelta(minutes=2),
        ))
        assert list(recorder._denials) == ["late"]

    def test_tracking_is_capped(self, session_factory, db):
        recorder = AuditRecorder(session_factory=session_factory, deny_threshold=2, deny_tracked_max=10)
        for i in range(50):
            recorder.record(make_event(principal_id=f"p{i}", success=False, reason_code="INSUFFICIENT_ROLE"))
        assert len(recorder._denials) == 10
        assert "p49" in recorder._denials

        # the most recent offender is still counted
        recorder.record(make_event(principal_id="p49", success=False, reason_code="INSUFFICIENT_ROLE"))
        recorder.drain()
        last = db.query(AuditRecord).order_by(AuditRecord.id.desc()).first()
        assert last.suspicious_flag is True


# ── Queries ────────────────────────────────────────────────────────────────────

class TestListRecords:

    @pytest.fixture
    def populated(self, recorder):
        recorder.record(make_event(timestamp=T0))
        recorder.record(make_event(principal_id="u2", success=False, timestamp=T0 + timedelta(minutes=1)))
        recorder.record(make_event(action="token_validate", timestamp=T0 + timedelta(minutes=2)))
        recorder.record(make_event(tenant_id="t2", timestamp=T0 + timedelta(minutes=3)))
        recorder.drain()

    def test_newest_first_and_tenant_scoped(self, populated, db):
        rows = list_records(db, "t1")
        assert [r.action for r in rows] == ["token_validate", "update", "update"]
        assert all(r.tenant_id == "t1" for r in rows)

    def test_filters(self, populated, db):
        assert len(list_records(db, "t1", principal_id="u2")) == 1
        assert len(list_records(db, "t1", success=False)) == 1
        assert len(list_records(db, "t1", action="token_validate")) == 1
        assert len(list_records(db, "t1", since=T0 + timedelta(minutes=1))) == 2
        assert len(list_records(db, "t1", limit=1, offset=2)) == 1
