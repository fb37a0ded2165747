"""Tests for the audit log."""
from datetime import datetime, timedelta, timezone

from facesearch.services.audit import (
    AccessOperation,
    AuditLog,
    DataType,
    SecurityEventType,
    Severity,
)


class TestAuditLog:
    """Access entries, security events and retention."""

    def test_record_access(self, audit_log):
        entry = audit_log.record_access(
            AccessOperation.CREATE, "session-1", DataType.FACE_EMBEDDING, principal="10.0.0.1"
        )

        assert entry.success
        assert audit_log.session_entries("session-1") == [entry]

    def test_failed_access_keeps_error_code(self, audit_log):
        entry = audit_log.record_access(
            AccessOperation.READ, "session-1", DataType.SEARCH_RESULTS,
            success=False, error_code="SESSION_EXPIRED",
        )
        assert not entry.success
        assert entry.error_code == "SESSION_EXPIRED"

    def test_retention_drops_oldest(self):
        audit = AuditLog(retention=3)
        for i in range(5):
            audit.record_access(AccessOperation.READ, f"s{i}", DataType.SEARCH_RESULTS)

        assert audit.session_entries("s0") == []
        assert audit.session_entries("s1") == []
        assert len(audit.session_entries("s4")) == 1

    def test_security_events_since(self):
        now = [datetime(2024, 1, 1, tzinfo=timezone.utc)]
        audit = AuditLog(retention=10, clock=lambda: now[0])
        audit.record_security_event(SecurityEventType.INVALID_INPUT, Severity.LOW)
        now[0] = now[0] + timedelta(minutes=5)
        later = audit.record_security_event(SecurityEventType.SSRF_BLOCKED, Severity.HIGH)

        assert len(audit.security_events()) == 2
        assert audit.security_events(since=now[0]) == [later]

    def test_purge_session(self, audit_log):
        audit_log.record_access(AccessOperation.CREATE, "gone", DataType.FACE_EMBEDDING)
        audit_log.record_access(AccessOperation.READ, "kept", DataType.SEARCH_RESULTS)
        audit_log.record_security_event(
            SecurityEventType.MALICIOUS_FILE, Severity.MEDIUM, session_id="gone"
        )

        assert audit_log.purge_session("gone") == 2
        assert audit_log.session_entries("gone") == []
        assert audit_log.security_events() == []
        assert len(audit_log.session_entries("kept")) == 1
