"""In-process audit log for biometric data access and security events."""
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from pydantic import BaseModel, Field

from facesearch.core.config import settings
from facesearch.core.logging import get_logger

logger = get_logger(__name__)


class AccessOperation(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    ENCRYPT = "encrypt"
    DECRYPT = "decrypt"


class DataType(str, Enum):
    FACE_EMBEDDING = "face_embedding"
    IMAGE_DATA = "image_data"
    SEARCH_RESULTS = "search_results"


class SecurityEventType(str, Enum):
    RATE_LIMIT_EXCEEDED = "rate-limit-exceeded"
    INVALID_INPUT = "invalid-input"
    MALICIOUS_FILE = "malicious-file"
    SSRF_BLOCKED = "ssrf-blocked"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AccessEntry(BaseModel):
    """One operation on biometric data."""
    timestamp: datetime
    operation: AccessOperation
    session_id: Optional[str] = None
    data_type: DataType
    success: bool
    error_code: Optional[str] = None
    principal: Optional[str] = None
    user_agent: Optional[str] = None


class SecurityEvent(BaseModel):
    """A security relevant event with a severity."""
    timestamp: datetime
    event_type: SecurityEventType
    severity: Severity
    session_id: Optional[str] = None
    principal: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditLog:
    """Append-only audit log with a retention bound.

    Entries are kept in bounded deques so the oldest ones drop off once
    ``retention`` is exceeded. Every entry is also emitted as a structured
    log event. Entries tied to a session are purged when the session goes
    away.

    Example:
        ```python
        audit = AuditLog(retention=1000)
        audit.record_access(AccessOperation.CREATE, session_id, DataType.FACE_EMBEDDING)
        audit.record_security_event(SecurityEventType.SSRF_BLOCKED, Severity.HIGH)
        ```
    """

    def __init__(self, retention: Optional[int] = None, clock: Callable[[], datetime] = _utcnow) -> None:
        self.retention = retention or settings.AUDIT_RETENTION
        self._clock = clock
        self._access: Deque[AccessEntry] = deque(maxlen=self.retention)
        self._security: Deque[SecurityEvent] = deque(maxlen=self.retention)

    def record_access(
        self,
        operation: AccessOperation,
        session_id: Optional[str],
        data_type: DataType,
        success: bool = True,
        error_code: Optional[str] = None,
        principal: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AccessEntry:
        entry = AccessEntry(
            timestamp=self._clock(),
            operation=operation,
            session_id=session_id,
            data_type=data_type,
            success=success,
            error_code=error_code,
            principal=principal,
            user_agent=user_agent,
        )
        self._access.append(entry)

        log = logger.info if success else logger.warning
        log(
            "biometric_access",
            operation=entry.operation.value,
            session_id=session_id,
            data_type=entry.data_type.value,
            success=success,
            error_code=error_code,
            principal=principal,
        )
        return entry

    def record_security_event(
        self,
        event_type: SecurityEventType,
        severity: Severity,
        session_id: Optional[str] = None,
        principal: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> SecurityEvent:
        event = SecurityEvent(
            timestamp=self._clock(),
            event_type=event_type,
            severity=severity,
            session_id=session_id,
            principal=principal,
            details=details or {},
        )
        self._security.append(event)

        log = logger.error if severity in (Severity.HIGH, Severity.CRITICAL) else logger.warning
        log(
            "security_event",
            event_type=event.event_type.value,
            severity=event.severity.value,
            session_id=session_id,
            principal=principal,
            details=event.details,
        )
        return event

    def session_entries(self, session_id: str) -> List[AccessEntry]:
        return [entry for entry in self._access if entry.session_id == session_id]

    def security_events(self, since: Optional[datetime] = None) -> List[SecurityEvent]:
        if since is None:
            return list(self._security)
        return [event for event in self._security if event.timestamp >= since]

    def purge_session(self, session_id: str) -> int:
        """Drop every access entry and security event tied to a session.

        Returns:
            Number of entries removed
        """
        access = [e for e in self._access if e.session_id != session_id]
        security = [e for e in self._security if e.session_id != session_id]
        removed = (len(self._access) - len(access)) + (len(self._security) - len(security))

        self._access = deque(access, maxlen=self.retention)
        self._security = deque(security, maxlen=self.retention)
        if removed:
            logger.debug("Purged session audit entries", removed=removed)
        return removed
