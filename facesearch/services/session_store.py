"""
In-memory store for search sessions.

The store is the only owner of session state. Callers get snapshots or
ids, never the live record. No method suspends, so each call runs as one
critical section on the event loop and appends, threshold changes, deletes
and sweeps never interleave.

The user embedding is held sealed with AES-GCM and decrypted only into
short-lived copies. On delete or expiry the sealed bytes and every match
embedding are overwritten in place before the record is dropped.
"""
import asyncio
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import numpy as np

from facesearch.core.config import settings
from facesearch.core.exceptions import (
    ErrorCode,
    SessionClosedError,
    SessionExpiredError,
    SessionNotFoundError,
)
from facesearch.core.logging import get_logger
from facesearch.core.utils.security import EmbeddingCipher, SealedEmbedding, generate_session_id, secure_erase
from facesearch.domain.entities.session import SearchError, SessionSnapshot, SessionStats, SessionStatus
from facesearch.domain.entities.video import VideoMatch
from facesearch.services.audit import AccessOperation, AuditLog, DataType
from facesearch.services.similarity import filter_matches, rank_matches

logger = get_logger(__name__)

# Progress stays below this until the session completes
MAX_RUNNING_PROGRESS = 99.0


def _now_ms() -> float:
    return time.time() * 1000.0


def _to_datetime(ms: float) -> datetime:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class _SessionRecord:
    """Live session state. Never leaves the store."""

    def __init__(self, session_id: str, sealed: SealedEmbedding, threshold: float,
                 created_at: float, expires_at: float) -> None:
        self.id = session_id
        self.sealed: Optional[SealedEmbedding] = sealed
        self.threshold = threshold
        self.created_at = created_at
        self.expires_at = expires_at
        self.status = SessionStatus.PROCESSING
        self.progress = 0.0
        self.matches: List[VideoMatch] = []
        self.match_keys = set()
        self.processed_sites: List[str] = []
        self.errors: List[SearchError] = []
        self.error: Optional[ErrorCode] = None
        self.worker: Optional[asyncio.Task] = None


class SessionStore:
    """
    Process-wide owner of search sessions.

    Example:
        ```python
        store = SessionStore(cipher, audit_log)
        session_id = store.create(embedding)
        store.append_matches(session_id, matches, delta_progress=10.0)
        store.complete(session_id)
        visible = store.set_threshold(session_id, 0.8)
        store.delete(session_id)
        ```
    """

    def __init__(
        self,
        cipher: Optional[EmbeddingCipher] = None,
        audit_log: Optional[AuditLog] = None,
        ttl_ms: Optional[int] = None,
        tombstone_ttl_ms: Optional[int] = None,
        clock: Callable[[], float] = _now_ms,
    ) -> None:
        self.cipher = cipher or EmbeddingCipher.from_key_material(settings.ENCRYPTION_KEY)
        self.audit_log = audit_log or AuditLog()
        self.ttl_ms = ttl_ms if ttl_ms is not None else settings.TTL_MS
        self.tombstone_ttl_ms = tombstone_ttl_ms if tombstone_ttl_ms is not None else settings.TOMBSTONE_TTL_MS
        self._clock = clock
        self._sessions: Dict[str, _SessionRecord] = {}
        self._tombstones: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def create(
        self,
        user_embedding: np.ndarray,
        threshold: Optional[float] = None,
        principal: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """
        Create a processing session holding a sealed copy of ``user_embedding``.

        Returns:
            The new session id

        Raises:
            ValueError: If the embedding is empty or not finite
        """
        embedding = np.asarray(user_embedding, dtype=np.float64).reshape(-1)
        if embedding.size == 0 or not np.all(np.isfinite(embedding)):
            raise ValueError("User embedding must be a non-empty finite vector")

        session_id = generate_session_id()
        while session_id in self._sessions or session_id in self._tombstones:
            session_id = generate_session_id()

        sealed = self.cipher.seal(embedding)
        self.audit_log.record_access(
            AccessOperation.ENCRYPT, session_id, DataType.FACE_EMBEDDING,
            principal=principal, user_agent=user_agent,
        )

        now = self._clock()
        self._sessions[session_id] = _SessionRecord(
            session_id=session_id,
            sealed=sealed,
            threshold=settings.DEFAULT_THRESHOLD if threshold is None else threshold,
            created_at=now,
            expires_at=now + self.ttl_ms,
        )
        self.audit_log.record_access(
            AccessOperation.CREATE, session_id, DataType.FACE_EMBEDDING,
            principal=principal, user_agent=user_agent,
        )
        logger.info("Created search session", session_id=session_id, ttl_ms=self.ttl_ms)
        return session_id

    def _lookup(self, session_id: str) -> _SessionRecord:
        record = self._sessions.get(session_id)
        if record is None:
            if session_id in self._tombstones:
                raise SessionExpiredError()
            raise SessionNotFoundError()

        if record.expires_at <= self._clock():
            self._expire(record)
            raise SessionExpiredError()

        if (
            record.status is SessionStatus.PROCESSING
            and record.worker is not None
            and record.worker.done()
        ):
            logger.error("Session worker ended without completing", session_id=session_id)
            record.status = SessionStatus.ERROR
            record.error = ErrorCode.INTERNAL_ERROR
            record.progress = 100.0
        return record

    def _snapshot(self, record: _SessionRecord) -> SessionSnapshot:
        return SessionSnapshot(
            id=record.id,
            status=record.status,
            threshold=record.threshold,
            progress=round(record.progress, 2),
            created_at=_to_datetime(record.created_at),
            expires_at=_to_datetime(record.expires_at),
            matches=[match.model_copy() for match in record.matches],
            processed_sites=list(record.processed_sites),
            errors=[error.model_copy() for error in record.errors],
            error=record.error,
        )

    def get(self, session_id: str, principal: Optional[str] = None,
            user_agent: Optional[str] = None) -> SessionSnapshot:
        """
        Return a snapshot of a live session.

        Raises:
            SessionNotFoundError: If the id is unknown
            SessionExpiredError: If the session outlived its TTL
        """
        try:
            record = self._lookup(session_id)
        except (SessionNotFoundError, SessionExpiredError) as e:
            self.audit_log.record_access(
                AccessOperation.READ, session_id, DataType.SEARCH_RESULTS, success=False,
                error_code=e.code.value, principal=principal, user_agent=user_agent,
            )
            raise
        self.audit_log.record_access(
            AccessOperation.READ, session_id, DataType.SEARCH_RESULTS,
            principal=principal, user_agent=user_agent,
        )
        return self._snapshot(record)

    def user_embedding(self, session_id: str) -> np.ndarray:
        """Decrypt a fresh copy of the user embedding. The caller must erase it."""
        record = self._lookup(session_id)
        embedding = self.cipher.open(record.sealed)
        self.audit_log.record_access(AccessOperation.DECRYPT, session_id, DataType.FACE_EMBEDDING)
        return embedding

    def attach_worker(self, session_id: str, task: asyncio.Task) -> None:
        """Tie the processing task to the session so delete can cancel it."""
        self._lookup(session_id).worker = task

    def append_matches(
        self,
        session_id: str,
        matches: List[VideoMatch],
        delta_progress: float,
        errors: Optional[List[SearchError]] = None,
    ) -> None:
        """
        Append scored matches and advance progress.

        Matches already present under the same ``(source_site, id)`` are
        ignored.

        Raises:
            SessionClosedError: If the session is no longer processing
        """
        record = self._lookup(session_id)
        if record.status.is_terminal:
            raise SessionClosedError()

        for match in matches:
            if match.best_similarity is None or match.key in record.match_keys:
                continue
            record.match_keys.add(match.key)
            record.matches.append(match)
        if errors:
            record.errors.extend(errors)
        record.progress = min(MAX_RUNNING_PROGRESS, max(0.0, record.progress + delta_progress))

        if matches:
            self.audit_log.record_access(AccessOperation.UPDATE, session_id, DataType.SEARCH_RESULTS)

    def record_site(self, session_id: str, site_name: str, error: Optional[SearchError] = None) -> None:
        """Record that a site finished, with its failure if it had one."""
        record = self._lookup(session_id)
        if record.status.is_terminal:
            raise SessionClosedError()
        if error is None:
            record.processed_sites.append(site_name)
        else:
            record.errors.append(error)

    def complete(self, session_id: str, error: Optional[ErrorCode] = None) -> None:
        """Move a processing session to its terminal state. Repeated calls are no-ops."""
        record = self._lookup(session_id)
        if record.status.is_terminal:
            return
        record.status = SessionStatus.ERROR if error else SessionStatus.COMPLETED
        record.error = error
        record.progress = 100.0
        logger.info(
            "Search session finished",
            session_id=session_id,
            status=record.status.value,
            matches=len(record.matches),
            errors=len(record.errors),
        )

    def set_threshold(self, session_id: str, threshold: float) -> List[VideoMatch]:
        """
        Store a new threshold and return the matches that meet it, ranked.

        The stored matches are never touched.
        """
        record = self._lookup(session_id)
        record.threshold = threshold
        self.audit_log.record_access(AccessOperation.UPDATE, session_id, DataType.SEARCH_RESULTS)
        return rank_matches(filter_matches(record.matches, threshold))

    def _erase(self, record: _SessionRecord) -> None:
        if record.sealed is not None:
            record.sealed.wipe()
            record.sealed = None
        for match in record.matches:
            for face in match.detected_faces:
                secure_erase(face.embedding)
        record.matches = []
        record.match_keys = set()

        worker = record.worker
        record.worker = None
        if worker is not None and not worker.done() and worker is not _current_task():
            worker.cancel()

    def _remove(self, record: _SessionRecord) -> None:
        self._erase(record)
        self._sessions.pop(record.id, None)
        self.audit_log.purge_session(record.id)

    def _expire(self, record: _SessionRecord) -> None:
        self._remove(record)
        self._tombstones[record.id] = self._clock()
        logger.info("Search session expired", session_id=record.id)

    def delete(self, session_id: str, principal: Optional[str] = None,
               user_agent: Optional[str] = None) -> bool:
        """
        Erase and remove a session.

        Returns:
            True if a live session was removed, False if there was none
        """
        record = self._sessions.get(session_id)
        self._tombstones.pop(session_id, None)
        if record is None:
            return False

        self.audit_log.record_access(
            AccessOperation.DELETE, session_id, DataType.FACE_EMBEDDING,
            principal=principal, user_agent=user_agent,
        )
        self._remove(record)
        logger.info("Deleted search session", session_id=session_id)
        return True

    def sweep_expired(self) -> int:
        """Expire every session past its deadline and prune old tombstones.

        Returns:
            Number of sessions expired
        """
        now = self._clock()
        expired = 0
        for session_id in list(self._sessions):
            record = self._sessions.get(session_id)
            if record is not None and record.expires_at <= now:
                self._expire(record)
                expired += 1

        for session_id, expired_at in list(self._tombstones.items()):
            if expired_at + self.tombstone_ttl_ms <= now:
                del self._tombstones[session_id]

        if expired:
            logger.info("Swept expired sessions", count=expired)
        return expired

    def stats(self) -> SessionStats:
        """Count live sessions by status.

        Sessions past their deadline but not yet swept are left out. Nothing is
        expired or audited by this call.
        """
        now = self._clock()
        live = [record for record in self._sessions.values() if record.expires_at > now]
        counts = {status: 0 for status in SessionStatus}
        for record in live:
            counts[record.status] += 1
        created = [record.created_at for record in live]
        return SessionStats(
            total_active=len(live),
            processing=counts[SessionStatus.PROCESSING],
            completed=counts[SessionStatus.COMPLETED],
            error=counts[SessionStatus.ERROR],
            oldest_created_at=_to_datetime(min(created)) if created else None,
            newest_created_at=_to_datetime(max(created)) if created else None,
        )

    async def run_sweeper(self, interval_ms: Optional[int] = None) -> None:
        """Sweep expired sessions forever at a fixed cadence."""
        interval = (interval_ms or settings.SESSION_SWEEP_INTERVAL_MS) / 1000.0
        while True:
            await asyncio.sleep(interval)
            self.sweep_expired()

    def close(self) -> None:
        """Erase every session. Used at shutdown."""
        for session_id in list(self._sessions):
            record = self._sessions.get(session_id)
            if record is not None:
                self._remove(record)
        self._tombstones.clear()
