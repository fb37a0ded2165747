"""
Sliding window rate limiting keyed by endpoint and principal.

Denials are immediate; requests are never queued.
"""
import asyncio
import math
import time
from collections import deque
from typing import Callable, Deque, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel

from facesearch.core.config import RateLimitPolicy, settings
from facesearch.core.logging import get_logger
from facesearch.services.audit import AuditLog, SecurityEventType, Severity

logger = get_logger(__name__)

FACE_DETECT = "face-detect"
SIMILARITY = "similarity"
VIDEO_SEARCH = "video-search"

ANONYMOUS = "anonymous"


class RateLimitDecision(BaseModel):
    """Outcome of one rate limit check. ``reset_at`` is epoch milliseconds."""
    allowed: bool
    remaining: int
    reset_at: int

    def retry_after(self, now_ms: float) -> int:
        """Seconds until the window frees a slot, rounded up."""
        return max(0, math.ceil((self.reset_at - now_ms) / 1000.0))


def resolve_principal(session_id: Optional[str] = None, client_ip: Optional[str] = None) -> str:
    """Session id when present, else the client IP, else ``anonymous``."""
    return session_id or client_ip or ANONYMOUS


def _now_ms() -> float:
    return time.time() * 1000.0


class RateLimiter:
    """
    Sliding window request counter.

    Each ``(endpoint, principal)`` pair keeps the timestamps of its accepted
    requests inside the current window. A request is allowed while fewer
    than ``max_requests`` timestamps remain in the window.

    Example:
        ```python
        limiter = RateLimiter(settings.rate_limit_policies, audit_log)
        decision = limiter.check("face-detect", resolve_principal(None, "10.0.0.1"))
        if not decision.allowed:
            raise RateLimitExceededError(retry_after=...)
        ```
    """

    def __init__(
        self,
        policies: Optional[Mapping[str, RateLimitPolicy]] = None,
        audit_log: Optional[AuditLog] = None,
        clock: Callable[[], float] = _now_ms,
    ) -> None:
        self.policies: Dict[str, RateLimitPolicy] = dict(policies or settings.rate_limit_policies)
        self.audit_log = audit_log
        self._clock = clock
        self._requests: Dict[Tuple[str, str], Deque[float]] = {}

    def now(self) -> float:
        return self._clock()

    def check(self, key: str, principal: Optional[str] = None) -> RateLimitDecision:
        """
        Count one request for ``key`` against ``principal``.

        Args:
            key: Endpoint key from the policy table
            principal: Caller identity; ``anonymous`` when empty

        Returns:
            RateLimitDecision for this request

        Raises:
            KeyError: If no policy exists for ``key``
        """
        policy = self.policies[key]
        principal = principal or ANONYMOUS
        now = self._clock()
        cutoff = now - policy.window_ms

        timestamps = self._requests.setdefault((key, principal), deque())
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()

        if len(timestamps) < policy.max_requests:
            timestamps.append(now)
            return RateLimitDecision(
                allowed=True,
                remaining=policy.max_requests - len(timestamps),
                reset_at=int(timestamps[0] + policy.window_ms),
            )

        decision = RateLimitDecision(
            allowed=False,
            remaining=0,
            reset_at=int(timestamps[0] + policy.window_ms),
        )
        logger.warning("Rate limit exceeded", endpoint=key, principal=principal)
        if self.audit_log is not None:
            self.audit_log.record_security_event(
                SecurityEventType.RATE_LIMIT_EXCEEDED,
                Severity.MEDIUM,
                principal=principal,
                details={"endpoint": key, "limit": policy.max_requests, "window_ms": policy.window_ms},
            )
        return decision

    def sweep(self) -> int:
        """Drop principals whose window holds no live requests.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        stale = []
        for (key, principal), timestamps in list(self._requests.items()):
            window = self.policies[key].window_ms
            if not timestamps or timestamps[-1] <= now - window:
                stale.append((key, principal))
        for entry in stale:
            del self._requests[entry]
        if stale:
            logger.debug("Swept idle rate limit entries", removed=len(stale))
        return len(stale)

    @property
    def tracked_principals(self) -> int:
        return len(self._requests)

    async def run_sweeper(self, interval_ms: Optional[int] = None) -> None:
        """Sweep idle entries forever at a fixed cadence."""
        interval = (interval_ms or settings.RATE_LIMIT_SWEEP_INTERVAL_MS) / 1000.0
        while True:
            await asyncio.sleep(interval)
            self.sweep()
