"""Tests for the sliding window rate limiter."""
import pytest

from facesearch.core.config import RateLimitPolicy
from facesearch.services.audit import SecurityEventType, Severity
from facesearch.services.rate_limiter import (
    ANONYMOUS,
    FACE_DETECT,
    VIDEO_SEARCH,
    RateLimiter,
    resolve_principal,
)

POLICIES = {
    FACE_DETECT: RateLimitPolicy(window_ms=60_000, max_requests=3),
    VIDEO_SEARCH: RateLimitPolicy(window_ms=300_000, max_requests=1),
}


@pytest.fixture
def limiter(audit_log, clock):
    return RateLimiter(POLICIES, audit_log=audit_log, clock=clock)


class TestRateLimiter:
    """Window accounting per endpoint and principal."""

    def test_allows_up_to_limit_then_denies(self, limiter):
        decisions = [limiter.check(FACE_DETECT, "10.0.0.1") for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert [d.remaining for d in decisions] == [2, 1, 0, 0]

    def test_window_slides(self, limiter, clock):
        for _ in range(3):
            limiter.check(FACE_DETECT, "10.0.0.1")
        clock.advance(59_999)
        assert not limiter.check(FACE_DETECT, "10.0.0.1").allowed

        clock.advance(1)
        assert limiter.check(FACE_DETECT, "10.0.0.1").allowed

    def test_accepted_requests_never_exceed_limit_in_any_window(self, limiter, clock):
        accepted = []
        for _ in range(200):
            if limiter.check(FACE_DETECT, "p").allowed:
                accepted.append(clock.now)
            clock.advance(7_000)

        for start in accepted:
            inside = [t for t in accepted if start <= t < start + 60_000]
            assert len(inside) <= 3

    def test_principals_are_independent(self, limiter):
        assert limiter.check(VIDEO_SEARCH, "a").allowed
        assert not limiter.check(VIDEO_SEARCH, "a").allowed
        assert limiter.check(VIDEO_SEARCH, "b").allowed

    def test_endpoints_are_independent(self, limiter):
        assert limiter.check(VIDEO_SEARCH, "a").allowed
        assert limiter.check(FACE_DETECT, "a").allowed

    def test_reset_and_retry_after(self, limiter, clock):
        start = clock.now
        limiter.check(VIDEO_SEARCH, "a")
        clock.advance(100_500)

        denied = limiter.check(VIDEO_SEARCH, "a")

        assert denied.reset_at == int(start + 300_000)
        assert denied.retry_after(limiter.now()) == 200

    def test_denial_records_security_event(self, limiter, audit_log):
        limiter.check(VIDEO_SEARCH, "10.0.0.9")
        limiter.check(VIDEO_SEARCH, "10.0.0.9")

        events = audit_log.security_events()
        assert len(events) == 1
        assert events[0].event_type is SecurityEventType.RATE_LIMIT_EXCEEDED
        assert events[0].severity is Severity.MEDIUM
        assert events[0].principal == "10.0.0.9"
        assert events[0].details["endpoint"] == VIDEO_SEARCH

    def test_empty_principal_is_anonymous(self, limiter):
        limiter.check(VIDEO_SEARCH, None)
        assert not limiter.check(VIDEO_SEARCH, ANONYMOUS).allowed

    def test_unknown_endpoint_raises(self, limiter):
        with pytest.raises(KeyError):
            limiter.check("unknown", "a")

    def test_sweep_drops_idle_principals(self, limiter, clock):
        limiter.check(FACE_DETECT, "a")
        limiter.check(VIDEO_SEARCH, "b")
        clock.advance(60_001)

        assert limiter.sweep() == 1
        assert limiter.tracked_principals == 1


class TestResolvePrincipal:
    def test_session_wins(self):
        assert resolve_principal("session", "10.0.0.1") == "session"

    def test_falls_back_to_ip_then_anonymous(self):
        assert resolve_principal(None, "10.0.0.1") == "10.0.0.1"
        assert resolve_principal(None, None) == ANONYMOUS
