"""Tests for log processors and context binding."""
import asyncio

import structlog

from facesearch.core.logging import REDACTED, bind_context, redact_sensitive_fields


class TestRedaction:
    def test_biometric_keys_are_replaced(self):
        event = {"event": "scored", "embedding": [0.1, 0.2], "image_bytes": b"\xff\xd8", "site": "a"}

        redacted = redact_sensitive_fields(None, "info", event)

        assert redacted["embedding"] == REDACTED
        assert redacted["image_bytes"] == REDACTED
        assert redacted["site"] == "a"

    def test_other_events_untouched(self):
        event = {"event": "hello", "count": 3}
        assert redact_sensitive_fields(None, "info", dict(event)) == event


class TestBindContext:
    async def test_tasks_inherit_bound_values(self):
        async def read_context():
            return structlog.contextvars.get_contextvars()

        with bind_context(session_id="abc"):
            task = asyncio.create_task(read_context())
        seen = await task

        assert seen["session_id"] == "abc"
        assert "session_id" not in structlog.contextvars.get_contextvars()
