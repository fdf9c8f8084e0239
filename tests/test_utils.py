"""
Tests for IntakeWire utility modules.

Covers: timezone, structured logging, background tasks.
"""
import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone

import pytest


# ---------------------------------------------------------------------------
# 1. intakewire/utils/timezone.py
# ---------------------------------------------------------------------------


class TestTimezone:
    def test_utcnow_is_aware(self):
        from intakewire.utils.timezone import utcnow

        assert utcnow().tzinfo is not None

    def test_ensure_utc_naive(self):
        from intakewire.utils.timezone import ensure_utc

        result = ensure_utc(datetime(2026, 1, 1, 12, 0))
        assert result.tzinfo == timezone.utc
        assert result.hour == 12

    def test_ensure_utc_converts_offset(self):
        from intakewire.utils.timezone import ensure_utc

        central = timezone(timedelta(hours=-6))
        assert ensure_utc(datetime(2026, 1, 1, 6, 0, tzinfo=central)).hour == 12

    def test_ensure_utc_none(self):
        from intakewire.utils.timezone import ensure_utc

        assert ensure_utc(None) is None

    def test_seconds_until_future(self):
        from intakewire.utils.timezone import seconds_until

        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert seconds_until(now + timedelta(seconds=90), now=now) == 90.0

    def test_seconds_until_past_is_zero(self):
        from intakewire.utils.timezone import seconds_until

        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert seconds_until(now - timedelta(minutes=5), now=now) == 0.0
        assert seconds_until(None) == 0.0

    def test_seconds_until_naive_value(self):
        from intakewire.utils.timezone import seconds_until

        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert seconds_until(datetime(2026, 1, 1, 0, 1), now=now) == 60.0


# ---------------------------------------------------------------------------
# 2. intakewire/utils/logging.py
# ---------------------------------------------------------------------------


class TestStructuredLogging:
    def _record(self, **extra):
        record = logging.LogRecord(
            name="intakewire.services.webhook_delivery",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="Delivery %s delivered",
            args=("abcd1234",),
            exc_info=None,
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_formats_json_line(self):
        from intakewire.utils.logging import StructuredJsonFormatter, set_correlation_id

        set_correlation_id("dlv-abcd1234")
        line = StructuredJsonFormatter().format(self._record(delivery_id="abcd1234"))
        entry = json.loads(line)

        assert entry["message"] == "Delivery abcd1234 delivered"
        assert entry["level"] == "INFO"
        assert entry["correlation_id"] == "dlv-abcd1234"
        assert entry["delivery_id"] == "abcd1234"

    def test_unknown_extras_not_promoted(self):
        from intakewire.utils.logging import StructuredJsonFormatter

        entry = json.loads(StructuredJsonFormatter().format(self._record(secret="whsec_x")))
        assert "secret" not in entry

    def test_generate_correlation_id(self):
        from intakewire.utils.logging import generate_correlation_id

        cid = generate_correlation_id()
        assert len(cid) == 32
        assert cid != generate_correlation_id()

    def test_configure_replaces_handlers(self):
        from intakewire.utils.logging import StructuredJsonFormatter, configure_structured_logging

        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            configure_structured_logging("debug")
            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, StructuredJsonFormatter)
            assert logging.getLogger("httpx").level == logging.WARNING
            assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)


# ---------------------------------------------------------------------------
# 3. intakewire/utils/background.py
# ---------------------------------------------------------------------------


class TestFireAndForget:
    async def test_task_tracked_until_done(self):
        from intakewire.utils.background import fire_and_forget, pending_background_tasks

        gate = asyncio.Event()

        async def work():
            await gate.wait()

        before = pending_background_tasks()
        task = fire_and_forget(work(), "wait-for-gate")
        assert pending_background_tasks() == before + 1

        gate.set()
        await task
        await asyncio.sleep(0)
        assert pending_background_tasks() == before

    async def test_failure_is_logged(self, caplog):
        from intakewire.utils.background import fire_and_forget

        async def boom():
            raise RuntimeError("receiver exploded")

        task = fire_and_forget(boom(), "boom")
        with pytest.raises(RuntimeError):
            await task
        await asyncio.sleep(0)

        assert "Background task boom failed" in caplog.text
