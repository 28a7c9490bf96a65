# tests/test_file_logger.py — JSONL audit files and the outbox
import json
from datetime import date, datetime, timezone

import pytest

from file_logger import AuditOutbox, JSONLFileLogger


def _lines(path):
    with open(path, encoding="utf-8") as f:
        return [json.loads(line) for line in f]


def test_path_layout(tmp_path):
    logger = JSONLFileLogger(str(tmp_path), "operations")
    assert logger.path_for(date(2025, 3, 9)) == str(tmp_path / "operations" / "operations-2025-03-09.jsonl")


def test_full_queue_drops_without_blocking(tmp_path):
    logger = JSONLFileLogger(str(tmp_path), "security", queue_size=1)
    assert logger.submit({"n": 1}) is True
    assert logger.submit({"n": 2}) is False
    assert logger.dropped == 1


@pytest.mark.asyncio
class TestWriter:
    async def test_submit_flush_stop(self, tmp_path):
        logger = JSONLFileLogger(str(tmp_path), "security")
        logger.start()
        assert logger.running
        logger.submit({"event_type": "auth.login.success", "id": 1})
        logger.submit({"event_type": "auth.logout", "id": 2})
        await logger.flush()

        today = datetime.now(timezone.utc).date()
        records = _lines(logger.path_for(today))
        assert [r["id"] for r in records] == [1, 2]
        assert logger.written == 2

        await logger.stop()
        assert not logger.running
        await logger.stop()

    async def test_rolls_over_at_midnight(self, tmp_path):
        now = [datetime(2025, 1, 1, 23, 59, tzinfo=timezone.utc)]
        logger = JSONLFileLogger(str(tmp_path), "operations", clock=lambda: now[0])
        logger.start()
        logger.submit({"n": 1})
        await logger.flush()
        now[0] = datetime(2025, 1, 2, 0, 1, tzinfo=timezone.utc)
        logger.submit({"n": 2})
        await logger.flush()
        await logger.stop()

        assert _lines(logger.path_for(date(2025, 1, 1))) == [{"n": 1}]
        assert _lines(logger.path_for(date(2025, 1, 2))) == [{"n": 2}]

    async def test_unserializable_values_stringified(self, tmp_path):
        logger = JSONLFileLogger(str(tmp_path), "security")
        logger.start()
        when = datetime(2025, 5, 1, tzinfo=timezone.utc)
        logger.submit({"at": when})
        await logger.flush()
        await logger.stop()
        assert _lines(logger.path_for(datetime.now(timezone.utc).date()))[0]["at"] == str(when)


@pytest.mark.asyncio
class TestOutbox:
    async def test_only_enabled_streams_written(self, tmp_path):
        outbox = AuditOutbox()
        security = JSONLFileLogger(str(tmp_path), "security")
        outbox.register(security)
        assert outbox.enabled("security")
        assert not outbox.enabled("operations")

        outbox.start()
        outbox.publish("security", {"id": 7})
        outbox.publish("operations", {"id": 8})
        await outbox.flush()
        await outbox.stop()

        assert _lines(security.path_for(datetime.now(timezone.utc).date())) == [{"id": 7}]
        assert not (tmp_path / "operations").exists()
