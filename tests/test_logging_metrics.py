"""
Tests for hookledger/utils/logging.py and hookledger/utils/metrics.py.
"""
import json
import logging
import sys

import pytest

from hookledger.database import engine_options
from hookledger.utils.logging import (
    StructuredJsonFormatter,
    correlation_scope,
    generate_correlation_id,
    get_correlation_id,
    set_correlation_id,
)
from hookledger.utils.metrics import Timer, latency_bucket
from hookledger.utils.redis_client import write_heartbeat


def _record(msg="hello", exc_info=None, **extra):
    record = logging.LogRecord("hookledger.engine.pipeline", logging.INFO, __file__, 1, msg, (), exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestCorrelationId:
    def test_set_and_get(self):
        set_correlation_id("abc123")
        assert get_correlation_id() == "abc123"

    def test_generated_ids_unique(self):
        assert len(generate_correlation_id()) == 32
        assert generate_correlation_id() != generate_correlation_id()

    def test_scope_restores_previous_id(self):
        set_correlation_id("request-cid")
        with correlation_scope(prefix="retry-") as cid:
            assert cid.startswith("retry-")
            assert get_correlation_id() == cid
        assert get_correlation_id() == "request-cid"

    def test_scope_with_explicit_id(self):
        with correlation_scope("given") as cid:
            assert cid == "given"
            assert get_correlation_id() == "given"


class TestStructuredJsonFormatter:
    def test_webhook_fields_included(self):
        set_correlation_id("cid-1")
        line = StructuredJsonFormatter().format(
            _record(provider="stripe", event_id="evt_1", duration_ms=42, unrelated="x")
        )
        entry = json.loads(line)

        assert entry["level"] == "INFO"
        assert entry["module"] == "hookledger.engine.pipeline"
        assert entry["message"] == "hello"
        assert entry["correlation_id"] == "cid-1"
        assert entry["provider"] == "stripe"
        assert entry["event_id"] == "evt_1"
        assert entry["duration_ms"] == 42
        assert "unrelated" not in entry

    def test_exception_rendered(self):
        try:
            raise ValueError("bad payload")
        except ValueError:
            line = StructuredJsonFormatter().format(_record(exc_info=sys.exc_info()))
        assert "ValueError: bad payload" in json.loads(line)["exception"]


class TestMetrics:
    def test_timer_not_started(self):
        assert Timer().elapsed_ms == 0

    def test_timer_stop_freezes(self):
        timer = Timer().start()
        elapsed = timer.stop()
        assert elapsed >= 0
        assert timer.elapsed_ms == elapsed
        assert timer.running is False

    def test_timer_as_context_manager(self):
        with Timer() as timer:
            assert timer.running is True
        assert timer.running is False
        assert timer.stop() == timer.elapsed_ms

    @pytest.mark.parametrize("ms,bucket", [(0, "0-100ms"), (99, "0-100ms"), (100, "100ms-1s"), (4999, "1-5s"), (5000, "5s+")])
    def test_latency_bucket(self, ms, bucket):
        assert latency_bucket(ms) == bucket


class TestHeartbeat:
    async def test_writes_key_with_ttl(self, mock_redis):
        await write_heartbeat("retry_worker", ttl_seconds=120)
        args, kwargs = mock_redis.set.await_args
        assert args[0] == "hookledger:worker_health:retry_worker"
        assert kwargs == {"ex": 120}

    async def test_redis_failure_ignored(self, mock_redis):
        mock_redis.set.side_effect = ConnectionError("redis down")
        await write_heartbeat("retry_worker")


class TestEngineOptions:
    def test_postgres_gets_pool_settings(self):
        opts = engine_options("postgresql+asyncpg://u:p@db/hookledger", 20, 10)
        assert opts == {"pool_size": 20, "max_overflow": 10, "pool_pre_ping": True}

    def test_sqlite_has_no_pool_sizing(self):
        assert engine_options("sqlite+aiosqlite:///:memory:", 20, 10) == {}
