# tests/test_infrastructure.py
"""Tests for metrics, logging helpers, payload decoding and DB resilience."""
from __future__ import annotations

import json
import logging

import pytest

from callrelay.core.payloads import parse_json_object
from callrelay.infra.db_resilience_async import is_transient_error, retry_on_transient_error
from callrelay.infra.logging_config import JSONFormatter, LogContext, mask_identifier, short_sid
from callrelay.infra.metrics import MetricsCollector, NotificationMetrics, Timer, get_metrics_collector


# ============================================================================
# Metrics
# ============================================================================

class TestMetricsCollector:
    def test_counter_with_labels(self):
        collector = MetricsCollector()
        collector.inc_counter("sent", labels={"type": "call_ringing"})
        collector.inc_counter("sent", 2, labels={"type": "call_ringing"})
        assert collector.get_metrics()["counters"] == {"sent{type=call_ringing}": 3}

    def test_histogram_stats(self):
        collector = MetricsCollector()
        for value in (1.0, 2.0, 3.0):
            collector.observe_histogram("latency", value)
        stats = collector.get_metrics()["histograms"]["latency"]
        assert stats["count"] == 3
        assert stats["min"] == 1.0
        assert stats["max"] == 3.0
        assert stats["avg"] == 2.0

    def test_reset(self):
        collector = MetricsCollector()
        collector.inc_counter("x")
        collector.reset()
        assert collector.get_metrics() == {"counters": {}, "histograms": {}}


class TestNotificationMetrics:
    def setup_method(self):
        get_metrics_collector().reset()

    def test_sent_and_failed(self):
        NotificationMetrics.notification_sent("call_ringing")
        NotificationMetrics.notification_failed("call_ringing")
        counters = get_metrics_collector().get_metrics()["counters"]
        assert counters["call_notifications_total{outcome=sent,type=call_ringing}"] == 1
        assert counters["call_notifications_total{outcome=failed,type=call_ringing}"] == 1

    def test_zero_evictions_not_counted(self):
        NotificationMetrics.calls_evicted(0, "ttl")
        assert get_metrics_collector().get_metrics()["counters"] == {}

    def test_dispatch_timer(self):
        with NotificationMetrics.track_dispatch_time("call_transcript"):
            pass
        histograms = get_metrics_collector().get_metrics()["histograms"]
        assert histograms["notification_dispatch_seconds{type=call_transcript}"]["count"] == 1

    def test_timer_records_on_error(self):
        with pytest.raises(ValueError):
            with Timer("failing_op"):
                raise ValueError("boom")
        assert get_metrics_collector().get_metrics()["histograms"]["failing_op"]["count"] == 1


# ============================================================================
# Logging helpers
# ============================================================================

class TestLoggingHelpers:
    def test_mask_identifier(self):
        assert mask_identifier("-1001234567890") == "-100****90"
        assert mask_identifier("12345") == "12345"

    def test_short_sid(self):
        assert short_sid("CA1234567890abcdef") == "abcdef"
        assert short_sid("") == "?"

    def test_json_formatter_masks_chat(self):
        record = logging.LogRecord("callrelay", logging.INFO, __file__, 1, "sent", None, None)
        record.chat_id = "-1001234567890"
        record.call_sid = "CA1"
        data = json.loads(JSONFormatter().format(record))
        assert data["chat_id"] == "-100****90"
        assert data["call_sid"] == "CA1"
        assert data["message"] == "sent"

    def test_log_context_adds_extras(self, caplog):
        logger = logging.getLogger("callrelay.test")
        with caplog.at_level(logging.INFO, logger="callrelay.test"):
            LogContext(logger, call_sid="CA1", notification_id="7").info("processed")
        assert caplog.records[0].call_sid == "CA1"
        assert caplog.records[0].notification_id == "7"


# ============================================================================
# Payload decoding
# ============================================================================

class TestParseJsonObject:
    @pytest.mark.parametrize("raw,expected", [
        (None, {}),
        ("", {}),
        ({"a": 1}, {"a": 1}),
        ('{"a": 1}', {"a": 1}),
        (b'{"a": 1}', {"a": 1}),
        ("[1, 2]", {}),
        ("{oops", {}),
        (42, {}),
    ])
    def test_decoding(self, raw, expected):
        assert parse_json_object(raw) == expected

    def test_keep_raw(self):
        assert parse_json_object("{oops", keep_raw=True) == {"raw": "{oops"}
        assert parse_json_object("[1]", keep_raw=True) == {"raw": [1]}


# ============================================================================
# DB resilience
# ============================================================================

def _flaky(*errors, result="ok"):
    """Coroutine function raising ``errors`` in turn, then returning ``result``."""
    calls = {"count": 0}
    remaining = list(errors)

    async def fetch_rows():
        calls["count"] += 1
        if remaining:
            raise remaining.pop(0)
        return result

    return fetch_rows, calls


class TestTransientErrors:
    def test_message_patterns(self):
        assert is_transient_error(RuntimeError("server closed the connection unexpectedly")) is True
        assert is_transient_error(ValueError("invalid input syntax")) is False

    @pytest.mark.asyncio
    async def test_retry_then_success(self):
        func, calls = _flaky(ConnectionError("connection reset"))
        wrapped = retry_on_transient_error(max_retries=2, initial_delay=0)(func)
        assert await wrapped() == "ok"
        assert calls["count"] == 2

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self):
        func, calls = _flaky(ValueError("syntax error"))
        wrapped = retry_on_transient_error(max_retries=2, initial_delay=0)(func)
        with pytest.raises(ValueError):
            await wrapped()
        assert calls["count"] == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        func, calls = _flaky(*(ConnectionError("connection refused") for _ in range(5)))
        wrapped = retry_on_transient_error(max_retries=2, initial_delay=0)(func)
        with pytest.raises(ConnectionError):
            await wrapped()
        assert calls["count"] == 3
