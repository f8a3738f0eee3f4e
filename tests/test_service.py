# tests/test_service.py
"""Tests for callrelay/core/service.py: poller, sweeper, eviction, health."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from callrelay.core.domain import AckOutcome
from callrelay.core.service import CallNotificationService, HealthStatus
from callrelay.transport.telegram_sender import TelegramSendError


def _service(store, transport, clock, **overrides) -> CallNotificationService:
    options = {
        "poll_interval": 0.01,
        "item_delay": 0,
        "sweep_interval": 3600,
        "terminal_eviction_delay": 300,
        "chunk_delay": 0,
        "clock": clock,
    }
    options.update(overrides)
    return CallNotificationService(store, transport, **options)


# ============================================================================
# Lifecycle
# ============================================================================

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, store, transport, clock):
        service = _service(store, transport, clock)
        assert await service.start() is True
        assert service.is_running is True

        await service.stop()
        assert service.is_running is False

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, store, transport, clock):
        service = _service(store, transport, clock)
        await service.start()
        assert await service.start() is True
        await service.stop()
        await service.stop()

    @pytest.mark.asyncio
    async def test_disabled_service_is_inert(self, store, transport, clock):
        service = _service(store, transport, clock, enabled=False)
        assert await service.start() is False
        assert service.is_running is False
        await asyncio.sleep(0.02)
        store.fetch_pending_notifications.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_poller_runs_immediately(self, store, transport, clock):
        service = _service(store, transport, clock, poll_interval=60)
        await service.start()
        await asyncio.sleep(0.01)
        await service.stop()
        store.fetch_pending_notifications.assert_awaited_once_with(50)

    @pytest.mark.asyncio
    async def test_stop_clears_tracking(self, store, transport, clock, call_sid, chat_id):
        service = _service(store, transport, clock)
        await service.start()
        await service.dispatcher.send_status_update(call_sid, chat_id, "completed")
        assert service.pending_evictions == 1

        await service.stop()
        assert len(service.status_tracker) == 0
        assert len(service.timing_tracker) == 0
        assert service.pending_evictions == 0

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_send_finish(self, store, transport, clock, make_record):
        store.fetch_pending_notifications.side_effect = [
            [make_record("call_ringing", call_sid="CA-1"), make_record("call_ringing", call_sid="CA-2")],
            [],
        ]
        completed = []

        async def slow_send(chat_id, text, *args, **kwargs):
            await asyncio.sleep(0.2)
            completed.append(text)
            return {"ok": True}

        transport.send.side_effect = slow_send
        service = _service(store, transport, clock, poll_interval=60)
        await service.start()
        await asyncio.sleep(0.05)
        await service.stop()

        assert len(completed) == 1
        store.acknowledge.assert_awaited_once_with("1", AckOutcome.SENT)
        assert transport.send.await_count == 1

    @pytest.mark.asyncio
    async def test_from_settings(self, store, transport):
        with patch("callrelay.config.settings") as mock_settings:
            mock_settings.telegram_enabled = False
            mock_settings.notification_poll_interval = 5.0
            mock_settings.notification_batch_size = 20
            mock_settings.notification_item_delay = 0.2
            mock_settings.call_sweep_interval = 60.0
            mock_settings.call_ttl_seconds = 120.0
            mock_settings.terminal_eviction_delay = 30.0
            mock_settings.message_chunk_threshold = 4000
            mock_settings.message_chunk_size = 3900
            mock_settings.message_chunk_delay = 1.5
            mock_settings.transcript_max_messages = 12
            service = CallNotificationService.from_settings(store, transport)

        assert service.enabled is False
        metrics = service.get_notification_metrics()
        assert metrics["poll_interval_seconds"] == 5.0
        assert metrics["batch_size"] == 20


# ============================================================================
# Poller
# ============================================================================

class TestPollOnce:
    @pytest.mark.asyncio
    async def test_store_not_ready(self, store, transport, clock):
        store.is_ready.return_value = False
        service = _service(store, transport, clock)
        assert await service.poll_once() == 0
        store.fetch_pending_notifications.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_batch(self, store, transport, clock):
        service = _service(store, transport, clock)
        assert await service.poll_once() == 0
        transport.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fetch_error_swallowed(self, store, transport, clock):
        store.fetch_pending_notifications.side_effect = RuntimeError("connection refused")
        service = _service(store, transport, clock)
        assert await service.poll_once() == 0

    @pytest.mark.asyncio
    async def test_failure_does_not_abort_batch(self, store, transport, clock, make_record):
        records = [
            make_record("call_ringing", call_sid="CA-1"),
            make_record("call_ringing", call_sid="CA-2"),
            make_record("call_ringing", call_sid="CA-3"),
        ]
        store.fetch_pending_notifications.return_value = records
        transport.send.side_effect = [{"ok": True}, RuntimeError("rate limited"), {"ok": True}]
        service = _service(store, transport, clock)

        assert await service.poll_once() == 3
        acks = [c.args[:2] for c in store.acknowledge.call_args_list]
        assert acks == [
            (records[0].id, AckOutcome.SENT),
            (records[1].id, AckOutcome.FAILED),
            (records[2].id, AckOutcome.SENT),
        ]

    @pytest.mark.asyncio
    async def test_ack_error_does_not_abort_batch(self, store, transport, clock, make_record):
        store.fetch_pending_notifications.return_value = [
            make_record("call_ringing", call_sid="CA-1"),
            make_record("call_ringing", call_sid="CA-2"),
        ]
        store.acknowledge.side_effect = [RuntimeError("db gone"), None]
        service = _service(store, transport, clock)

        assert await service.poll_once() == 2
        assert transport.send.await_count == 2

    @pytest.mark.asyncio
    async def test_records_processed_in_order(self, store, transport, clock, make_record):
        store.fetch_pending_notifications.return_value = [
            make_record("call_initiated"),
            make_record("call_ringing"),
            make_record("call_answered"),
        ]
        service = _service(store, transport, clock)
        await service.poll_once()

        texts = [c.args[1] for c in transport.send.call_args_list]
        assert texts == ["📞 Initiating call...", "🔔 Ringing...", "☎️ In progress (rang 0s)"]


# ============================================================================
# Eviction
# ============================================================================

class TestSweep:
    @pytest.mark.asyncio
    async def test_ttl_eviction(self, store, transport, clock, chat_id):
        service = _service(store, transport, clock, call_ttl=3600)
        await service.dispatcher.send_status_update("CA-old", chat_id, "ringing")
        clock.advance(3000)
        await service.dispatcher.send_status_update("CA-new", chat_id, "ringing")
        clock.advance(700)

        assert service.sweep() == 1
        assert "CA-old" not in service.status_tracker
        assert "CA-old" not in service.timing_tracker
        assert "CA-new" in service.status_tracker

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self, store, transport, clock, chat_id):
        service = _service(store, transport, clock, call_ttl=10)
        await service.dispatcher.send_status_update("CA1", chat_id, "ringing")
        clock.advance(20)
        assert service.sweep() == 1
        assert service.sweep() == 0


class TestTerminalEviction:
    @pytest.mark.asyncio
    async def test_evicted_after_delay(self, store, transport, clock, call_sid, chat_id):
        service = _service(store, transport, clock, terminal_eviction_delay=0.01)
        await service.start()
        await service.dispatcher.send_status_update(call_sid, chat_id, "busy")
        assert call_sid in service.status_tracker

        await asyncio.sleep(0.05)
        assert call_sid not in service.status_tracker
        assert call_sid not in service.timing_tracker
        assert service.pending_evictions == 0
        await service.stop()

    @pytest.mark.asyncio
    async def test_first_terminal_status_starts_clock(self, store, transport, clock, call_sid, chat_id):
        service = _service(store, transport, clock)
        await service.start()
        await service.dispatcher.send_status_update(call_sid, chat_id, "completed")
        await service.dispatcher.send_status_update(call_sid, chat_id, "failed")
        assert service.pending_evictions == 1
        await service.stop()

    @pytest.mark.asyncio
    async def test_not_scheduled_when_stopped(self, store, transport, clock, call_sid, chat_id):
        service = _service(store, transport, clock)
        await service.dispatcher.send_status_update(call_sid, chat_id, "completed")
        assert service.pending_evictions == 0
        assert call_sid in service.status_tracker


# ============================================================================
# Operational surface
# ============================================================================

class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_disabled(self, store, transport, clock):
        service = _service(store, transport, clock, enabled=False)
        result = await service.health_check()
        assert result["status"] == HealthStatus.DISABLED.value
        transport.get_me.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_healthy(self, store, transport, clock, call_sid, chat_id):
        service = _service(store, transport, clock)
        await service.dispatcher.send_status_update(call_sid, chat_id, "ringing")
        result = await service.health_check()

        assert result["status"] == "healthy"
        assert result["bot_info"] == {"username": "relay_bot", "first_name": "Relay", "id": 42}
        assert result["active_calls"] == 1
        assert result["tracked_calls"] == 1
        assert result["is_running"] is False

    @pytest.mark.asyncio
    async def test_degraded(self, store, transport, clock):
        transport.get_me.side_effect = TelegramSendError(401, 401, "Unauthorized")
        service = _service(store, transport, clock)
        result = await service.health_check()

        assert result["status"] == "degraded"
        assert result["code"] == 401
        assert "Unauthorized" in result["reason"]

    @pytest.mark.asyncio
    async def test_degraded_unknown_error(self, store, transport, clock):
        transport.get_me.side_effect = TimeoutError()
        service = _service(store, transport, clock)
        result = await service.health_check()
        assert result == {"status": "degraded", "reason": "TimeoutError", "code": "UNKNOWN_ERROR"}


class TestOperationalHelpers:
    @pytest.mark.asyncio
    async def test_stats(self, store, transport, clock, chat_id):
        service = _service(store, transport, clock)
        await service.dispatcher.send_status_update("CA1", chat_id, "ringing")
        await service.dispatcher.send_status_update("CA2", chat_id, "answered")
        stats = service.get_call_status_stats()
        assert stats["total_tracked_calls"] == 2
        assert stats["status_breakdown"] == {"ringing": 1, "answered": 1}

    @pytest.mark.asyncio
    async def test_immediate_status(self, store, transport, clock, call_sid, chat_id):
        service = _service(store, transport, clock)
        assert await service.send_immediate_status(call_sid, "ringing", chat_id) is True
        assert transport.send.call_args.args[1] == "🔔 Ringing..."

    @pytest.mark.asyncio
    async def test_immediate_status_fallback(self, store, transport, clock, call_sid, chat_id):
        transport.send.side_effect = [RuntimeError("parse error"), {"ok": True}]
        service = _service(store, transport, clock)
        assert await service.send_immediate_status(call_sid, "ringing", chat_id) is True
        assert transport.send.call_args.args == (chat_id, "📱 Call abcdef status: ringing")

    @pytest.mark.asyncio
    async def test_immediate_status_both_fail(self, store, transport, clock, call_sid, chat_id):
        transport.send.side_effect = RuntimeError("down")
        service = _service(store, transport, clock)
        assert await service.send_immediate_status(call_sid, "ringing", chat_id) is False

    @pytest.mark.asyncio
    async def test_test_notification(self, store, transport, clock, call_sid, chat_id):
        service = _service(store, transport, clock)
        assert await service.test_notification(call_sid, "initiated", chat_id) is True
        transport.send.side_effect = RuntimeError("down")
        assert await service.test_notification(call_sid, "ringing", chat_id) is False

    @pytest.mark.asyncio
    async def test_input_summary_failure(self, store, transport, clock, call_sid, chat_id):
        store.fetch_call_inputs = AsyncMock(side_effect=RuntimeError("db down"))
        service = _service(store, transport, clock)
        assert await service.send_input_summary(call_sid, chat_id) is False
        assert transport.send.call_args.args == (chat_id, "❌ Error delivering call input summary")
