# callrelay/core/service.py
"""
Call notification service: poller, sweeper and one-shot evictions.

Owns the in-memory trackers and every background task that touches them.
All tasks run on the event loop that called ``start()``; ``stop()`` cancels
them, waits for them and clears both trackers.

Usage:
    service = CallNotificationService.from_settings(store, transport)
    await service.start()
    ...
    await service.stop()
"""
from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Callable

from callrelay.core.dispatcher import NotificationDispatcher
from callrelay.core.domain import CallStatus
from callrelay.core.ports import AsyncCallNotificationStore, DigitsDecryptor, MessageTransport
from callrelay.core.status import StatusTracker
from callrelay.core.timing import TimingTracker
from callrelay.infra.logging_config import get_logger, short_sid
from callrelay.infra.metrics import NotificationMetrics

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DISABLED = "disabled"


def _safe_create_task(coro, *, name: str | None = None) -> asyncio.Task:
    """Create a background task whose unexpected death is logged."""
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            f"Background task {task.get_name()!r} failed: {exc}",
            exc_info=(type(exc), exc, exc.__traceback__),
        )


class CallNotificationService:
    """Polls the notification queue and keeps per-call tracking bounded."""

    def __init__(
        self,
        store: AsyncCallNotificationStore,
        transport: MessageTransport,
        *,
        enabled: bool = True,
        digits_decryptor: DigitsDecryptor | None = None,
        poll_interval: float = 3.0,
        batch_size: int = 50,
        item_delay: float = 0.15,
        sweep_interval: float = 1800.0,
        call_ttl: float = 3600.0,
        terminal_eviction_delay: float = 300.0,
        chunk_threshold: int = 4000,
        chunk_size: int = 3900,
        chunk_delay: float = 1.5,
        transcript_max_messages: int = 12,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._transport = transport
        self._enabled = enabled
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._item_delay = item_delay
        self._sweep_interval = sweep_interval
        self._call_ttl = call_ttl
        self._terminal_eviction_delay = terminal_eviction_delay

        self.status_tracker = StatusTracker(clock=clock)
        self.timing_tracker = TimingTracker(clock=clock)
        self.dispatcher = NotificationDispatcher(
            store,
            transport,
            self.status_tracker,
            self.timing_tracker,
            digits_decryptor=digits_decryptor,
            on_terminal=self.schedule_eviction,
            chunk_threshold=chunk_threshold,
            chunk_size=chunk_size,
            chunk_delay=chunk_delay,
            transcript_max_messages=transcript_max_messages,
        )

        self._running = False
        self._stopping = False
        self._poll_task: asyncio.Task | None = None
        self._in_flight: asyncio.Task | None = None
        self._sweep_task: asyncio.Task | None = None
        self._eviction_tasks: dict[str, asyncio.Task] = {}

    @classmethod
    def from_settings(
        cls,
        store: AsyncCallNotificationStore,
        transport: MessageTransport,
        digits_decryptor: DigitsDecryptor | None = None,
    ) -> "CallNotificationService":
        from callrelay.config import settings

        return cls(
            store,
            transport,
            enabled=settings.telegram_enabled,
            digits_decryptor=digits_decryptor,
            poll_interval=settings.notification_poll_interval,
            batch_size=settings.notification_batch_size,
            item_delay=settings.notification_item_delay,
            sweep_interval=settings.call_sweep_interval,
            call_ttl=settings.call_ttl_seconds,
            terminal_eviction_delay=settings.terminal_eviction_delay,
            chunk_threshold=settings.message_chunk_threshold,
            chunk_size=settings.message_chunk_size,
            chunk_delay=settings.message_chunk_delay,
            transcript_max_messages=settings.transcript_max_messages,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def enabled(self) -> bool:
        return self._enabled

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Start poller and sweeper. Returns False when the service is disabled."""
        if not self._enabled:
            logger.warning("TELEGRAM_BOT_TOKEN not configured. Call notification service disabled.")
            return False

        if self._running:
            logger.info("Call notification service is already running")
            return True

        self._running = True
        self._stopping = False
        self._poll_task = _safe_create_task(self._poll_loop(), name="notification_poller")
        self._sweep_task = _safe_create_task(self._sweep_loop(), name="call_sweeper")
        logger.info(
            f"Call notification service started: poll={self._poll_interval}s, "
            f"batch={self._batch_size}, sweep={self._sweep_interval}s, ttl={self._call_ttl}s"
        )
        return True

    async def stop(self) -> None:
        """
        Stop polling and forget every tracked call. Safe to call twice.

        A record already being dispatched runs to completion and is
        acknowledged; the rest of its batch stays pending in the queue.
        """
        self._running = False
        self._stopping = True

        in_flight = self._in_flight
        if in_flight is not None and not in_flight.done():
            logger.info("Waiting for the in-flight notification before stopping")
            await asyncio.gather(in_flight, return_exceptions=True)

        tasks = [self._poll_task, self._sweep_task, *self._eviction_tasks.values()]
        pending = [task for task in tasks if task is not None and not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._poll_task = None
        self._in_flight = None
        self._sweep_task = None
        self._eviction_tasks.clear()
        self.status_tracker.clear()
        self.timing_tracker.clear()
        logger.info("Call notification service stopped")

    # ------------------------------------------------------------------
    # Poller
    # ------------------------------------------------------------------

    async def _poll_loop(self) -> None:
        while self._running:
            await self.poll_once()
            if not self._running:
                break
            await asyncio.sleep(self._poll_interval)

    async def poll_once(self) -> int:
        """
        Fetch one batch and dispatch it sequentially.

        Returns the number of records pulled. Store and per-record errors are
        logged, never raised.
        """
        if not self._store.is_ready():
            return 0

        try:
            records = await self._store.fetch_pending_notifications(self._batch_size)
        except Exception as exc:
            logger.error(f"Error fetching pending notifications: {exc}", exc_info=True)
            NotificationMetrics.poll_error()
            return 0

        for record in records:
            if self._stopping:
                break
            # stop() waits for this task instead of cancelling it
            self._in_flight = asyncio.ensure_future(self.dispatcher.process(record))
            try:
                await self._in_flight
            except Exception as exc:
                logger.error(f"Failed to process notification {record.id}: {exc}", exc_info=True)
                NotificationMetrics.poll_error()
            await asyncio.sleep(self._item_delay)

        return len(records)

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def _evict(self, call_sid: str) -> bool:
        evicted_status = self.status_tracker.evict(call_sid)
        evicted_timing = self.timing_tracker.evict(call_sid)
        return evicted_status or evicted_timing

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()

    def sweep(self) -> int:
        """Evict calls idle for longer than the TTL. Returns how many were evicted."""
        stale = self.status_tracker.stale_call_sids(self._call_ttl)
        for call_sid in stale:
            self._evict(call_sid)

        NotificationMetrics.calls_evicted(len(stale), "ttl")
        if stale:
            logger.info(f"Cleaned up {len(stale)} old call records")
        return len(stale)

    def schedule_eviction(self, call_sid: str) -> None:
        """One-shot eviction after a terminal status; the first terminal status starts the clock."""
        if not self._running:
            return
        existing = self._eviction_tasks.get(call_sid)
        if existing is not None and not existing.done():
            return
        self._eviction_tasks[call_sid] = _safe_create_task(
            self._evict_later(call_sid),
            name=f"evict_call_{short_sid(call_sid)}",
        )

    async def _evict_later(self, call_sid: str) -> None:
        try:
            await asyncio.sleep(self._terminal_eviction_delay)
            if self._evict(call_sid):
                NotificationMetrics.calls_evicted(1, "terminal")
                logger.debug(f"Evicted terminal call {short_sid(call_sid)}")
        finally:
            if self._eviction_tasks.get(call_sid) is asyncio.current_task():
                del self._eviction_tasks[call_sid]

    @property
    def pending_evictions(self) -> int:
        return sum(1 for task in self._eviction_tasks.values() if not task.done())

    # ------------------------------------------------------------------
    # Operational surface
    # ------------------------------------------------------------------

    async def health_check(self) -> dict[str, Any]:
        if not self._enabled:
            return {"status": HealthStatus.DISABLED.value, "reason": "No Telegram bot token configured"}

        try:
            bot = await self._transport.get_me()
        except Exception as exc:
            return {
                "status": HealthStatus.DEGRADED.value,
                "reason": str(exc) or exc.__class__.__name__,
                "code": getattr(exc, "error_code", None) or "UNKNOWN_ERROR",
            }

        return {
            "status": HealthStatus.HEALTHY.value,
            "bot_info": {
                "username": bot.get("username"),
                "first_name": bot.get("first_name"),
                "id": bot.get("id"),
            },
            "is_running": self._running,
            "active_calls": len(self.status_tracker),
            "tracked_calls": len(self.timing_tracker),
            "poll_interval_seconds": self._poll_interval,
        }

    def get_call_status_stats(self) -> dict[str, Any]:
        return self.status_tracker.stats()

    def get_notification_metrics(self) -> dict[str, Any]:
        return {
            "is_running": self._running,
            "poll_interval_seconds": self._poll_interval,
            "batch_size": self._batch_size,
            "active_call_tracking": len(self.status_tracker),
            "call_timestamps_tracked": len(self.timing_tracker),
            "pending_evictions": self.pending_evictions,
            "telegram_bot_configured": self._enabled,
        }

    async def send_immediate_status(self, call_sid: str, status: CallStatus | str, chat_id: str) -> bool:
        """
        Announce a status outside the queue.

        On transport failure a plain one-line notice is attempted instead.
        A suppressed (duplicate or stale) status counts as success.
        """
        try:
            await self.dispatcher.send_status_update(call_sid, chat_id, status)
            return True
        except Exception as exc:
            logger.error(f"Failed to send immediate status for {short_sid(call_sid)}: {exc}")

        label = status.value if isinstance(status, CallStatus) else status
        try:
            await self._transport.send(chat_id, f"📱 Call {call_sid[-6:]} status: {label}")
            return True
        except Exception as exc:
            logger.error(f"Fallback status notice also failed for {short_sid(call_sid)}: {exc}")
            return False

    async def test_notification(self, call_sid: str, status: CallStatus | str, chat_id: str) -> bool:
        logger.info(f"Testing notification: {status} for call {short_sid(call_sid)}")
        try:
            await self.dispatcher.send_status_update(call_sid, chat_id, status)
        except Exception as exc:
            logger.error(f"Test notification failed: {exc}")
            return False
        return True

    async def send_input_summary(self, call_sid: str, chat_id: str) -> bool:
        try:
            await self.dispatcher.send_input_summary(call_sid, chat_id)
        except Exception as exc:
            logger.error(f"Failed to send call input summary for {short_sid(call_sid)}: {exc}")
            return False
        return True
