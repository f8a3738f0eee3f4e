# callrelay/core/dispatcher.py
"""
Turns one pending notification record into operator messages.

Every record ends with exactly one acknowledgement: ``sent`` when the handler
returns (including when the status gate suppresses the update), ``failed``
with the error text when it raises. Nothing raised by a handler escapes
``process()``; only a failing acknowledgement does.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from callrelay.core.chunking import split_message
from callrelay.core.domain import (
    NOTIFICATION_STATUS_MAP,
    AckOutcome,
    CallSnapshot,
    CallStatus,
    NotificationRecord,
    NotificationType,
    is_terminal,
    status_for_notification,
    status_label,
)
from callrelay.core.follow_up import build_follow_up_actions
from callrelay.core.formatting import (
    ANSWERED_OUTCOMES,
    COLLECT_INPUT_CALL_TYPE,
    NO_TRANSCRIPT_TEXT,
    InputDetails,
    format_amd_update,
    format_dtmf_entries,
    format_hint,
    format_input_notification,
    format_input_summary,
    format_outcome_summary,
    format_status_update,
    format_step_notification,
    format_transcript,
    format_workflow_complete,
    has_sensitive_dtmf,
    input_details_from_dtmf,
    input_details_from_inputs,
    latest_input_preview,
    normalize_outcome,
    transcript_preview,
)
from callrelay.core.ports import AsyncCallNotificationStore, DigitsDecryptor, MessageTransport
from callrelay.core.status import StatusTracker
from callrelay.core.timing import TimingTracker
from callrelay.infra.logging_config import LogContext, get_logger, short_sid
from callrelay.infra.metrics import NotificationMetrics

logger = get_logger(__name__)

VERIFIED_STATE = "dtmf_verified"

TRANSCRIPT_FALLBACK_TEXT = "❌ Error retrieving call transcript"
INPUT_FALLBACK_TEXT = "❌ Error delivering keypad entry details"
INPUT_SUMMARY_FALLBACK_TEXT = "❌ Error delivering call input summary"

Handler = Callable[[NotificationRecord], Awaitable[None]]


class NotificationDispatchError(Exception):
    """A record that cannot be turned into a delivered message."""


class NotificationDispatcher:
    """
    Routes notification records to message builders and the transport.

    ``on_terminal`` is called with the call sid whenever a terminal status is
    accepted; the service uses it to schedule the delayed eviction.
    """

    def __init__(
        self,
        store: AsyncCallNotificationStore,
        transport: MessageTransport,
        status_tracker: StatusTracker,
        timing_tracker: TimingTracker,
        *,
        digits_decryptor: DigitsDecryptor | None = None,
        on_terminal: Callable[[str], None] | None = None,
        chunk_threshold: int = 4000,
        chunk_size: int = 3900,
        chunk_delay: float = 1.5,
        transcript_max_messages: int = 12,
    ):
        self._store = store
        self._transport = transport
        self._status = status_tracker
        self._timing = timing_tracker
        self._decrypt = digits_decryptor.decrypt_digits if digits_decryptor else None
        self._on_terminal = on_terminal
        self._chunk_threshold = chunk_threshold
        self._chunk_size = chunk_size
        self._chunk_delay = chunk_delay
        self._transcript_max_messages = transcript_max_messages

        self._handlers: dict[NotificationType, Handler] = {
            kind: self._handle_status for kind in NOTIFICATION_STATUS_MAP
        }
        self._handlers.update({
            NotificationType.CALL_STEP_COMPLETE: self._handle_step,
            NotificationType.CALL_STEP_RETRY: self._handle_step,
            NotificationType.CALL_WORKFLOW_COMPLETE: self._handle_workflow_complete,
            NotificationType.CALL_INPUT_DTMF: self._handle_input,
            NotificationType.CALL_DTMF_CAPTURED: self._handle_input,
            NotificationType.CALL_AMD_UPDATE: self._handle_amd_update,
            NotificationType.CALL_OUTCOME_SUMMARY: self._handle_outcome_summary,
            NotificationType.CALL_TRANSCRIPT: self._handle_transcript,
            NotificationType.CALL_HINT_CALLER_LISTENING: self._handle_hint,
            NotificationType.CALL_HINT_MACHINE_DETECTED: self._handle_hint,
            NotificationType.CALL_HINT_INPUT_DETECTED: self._handle_hint,
        })

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def process(self, record: NotificationRecord) -> AckOutcome:
        """Handle one record and acknowledge it. Returns the acknowledged outcome."""
        log = LogContext(
            logger,
            call_sid=record.call_sid,
            chat_id=record.chat_id,
            notification_id=record.id,
        )
        handler = self._handlers.get(record.kind, self._handle_unknown)

        try:
            with NotificationMetrics.track_dispatch_time(record.notification_type):
                if not record.chat_id:
                    raise NotificationDispatchError("notification has no destination chat")
                await handler(record)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            log.error(f"Failed to send notification {record.id} ({record.notification_type}): {error}")
            NotificationMetrics.notification_failed(record.notification_type)
            await self._store.acknowledge(record.id, AckOutcome.FAILED, error)
            if record.kind is NotificationType.CALL_FAILED and record.chat_id:
                await self._send_error_notice(record)
            return AckOutcome.FAILED

        NotificationMetrics.notification_sent(record.notification_type)
        await self._store.acknowledge(record.id, AckOutcome.SENT)
        log.info(f"Processed notification {record.id} ({record.notification_type})")
        return AckOutcome.SENT

    async def _send_error_notice(self, record: NotificationRecord) -> None:
        text = f"❌ Error processing {record.notification_type.replace('_', ' ', 1)}"
        try:
            await self._transport.send(record.chat_id, text)
        except Exception as exc:
            logger.warning(f"Failed to send error notice for call {short_sid(record.call_sid)}: {exc}")

    # ------------------------------------------------------------------
    # Status updates
    # ------------------------------------------------------------------

    async def send_status_update(
        self,
        call_sid: str,
        chat_id: str,
        status: CallStatus | str,
        *,
        error_message: Optional[str] = None,
        duration: Optional[int] = None,
        ring_duration: Optional[int] = None,
        sensitive_dtmf: bool = False,
    ) -> bool:
        """
        Announce ``status`` for a call with annotations supplied by the caller.

        Returns False when the status gate suppresses it. Transport errors propagate.
        """
        label = status_label(status)
        if not self._status.decide(call_sid, label):
            return False
        await self._announce_status(
            call_sid,
            chat_id,
            label,
            error_message=error_message,
            duration=duration,
            ring_duration=ring_duration,
            sensitive_dtmf=sensitive_dtmf,
        )
        return True

    async def _handle_unknown(self, record: NotificationRecord) -> None:
        logger.warning(f"Unknown notification type: {record.notification_type}")
        await self._handle_status(record)

    async def _handle_status(self, record: NotificationRecord) -> None:
        label = status_for_notification(record.notification_type)
        if not self._status.decide(record.call_sid, label):
            return

        parsed = CallStatus.parse(label)
        error_message = record.error_message
        duration = record.duration
        ring_duration = record.ring_duration
        sensitive = False

        needs_call = (
            (parsed is CallStatus.COMPLETED and duration is None)
            or (parsed is CallStatus.FAILED and not error_message)
            or (parsed is CallStatus.NO_ANSWER and ring_duration is None)
        )
        call = await self._fetch_call_for_annotations(record.call_sid) if needs_call else None
        if call is not None:
            if parsed is CallStatus.COMPLETED:
                duration = call.duration
            elif parsed is CallStatus.FAILED:
                error_message = call.error_message
            elif parsed is CallStatus.NO_ANSWER:
                ring_duration = call.ring_duration

        if parsed is CallStatus.COMPLETED:
            sensitive = await self._has_sensitive_input(record.call_sid)

        await self._announce_status(
            record.call_sid,
            record.chat_id,
            label,
            error_message=error_message,
            duration=duration,
            ring_duration=ring_duration,
            sensitive_dtmf=sensitive,
        )

    async def _fetch_call_for_annotations(self, call_sid: str) -> CallSnapshot | None:
        # Annotations are optional; a store hiccup must not cost the status message.
        try:
            return await self._store.fetch_call(call_sid)
        except Exception as exc:
            logger.warning(f"Call lookup failed for {short_sid(call_sid)}, sending without annotations: {exc}")
            return None

    async def _has_sensitive_input(self, call_sid: str) -> bool:
        try:
            entries = await self._store.fetch_dtmf_entries(call_sid)
        except Exception as exc:
            logger.warning(f"Keypad lookup failed for {short_sid(call_sid)}: {exc}")
            return True
        return has_sensitive_dtmf(entries)

    async def _announce_status(
        self,
        call_sid: str,
        chat_id: str,
        label: str,
        *,
        error_message: Optional[str],
        duration: Optional[int],
        ring_duration: Optional[int],
        sensitive_dtmf: bool,
    ) -> None:
        elapsed = self._timing.record_and_get(
            call_sid,
            label,
            duration=duration,
            ring_duration=ring_duration,
        )

        follow_up = None
        if is_terminal(label):
            allow_transcript = not sensitive_dtmf and CallStatus.parse(label) is not CallStatus.NO_ANSWER
            follow_up = build_follow_up_actions(call_sid, label, allow_transcript=allow_transcript)
            if self._on_terminal is not None:
                self._on_terminal(call_sid)

        message = format_status_update(label, elapsed, error_message=error_message, follow_up=follow_up)

        try:
            await self._transport.send(chat_id, message.text, "HTML", message.follow_up)
        except Exception:
            await self._store.record_metric(f"call_{label}", False)
            raise
        await self._store.record_metric(f"call_{label}", True)
        logger.info(f"Sent status update: {label} for call {short_sid(call_sid)}")

    # ------------------------------------------------------------------
    # Transcript and keypad input
    # ------------------------------------------------------------------

    async def _send_fallback(self, chat_id: str, text: str) -> None:
        try:
            await self._transport.send(chat_id, text)
        except Exception as exc:
            logger.error(f"Failed to send fallback message: {exc}")

    async def _send_long(self, chat_id: str, text: str) -> None:
        if len(text) <= self._chunk_threshold:
            await self._transport.send(chat_id, text)
            return

        chunks = split_message(text, self._chunk_size)
        for idx, chunk in enumerate(chunks):
            await self._transport.send(chat_id, chunk)
            if idx < len(chunks) - 1:
                await asyncio.sleep(self._chunk_delay)

    async def _handle_transcript(self, record: NotificationRecord) -> None:
        try:
            call = await self._store.fetch_call(record.call_sid)
            transcripts = await self._store.fetch_transcripts(record.call_sid)
            if call is None or not transcripts:
                await self._transport.send(record.chat_id, NO_TRANSCRIPT_TEXT)
                return

            entries = await self._store.fetch_dtmf_entries(record.call_sid)
            text = format_transcript(
                record.call_sid,
                call,
                transcripts,
                format_dtmf_entries(entries, self._decrypt),
                max_messages=self._transcript_max_messages,
            )
            await self._send_long(record.chat_id, text)
        except Exception:
            await self._store.record_metric("call_transcript", False)
            await self._send_fallback(record.chat_id, TRANSCRIPT_FALLBACK_TEXT)
            raise
        await self._store.record_metric("call_transcript", True)

    async def _handle_input(self, record: NotificationRecord) -> None:
        try:
            entries = await self._store.fetch_dtmf_entries(record.call_sid)
            call = await self._store.fetch_call(record.call_sid)
            text = format_input_notification(call, format_dtmf_entries(entries, self._decrypt))
            await self._transport.send(record.chat_id, text)
        except Exception:
            await self._store.record_metric("call_input_dtmf", False)
            await self._send_fallback(record.chat_id, INPUT_FALLBACK_TEXT)
            raise
        await self._store.record_metric("call_input_dtmf", True)

    async def send_input_summary(self, call_sid: str, chat_id: str) -> None:
        """On-demand keypad input summary; not driven by a queue record."""
        try:
            inputs = await self._store.fetch_call_inputs(call_sid)
            call = await self._store.fetch_call(call_sid)
            entries = await self._store.fetch_dtmf_entries(call_sid)
            text = format_input_summary(call, inputs, format_dtmf_entries(entries, self._decrypt))
            await self._transport.send(chat_id, text)
        except Exception:
            await self._send_fallback(chat_id, INPUT_SUMMARY_FALLBACK_TEXT)
            raise

    # ------------------------------------------------------------------
    # Verification workflow
    # ------------------------------------------------------------------

    async def _input_details(self, call_sid: str) -> InputDetails | None:
        entries = await self._store.fetch_dtmf_entries(call_sid)
        details = input_details_from_dtmf(entries, self._decrypt)
        if details is None:
            details = input_details_from_inputs(await self._store.fetch_call_inputs(call_sid))
        return details

    async def _handle_step(self, record: NotificationRecord) -> None:
        state = await self._store.fetch_latest_call_state(record.call_sid, VERIFIED_STATE)
        call = await self._store.fetch_call(record.call_sid)
        if state is None or call is None:
            return

        notice = format_step_notification(
            call,
            state.data,
            is_retry=record.kind is NotificationType.CALL_STEP_RETRY,
        )
        follow_up = None
        if notice.needs_retry:
            follow_up = build_follow_up_actions(
                record.call_sid,
                "retry",
                allow_transcript=False,
                call_again_prompt=True,
                allow_resend=notice.allow_resend,
            )
        await self._transport.send(record.chat_id, notice.text, "HTML", follow_up)

    async def _handle_workflow_complete(self, record: NotificationRecord) -> None:
        call = await self._store.fetch_call(record.call_sid)
        if call is None:
            return

        details = await self._input_details(record.call_sid)
        follow_up = build_follow_up_actions(
            record.call_sid,
            CallStatus.COMPLETED.value,
            allow_transcript=True,
            call_again_prompt=True,
        )
        await self._transport.send(record.chat_id, format_workflow_complete(call, details), "HTML", follow_up)

    # ------------------------------------------------------------------
    # Outcome, answer detection, hints
    # ------------------------------------------------------------------

    async def _handle_outcome_summary(self, record: NotificationRecord) -> None:
        call = await self._store.fetch_call(record.call_sid)
        if call is None:
            return

        details = await self._input_details(record.call_sid)
        outcome = normalize_outcome(call)
        collect_input = call.call_type == COLLECT_INPUT_CALL_TYPE

        input_preview = None
        if collect_input and outcome == "ANSWERED_WITH_INPUT" and details is None:
            input_preview = call.latest_input_preview or latest_input_preview(
                await self._store.fetch_dtmf_entries(record.call_sid),
                self._decrypt,
            )

        transcript_text = None
        if not collect_input and outcome in ANSWERED_OUTCOMES:
            transcripts = [] if call.call_summary else await self._store.fetch_transcripts(record.call_sid)
            transcript_text = transcript_preview(call, transcripts)

        text = format_outcome_summary(
            call,
            details,
            input_preview=input_preview,
            transcript_text=transcript_text,
        )
        await self._transport.send(record.chat_id, text)
        await self._store.mark_outcome_notified(
            record.call_sid,
            call.status or call.twilio_status or CallStatus.COMPLETED.value,
        )

    async def _handle_amd_update(self, record: NotificationRecord) -> None:
        call = await self._store.fetch_call(record.call_sid)
        text = format_amd_update(call) if call is not None else None
        if text is None:
            return
        await self._transport.send(record.chat_id, text)

    async def _handle_hint(self, record: NotificationRecord) -> None:
        call = await self._store.fetch_call(record.call_sid)
        text = format_hint(record.notification_type, call)
        if text is None:
            logger.warning(f"Unknown call hint type requested: {record.notification_type}")
            return
        await self._transport.send(record.chat_id, text)
