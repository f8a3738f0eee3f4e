# callrelay/infra/pg_notification_store_async.py
"""
Async PostgreSQL notification store (asyncpg).

Reads the call records written by the voice pipeline and drains its
notification queue. The schema belongs to the pipeline; the columns used
here are:

    call_notifications  id, call_sid, notification_type, telegram_chat_id,
                        status ('pending'|'sent'|'failed'), error_message,
                        created_at, sent_at
    calls               call_sid, phone_number, status, twilio_status, call_type,
                        duration, ring_duration, started_at, error_message,
                        final_outcome, answered_by, amd_status, amd_confidence,
                        call_summary, latest_input_preview, business_function,
                        business_context, metadata_json, outcome_notified_at
    call_transcripts    call_sid, speaker, message, clean_message, raw_message, timestamp
    dtmf_entries        id, call_sid, stage_key, encrypted_digits, masked_digits,
                        metadata, received_at, compliance_mode, provider
    call_inputs         call_sid, step, value
    call_states         call_sid, state, data, created_at
    notification_metrics  notification_type, success, created_at
"""
from __future__ import annotations

from typing import Optional

from callrelay.core.domain import (
    AckOutcome,
    CallInput,
    CallSnapshot,
    CallStateSnapshot,
    DtmfEntry,
    NotificationRecord,
    TranscriptEntry,
)
from callrelay.core.payloads import parse_json_object
from callrelay.infra.db_async import is_pool_ready
from callrelay.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from callrelay.infra.logging_config import get_logger
from callrelay.infra.metrics import inc_counter

logger = get_logger(__name__)


def _optional_int(value) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-integer duration value {value!r}")
        return None


def _row_to_notification(row) -> NotificationRecord:
    """Convert an asyncpg Record to a NotificationRecord."""
    return NotificationRecord(
        id=str(row["id"]),
        call_sid=row["call_sid"],
        notification_type=row["notification_type"],
        chat_id=str(row["telegram_chat_id"]) if row["telegram_chat_id"] is not None else "",
        phone_number=row.get("phone_number"),
        error_message=row.get("error_message"),
        ring_duration=_optional_int(row.get("ring_duration")),
        duration=_optional_int(row.get("duration")),
        created_at=row.get("created_at"),
    )


def _row_to_call(row) -> CallSnapshot:
    """Convert an asyncpg Record to a CallSnapshot. Malformed JSON columns become empty dicts."""
    confidence = row.get("amd_confidence")
    return CallSnapshot(
        call_sid=row["call_sid"],
        phone_number=row.get("phone_number"),
        status=row.get("status"),
        twilio_status=row.get("twilio_status"),
        call_type=row.get("call_type"),
        duration=_optional_int(row.get("duration")),
        ring_duration=_optional_int(row.get("ring_duration")),
        started_at=row.get("started_at"),
        error_message=row.get("error_message"),
        final_outcome=row.get("final_outcome"),
        answered_by=row.get("answered_by"),
        amd_status=row.get("amd_status"),
        amd_confidence=float(confidence) if confidence is not None else None,
        call_summary=row.get("call_summary"),
        latest_input_preview=row.get("latest_input_preview"),
        business_function=row.get("business_function"),
        business_context=parse_json_object(row.get("business_context"), what="business context"),
        metadata=parse_json_object(row.get("metadata_json"), what="call metadata"),
    )


def _row_to_transcript(row) -> TranscriptEntry:
    return TranscriptEntry(
        speaker=row["speaker"],
        message=row.get("message") or "",
        clean_message=row.get("clean_message"),
        raw_message=row.get("raw_message"),
        timestamp=row.get("timestamp"),
    )


def _row_to_dtmf(row) -> DtmfEntry:
    return DtmfEntry(
        id=str(row["id"]),
        call_sid=row["call_sid"],
        stage_key=row.get("stage_key") or "generic",
        encrypted_digits=row.get("encrypted_digits"),
        masked_digits=row.get("masked_digits"),
        metadata=parse_json_object(row.get("metadata"), what="DTMF metadata", keep_raw=True),
        received_at=row.get("received_at"),
        compliance_mode=row.get("compliance_mode"),
        provider=row.get("provider"),
    )


class AsyncPostgresNotificationStore:
    """Notification queue and call data backed by the voice pipeline's tables."""

    def is_ready(self) -> bool:
        return is_pool_ready()

    @retry_on_transient_error()
    async def fetch_pending_notifications(self, limit: int) -> list[NotificationRecord]:
        """
        Oldest pending notifications, joined with the call fields used for annotations.
        """
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT n.id, n.call_sid, n.notification_type, n.telegram_chat_id, n.created_at,
                       c.phone_number, c.error_message, c.ring_duration, c.duration
                FROM call_notifications n
                LEFT JOIN calls c ON c.call_sid = n.call_sid
                WHERE n.status = 'pending'
                ORDER BY n.created_at, n.id
                LIMIT $1
                """,
                limit,
            )
            return [_row_to_notification(row) for row in rows]

    async def acknowledge(
        self,
        notification_id: str,
        outcome: AckOutcome,
        error_detail: Optional[str] = None,
    ) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE call_notifications
                SET status = $2,
                    error_message = $3,
                    sent_at = CASE WHEN $2 = 'sent' THEN now() ELSE sent_at END
                WHERE id::text = $1
                """,
                notification_id,
                outcome.value,
                error_detail,
            )
        inc_counter("notification_acks_total", outcome=outcome.value)

    @retry_on_transient_error()
    async def fetch_call(self, call_sid: str) -> Optional[CallSnapshot]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM calls WHERE call_sid = $1", call_sid)
            return _row_to_call(row) if row else None

    @retry_on_transient_error()
    async def fetch_transcripts(self, call_sid: str) -> list[TranscriptEntry]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT speaker, message, clean_message, raw_message, timestamp
                FROM call_transcripts
                WHERE call_sid = $1
                ORDER BY timestamp, id
                """,
                call_sid,
            )
            return [_row_to_transcript(row) for row in rows]

    @retry_on_transient_error()
    async def fetch_dtmf_entries(self, call_sid: str) -> list[DtmfEntry]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM dtmf_entries WHERE call_sid = $1 ORDER BY received_at, id",
                call_sid,
            )
            return [_row_to_dtmf(row) for row in rows]

    @retry_on_transient_error()
    async def fetch_call_inputs(self, call_sid: str) -> list[CallInput]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT step, value FROM call_inputs WHERE call_sid = $1 ORDER BY step",
                call_sid,
            )
            return [CallInput(step=int(row["step"]), value=row["value"] or "") for row in rows]

    @retry_on_transient_error()
    async def fetch_latest_call_state(self, call_sid: str, state: str) -> Optional[CallStateSnapshot]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                SELECT state, data, created_at
                FROM call_states
                WHERE call_sid = $1 AND state = $2
                ORDER BY created_at DESC
                LIMIT 1
                """,
                call_sid,
                state,
            )
            if not row:
                return None
            return CallStateSnapshot(
                state=row["state"],
                data=parse_json_object(row["data"], what="call state payload"),
                created_at=row["created_at"],
            )

    async def mark_outcome_notified(self, call_sid: str, status: str) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE calls
                SET status = $2, outcome_notified_at = now()
                WHERE call_sid = $1
                """,
                call_sid,
                status,
            )

    async def record_metric(self, name: str, success: bool) -> None:
        """Best effort; failures are logged and dropped."""
        try:
            async with safe_db_conn() as conn:
                await conn.execute(
                    "INSERT INTO notification_metrics (notification_type, success, created_at) "
                    "VALUES ($1, $2, now())",
                    name,
                    success,
                )
        except Exception as exc:
            logger.warning(f"Failed to record notification metric {name}: {exc}")
            inc_counter("notification_metric_write_errors")


# Global singleton
_store: AsyncPostgresNotificationStore | None = None


def get_notification_store() -> AsyncPostgresNotificationStore:
    """Get the global notification store instance."""
    global _store
    if _store is None:
        _store = AsyncPostgresNotificationStore()
    return _store
