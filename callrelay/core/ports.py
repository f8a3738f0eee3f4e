# callrelay/core/ports.py
from __future__ import annotations
from typing import Protocol, Optional

from callrelay.core.domain import (
    AckOutcome,
    CallInput,
    CallSnapshot,
    CallStateSnapshot,
    DtmfEntry,
    NotificationRecord,
    TranscriptEntry,
)
from callrelay.core.follow_up import FollowUpActions


class AsyncCallNotificationStore(Protocol):
    """Store owned by the voice pipeline: notification queue plus call records."""

    def is_ready(self) -> bool: ...

    async def fetch_pending_notifications(self, limit: int) -> list[NotificationRecord]: ...

    async def acknowledge(
        self,
        notification_id: str,
        outcome: AckOutcome,
        error_detail: Optional[str] = None,
    ) -> None: ...

    async def fetch_call(self, call_sid: str) -> Optional[CallSnapshot]: ...

    async def fetch_transcripts(self, call_sid: str) -> list[TranscriptEntry]: ...

    async def fetch_dtmf_entries(self, call_sid: str) -> list[DtmfEntry]: ...

    async def fetch_call_inputs(self, call_sid: str) -> list[CallInput]: ...

    async def fetch_latest_call_state(self, call_sid: str, state: str) -> Optional[CallStateSnapshot]: ...

    async def mark_outcome_notified(self, call_sid: str, status: str) -> None: ...

    async def record_metric(self, name: str, success: bool) -> None:
        """Best effort: implementations must not raise."""
        ...


class MessageTransport(Protocol):
    """Outbound operator channel."""

    async def send(
        self,
        chat_id: str,
        text: str,
        parse_mode: Optional[str] = "HTML",
        follow_up: Optional[FollowUpActions] = None,
    ) -> dict:
        """Deliver one message. Raises on any non-success response."""
        ...

    async def get_me(self) -> dict:
        """Lightweight round-trip used by the health probe."""
        ...


class DigitsDecryptor(Protocol):
    def decrypt_digits(self, token: Optional[str]) -> Optional[str]:
        """Plain digits, or None when the token is empty or cannot be decrypted."""
        ...
