# callrelay/core/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


# ============================================================================
# CALL STATUS
# ============================================================================

class CallStatus(str, Enum):
    """Telephony call status labels as reported by the voice provider."""
    QUEUED = "queued"
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    ANSWERED = "answered"
    COMPLETED = "completed"
    BUSY = "busy"
    NO_ANSWER = "no-answer"
    FAILED = "failed"
    CANCELED = "canceled"

    @classmethod
    def parse(cls, label: str | None) -> Optional["CallStatus"]:
        """Normalize a provider label (``No_Answer``, ``in_progress``...) to a member."""
        if not label:
            return None
        normalized = str(label).strip().lower().replace("_", "-")
        try:
            return cls(normalized)
        except ValueError:
            return None


# Linear progression. Later index == later in the call lifecycle.
STATUS_PROGRESSION: tuple[CallStatus, ...] = (
    CallStatus.QUEUED,
    CallStatus.INITIATED,
    CallStatus.RINGING,
    CallStatus.IN_PROGRESS,
    CallStatus.ANSWERED,
    CallStatus.COMPLETED,
)

# Reachable from any state, never blocked by the ordering check.
TERMINAL_FAILURE_STATUSES: frozenset[CallStatus] = frozenset({
    CallStatus.BUSY,
    CallStatus.NO_ANSWER,
    CallStatus.FAILED,
    CallStatus.CANCELED,
})

TERMINAL_STATUSES: frozenset[CallStatus] = TERMINAL_FAILURE_STATUSES | {CallStatus.COMPLETED}


def status_label(status: CallStatus | str) -> str:
    """Canonical string label for a status (members and free-form labels alike)."""
    if isinstance(status, CallStatus):
        return status.value
    parsed = CallStatus.parse(status)
    return parsed.value if parsed else str(status).strip().lower()


def is_terminal(status: CallStatus | str) -> bool:
    return CallStatus.parse(status_label(status)) in TERMINAL_STATUSES


# ============================================================================
# NOTIFICATIONS
# ============================================================================

class NotificationType(str, Enum):
    """Notification tags written by the voice pipeline into the queue."""
    CALL_INITIATED = "call_initiated"
    CALL_QUEUED = "call_queued"
    CALL_RINGING = "call_ringing"
    CALL_ANSWERED = "call_answered"
    CALL_IN_PROGRESS = "call_in_progress"
    CALL_COMPLETED = "call_completed"
    CALL_FAILED = "call_failed"
    CALL_BUSY = "call_busy"
    CALL_NO_ANSWER = "call_no_answer"
    CALL_NO_ANSWER_ALT = "call_no-answer"
    CALL_CANCELED = "call_canceled"
    CALL_STEP_COMPLETE = "call_step_complete"
    CALL_STEP_RETRY = "call_step_retry"
    CALL_WORKFLOW_COMPLETE = "call_workflow_complete"
    CALL_INPUT_DTMF = "call_input_dtmf"
    CALL_DTMF_CAPTURED = "call_dtmf_captured"
    CALL_AMD_UPDATE = "call_amd_update"
    CALL_OUTCOME_SUMMARY = "call_outcome_summary"
    CALL_TRANSCRIPT = "call_transcript"
    CALL_HINT_CALLER_LISTENING = "call_hint_caller_listening"
    CALL_HINT_MACHINE_DETECTED = "call_hint_machine_detected"
    CALL_HINT_INPUT_DETECTED = "call_hint_input_detected"

    @classmethod
    def parse(cls, raw: str | None) -> Optional["NotificationType"]:
        if not raw:
            return None
        try:
            return cls(raw)
        except ValueError:
            return None


NOTIFICATION_TYPE_PREFIX = "call_"

# Status-update notifications and the status each one asserts.
NOTIFICATION_STATUS_MAP: dict[NotificationType, CallStatus] = {
    NotificationType.CALL_INITIATED: CallStatus.INITIATED,
    NotificationType.CALL_QUEUED: CallStatus.INITIATED,
    NotificationType.CALL_RINGING: CallStatus.RINGING,
    NotificationType.CALL_ANSWERED: CallStatus.ANSWERED,
    NotificationType.CALL_IN_PROGRESS: CallStatus.ANSWERED,
    NotificationType.CALL_COMPLETED: CallStatus.COMPLETED,
    NotificationType.CALL_FAILED: CallStatus.FAILED,
    NotificationType.CALL_BUSY: CallStatus.BUSY,
    NotificationType.CALL_NO_ANSWER: CallStatus.NO_ANSWER,
    NotificationType.CALL_NO_ANSWER_ALT: CallStatus.NO_ANSWER,
    NotificationType.CALL_CANCELED: CallStatus.CANCELED,
}


def status_for_notification(raw_type: str) -> str:
    """
    Status label a notification type asserts.

    Known types use the fixed table; anything else falls back to the tag with
    its ``call_`` prefix removed (``call_voicemail`` -> ``voicemail``).
    """
    kind = NotificationType.parse(raw_type)
    if kind in NOTIFICATION_STATUS_MAP:
        return NOTIFICATION_STATUS_MAP[kind].value
    label = raw_type or ""
    if label.startswith(NOTIFICATION_TYPE_PREFIX):
        label = label[len(NOTIFICATION_TYPE_PREFIX):]
    return status_label(label) if label else "unknown"


class AckOutcome(str, Enum):
    """Terminal outcome reported back to the notification queue."""
    SENT = "sent"
    FAILED = "failed"


@dataclass
class NotificationRecord:
    """One pending row from the notification queue."""
    id: str
    call_sid: str
    notification_type: str
    chat_id: str
    phone_number: Optional[str] = None
    error_message: Optional[str] = None
    ring_duration: Optional[int] = None
    duration: Optional[int] = None
    created_at: Optional[datetime] = None

    @property
    def kind(self) -> Optional[NotificationType]:
        return NotificationType.parse(self.notification_type)


# ============================================================================
# CALL DATA (read-only snapshots from the store)
# ============================================================================

@dataclass
class CallSnapshot:
    call_sid: str
    phone_number: Optional[str] = None
    status: Optional[str] = None
    twilio_status: Optional[str] = None
    call_type: Optional[str] = None
    duration: Optional[int] = None
    ring_duration: Optional[int] = None
    started_at: Optional[datetime] = None
    error_message: Optional[str] = None
    final_outcome: Optional[str] = None
    answered_by: Optional[str] = None
    amd_status: Optional[str] = None
    amd_confidence: Optional[float] = None
    call_summary: Optional[str] = None
    latest_input_preview: Optional[str] = None
    business_function: Optional[str] = None
    business_context: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def answered_signal(self) -> Optional[str]:
        return self.amd_status or self.answered_by


@dataclass
class TranscriptEntry:
    speaker: str
    message: str = ""
    clean_message: Optional[str] = None
    raw_message: Optional[str] = None
    timestamp: Optional[datetime] = None

    @property
    def text(self) -> str:
        return self.clean_message or self.message or self.raw_message or ""


@dataclass
class DtmfEntry:
    id: str
    call_sid: str
    stage_key: str = "generic"
    encrypted_digits: Optional[str] = None
    masked_digits: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    received_at: Optional[datetime] = None
    compliance_mode: Optional[str] = None
    provider: Optional[str] = None


@dataclass
class CallInput:
    step: int
    value: str


@dataclass
class CallStateSnapshot:
    state: str
    data: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
