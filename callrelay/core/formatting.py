# callrelay/core/formatting.py
"""
Message builders for operator notifications.

Every builder is a pure function of already-fetched call data and returns
plain text (or a ``FormattedMessage`` when follow-up actions are attached).
HTML escaping happens later, in the transport, so builders never escape.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Sequence

from callrelay.core.domain import (
    CallInput,
    CallSnapshot,
    CallStatus,
    DtmfEntry,
    TranscriptEntry,
)
from callrelay.core.follow_up import FollowUpActions
from callrelay.core.payloads import parse_json_object
from callrelay.core.timing import DURATION_NOISE_THRESHOLD, ElapsedTimes

Decrypt = Callable[[Optional[str]], Optional[str]]

DEFAULT_PERSONA_LABEL = "Keypad Alert"
QUICK_ACTIONS_FOOTER = "⚡ Quick actions:"

# Ring-setup delays at or below this are not worth showing.
RING_SETUP_THRESHOLD = 2
BUSY_THRESHOLD = 1

HUMAN_AMD_VALUES = frozenset({"human", "person", "live", "positive_human"})
MACHINE_AMD_VALUES = frozenset({
    "machine",
    "machine_start",
    "fax",
    "positive_machine",
    "unknown_machine",
    "answering_machine",
    "automated",
})

# Stage keys containing any of these carry secrets; transcripts are not offered for them.
SENSITIVE_STAGE_KEYWORDS = ("pin", "otp", "cvv", "card", "ssn", "password", "passcode", "security_code")

RETRY_VERIFICATION_RESULTS = frozenset({"mismatch", "length_mismatch", "value_mismatch"})

COLLECT_INPUT_CALL_TYPE = "collect_input"
ANSWERED_OUTCOMES = frozenset({
    "ANSWERED_WITH_INPUT",
    "ANSWERED_NO_INPUT_HUMAN",
    "ANSWERED_NO_INPUT_MACHINE",
})

STATUS_EMOJIS: dict[str, str] = {
    "completed": "✅",
    "failed": "❌",
    "busy": "📵",
    "no-answer": "❌",
    "canceled": "🚫",
    "answered": "📞",
    "ringing": "🔔",
    "initiated": "📞",
}

TRANSCRIPT_PREVIEW_SUMMARY_LENGTH = 200
TRANSCRIPT_PREVIEW_LENGTH = 220
TRANSCRIPT_PREVIEW_ENTRIES = 4


@dataclass
class FormattedMessage:
    text: str
    follow_up: Optional[FollowUpActions] = None


@dataclass
class FormattedDtmfEntry:
    id: str
    stage_key: str
    label: str
    digits: Optional[str]
    raw_digits: Optional[str]
    masked_digits: Optional[str]
    received_at: Optional[datetime]
    provider: Optional[str]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class InputDetails:
    text: str
    multiline: bool


@dataclass(frozen=True)
class HintDefinition:
    emoji: str
    title: str
    detail: str


HINT_DEFINITIONS: dict[str, HintDefinition] = {
    "call_hint_caller_listening": HintDefinition(
        "👂",
        "Caller is listening",
        "Human detected. Share live instructions or pause the bot if needed.",
    ),
    "call_hint_machine_detected": HintDefinition(
        "🤖",
        "Machine detected",
        "AMD indicates a machine. Consider switching to voicemail or ending the call early.",
    ),
    "call_hint_input_detected": HintDefinition(
        "🔢",
        "Digits detected",
        "Caller started entering digits. Watch the keypad capture stream.",
    ),
}


# ============================================================================
# SMALL HELPERS
# ============================================================================

def join_lines(lines: Iterable[Optional[str]]) -> str:
    return "\n".join(line for line in lines if line is not None)


def status_emoji(status: Optional[str]) -> str:
    return STATUS_EMOJIS.get((status or "").lower(), "📱")


def mask_phone_number(phone: Optional[str]) -> str:
    """Keep the first 2 and last 4 characters: ``+1•••••4567``."""
    if not phone:
        return "Unknown"
    trimmed = str(phone).strip()
    if len(trimmed) <= 6:
        return trimmed
    prefix, suffix = trimmed[:2], trimmed[-4:]
    mask_length = max(1, len(trimmed) - len(prefix) - len(suffix))
    return f"{prefix}{'•' * mask_length}{suffix}"


def _seconds(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def format_duration_short(seconds: Any) -> str:
    """``0s``, ``45s``, ``2m 05s``."""
    total = _seconds(seconds)
    if total <= 0:
        return "0s"
    minutes, secs = divmod(total, 60)
    if minutes == 0:
        return f"{secs}s"
    return f"{minutes}m {secs:02d}s"


def format_clock(seconds: int) -> str:
    """``m:ss``."""
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}:{secs:02d}"


def format_time_of_day(value: Any) -> Optional[str]:
    if isinstance(value, datetime):
        return value.strftime("%H:%M:%S")
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value).strftime("%H:%M:%S")
        except ValueError:
            return None
    return None


def format_answered_label(value: Optional[str]) -> str:
    """Collapse answering-machine-detection values into ``human``/``machine``."""
    if not value:
        return "unknown"
    normalized = str(value).strip().lower()
    if normalized in HUMAN_AMD_VALUES:
        return "human"
    if normalized in MACHINE_AMD_VALUES:
        return "machine"
    return normalized.replace("_", " ") or "unknown"


def normalize_stage(stage_key: Optional[str]) -> str:
    return re.sub(r"[^a-z0-9]+", "_", str(stage_key or "").strip().lower()).strip("_")


def is_sensitive_stage(stage_key: Optional[str]) -> bool:
    normalized = normalize_stage(stage_key)
    return bool(normalized) and any(keyword in normalized for keyword in SENSITIVE_STAGE_KEYWORDS)


def has_sensitive_dtmf(entries: Sequence[DtmfEntry]) -> bool:
    return any(is_sensitive_stage(entry.stage_key) for entry in entries)


def _input_sequence(metadata: dict[str, Any]) -> list[dict[str, Any]]:
    sequence = metadata.get("input_sequence")
    if not isinstance(sequence, list):
        return []
    return [item for item in sequence if isinstance(item, dict)]


def stage_label_from_metadata(metadata: dict[str, Any], stage_key: Optional[str]) -> Optional[str]:
    if not stage_key:
        return None
    normalized = normalize_stage(stage_key)
    for entry in _input_sequence(metadata):
        candidate = entry.get("stage") or entry.get("stage_key") or entry.get("label") or ""
        if normalize_stage(candidate) == normalized:
            return entry.get("label") or entry.get("name") or normalized.replace("_", " ")
    return normalized.replace("_", " ")


def persona_label(call: Optional[CallSnapshot]) -> str:
    if call is None:
        return DEFAULT_PERSONA_LABEL
    context = call.business_context or {}
    persona = context.get("persona") if isinstance(context.get("persona"), dict) else {}
    return (
        persona.get("businessDisplayName")
        or context.get("businessDisplayName")
        or context.get("companyName")
        or call.business_function
        or DEFAULT_PERSONA_LABEL
    )


def fallback_input_label(call: Optional[CallSnapshot]) -> str:
    sequence = _input_sequence(call.metadata if call else {})
    if sequence:
        return sequence[0].get("label") or sequence[0].get("stage") or "Input"
    return "Input"


# ============================================================================
# KEYPAD (DTMF) ENTRIES
# ============================================================================

def _decrypt(decrypt: Optional[Decrypt], token: Optional[str]) -> Optional[str]:
    if decrypt is None or not token:
        return None
    return decrypt(token)


def format_dtmf_entries(entries: Sequence[DtmfEntry], decrypt: Optional[Decrypt] = None) -> list[FormattedDtmfEntry]:
    """Resolve label and display digits for each captured entry."""
    formatted = []
    for entry in entries:
        stage_key = normalize_stage(entry.stage_key or "generic") or "generic"
        metadata = parse_json_object(entry.metadata, what="DTMF metadata", keep_raw=True)
        preview = metadata.get("raw_digits_preview")
        raw_digits = _decrypt(decrypt, entry.encrypted_digits) or preview or None
        formatted.append(FormattedDtmfEntry(
            id=entry.id,
            stage_key=stage_key,
            label=metadata.get("stage_label") or stage_key or "Entry",
            digits=raw_digits or entry.masked_digits,
            raw_digits=raw_digits,
            masked_digits=entry.masked_digits,
            received_at=entry.received_at,
            provider=entry.provider,
            metadata=metadata,
        ))
    return formatted


def dtmf_summary_lines(entries: Sequence[FormattedDtmfEntry]) -> tuple[list[str], bool]:
    """Return (``label: digits`` lines, whether any raw digits are shown)."""
    lines = [f"{entry.label}: {entry.digits}" for entry in entries if entry.digits]
    contains_raw = any(entry.raw_digits for entry in entries)
    return lines, contains_raw


def input_details_from_dtmf(entries: Sequence[DtmfEntry], decrypt: Optional[Decrypt] = None) -> Optional[InputDetails]:
    lines = []
    for entry in entries:
        metadata = parse_json_object(entry.metadata, what="DTMF metadata", keep_raw=True)
        label = metadata.get("stage_label") or entry.stage_key or "Entry"
        digits = _decrypt(decrypt, entry.encrypted_digits) or metadata.get("raw_digits_preview") or entry.masked_digits
        if digits:
            lines.append(f"{label}: {digits}")
    return _details(lines)


def input_details_from_inputs(inputs: Sequence[CallInput]) -> Optional[InputDetails]:
    return _details([f"Step {item.step}: {item.value}" for item in inputs if item.value])


def _details(lines: list[str]) -> Optional[InputDetails]:
    if not lines:
        return None
    return InputDetails(text="\n".join(lines), multiline=len(lines) > 1)


def latest_input_preview(entries: Sequence[DtmfEntry], decrypt: Optional[Decrypt] = None) -> Optional[str]:
    if not entries:
        return None
    latest = entries[-1]
    metadata = parse_json_object(latest.metadata, what="DTMF metadata", keep_raw=True)
    return (
        _decrypt(decrypt, latest.encrypted_digits)
        or metadata.get("raw_digits_preview")
        or latest.masked_digits
        or None
    )


def transcript_preview(call: Optional[CallSnapshot], transcripts: Sequence[TranscriptEntry]) -> Optional[str]:
    if call is not None and call.call_summary:
        return call.call_summary[:TRANSCRIPT_PREVIEW_SUMMARY_LENGTH]
    if not transcripts:
        return None
    texts = [entry.text for entry in transcripts[:TRANSCRIPT_PREVIEW_ENTRIES] if entry.text]
    return " ".join(texts).strip()[:TRANSCRIPT_PREVIEW_LENGTH]


# ============================================================================
# STATUS UPDATES
# ============================================================================

def format_status_update(
    status: str,
    elapsed: ElapsedTimes,
    *,
    error_message: Optional[str] = None,
    follow_up: Optional[FollowUpActions] = None,
) -> FormattedMessage:
    """
    Build the one-line status message.

    Annotations come from ``elapsed``; a missing value just drops the
    parenthesised part. When ``follow_up`` is given the quick-actions footer
    is appended.
    """
    parsed = CallStatus.parse(status)

    if parsed in (CallStatus.QUEUED, CallStatus.INITIATED):
        text = "📞 Initiating call..."
    elif parsed is CallStatus.RINGING:
        text = "🔔 Ringing..."
        if elapsed.ring_setup is not None and elapsed.ring_setup > RING_SETUP_THRESHOLD:
            text += f" ({elapsed.ring_setup}s)"
    elif parsed in (CallStatus.IN_PROGRESS, CallStatus.ANSWERED):
        text = "☎️ In progress"
        if elapsed.ring is not None:
            text += f" (rang {elapsed.ring}s)"
    elif parsed is CallStatus.COMPLETED:
        text = "🏁 Call completed"
        if elapsed.duration is not None and elapsed.duration > DURATION_NOISE_THRESHOLD:
            marker = "~" if elapsed.duration_estimated else ""
            text += f" ({marker}{format_clock(elapsed.duration)})"
    elif parsed is CallStatus.BUSY:
        text = "📵 Line busy"
        if elapsed.before_busy is not None and elapsed.before_busy > BUSY_THRESHOLD:
            text += f" ({elapsed.before_busy}s)"
    elif parsed is CallStatus.NO_ANSWER:
        text = "❌ No answer. The call attempt was completed with no response."
        if elapsed.ring:
            text += f" (rang {elapsed.ring}s)"
    elif parsed is CallStatus.FAILED:
        text = "❌ Call failed"
        if error_message:
            text += f" ({error_message})"
    elif parsed is CallStatus.CANCELED:
        text = "🚫 Call canceled"
    else:
        text = f"📱 Call {status}"

    if follow_up is not None:
        text += f"\n\n{QUICK_ACTIONS_FOOTER}"
    return FormattedMessage(text=text, follow_up=follow_up)


# ============================================================================
# TRANSCRIPTS AND INPUT
# ============================================================================

NO_TRANSCRIPT_TEXT = "📋 No transcript available for this call"


def format_transcript(
    call_sid: str,
    call: CallSnapshot,
    transcripts: Sequence[TranscriptEntry],
    dtmf_entries: Sequence[FormattedDtmfEntry],
    *,
    max_messages: int = 12,
) -> str:
    lines: list[str] = ["📋 Call Transcript", "", f"Phone: {call.phone_number or 'Unknown'}"]

    if call.duration and call.duration > 0:
        lines.append(f"Duration: {format_clock(call.duration)}")
    started = format_time_of_day(call.started_at)
    if started:
        lines.append(f"Time: {started}")
    lines.append(f"Messages: {len(transcripts)}")
    if call.status:
        lines.append(f"Status: {status_emoji(call.status)} {call.status}")

    if dtmf_entries:
        summary, contains_raw = dtmf_summary_lines(dtmf_entries)
        latest = dtmf_entries[-1]
        source = str(latest.metadata.get("source") or latest.provider or "unknown").upper()

        lines.extend(["", "Keypad Entries:"])
        lines.extend(f"• {line}" for line in summary)

        notes = [f"Entries captured: {len(dtmf_entries)}"]
        updated = format_time_of_day(latest.received_at)
        if updated:
            notes.append(f"Last updated {updated}")
        notes.append(f"Source: {source}")
        lines.append(" • ".join(notes))
        lines.append(
            "🚧 Dev compliance mode: raw digits displayed."
            if contains_raw
            else "Digits masked per active compliance policy."
        )

    lines.extend(["", "Conversation:"])
    for entry in transcripts[:max_messages]:
        speaker = "👤 Customer" if entry.speaker == "user" else "🤖 AI"
        stamp = format_time_of_day(entry.timestamp)
        lines.append(f"{speaker} ({stamp}):" if stamp else f"{speaker}:")
        body = "\n".join(part.strip() for part in entry.text.split("\n") if part.strip())
        if body:
            lines.append(body)

    if len(transcripts) > max_messages:
        lines.append(f"… and {len(transcripts) - max_messages} more messages")
        lines.append(f"Use /transcript {call_sid} for full details.")

    if call.call_summary:
        lines.extend(["", "Summary:", call.call_summary])

    return join_lines(lines)


def format_input_notification(call: Optional[CallSnapshot], entries: Sequence[FormattedDtmfEntry]) -> str:
    lines = [f"⚠️ {persona_label(call)}:"]
    if not entries:
        lines.append(f"{fallback_input_label(call)}: No input entered")
    for entry in entries:
        digits = entry.raw_digits or entry.digits or entry.masked_digits or "No input entered"
        lines.append(f"{entry.label or entry.stage_key or 'Input'}: {digits}")
    return join_lines(lines)


NO_INPUTS_TEXT = "🔢 No keypad inputs were collected for this call."


def format_input_summary(
    call: Optional[CallSnapshot],
    inputs: Sequence[CallInput],
    dtmf_entries: Sequence[FormattedDtmfEntry],
) -> str:
    if not inputs and not dtmf_entries:
        return NO_INPUTS_TEXT

    sequence = _input_sequence(call.metadata if call else {})
    lines = ["📥 Call Input Summary", ""]

    if inputs:
        for item in inputs:
            step_config = sequence[item.step - 1] if 0 < item.step <= len(sequence) else {}
            lines.append(f"{step_config.get('label') or f'Step {item.step}'}: {item.value}")
    else:
        summary, _ = dtmf_summary_lines(dtmf_entries)
        lines.extend(summary or ["No keypad digits recorded."])

    return join_lines(lines)


# ============================================================================
# VERIFICATION WORKFLOW
# ============================================================================

@dataclass
class StepNotice:
    """Rendered step notification plus the flags the caller needs for follow-up actions."""
    text: str
    needs_retry: bool
    allow_resend: bool


def _mentions_code(label: str) -> bool:
    lowered = label.lower()
    return "otp" in lowered or "code" in lowered


def format_step_notification(call: CallSnapshot, state_data: dict[str, Any], *, is_retry: bool = False) -> StepNotice:
    metadata = call.metadata or {}
    stage_key = state_data.get("stage_key") or state_data.get("stageKey")
    stage_label = (
        state_data.get("stage_label")
        or stage_label_from_metadata(metadata, stage_key)
        or "Verification"
    )
    digits = state_data.get("digits_preview") or state_data.get("digits") or "None"
    attempts = state_data.get("attempts") or 1
    needs_retry = (
        is_retry
        or bool(state_data.get("needs_retry"))
        or state_data.get("verification") in RETRY_VERIFICATION_RESULTS
    )
    next_stage_key = state_data.get("next_stage_key")
    next_stage_label = stage_label_from_metadata(metadata, next_stage_key) if next_stage_key else None

    header_emoji = "🔁" if needs_retry else "✅"
    lines = [f"{header_emoji} {persona_label(call)}: {stage_label}"]

    if needs_retry:
        if _mentions_code(stage_label):
            lines.append("Agent asked to resend the code and wait for a fresh entry.")
        else:
            lines.append("Agent requested the caller to re-enter this field.")
        lines.append(f"Latest entry: {digits}")
    else:
        lines.append(f"{stage_label}: {digits}")
    lines.append(f"Attempts: {attempts}")

    if not needs_retry and next_stage_label:
        lines.extend(["", f"Next: {next_stage_label}"])
    elif state_data.get("workflow_completed"):
        lines.extend(["", "All verification steps are complete."])

    return StepNotice(text=join_lines(lines), needs_retry=needs_retry, allow_resend=_mentions_code(stage_label))


def format_workflow_complete(call: CallSnapshot, details: Optional[InputDetails]) -> str:
    lines = [
        f"🎯 {persona_label(call)}: Verification complete",
        "Every requested field was collected successfully.",
    ]
    if details is not None:
        lines.extend(["", details.text])
    return join_lines(lines)


# ============================================================================
# OUTCOME, AMD AND HINTS
# ============================================================================

def _failure_outcome_lines(outcome: str, masked: str, call: CallSnapshot, duration: str) -> list[str]:
    if outcome == "NO_ANSWER":
        return ["❌ No answer", f"To: {masked}", "Attempts: 1"]
    if outcome == "BUSY":
        return ["⚠️ Line busy", f"To: {masked}", f"Duration: {duration}"]
    if outcome == "FAILED":
        lines = ["❌ Call failed", f"To: {masked}"]
        if call.error_message:
            lines.append(f"Reason: {call.error_message}")
        return lines
    if outcome == "CANCELED":
        return ["🚫 Call canceled", f"To: {masked}"]
    return ["📞 Call update", f"To: {masked}", f"Outcome: {outcome or 'unknown'}"]


def normalize_outcome(call: CallSnapshot) -> str:
    return (call.final_outcome or "").upper()


def format_outcome_summary(
    call: CallSnapshot,
    details: Optional[InputDetails],
    *,
    input_preview: Optional[str] = None,
    transcript_text: Optional[str] = None,
) -> str:
    """
    Final outcome card.

    Collect-input calls show the captured input inline; other calls show a
    transcript preview when answered. Captured input not already shown is
    appended at the end.
    """
    masked = mask_phone_number(call.phone_number)
    duration = format_duration_short(call.duration)
    answered = format_answered_label(call.answered_signal)
    outcome = normalize_outcome(call)
    input_shown = False

    if call.call_type == COLLECT_INPUT_CALL_TYPE and outcome == "ANSWERED_WITH_INPUT":
        lines = ["✅ Call completed: input captured", f"To: {masked}", f"Answered by: {answered}"]
        if details is not None and details.multiline:
            lines.extend(["Input:", details.text])
        elif details is not None:
            lines.append(f"Input: {details.text}")
        else:
            lines.append(f"Input: {input_preview or 'Captured'}")
        lines.append(f"Duration: {duration}")
        input_shown = True
    elif call.call_type == COLLECT_INPUT_CALL_TYPE and outcome in ANSWERED_OUTCOMES:
        lines = [
            "⚠️ Call completed: no input received",
            f"To: {masked}",
            f"Answered by: {answered}",
            f"Duration: {duration}",
        ]
    elif call.call_type != COLLECT_INPUT_CALL_TYPE and outcome in ANSWERED_OUTCOMES:
        lines = ["📞 Service call completed", f"Answered by: {answered}", f"Duration: {duration}"]
        if transcript_text:
            lines.append(f'Transcript: "{transcript_text}"')
    else:
        lines = _failure_outcome_lines(outcome, masked, call, duration)

    if not input_shown and details is not None:
        lines.extend(["", "Inputs captured:", details.text])

    return join_lines(lines)


def format_amd_update(call: CallSnapshot) -> Optional[str]:
    """None when the call carries no answering-machine-detection signal."""
    signal = call.answered_signal
    if not signal:
        return None

    label = format_answered_label(signal)
    emoji = "🙂" if label == "human" else "🤖"
    lines = [f"{emoji} Answer detection update", f"Answered by: {label}"]

    if call.amd_confidence:
        lines.append(f"Confidence: {call.amd_confidence * 100:.1f}%")

    if label == "human":
        lines.append("Caller is live. Keep the conversation flowing like a human agent.")
    elif label == "machine":
        lines.append("Likely voicemail or IVR detected. Pivot to a voicemail script or hang up.")
    return join_lines(lines)


def format_hint(hint_type: str, call: Optional[CallSnapshot]) -> Optional[str]:
    definition = HINT_DEFINITIONS.get(hint_type)
    if definition is None:
        return None

    lines = [
        f"{definition.emoji} {definition.title}",
        definition.detail,
        "",
        f"Call: {mask_phone_number(call.phone_number if call else None)}",
    ]
    if hint_type == "call_hint_input_detected":
        preview = call.latest_input_preview if call else None
        lines.append(f"Latest digits: {preview}" if preview else "Waiting for keypad summary.")
    return join_lines(lines)
