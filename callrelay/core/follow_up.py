# callrelay/core/follow_up.py
"""
Follow-up action descriptors attached to terminal call messages.

The descriptor is channel-neutral; the Telegram sender renders it as an
inline keyboard whose callback data is ``FOLLOWUP_CALL:<call_sid>:<action>``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

FOLLOW_UP_CALLBACK_PREFIX = "FOLLOWUP_CALL"


class FollowUpAction(str, Enum):
    RECAP = "recap"
    SCHEDULE = "schedule"
    TRANSCRIPT = "transcript"
    REASSIGN = "reassign"
    CALL_AGAIN = "call-again"
    RESEND = "resend"
    SKIP = "skip"


_LABELS: dict[FollowUpAction, str] = {
    FollowUpAction.RECAP: "📝 Send recap",
    FollowUpAction.SCHEDULE: "⏰ Schedule follow-up",
    FollowUpAction.TRANSCRIPT: "📋 View transcript",
    FollowUpAction.REASSIGN: "👤 Reassign to agent",
    FollowUpAction.CALL_AGAIN: "☎️ Call again",
    FollowUpAction.RESEND: "📨 Resend code",
    FollowUpAction.SKIP: "⏭️ Skip",
}


@dataclass(frozen=True)
class FollowUpButton:
    label: str
    call_sid: str
    action: FollowUpAction

    @property
    def callback_data(self) -> str:
        return f"{FOLLOW_UP_CALLBACK_PREFIX}:{self.call_sid}:{self.action.value}"


@dataclass
class FollowUpActions:
    """Rows of quick-reply buttons."""
    rows: list[list[FollowUpButton]] = field(default_factory=list)

    def actions(self) -> list[FollowUpAction]:
        return [button.action for row in self.rows for button in row]


def _button(call_sid: str, action: FollowUpAction) -> FollowUpButton:
    return FollowUpButton(label=_LABELS[action], call_sid=call_sid, action=action)


def build_follow_up_actions(
    call_sid: str | None,
    status: str,
    *,
    allow_transcript: bool = True,
    call_again_prompt: bool = False,
    allow_resend: bool = False,
) -> FollowUpActions | None:
    """
    Build the quick actions for a call.

    The transcript button only appears for answered or completed calls.
    """
    if not call_sid:
        return None

    sid = str(call_sid)
    rows = [[_button(sid, FollowUpAction.RECAP), _button(sid, FollowUpAction.SCHEDULE)]]

    second_row = []
    if allow_transcript and status in ("completed", "answered"):
        second_row.append(_button(sid, FollowUpAction.TRANSCRIPT))
    second_row.append(_button(sid, FollowUpAction.REASSIGN))
    rows.append(second_row)

    if call_again_prompt:
        follow_row = [_button(sid, FollowUpAction.CALL_AGAIN)]
        if allow_resend:
            follow_row.append(_button(sid, FollowUpAction.RESEND))
        follow_row.append(_button(sid, FollowUpAction.SKIP))
        rows.append(follow_row)

    return FollowUpActions(rows=rows)
