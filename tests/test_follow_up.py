# tests/test_follow_up.py
"""Tests for callrelay/core/follow_up.py quick actions."""
from __future__ import annotations

from callrelay.core.follow_up import FollowUpAction, build_follow_up_actions


class TestBuildFollowUpActions:
    def test_no_call_sid(self):
        assert build_follow_up_actions(None, "completed") is None

    def test_completed_rows(self):
        actions = build_follow_up_actions("CA1", "completed")
        assert actions.actions() == [
            FollowUpAction.RECAP,
            FollowUpAction.SCHEDULE,
            FollowUpAction.TRANSCRIPT,
            FollowUpAction.REASSIGN,
        ]

    def test_transcript_only_for_answered_or_completed(self):
        actions = build_follow_up_actions("CA1", "busy")
        assert FollowUpAction.TRANSCRIPT not in actions.actions()
        assert FollowUpAction.REASSIGN in actions.actions()

    def test_transcript_suppressed(self):
        actions = build_follow_up_actions("CA1", "completed", allow_transcript=False)
        assert FollowUpAction.TRANSCRIPT not in actions.actions()

    def test_call_again_row(self):
        actions = build_follow_up_actions("CA1", "retry", call_again_prompt=True)
        assert len(actions.rows) == 3
        assert [b.action for b in actions.rows[2]] == [FollowUpAction.CALL_AGAIN, FollowUpAction.SKIP]

    def test_resend_button(self):
        actions = build_follow_up_actions("CA1", "retry", call_again_prompt=True, allow_resend=True)
        assert [b.action for b in actions.rows[2]] == [
            FollowUpAction.CALL_AGAIN,
            FollowUpAction.RESEND,
            FollowUpAction.SKIP,
        ]

    def test_callback_data(self):
        actions = build_follow_up_actions("CA1", "completed")
        assert actions.rows[0][0].callback_data == "FOLLOWUP_CALL:CA1:recap"
        assert actions.rows[1][0].callback_data == "FOLLOWUP_CALL:CA1:transcript"
