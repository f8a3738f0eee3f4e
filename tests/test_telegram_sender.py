# tests/test_telegram_sender.py
"""Tests for callrelay/transport/telegram_sender.py."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from callrelay.core.follow_up import build_follow_up_actions
from callrelay.transport.telegram_sender import (
    TelegramSendError,
    TelegramTransport,
    get_me,
    render_follow_up,
    sanitize_telegram_text,
    send_message,
)


class _FakeResponse:
    def __init__(self, status: int, body):
        self.status = status
        self._body = body

    async def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


def _session(status: int = 200, body=None, error: Exception | None = None) -> MagicMock:
    session = MagicMock()
    if error is not None:
        session.post.side_effect = error
        session.get.side_effect = error
    else:
        response = _FakeResponse(status, body)
        session.post.return_value = response
        session.get.return_value = response
    return session


# ============================================================================
# Sanitizing
# ============================================================================

class TestSanitize:
    def test_none(self):
        assert sanitize_telegram_text(None) == ""

    def test_line_endings(self):
        assert sanitize_telegram_text("a\r\nb\rc") == "a\nb\nc"

    def test_br_tags(self):
        assert sanitize_telegram_text("a<br>b<BR/>c<br />d") == "a\nb\nc\nd"

    def test_unicode_separators(self):
        assert sanitize_telegram_text("a\u2028b\u2029c") == "a\nb\nc"

    def test_control_characters_removed(self):
        assert sanitize_telegram_text("a\x00b\x07c\td") == "abc\td"

    def test_html_escaped(self):
        assert sanitize_telegram_text('<b>"x" & y</b>') == "&lt;b&gt;&quot;x&quot; &amp; y&lt;/b&gt;"

    def test_existing_entities_kept(self):
        assert sanitize_telegram_text("a &amp; b &lt; c") == "a &amp; b &lt; c"

    def test_blank_lines_collapsed(self):
        assert sanitize_telegram_text("\n\na\n\n\n\nb\n") == "a\n\nb"


class TestRenderFollowUp:
    def test_inline_keyboard(self):
        markup = render_follow_up(build_follow_up_actions("CA1", "busy"))
        assert markup == {
            "inline_keyboard": [
                [
                    {"text": "📝 Send recap", "callback_data": "FOLLOWUP_CALL:CA1:recap"},
                    {"text": "⏰ Schedule follow-up", "callback_data": "FOLLOWUP_CALL:CA1:schedule"},
                ],
                [
                    {"text": "👤 Reassign to agent", "callback_data": "FOLLOWUP_CALL:CA1:reassign"},
                ],
            ]
        }


# ============================================================================
# sendMessage
# ============================================================================

class TestSendMessage:
    @pytest.mark.asyncio
    async def test_success(self):
        body = {"ok": True, "result": {"message_id": 7}}
        session = _session(200, body)
        with patch("callrelay.transport.telegram_sender.get_sender_session", return_value=session):
            result = await send_message("-100123", "Hi & bye", token="TOKEN")

        assert result == body
        url = session.post.call_args.args[0]
        payload = session.post.call_args.kwargs["json"]
        assert url == "https://api.telegram.org/botTOKEN/sendMessage"
        assert payload == {
            "chat_id": "-100123",
            "text": "Hi &amp; bye",
            "disable_web_page_preview": True,
            "parse_mode": "HTML",
        }

    @pytest.mark.asyncio
    async def test_plain_text_omits_parse_mode(self):
        session = _session(200, {"ok": True, "result": {}})
        with patch("callrelay.transport.telegram_sender.get_sender_session", return_value=session):
            await send_message("1", "x", parse_mode=None, token="T")
        assert "parse_mode" not in session.post.call_args.kwargs["json"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,retryable", [
        (400, False),
        (401, False),
        (403, False),
        (429, True),
        (502, True),
    ])
    async def test_error_classification(self, status, retryable):
        body = {"ok": False, "error_code": status, "description": "nope"}
        session = _session(status, body)
        with patch("callrelay.transport.telegram_sender.get_sender_session", return_value=session):
            with pytest.raises(TelegramSendError) as exc_info:
                await send_message("1", "x", token="T")

        assert exc_info.value.status == status
        assert exc_info.value.retryable is retryable
        assert "nope" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        session = _session(502, ValueError("not json"))
        with patch("callrelay.transport.telegram_sender.get_sender_session", return_value=session):
            with pytest.raises(TelegramSendError) as exc_info:
                await send_message("1", "x", token="T")
        assert "Unknown error" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_connection_error(self):
        session = _session(error=aiohttp.ClientConnectionError("refused"))
        with patch("callrelay.transport.telegram_sender.get_sender_session", return_value=session):
            with pytest.raises(TelegramSendError) as exc_info:
                await send_message("1", "x", token="T")
        assert exc_info.value.status == 0
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_timeout(self):
        session = _session(error=TimeoutError())
        with patch("callrelay.transport.telegram_sender.get_sender_session", return_value=session):
            with pytest.raises(TelegramSendError, match="timed out"):
                await send_message("1", "x", token="T")


# ============================================================================
# getMe and the transport wrapper
# ============================================================================

class TestGetMe:
    @pytest.mark.asyncio
    async def test_success(self):
        session = _session(200, {"ok": True, "result": {"id": 1, "username": "bot"}})
        with patch("callrelay.transport.telegram_sender.get_probe_session", return_value=session):
            assert await get_me("T") == {"id": 1, "username": "bot"}
        assert session.get.call_args.args[0].endswith("/botT/getMe")

    @pytest.mark.asyncio
    async def test_unauthorized(self):
        session = _session(401, {"ok": False, "error_code": 401, "description": "Unauthorized"})
        with patch("callrelay.transport.telegram_sender.get_probe_session", return_value=session):
            with pytest.raises(TelegramSendError) as exc_info:
                await get_me("T")
        assert exc_info.value.error_code == 401
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_connection_error(self):
        session = _session(error=aiohttp.ClientConnectionError("refused"))
        with patch("callrelay.transport.telegram_sender.get_probe_session", return_value=session):
            with pytest.raises(TelegramSendError) as exc_info:
                await get_me("T")
        assert exc_info.value.retryable is True


class TestTelegramTransport:
    @pytest.mark.asyncio
    async def test_send_renders_follow_up(self):
        follow_up = build_follow_up_actions("CA1", "completed")
        with patch("callrelay.transport.telegram_sender.send_message", new=AsyncMock()) as mock_send:
            await TelegramTransport(token="T").send("1", "text", "HTML", follow_up)

        mock_send.assert_awaited_once_with(
            "1",
            "text",
            parse_mode="HTML",
            reply_markup=render_follow_up(follow_up),
            token="T",
        )

    @pytest.mark.asyncio
    async def test_send_without_follow_up(self):
        with patch("callrelay.transport.telegram_sender.send_message", new=AsyncMock()) as mock_send:
            await TelegramTransport().send("1", "text")
        assert mock_send.call_args.kwargs["reply_markup"] is None
