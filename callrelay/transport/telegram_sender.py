# callrelay/transport/telegram_sender.py
"""
Telegram Bot API client for operator notifications: ``sendMessage`` with an
optional inline keyboard, and ``getMe`` as the health probe.

Failures raise TelegramSendError. ``retryable`` is False for bad requests,
invalid tokens and chats the bot cannot post to; everything else (rate
limits, 5xx, network) is marked retryable. Nothing here retries: the flag
only ends up in the failure acknowledgement and in metrics.
"""
from __future__ import annotations

import logging
import re

import aiohttp

from callrelay.config import settings
from callrelay.core.follow_up import FollowUpActions
from callrelay.infra.http_client import get_probe_session, get_sender_session
from callrelay.infra.logging_config import get_logger, mask_identifier
from callrelay.infra.metrics import inc_counter

logger = get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"

_BR_TAG = re.compile(r"<br\s*/?>", re.IGNORECASE)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F]")
_BARE_AMPERSAND = re.compile(r"&(?!amp;|lt;|gt;|quot;)")
_EXTRA_BLANK_LINES = re.compile(r"\n{3,}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _bot_url(method: str, token: str | None = None) -> str:
    """Build Telegram Bot API URL."""
    bot_token = token or settings.telegram_bot_token
    return f"{TELEGRAM_API_BASE}/bot{bot_token}/{method}"


def sanitize_telegram_text(message: str | None) -> str:
    """
    Normalise text for an HTML-mode message.

    Line endings are unified, control characters dropped, markup characters
    escaped (already-escaped entities are left alone) and runs of blank
    lines collapsed to one.
    """
    text = "" if message is None else str(message)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _BR_TAG.sub("\n", text)
    text = text.replace("\u2028", "\n").replace("\u2029", "\n")
    text = _CONTROL_CHARS.sub("", text)
    text = _BARE_AMPERSAND.sub("&amp;", text)
    text = text.replace("<", "&lt;").replace(">", "&gt;").replace('"', "&quot;")
    text = _EXTRA_BLANK_LINES.sub("\n\n", text)
    return text.strip()


def render_follow_up(follow_up: FollowUpActions) -> dict:
    """Render follow-up actions as an inline keyboard reply markup."""
    return {
        "inline_keyboard": [
            [{"text": button.label, "callback_data": button.callback_data} for button in row]
            for row in follow_up.rows
        ]
    }



class TelegramSendError(Exception):
    """
    A Bot API call that did not return ``ok``.

    ``status`` is the HTTP status (0 when no response arrived) and
    ``error_code`` the code from the response body, if any.
    """

    def __init__(self, status: int, error_code: int | None, message: str, *, retryable: bool = False):
        self.status = status
        self.error_code = error_code
        self.retryable = retryable
        super().__init__(f"Telegram API error {status} (code={error_code}): {message}")


# status -> (metric suffix, log level); all other failures are retryable
_PERMANENT_FAILURES = {
    400: ("bad_request", logging.WARNING),
    401: ("auth_error", logging.ERROR),
    403: ("forbidden", logging.WARNING),
    404: ("not_found", logging.ERROR),
}


async def send_message(
    chat_id: str,
    text: str,
    *,
    parse_mode: str | None = "HTML",
    reply_markup: dict | None = None,
    token: str | None = None,
) -> dict:
    """
    Post a message to ``chat_id`` and return the API response body.

    Args:
        chat_id: target chat, numeric string (groups are negative)
        text: message body, passed through sanitize_telegram_text
        parse_mode: "HTML" by default, None for plain text
        reply_markup: inline keyboard from render_follow_up
        token: bot token override, defaults to TELEGRAM_BOT_TOKEN
    """
    payload: dict = {
        "chat_id": chat_id,
        "text": sanitize_telegram_text(text),
        "disable_web_page_preview": True,
    }
    if parse_mode:
        payload["parse_mode"] = parse_mode
    if reply_markup:
        payload["reply_markup"] = reply_markup

    body = await _call(get_sender_session(), "sendMessage", token, payload)
    result = body.get("result")
    msg_id = result.get("message_id", "?") if isinstance(result, dict) else "?"
    logger.info(f"Telegram message sent: to={mask_identifier(chat_id)}, msg_id={msg_id}")
    return body


async def get_me(token: str | None = None) -> dict:
    """The bot's own user object (id, username, first_name)."""
    body = await _call(get_probe_session(), "getMe", token)
    return body.get("result") or {}


class TelegramTransport:
    """MessageTransport over the Bot API, with an optional fixed token."""

    def __init__(self, token: str | None = None):
        self._token = token

    async def send(
        self,
        chat_id: str,
        text: str,
        parse_mode: str | None = "HTML",
        follow_up: FollowUpActions | None = None,
    ) -> dict:
        reply_markup = render_follow_up(follow_up) if follow_up else None
        return await send_message(
            chat_id,
            text,
            parse_mode=parse_mode,
            reply_markup=reply_markup,
            token=self._token,
        )

    async def get_me(self) -> dict:
        return await get_me(self._token)


async def _safe_response_json(resp: aiohttp.ClientResponse) -> dict | None:
    try:
        body = await resp.json()
    except Exception:
        logger.warning(f"Telegram API returned a non-JSON body (status={resp.status})")
        return None
    return body if isinstance(body, dict) else None


async def _call(
    session: aiohttp.ClientSession,
    method: str,
    token: str | None,
    payload: dict | None = None,
) -> dict:
    """GET (no payload) or POST one Bot API method; returns the body when ``ok``."""
    url = _bot_url(method, token)
    try:
        request = session.post(url, json=payload) if payload is not None else session.get(url)
        async with request as resp:
            body = await _safe_response_json(resp) or {}
            status = resp.status
    except aiohttp.ClientError as exc:
        logger.error(f"Telegram {method} connection error: {exc.__class__.__name__}: {exc}")
        inc_counter("telegram_outbound_errors", method=method, reason="connection")
        raise TelegramSendError(0, None, str(exc) or exc.__class__.__name__, retryable=True) from exc
    except TimeoutError as exc:
        logger.error(f"Telegram {method} timed out")
        inc_counter("telegram_outbound_errors", method=method, reason="timeout")
        raise TelegramSendError(0, None, "request timed out", retryable=True) from exc

    if status == 200 and body.get("ok"):
        inc_counter("telegram_outbound_ok", method=method)
        return body

    description = body.get("description", "Unknown error")
    error_code = body.get("error_code")
    reason, level = _PERMANENT_FAILURES.get(status, (None, logging.ERROR))
    if status == 429:
        retry_after = (body.get("parameters") or {}).get("retry_after")
        reason, level = "rate_limited", logging.WARNING
        description = f"{description} (retry after {retry_after}s)" if retry_after else description

    logger.log(level, f"Telegram {method} failed: status={status}, code={error_code}, {description}")
    inc_counter("telegram_outbound_errors", method=method, reason=reason or "server_error")
    raise TelegramSendError(status, error_code, description, retryable=status not in _PERMANENT_FAILURES)
