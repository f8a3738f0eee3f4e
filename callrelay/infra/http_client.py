# callrelay/infra/http_client.py
"""
Shared aiohttp sessions, one per traffic profile, created on first use.

``sender`` carries sendMessage (total timeout TELEGRAM_SEND_TIMEOUT) and
``probe`` carries getMe health checks (TELEGRAM_PROBE_TIMEOUT). Close them
with ``close_all_sessions()`` on shutdown.
"""
from __future__ import annotations

from dataclasses import dataclass

import aiohttp

from callrelay.config import settings
from callrelay.infra.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class _SessionProfile:
    total_timeout: float
    connect_timeout: float
    max_connections: int


_sessions: dict[str, aiohttp.ClientSession] = {}


def _session_for(name: str, profile: _SessionProfile) -> aiohttp.ClientSession:
    session = _sessions.get(name)
    if session is not None and not session.closed:
        return session

    session = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=profile.total_timeout, connect=profile.connect_timeout),
        connector=aiohttp.TCPConnector(
            limit=profile.max_connections,
            keepalive_timeout=30,
            enable_cleanup_closed=True,
        ),
    )
    _sessions[name] = session
    logger.debug(f"HTTP session {name!r} opened ({profile})")
    return session


def get_sender_session() -> aiohttp.ClientSession:
    return _session_for("sender", _SessionProfile(settings.telegram_send_timeout, 5, 10))


def get_probe_session() -> aiohttp.ClientSession:
    return _session_for("probe", _SessionProfile(settings.telegram_probe_timeout, 3, 2))


async def close_all_sessions() -> None:
    while _sessions:
        name, session = _sessions.popitem()
        if not session.closed:
            await session.close()
            logger.debug(f"HTTP session {name!r} closed")
