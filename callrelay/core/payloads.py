# callrelay/core/payloads.py
"""
Lenient decoding of JSON-ish columns written by the voice pipeline.

Metadata, business context and call-state payloads arrive either as decoded
objects (JSONB) or as text. Malformed text never raises: it degrades to an
empty structure (or ``{"raw": ...}`` where the raw value is still useful).
"""
from __future__ import annotations

import json
from typing import Any

from callrelay.infra.logging_config import get_logger

logger = get_logger(__name__)


def parse_json_object(raw: Any, *, what: str = "payload", keep_raw: bool = False) -> dict[str, Any]:
    """
    Decode ``raw`` into a dict.

    Args:
        raw: dict, JSON text, or None
        what: Short description used in the warning log
        keep_raw: Return ``{"raw": raw}`` instead of ``{}`` for undecodable text
    """
    if not raw:
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str):
        return {}

    try:
        decoded = json.loads(raw)
    except (json.JSONDecodeError, ValueError) as exc:
        logger.warning(f"Failed to parse {what}: {exc}")
        return {"raw": raw} if keep_raw else {}

    if isinstance(decoded, dict):
        return decoded
    return {"raw": decoded} if keep_raw else {}
