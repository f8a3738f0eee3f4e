# callrelay/infra/logging_config.py
import json
import logging
import sys
from datetime import datetime, timezone


def mask_identifier(value: str) -> str:
    """Mask chat ids / phone numbers: ``-1001234567890`` -> ``-100****90``."""
    if len(value) > 6:
        return value[:4] + "****" + value[-2:]
    return value


def short_sid(call_sid: str) -> str:
    """Last six characters of a call sid, enough to correlate log lines."""
    return call_sid[-6:] if call_sid else "?"


# (record attribute, console label, JSON renderer, console renderer)
_CONTEXT_FIELDS = (
    ("call_sid", "call", lambda v: v, short_sid),
    ("chat_id", "chat", lambda v: mask_identifier(str(v)), mask_identifier),
    ("notification_id", "notification", lambda v: v, lambda v: v),
    ("request_id", "req", lambda v: v, lambda v: v[:8]),
)


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shippers in production"""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        for attr, _label, as_json, _as_text in _CONTEXT_FIELDS:
            value = getattr(record, attr, None)
            if value is not None:
                payload[attr] = as_json(value)

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """Colored single-line output for local runs"""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, self.RESET)
        stamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")

        tags = [
            f"{label}={as_text(str(getattr(record, attr)))}"
            for attr, label, _as_json, as_text in _CONTEXT_FIELDS
            if getattr(record, attr, None) is not None
        ]
        context = f" [{' '.join(tags)}]" if tags else ""

        line = f"{color}{stamp} {record.levelname:<8}{self.RESET} {record.name}{context}: {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = "INFO", use_json: bool = False) -> None:
    """
    Route every logger to stdout with one handler.

    Args:
        level: root log level name
        use_json: JSONFormatter instead of ConsoleFormatter (production)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if use_json else ConsoleFormatter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)

    # uvicorn and aiohttp log every request on their own
    for name, lib_level in (
        ("uvicorn.access", logging.WARNING),
        ("uvicorn.error", logging.INFO),
        ("aiohttp.access", logging.WARNING),
        ("asyncpg", logging.WARNING),
    ):
        logging.getLogger(name).setLevel(lib_level)

    logging.getLogger(__name__).info(f"Logging configured: level={level}, json={use_json}")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LogContext(logging.LoggerAdapter):
    """Logger bound to a call / notification / request; None fields are left out."""

    def __init__(
            self,
            logger: logging.Logger,
            call_sid: str | None = None,
            chat_id: str | None = None,
            notification_id: str | int | None = None,
            request_id: str | None = None,
    ):
        bound = {
            "call_sid": call_sid,
            "chat_id": chat_id,
            "notification_id": notification_id,
            "request_id": request_id,
        }
        super().__init__(logger, {k: v for k, v in bound.items() if v is not None})

    def process(self, msg, kwargs):
        kwargs["extra"] = {**kwargs.get("extra", {}), **self.extra}
        return msg, kwargs
