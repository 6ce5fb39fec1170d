"""
Structured logging for the Value Cards server.

Every record is stamped with the room context of the code that logged it
(request id, room id, acting player) by ``RoomContextFilter``, taken from
explicit ``extra`` values first and the context variables second. Two
formatters render the stamped record:

- JSONFormatter: one JSON object per line, for production log shipping
- DevelopmentFormatter: coloured single lines for a terminal
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

# Set by the request middleware, the room WebSocket and the service wrapper
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
room_id_var: ContextVar[Optional[str]] = ContextVar("room_id", default=None)
player_id_var: ContextVar[Optional[str]] = ContextVar("player_id", default=None)

CONTEXT_VARS = {
    "request_id": request_id_var,
    "room_id": room_id_var,
    "player_id": player_id_var,
}

# Extra keys that are copied into JSON output when present
EXTRA_FIELDS = ("room_code", "seat", "status")

QUIET_LOGGERS = ("uvicorn.access", "uvicorn.error", "websockets", "asyncio", "asyncpg")


class RoomContextFilter(logging.Filter):
    """Attach request/room/player ids to every record passing the handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in CONTEXT_VARS.items():
            if not getattr(record, name, None):
                setattr(record, name, var.get())
        return True


class JSONFormatter(logging.Formatter):
    """Machine-readable output; one object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in (*CONTEXT_VARS, *EXTRA_FIELDS):
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.levelno >= logging.ERROR:
            entry["source"] = f"{record.pathname}:{record.lineno} in {record.funcName}"
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class DevelopmentFormatter(logging.Formatter):
    """Coloured lines with short ids, e.g. ``12:00:01.250 INFO  services.card_service [room=3f2b8c1e] ...``."""

    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"
    SHORT_NAMES = {"request_id": "req", "room_id": "room", "player_id": "player"}

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelno, "")
        reset = self.RESET if color else ""
        when = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]

        ids = []
        for name, short in self.SHORT_NAMES.items():
            value = getattr(record, name, None)
            if value:
                ids.append(f"{short}={value[:8]}")
        context = f" [{' '.join(ids)}]" if ids else ""

        line = f"{when} {color}{record.levelname:<8}{reset} {record.name}{context} - {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = "INFO", environment: str = "development") -> None:
    """
    Configure the root logger once at startup.

    Args:
        level: Log level name.
        environment: "production" selects JSON output.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RoomContextFilter())
    handler.setFormatter(JSONFormatter() if environment == "production" else DevelopmentFormatter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging configured: level={level}, environment={environment}")


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter carrying fixed context, for code that logs about a room
    other than the one in the current context variables.

    Usage:
        logger = get_logger(__name__)
        logger.with_context(room_id=room_id, seat=2).warning("Board replenished")
    """

    def __init__(self, logger: logging.Logger, extra: Optional[dict] = None):
        super().__init__(logger, extra or {})

    def with_context(self, **kwargs) -> "ContextLogger":
        return ContextLogger(self.logger, {**self.extra, **kwargs})

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name))
