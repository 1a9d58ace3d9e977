"""
Structured JSON logging for the API and the background worker.

One JSON object per line on stderr with ts/level/logger/msg (plus the
formatted exception when present). The level comes from LOG_LEVEL.

CHANGELOG:
- 2026-10-12: Honour LOG_LEVEL from Settings
- 2026-10-05: Initial creation
"""

import json
import logging
import sys
from datetime import UTC, datetime


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger with a JSON handler writing to stderr.

    Args:
        level: Log level name, e.g. ``"INFO"`` or ``"debug"``.

    Raises:
        ValueError: If *level* is not a known level name.
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level!r}")

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric)
