"""Opt-in JSONL diagnostic log for hook runs.

The agent runs detached from any terminal, so when ``CLAUDE_STATS_DEBUG``
is ``true`` every record from the ``claude_stats`` logger is appended as one
JSON object to ``stats-debug.log``. Structured context goes in
``extra={"data": {...}}``. The file is moved to ``stats-debug.log.old``
once it grows past the size ceiling. The log is never read back.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

from .context import AgentContext

PACKAGE_LOGGER = "claude_stats"


class JsonLineFormatter(logging.Formatter):
    """Render a record as ``{timestamp, level, message, data, pid}``."""

    def format(self, record: logging.LogRecord) -> str:
        data = getattr(record, "data", None)
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "message": record.getMessage(),
            "data": data if isinstance(data, dict) else {},
            "pid": record.process,
        }
        if record.exc_info:
            entry["data"] = {**entry["data"], "exception": self.formatException(record.exc_info)}
        return json.dumps(entry, default=str)


class JsonLinesHandler(RotatingFileHandler):
    """Append-only JSONL file with a single ``.old`` generation.

    The file is rotated before a write once it has grown past *max_bytes*,
    so the rotated file is always just over the ceiling. Write failures are
    dropped: diagnostics must not change how a run ends.
    """

    def __init__(self, filename: str, max_bytes: int) -> None:
        super().__init__(filename, maxBytes=max_bytes, backupCount=1, encoding="utf-8", delay=True)
        self.namer = _old_suffix
        self.setFormatter(JsonLineFormatter())

    def shouldRollover(self, record: logging.LogRecord) -> bool:
        if self.maxBytes <= 0:
            return False
        try:
            return os.path.isfile(self.baseFilename) and os.path.getsize(self.baseFilename) > self.maxBytes
        except OSError:
            return False

    def handleError(self, record: logging.LogRecord) -> None:
        pass


def _old_suffix(default_name: str) -> str:
    # RotatingFileHandler proposes "<file>.1"
    base, _, _ = default_name.rpartition(".")
    return f"{base}.old"


def configure_diagnostics(ctx: AgentContext) -> Optional[JsonLinesHandler]:
    """Attach the JSONL handler to the package logger when debug is on.

    Returns the handler so :func:`shutdown_diagnostics` can detach it at
    the end of the run, or None when diagnostics are disabled or the log
    directory cannot be created.
    """
    if not ctx.debug:
        return None
    try:
        ctx.log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        return None

    handler = JsonLinesHandler(str(ctx.log_file), ctx.limits.max_log_bytes)
    handler.setLevel(logging.DEBUG)
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(logging.DEBUG)
    package_logger.addHandler(handler)
    return handler


def shutdown_diagnostics(handler: Optional[JsonLinesHandler]) -> None:
    """Detach and close a handler returned by :func:`configure_diagnostics`."""
    if handler is None:
        return
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.removeHandler(handler)
    package_logger.setLevel(logging.NOTSET)
    handler.close()
