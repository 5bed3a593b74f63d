"""Exception types raised by the stats agent."""

from __future__ import annotations

from typing import Optional


class StatsError(Exception):
    """Base class for agent errors."""


class StateWriteError(StatsError):
    """A durable JSON write did not complete; the previous file is intact."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Failed to write {path}: {reason}")
        self.path = path
        self.reason = reason


class TransportError(StatsError):
    """A single submit request failed (non-2xx, timeout or connection error)."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
