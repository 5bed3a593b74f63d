"""Durable staging area for records collected but not yet confirmed shipped.

The buffer is a single JSON document rewritten atomically on every change.
It is the source of truth on restart: a record is in the buffer exactly when
it has been collected and the server has not yet accepted it.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from .atomic import atomic_write_json, backup_path
from .records import UsageRecord

logger = logging.getLogger(__name__)

BUFFER_VERSION = "2.0.0"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PendingBuffer:
    """Unshipped records plus retry bookkeeping."""

    pending_entries: list[UsageRecord] = field(default_factory=list)
    retry_count: int = 0
    last_attempt: Optional[str] = None
    last_processed: Optional[str] = None
    version: str = BUFFER_VERSION

    def __len__(self) -> int:
        return len(self.pending_entries)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "version": self.version,
            "pendingEntries": [r.to_dict() for r in self.pending_entries],
            "retryCount": self.retry_count,
        }
        if self.last_attempt is not None:
            data["lastAttempt"] = self.last_attempt
        if self.last_processed is not None:
            data["lastProcessed"] = self.last_processed
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "PendingBuffer":
        """Build a buffer from parsed JSON.

        Buffers written before the version tag existed are accepted.

        Raises:
            ValueError: If the document is not a buffer of a known version.
        """
        if not isinstance(data, dict):
            raise ValueError("buffer is not a JSON object")
        version = data.get("version", BUFFER_VERSION)
        if version != BUFFER_VERSION:
            raise ValueError(f"unexpected buffer version: {version!r}")
        raw_entries = data.get("pendingEntries")
        if not isinstance(raw_entries, list):
            raise ValueError("pendingEntries is not a list")

        entries: list[UsageRecord] = []
        skipped = 0
        for raw in raw_entries:
            record = UsageRecord.from_dict(raw)
            if record is None:
                skipped += 1
                continue
            entries.append(record)
        if skipped:
            logger.warning("Skipped %d malformed pending entries", skipped)

        retry_count = data.get("retryCount", 0)
        if isinstance(retry_count, bool) or not isinstance(retry_count, int):
            retry_count = 0
        last_attempt = data.get("lastAttempt")
        last_processed = data.get("lastProcessed")
        return cls(
            pending_entries=entries,
            retry_count=retry_count,
            last_attempt=last_attempt if isinstance(last_attempt, str) else None,
            last_processed=last_processed if isinstance(last_processed, str) else None,
            version=version,
        )


@dataclass(frozen=True)
class BufferSizeCheck:
    """Buffer size on disk and entry count against the large-buffer limits."""

    size: int = 0
    entries: int = 0
    is_large: bool = False


class BufferStore:
    """File-backed :class:`PendingBuffer`.

    Args:
        path: Buffer file location.
        max_bytes: Serialized size above which the buffer counts as large.
        max_entries: Entry count above which the buffer counts as large.
        clock: Returns the current UTC time (injectable for tests).
    """

    def __init__(
        self,
        path: Path,
        max_bytes: int = 2 * 1024 * 1024,
        max_entries: int = 5000,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.path = path
        self.max_bytes = max_bytes
        self.max_entries = max_entries
        self._clock = clock

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Optional[PendingBuffer]:
        """Return the stored buffer, or None if absent or unreadable."""
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return PendingBuffer.from_dict(data)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("Pending buffer %s is unusable: %s", self.path, e)
            return None

    def save(self, records: Sequence[UsageRecord]) -> PendingBuffer:
        """Replace the buffer with freshly collected *records* (retry count 0)."""
        buffer = PendingBuffer(
            pending_entries=list(records),
            retry_count=0,
            last_attempt=self._clock().isoformat(),
        )
        self._write(buffer)
        return buffer

    def save_failed(self, records: Sequence[UsageRecord], retry_count: int) -> PendingBuffer:
        """Replace the buffer with the unsent subset after a partial success."""
        buffer = PendingBuffer(
            pending_entries=list(records),
            retry_count=retry_count,
            last_processed=self._clock().isoformat(),
        )
        self._write(buffer)
        return buffer

    def record_failure(self) -> Optional[PendingBuffer]:
        """Bump the retry counter of the stored buffer after a total failure."""
        buffer = self.load()
        if buffer is None:
            return None
        buffer.retry_count += 1
        buffer.last_attempt = self._clock().isoformat()
        self._write(buffer)
        return buffer

    def clear(self) -> None:
        """Remove the buffer (and any backup left from the last write)."""
        for path in (self.path, backup_path(self.path)):
            try:
                path.unlink()
            except FileNotFoundError:
                pass

    def size_check(self) -> BufferSizeCheck:
        """Compare the stored buffer against the byte and entry limits.

        Either limit alone makes the buffer large. Both are set well below
        what the sender could push, so a runaway backlog is noticed early.
        A file that cannot be loaded is never large.
        """
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return BufferSizeCheck()
        except OSError as e:
            logger.warning("Cannot stat pending buffer %s: %s", self.path, e)
            return BufferSizeCheck()

        buffer = self.load()
        if buffer is None:
            # Unreadable content is not a backlog; the next save replaces it
            return BufferSizeCheck(size=size)
        entries = len(buffer)
        return BufferSizeCheck(
            size=size,
            entries=entries,
            is_large=size > self.max_bytes or entries > self.max_entries,
        )

    def _write(self, buffer: PendingBuffer) -> None:
        atomic_write_json(self.path, buffer.to_dict())
