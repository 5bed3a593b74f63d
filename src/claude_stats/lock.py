"""Advisory cross-process run lock backed by an exclusively created file.

The host fires the agent on every session end, so overlapping invocations
are routine. Only the process that creates the sentinel runs; the others
give up after a short wait and exit without touching any state. A sentinel
whose mtime is older than the stale window is assumed to belong to a crashed
holder and is reclaimed.
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType
from typing import Callable, Optional, Type

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
DEFAULT_STALE_SECONDS = 10.0
DEFAULT_POLL_SECONDS = 0.1


class RunLock:
    """Sentinel-file lock with staleness-based recovery.

    Args:
        path: Sentinel file location.
        stale_seconds: Age after which an existing sentinel is reclaimed.
        poll_seconds: Sleep between attempts while the lock is held elsewhere.
        clock: Monotonic clock used for the acquire timeout.
        wall_clock: Epoch clock compared against the sentinel mtime.
        sleep: Sleep function (injectable for tests).
    """

    def __init__(
        self,
        path: Path,
        stale_seconds: float = DEFAULT_STALE_SECONDS,
        poll_seconds: float = DEFAULT_POLL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.path = path
        self.stale_seconds = stale_seconds
        self.poll_seconds = poll_seconds
        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep
        self._token: Optional[str] = None
        self.acquired = False

    def acquire(self, timeout: float = DEFAULT_TIMEOUT) -> bool:
        """Try to take the lock within *timeout* seconds.

        Returns:
            True if this instance now holds the lock, False if another
            holder kept it for the whole timeout. Contention is not an error.

        Raises:
            OSError: For filesystem errors other than "already exists".
        """
        if self.acquired:
            return True

        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = self._clock() + timeout

        while self._clock() < deadline:
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if self.is_stale():
                    logger.info("Reclaiming stale lock", extra={"data": {"path": str(self.path)}})
                    try:
                        self.path.unlink()
                    except FileNotFoundError:
                        pass
                    continue
                self._sleep(self.poll_seconds)
                continue

            token = uuid.uuid4().hex
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(
                    {
                        "pid": os.getpid(),
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                        "token": token,
                    },
                    f,
                )
            self._token = token
            self.acquired = True
            return True

        return False

    def is_stale(self) -> bool:
        """True when the sentinel is older than the stale window.

        A sentinel that vanished between checks counts as stale so the
        caller retries immediately.
        """
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            return True
        return self._wall_clock() - mtime > self.stale_seconds

    def holds_sentinel(self) -> bool:
        """True when the sentinel on disk is the one this instance created."""
        info = read_lock_info(self.path)
        return info is not None and self._token is not None and info.get("token") == self._token

    def refresh(self) -> None:
        """Bump the sentinel mtime so long runs are not mistaken for crashes.

        Does nothing once another process has reclaimed the sentinel.
        """
        if not self.acquired or not self.holds_sentinel():
            return
        try:
            os.utime(self.path)
        except OSError as e:
            logger.debug("Could not refresh lock %s: %s", self.path, e)

    def release(self) -> None:
        """Remove the sentinel if this instance created it.

        A sentinel reclaimed by another holder while this one looked stale
        is left in place.
        """
        if not self.acquired:
            return
        owned = self.holds_sentinel()
        self.acquired = False
        self._token = None
        if not owned:
            logger.warning("Lock was reclaimed by another run", extra={"data": {"path": str(self.path)}})
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove lock %s: %s", self.path, e)

    def __enter__(self) -> bool:
        return self.acquire()

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self.release()


def read_lock_info(path: Path) -> Optional[dict]:
    """Return the ``{pid, timestamp, token}`` payload of a sentinel, if readable."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return data if isinstance(data, dict) else None
