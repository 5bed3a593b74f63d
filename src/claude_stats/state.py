"""Durable ledger of interaction hashes already shipped to the server.

The ledger is a JSON file partitioned by UTC day::

    {
      "version": "2.0.0",
      "lastCleanup": "2026-10-18T09:12:44.120000+00:00",
      "recentHashes": {"2026-10-17": ["ab12...", ...], "2026-10-18": [...]}
    }

Loading never fails: a corrupt primary is recovered from its ``.backup``
sibling, and if that is unusable too a fresh empty ledger is returned. The
worst outcome of losing the ledger is re-submitting records the server
already holds, which it ignores by hash.
"""

from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from .atomic import atomic_write_json, backup_path
from .records import UsageRecord

logger = logging.getLogger(__name__)

STATE_VERSION = "2.0.0"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def day_key(moment: datetime) -> str:
    """``YYYY-MM-DD`` of *moment* in UTC."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%d")


@dataclass
class ProcessedState:
    """In-memory form of the shipped-hash ledger."""

    version: str = STATE_VERSION
    last_cleanup: str = ""
    recent_hashes: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def empty(cls, now: Optional[datetime] = None) -> "ProcessedState":
        return cls(last_cleanup=(now or _utc_now()).isoformat())

    def processed_hashes(self) -> set[str]:
        """Every hash in every day bucket."""
        hashes: set[str] = set()
        for day_hashes in self.recent_hashes.values():
            hashes.update(day_hashes)
        return hashes

    def is_processed(self, interaction_hash: str) -> bool:
        return any(interaction_hash in day_hashes for day_hashes in self.recent_hashes.values())

    @property
    def hash_count(self) -> int:
        return sum(len(day_hashes) for day_hashes in self.recent_hashes.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "lastCleanup": self.last_cleanup,
            "recentHashes": {day: list(hashes) for day, hashes in self.recent_hashes.items()},
        }

    @classmethod
    def from_dict(cls, data: Any) -> "ProcessedState":
        """Validate and build a state from parsed JSON.

        Raises:
            ValueError: If the version tag or hash table is not as expected.
        """
        if not isinstance(data, dict):
            raise ValueError("state is not a JSON object")
        version = data.get("version")
        if version != STATE_VERSION:
            raise ValueError(f"unexpected state version: {version!r}")
        raw_hashes = data.get("recentHashes")
        if not isinstance(raw_hashes, dict):
            raise ValueError("recentHashes is not a mapping")

        recent_hashes: dict[str, list[str]] = {}
        for day, hashes in raw_hashes.items():
            if not isinstance(hashes, list):
                raise ValueError(f"recentHashes[{day!r}] is not a list")
            recent_hashes[str(day)] = [h for h in hashes if isinstance(h, str)]

        last_cleanup = data.get("lastCleanup")
        return cls(
            version=version,
            last_cleanup=last_cleanup if isinstance(last_cleanup, str) else "",
            recent_hashes=recent_hashes,
        )


def maintain(state: ProcessedState, retention_days: int, now: datetime) -> ProcessedState:
    """Return a pruned copy of *state*.

    Day buckets not newer than ``now - retention_days`` are dropped (as are
    keys that are not dates), today's bucket is de-duplicated in insertion
    order, and ``lastCleanup`` is stamped with *now*.
    """
    cutoff = now - timedelta(days=retention_days)
    kept: dict[str, list[str]] = {}
    for day, hashes in state.recent_hashes.items():
        try:
            day_start = datetime.strptime(day, "%Y-%m-%d").replace(tzinfo=timezone.utc)
        except ValueError:
            logger.debug("Dropping malformed day key %r", day)
            continue
        if day_start > cutoff:
            kept[day] = list(hashes)

    today = day_key(now)
    if today in kept:
        kept[today] = list(dict.fromkeys(kept[today]))

    return ProcessedState(
        version=state.version,
        last_cleanup=now.isoformat(),
        recent_hashes=kept,
    )


class StateStore:
    """Load, persist and advance the shipped-hash ledger file.

    Args:
        path: Ledger file location; ``<path>.backup`` is maintained beside it.
        retention_days: How many days of hashes to keep.
        clock: Returns the current UTC time (injectable for tests).
    """

    def __init__(
        self,
        path: Path,
        retention_days: int = 30,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.path = path
        self.retention_days = retention_days
        self._clock = clock

    def load(self) -> ProcessedState:
        """Return the stored state, recovering from the backup if needed."""
        try:
            return self._read(self.path)
        except FileNotFoundError:
            pass
        except (OSError, ValueError) as e:
            logger.warning("State file %s is unusable: %s", self.path, e)

        backup = backup_path(self.path)
        if backup.exists():
            try:
                state = self._read(backup)
            except (OSError, ValueError) as e:
                logger.warning("State backup %s is unusable: %s", backup, e)
            else:
                try:
                    shutil.copyfile(backup, self.path)
                except OSError as e:
                    logger.warning("Could not restore state from backup: %s", e)
                logger.info("Recovered state from backup", extra={"data": {"hashes": state.hash_count}})
                return state

        return ProcessedState.empty(self._clock())

    def persist(self, state: ProcessedState) -> None:
        """Write *state* durably. Raises :class:`StateWriteError` on failure."""
        atomic_write_json(self.path, state.to_dict())

    def advance(self, state: ProcessedState, records: Iterable[UsageRecord]) -> ProcessedState:
        """Record *records* as shipped today, prune, persist and return the result.

        *state* itself is left untouched.
        """
        now = self._clock()
        today = day_key(now)
        recent_hashes = {day: list(hashes) for day, hashes in state.recent_hashes.items()}
        recent_hashes.setdefault(today, []).extend(r.interaction_hash for r in records)

        updated = maintain(
            ProcessedState(version=state.version, last_cleanup=state.last_cleanup, recent_hashes=recent_hashes),
            self.retention_days,
            now,
        )
        self.persist(updated)
        return updated

    def reset(self) -> None:
        """Delete the ledger and its backup."""
        for path in (self.path, backup_path(self.path)):
            try:
                path.unlink()
            except FileNotFoundError:
                pass

    @staticmethod
    def _read(path: Path) -> ProcessedState:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return ProcessedState.from_dict(data)
