"""Per-invocation context: resolved paths and limits.

An ``AgentContext`` is built once at the start of a run, threaded through
every component, and discarded when the process exits. Nothing here is
module-level mutable state, which keeps tests free to point a context at a
temporary directory.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

DEBUG_ENV_VAR = "CLAUDE_STATS_DEBUG"
CONFIG_DIR_ENV_VAR = "CLAUDE_CONFIG_DIR"
XDG_CONFIG_ENV_VAR = "XDG_CONFIG_HOME"

MB = 1024 * 1024


@dataclass(frozen=True)
class SyncLimits:
    """Every tunable constant of the agent in one place."""

    chunk_size: int = 100
    max_retries: int = 3
    backoff_seconds: float = 1.0
    request_timeout: float = 5.0
    lock_timeout: float = 5.0
    lock_stale_seconds: float = 10.0
    lock_poll_seconds: float = 0.1
    retention_days: int = 30
    max_log_bytes: int = 10 * MB
    max_source_file_bytes: int = 20 * MB
    max_buffer_bytes: int = 2 * MB
    max_buffer_entries: int = 5000


@dataclass
class AgentContext:
    """Resolved locations and settings for one agent invocation.

    Attributes:
        home: User home directory the defaults are derived from.
        stats_dir: Directory holding config, state, buffer, lock and log.
        source_roots: Candidate host config roots (each may hold ``projects/``).
        debug: Whether the JSONL diagnostic log is enabled.
        limits: Size, count, retry and timing constants.
    """

    home: Path
    stats_dir: Path
    source_roots: list[Path]
    debug: bool = False
    limits: SyncLimits = field(default_factory=SyncLimits)

    @property
    def config_file(self) -> Path:
        return self.stats_dir / "stats-config.json"

    @property
    def state_file(self) -> Path:
        return self.stats_dir / "stats-state.json"

    @property
    def buffer_file(self) -> Path:
        return self.stats_dir / "stats-state.buffer.json"

    @property
    def lock_file(self) -> Path:
        return self.stats_dir / "stats.lock"

    @property
    def log_file(self) -> Path:
        return self.stats_dir / "stats-debug.log"

    @classmethod
    def from_env(
        cls,
        home: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        limits: Optional[SyncLimits] = None,
    ) -> "AgentContext":
        """Build a context from the environment (defaults to ``os.environ``)."""
        if env is None:
            env = os.environ
        if home is None:
            home = Path.home()

        return cls(
            home=home,
            stats_dir=home / ".claude",
            source_roots=default_source_roots(home, env),
            debug=env.get(DEBUG_ENV_VAR) == "true",
            limits=limits or SyncLimits(),
        )


def default_source_roots(home: Path, env: Mapping[str, str]) -> list[Path]:
    """Return the host config roots to scan, before existence filtering.

    ``CLAUDE_CONFIG_DIR`` may hold a comma-separated list and replaces the
    defaults entirely. Otherwise the XDG location and ``~/.claude`` are used.
    """
    override = env.get(CONFIG_DIR_ENV_VAR)
    if override:
        return [Path(p.strip()).expanduser() for p in override.split(",") if p.strip()]

    xdg_config = env.get(XDG_CONFIG_ENV_VAR) or str(home / ".config")
    return [Path(xdg_config) / "claude", home / ".claude"]
