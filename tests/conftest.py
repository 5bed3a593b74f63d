"""Shared fixtures for claude-stats tests."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Callable, Optional, Sequence

import pytest

from claude_stats.batch import SubmitResponse
from claude_stats.config import StatsConfig
from claude_stats.context import AgentContext, SyncLimits
from claude_stats.errors import TransportError
from claude_stats.records import TokenCounts, UsageRecord, compute_interaction_hash


def make_record(i: int, day: str = "2026-10-17") -> UsageRecord:
    """Deterministic record number *i*."""
    timestamp = f"{day}T10:{(i // 60) % 60:02d}:{i % 60:02d}.{i:06d}Z"
    return UsageRecord(
        timestamp=timestamp,
        tokens=TokenCounts(input=10 + i, output=5, cache_creation=0, cache_read=i),
        interaction_hash=compute_interaction_hash(timestamp, f"msg_{i}", f"req_{i}"),
        model="claude-sonnet-4",
        session_id="session-1",
    )


def make_records(n: int, start: int = 0) -> list[UsageRecord]:
    return [make_record(i) for i in range(start, start + n)]


def transcript_line(
    i: int,
    *,
    timestamp: Optional[str] = None,
    model: Optional[str] = "claude-sonnet-4",
    cache: bool = True,
) -> str:
    """One host transcript line carrying assistant usage."""
    usage: dict = {"input_tokens": 100 + i, "output_tokens": 20}
    if cache:
        usage["cache_creation_input_tokens"] = 3
        usage["cache_read_input_tokens"] = 7
    message: dict = {"id": f"msg_{i}", "usage": usage}
    if model is not None:
        message["model"] = model
    return json.dumps(
        {
            "timestamp": timestamp or f"2026-10-17T08:00:{i % 60:02d}.{i:03d}Z",
            "requestId": f"req_{i}",
            "sessionId": "sess-abc",
            "type": "assistant",
            "message": message,
        }
    )


def write_transcript(path: Path, lines: Sequence[str]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


class FakeSubmitter:
    """In-memory transport.

    ``fail`` decides per call whether the chunk is rejected; it receives the
    chunk and the 0-based call number.
    """

    def __init__(self, fail: Optional[Callable[[Sequence[UsageRecord], int], bool]] = None) -> None:
        self.fail = fail
        self.calls: list[list[UsageRecord]] = []
        self.delivered: list[UsageRecord] = []

    def submit(self, config: StatsConfig, records: Sequence[UsageRecord]) -> SubmitResponse:
        call_number = len(self.calls)
        self.calls.append(list(records))
        if self.fail is not None and self.fail(records, call_number):
            raise TransportError("HTTP 503", status_code=503)
        self.delivered.extend(records)
        return SubmitResponse(status_code=200, inserted=len(records))

    def close(self) -> None:
        pass


def fail_chunks_containing(*records: UsageRecord) -> Callable[[Sequence[UsageRecord], int], bool]:
    """Reject every attempt of any chunk holding one of *records*."""
    hashes = {r.interaction_hash for r in records}
    return lambda chunk, _n: any(r.interaction_hash in hashes for r in chunk)


@pytest.fixture
def stats_config() -> StatsConfig:
    return StatsConfig(username="tester", server_url="https://stats.example.test", enabled=True)


@pytest.fixture
def agent_ctx(tmp_path: Path) -> AgentContext:
    """Context rooted in tmp_path with a fast lock timeout."""
    home = tmp_path / "home"
    return AgentContext(
        home=home,
        stats_dir=home / ".claude",
        source_roots=[home / ".claude"],
        debug=False,
        limits=SyncLimits(lock_timeout=0.3, lock_poll_seconds=0.01),
    )


@pytest.fixture
def write_config(agent_ctx: AgentContext) -> Callable[..., Path]:
    def _write(**overrides) -> Path:
        data = {"username": "tester", "serverUrl": "https://stats.example.test/", "enabled": True}
        data.update(overrides)
        agent_ctx.config_file.parent.mkdir(parents=True, exist_ok=True)
        agent_ctx.config_file.write_text(json.dumps(data), encoding="utf-8")
        return agent_ctx.config_file

    return _write


@pytest.fixture
def no_sleep() -> Callable[[float], None]:
    slept: list[float] = []

    def _sleep(seconds: float) -> None:
        slept.append(seconds)

    _sleep.slept = slept  # type: ignore[attr-defined]
    return _sleep
