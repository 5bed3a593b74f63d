"""
Local token-usage collector for claude-stats.

Scans the host's JSONL transcripts for usage records, stages unsent records
in a durable pending buffer, and ships them in retried chunks to the stats
server:

- Crash-safe JSON state with backup recovery
- Cross-process run lock with stale-lock reclaim
- Exact partial-failure bookkeeping per record
- Drain-first handling of an oversized backlog
"""

import logging

from .batch import BatchSendResult, ChunkResult, UsageSubmitter, send_batch
from .buffer import BufferSizeCheck, BufferStore, PendingBuffer
from .config import StatsConfig, load_config
from .context import AgentContext, SyncLimits
from .errors import StateWriteError, StatsError, TransportError
from .lock import RunLock
from .records import TokenCounts, UsageRecord, parse_usage_line
from .runner import RunMode, RunOutcome, RunReport, UsageSyncRunner, run_once
from .scanner import collect_unprocessed
from .state import ProcessedState, StateStore

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "AgentContext",
    "SyncLimits",
    "StatsConfig",
    "load_config",
    "UsageRecord",
    "TokenCounts",
    "parse_usage_line",
    "collect_unprocessed",
    "ProcessedState",
    "StateStore",
    "PendingBuffer",
    "BufferStore",
    "BufferSizeCheck",
    "send_batch",
    "BatchSendResult",
    "ChunkResult",
    "UsageSubmitter",
    "RunLock",
    "UsageSyncRunner",
    "RunReport",
    "RunOutcome",
    "RunMode",
    "run_once",
    "StatsError",
    "StateWriteError",
    "TransportError",
]
