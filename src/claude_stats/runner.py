"""One collection-and-sync cycle, as triggered by the host's stop hook.

Flow (under the run lock):

1. If the pending buffer is large, drain it through the chunked sender and
   stop; no new records are collected while a backlog exists.
2. Otherwise resume a small pending buffer that is still under the retry
   ceiling, or scan the transcripts for records missing from the processed
   state and stage them in the buffer.
3. Send. Hashes of delivered records are added to the processed state
   first; then the buffer is cleared (full success), replaced by the
   undelivered records (partial success), or has its retry count bumped
   (total failure).

Nothing here raises to the caller of :func:`run_once`; the outcome is
reported as a :class:`RunReport`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence

from .batch import BatchSendResult, UsageSubmitter, send_batch
from .buffer import BufferStore, PendingBuffer
from .config import StatsConfig, load_config
from .context import AgentContext
from .diagnostics import configure_diagnostics, shutdown_diagnostics
from .lock import RunLock
from .records import UsageRecord
from .scanner import collect_unprocessed
from .state import StateStore

logger = logging.getLogger(__name__)


class RunOutcome(str, Enum):
    DISABLED = "disabled"
    LOCKED = "locked"
    NOTHING_TO_SEND = "nothing_to_send"
    SENT = "sent"
    PARTIAL = "partial"
    FAILED = "failed"
    ERROR = "error"


class RunMode(str, Enum):
    COLLECT = "collect"
    RESUME = "resume"
    AGGRESSIVE = "aggressive"
    MANUAL = "manual"


@dataclass
class RunReport:
    """What a cycle did. ``error`` is set only for ``RunOutcome.ERROR``."""

    outcome: RunOutcome
    mode: Optional[RunMode] = None
    sent: int = 0
    remaining: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "mode": self.mode.value if self.mode else None,
            "sent": self.sent,
            "remaining": self.remaining,
            "error": self.error,
        }


class UsageSyncRunner:
    """Wires the stores, scanner and sender for one invocation.

    Args:
        ctx: Resolved paths and limits.
        config: Submission settings; must be active.
        submitter: Transport (a default ``UsageSubmitter`` when omitted).
        sleep: Sleep used for send backoff and lock polling.
    """

    def __init__(
        self,
        ctx: AgentContext,
        config: StatsConfig,
        submitter: Optional[UsageSubmitter] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ctx = ctx
        self.config = config
        self.submitter = submitter or UsageSubmitter(timeout=ctx.limits.request_timeout)
        self._sleep = sleep
        limits = ctx.limits
        self.state_store = StateStore(ctx.state_file, retention_days=limits.retention_days)
        self.buffer_store = BufferStore(
            ctx.buffer_file,
            max_bytes=limits.max_buffer_bytes,
            max_entries=limits.max_buffer_entries,
        )
        self.lock = RunLock(
            ctx.lock_file,
            stale_seconds=limits.lock_stale_seconds,
            poll_seconds=limits.lock_poll_seconds,
            sleep=sleep,
        )

    def run(self) -> RunReport:
        """Run a full cycle if the lock can be taken."""
        return self._locked(self._run_cycle)

    def flush(self) -> RunReport:
        """Drain the pending buffer regardless of its size."""
        return self._locked(lambda: self.flush_buffer(RunMode.MANUAL))

    # ── Cycle ─────────────────────────────────────────────────────

    def _locked(self, body: Callable[[], RunReport]) -> RunReport:
        if not self.lock.acquire(timeout=self.ctx.limits.lock_timeout):
            logger.info("Another instance is running, skipping")
            return RunReport(outcome=RunOutcome.LOCKED)
        try:
            return body()
        finally:
            self.lock.release()

    def _run_cycle(self) -> RunReport:
        logger.info("Starting usage collection")

        size = self.buffer_store.size_check()
        if size.is_large:
            logger.info(
                "Large buffer detected, flushing before collecting",
                extra={"data": {"size": size.size, "entries": size.entries}},
            )
            return self.flush_buffer(RunMode.AGGRESSIVE)

        buffer = self.buffer_store.load()
        if buffer is not None and buffer.pending_entries and buffer.retry_count < self.ctx.limits.max_retries:
            logger.info(
                "Found buffered entries",
                extra={"data": {"count": len(buffer), "retryCount": buffer.retry_count}},
            )
            return self._ship(buffer, RunMode.RESUME)

        state = self.state_store.load()
        logger.debug("Loaded state", extra={"data": {"hashCount": state.hash_count}})
        entries = collect_unprocessed(
            state,
            self.ctx.source_roots,
            max_file_bytes=self.ctx.limits.max_source_file_bytes,
        )
        if buffer is not None and buffer.pending_entries:
            entries = _merge_pending(buffer.pending_entries, entries, state.processed_hashes())

        if not entries:
            logger.info("No new entries to send")
            self.buffer_store.clear()
            return RunReport(outcome=RunOutcome.NOTHING_TO_SEND, mode=RunMode.COLLECT)

        staged = self.buffer_store.save(entries)
        return self._ship(staged, RunMode.COLLECT)

    def flush_buffer(self, mode: RunMode) -> RunReport:
        """Send the whole stored buffer through the chunked sender."""
        buffer = self.buffer_store.load()
        if buffer is None and self.buffer_store.exists():
            # Its records are not in the state, so the next scan recollects them
            logger.warning(
                "Discarding unreadable pending buffer",
                extra={"data": {"path": str(self.buffer_store.path)}},
            )
            self.buffer_store.clear()
        if buffer is None or not buffer.pending_entries:
            return RunReport(outcome=RunOutcome.NOTHING_TO_SEND, mode=mode)

        logger.info(
            "Flushing pending buffer",
            extra={"data": {"totalEntries": len(buffer), "mode": mode.value}},
        )
        return self._ship(buffer, mode)

    def _ship(self, buffer: PendingBuffer, mode: RunMode) -> RunReport:
        result = send_batch(
            self.config,
            buffer.pending_entries,
            submitter=self.submitter,
            chunk_size=self.ctx.limits.chunk_size,
            max_retries=self.ctx.limits.max_retries,
            backoff_seconds=self.ctx.limits.backoff_seconds,
            sleep=self._sleep,
            on_attempt=self.lock.refresh,
            on_chunk=lambda _chunk: self.lock.refresh(),
        )
        logger.info("Batch send completed", extra={"data": result.summary()})
        return self._settle(buffer, result, mode)

    def _settle(self, buffer: PendingBuffer, result: BatchSendResult, mode: RunMode) -> RunReport:
        """Record delivered hashes, then shrink or bump the buffer.

        The state is advanced before the buffer is touched, so a failed
        buffer write can only lead to re-sending, never to a lost record.
        """
        if result.has_any_sent:
            state = self.state_store.load()
            self.state_store.advance(state, result.sent_entries)

        if result.success:
            self.buffer_store.clear()
            logger.info("All entries sent successfully, buffer cleared")
            return RunReport(outcome=RunOutcome.SENT, mode=mode, sent=result.total_sent)

        if result.has_any_sent:
            self.buffer_store.save_failed(result.failed_entries, buffer.retry_count + 1)
            logger.info(
                "Partial success, preserving failed entries",
                extra={"data": {"successful": result.total_sent, "failed": len(result.failed_entries)}},
            )
            return RunReport(
                outcome=RunOutcome.PARTIAL,
                mode=mode,
                sent=result.total_sent,
                remaining=len(result.failed_entries),
            )

        self.buffer_store.record_failure()
        logger.warning("No entries sent successfully, all saved for retry")
        return RunReport(outcome=RunOutcome.FAILED, mode=mode, remaining=len(result.failed_entries))


def _merge_pending(
    pending: Sequence[UsageRecord],
    collected: Sequence[UsageRecord],
    processed: set[str],
) -> list[UsageRecord]:
    """Combine an exhausted buffer with fresh records, older records first.

    Pending records already in the processed state are dropped, and each
    hash appears once.
    """
    merged: list[UsageRecord] = []
    seen = set(processed)
    for record in list(pending) + list(collected):
        if record.interaction_hash in seen:
            continue
        seen.add(record.interaction_hash)
        merged.append(record)
    return merged


def run_once(
    ctx: Optional[AgentContext] = None,
    submitter: Optional[UsageSubmitter] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RunReport:
    """Hook entry: load config, run one cycle, never raise.

    Any unexpected exception is logged and reported as
    ``RunOutcome.ERROR``; the caller still exits successfully.
    """
    handler = None
    try:
        if ctx is None:
            ctx = AgentContext.from_env()
        handler = configure_diagnostics(ctx)
        config = load_config(ctx.config_file)
        if config is None or not config.is_active:
            return RunReport(outcome=RunOutcome.DISABLED)

        runner = UsageSyncRunner(ctx, config, submitter=submitter, sleep=sleep)
        report = runner.run()
        logger.info("Run finished", extra={"data": report.to_dict()})
        return report
    except Exception as e:
        logger.exception("Error in usage sync run", extra={"data": {"error": str(e)}})
        return RunReport(outcome=RunOutcome.ERROR, error=str(e))
    finally:
        shutdown_diagnostics(handler)
