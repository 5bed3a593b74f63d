"""Tests for the collection-and-sync cycle"""
import json
import os
import time
from dataclasses import replace
from unittest.mock import patch

import pytest

from claude_stats.buffer import BufferStore
from claude_stats.context import AgentContext, SyncLimits
from claude_stats.errors import StateWriteError, TransportError
from claude_stats.lock import RunLock
from claude_stats.records import parse_usage_line
from claude_stats.runner import RunMode, RunOutcome, UsageSyncRunner, run_once
from claude_stats.state import StateStore

from conftest import FakeSubmitter, fail_chunks_containing, make_records, transcript_line, write_transcript


def _seed(ctx, count, start=0, name="session.jsonl"):
    """Write *count* usage lines into a transcript and return their records."""
    lines = [transcript_line(i) for i in range(start, start + count)]
    write_transcript(ctx.source_roots[0] / "projects" / "proj" / name, lines)
    return [parse_usage_line(line) for line in lines]


def _hashes(records):
    return {r.interaction_hash for r in records}


def _state_hashes(ctx):
    return StateStore(ctx.state_file).load().processed_hashes()


def _buffer(ctx):
    return BufferStore(ctx.buffer_file).load()


@pytest.fixture
def run(agent_ctx, no_sleep):
    def _run(submitter, ctx=None):
        return run_once(ctx or agent_ctx, submitter=submitter, sleep=no_sleep)

    return _run


class TestGuards:
    """Test the early exits"""

    def test_no_config_is_disabled(self, agent_ctx, run):
        """Test a missing config does nothing"""
        _seed(agent_ctx, 3)
        submitter = FakeSubmitter()
        assert run(submitter).outcome is RunOutcome.DISABLED
        assert submitter.calls == []
        assert not agent_ctx.buffer_file.exists()

    @pytest.mark.parametrize("overrides", [{"enabled": False}, {"enabled": "true"}, {"serverUrl": ""}])
    def test_inactive_config_is_disabled(self, agent_ctx, write_config, run, overrides):
        """Test disabled or incomplete configs do nothing"""
        write_config(**overrides)
        _seed(agent_ctx, 3)
        submitter = FakeSubmitter()
        assert run(submitter).outcome is RunOutcome.DISABLED
        assert submitter.calls == []

    def test_locked_has_no_side_effects(self, agent_ctx, write_config, run):
        """Test a held lock makes the run exit without touching state"""
        write_config()
        _seed(agent_ctx, 3)
        holder = RunLock(agent_ctx.lock_file)
        assert holder.acquire(timeout=0.5)
        try:
            submitter = FakeSubmitter()
            report = run(submitter)
        finally:
            holder.release()

        assert report.outcome is RunOutcome.LOCKED
        assert submitter.calls == []
        assert not agent_ctx.buffer_file.exists()
        assert not agent_ctx.state_file.exists()

    def test_nothing_to_send(self, agent_ctx, write_config, run):
        """Test an empty scan clears the buffer and reports nothing to send"""
        write_config()
        report = run(FakeSubmitter())
        assert report.outcome is RunOutcome.NOTHING_TO_SEND
        assert not agent_ctx.buffer_file.exists()
        assert not agent_ctx.lock_file.exists()

    def test_unexpected_error_is_reported_not_raised(self, agent_ctx, write_config, run):
        """Test an unexpected exception becomes an ERROR report and releases the lock"""
        write_config()
        records = _seed(agent_ctx, 5)

        class Exploding(FakeSubmitter):
            def submit(self, config, chunk):
                raise RuntimeError("kaboom")

        report = run(Exploding())
        assert report.outcome is RunOutcome.ERROR
        assert report.error == "kaboom"
        assert not agent_ctx.lock_file.exists()
        assert _hashes(_buffer(agent_ctx).pending_entries) == _hashes(records)


    def test_unresolvable_home_is_reported_not_raised(self, monkeypatch):
        """Test a failing context lookup still yields an ERROR report"""

        def no_home(*args, **kwargs):
            raise RuntimeError("Could not determine home directory.")

        monkeypatch.setattr(AgentContext, "from_env", no_home)
        report = run_once()
        assert report.outcome is RunOutcome.ERROR
        assert "home directory" in report.error


class TestCollectAndSend:
    """Test the collect path"""

    def test_full_success(self, agent_ctx, write_config, run):
        """Test 150 new records are sent in two chunks and recorded"""
        write_config()
        records = _seed(agent_ctx, 150)
        submitter = FakeSubmitter()

        report = run(submitter)

        assert report.outcome is RunOutcome.SENT
        assert report.mode is RunMode.COLLECT
        assert report.sent == 150
        assert [len(c) for c in submitter.calls] == [100, 50]
        assert not agent_ctx.buffer_file.exists()
        assert _state_hashes(agent_ctx) == _hashes(records)

    def test_second_run_sends_nothing(self, agent_ctx, write_config, run):
        """Test shipped records are never collected again"""
        write_config()
        _seed(agent_ctx, 20)
        run(FakeSubmitter())

        submitter = FakeSubmitter()
        assert run(submitter).outcome is RunOutcome.NOTHING_TO_SEND
        assert submitter.calls == []

    def test_only_new_lines_sent(self, agent_ctx, write_config, run):
        """Test appended transcript lines are picked up on the next run"""
        write_config()
        _seed(agent_ctx, 10)
        run(FakeSubmitter())

        added = _seed(agent_ctx, 5, start=100, name="later.jsonl")
        submitter = FakeSubmitter()
        run(submitter)
        assert _hashes(submitter.delivered) == _hashes(added)

    def test_partial_success(self, agent_ctx, write_config, run):
        """Test only the failed chunk stays buffered with retry 1"""
        write_config()
        records = _seed(agent_ctx, 150)
        submitter = FakeSubmitter(fail=fail_chunks_containing(records[120]))

        report = run(submitter)

        assert report.outcome is RunOutcome.PARTIAL
        assert (report.sent, report.remaining) == (100, 50)
        buffer = _buffer(agent_ctx)
        assert buffer.retry_count == 1
        assert buffer.pending_entries == records[100:]
        assert _state_hashes(agent_ctx) == _hashes(records[:100])

    def test_no_record_lost_or_double_counted(self, agent_ctx, write_config, run):
        """Test every collected record is in exactly one of state or buffer"""
        write_config()
        records = _seed(agent_ctx, 420)
        run(FakeSubmitter(fail=fail_chunks_containing(records[50], records[310])))

        shipped = _state_hashes(agent_ctx)
        pending = _hashes(_buffer(agent_ctx).pending_entries)
        assert shipped | pending == _hashes(records)
        assert shipped & pending == set()

    def test_total_failure_keeps_everything(self, agent_ctx, write_config, run):
        """Test a fully failed send keeps all records and bumps retry"""
        write_config()
        records = _seed(agent_ctx, 30)
        report = run(FakeSubmitter(fail=lambda chunk, n: True))

        assert report.outcome is RunOutcome.FAILED
        assert report.remaining == 30
        buffer = _buffer(agent_ctx)
        assert buffer.pending_entries == records
        assert buffer.retry_count == 1
        assert _state_hashes(agent_ctx) == set()

    def test_state_advanced_before_buffer_write(self, agent_ctx, write_config, run):
        """Test a failing buffer write after a partial send only risks re-sending"""
        write_config()
        records = _seed(agent_ctx, 150)
        with patch.object(BufferStore, "save_failed", side_effect=StateWriteError("buffer", "disk full")):
            report = run(FakeSubmitter(fail=fail_chunks_containing(records[120])))

        assert report.outcome is RunOutcome.ERROR
        assert _state_hashes(agent_ctx) == _hashes(records[:100])
        assert _hashes(_buffer(agent_ctx).pending_entries) == _hashes(records)


class TestPendingBuffer:
    """Test resume, exhausted and large-buffer paths"""

    def test_resume_skips_scan(self, agent_ctx, write_config, run):
        """Test a small retryable buffer is sent without collecting"""
        write_config()
        pending = make_records(7)
        BufferStore(agent_ctx.buffer_file).save_failed(pending, retry_count=1)
        fresh = _seed(agent_ctx, 4)
        submitter = FakeSubmitter()

        report = run(submitter)

        assert report.outcome is RunOutcome.SENT
        assert report.mode is RunMode.RESUME
        assert submitter.delivered == pending
        assert not agent_ctx.buffer_file.exists()

        follow_up = FakeSubmitter()
        run(follow_up)
        assert _hashes(follow_up.delivered) == _hashes(fresh)

    def test_retries_until_exhausted_then_recollects(self, agent_ctx, write_config, run):
        """Test retry counting across runs and the merge after exhaustion"""
        write_config()
        records = _seed(agent_ctx, 12)
        failing = FakeSubmitter(fail=lambda chunk, n: True)

        modes = []
        for _ in range(3):
            modes.append(run(failing).mode)
        assert modes == [RunMode.COLLECT, RunMode.RESUME, RunMode.RESUME]
        assert _buffer(agent_ctx).retry_count == 3

        submitter = FakeSubmitter()
        report = run(submitter)
        assert report.mode is RunMode.COLLECT
        assert report.outcome is RunOutcome.SENT
        assert submitter.delivered == records

    def test_exhausted_buffer_merged_older_first(self, agent_ctx, write_config, run):
        """Test pending records precede new ones and none are dropped"""
        write_config()
        pending = make_records(5)
        BufferStore(agent_ctx.buffer_file).save_failed(pending, retry_count=3)
        fresh = _seed(agent_ctx, 3)
        submitter = FakeSubmitter()

        report = run(submitter)

        assert report.outcome is RunOutcome.SENT
        assert submitter.delivered == pending + fresh
        assert _state_hashes(agent_ctx) == _hashes(pending + fresh)

    def test_large_buffer_drained_without_collecting(self, agent_ctx, write_config, run):
        """Test an oversized backlog is flushed and the transcripts left alone"""
        write_config()
        ctx = replace(agent_ctx, limits=SyncLimits(lock_timeout=0.3, max_buffer_entries=20, chunk_size=10))
        backlog = make_records(25)
        BufferStore(ctx.buffer_file).save(backlog)
        _seed(ctx, 4)
        submitter = FakeSubmitter()

        report = run(submitter, ctx=ctx)

        assert report.mode is RunMode.AGGRESSIVE
        assert report.outcome is RunOutcome.SENT
        assert [len(c) for c in submitter.calls] == [10, 10, 5]
        assert submitter.delivered == backlog

    def test_large_buffer_partial(self, agent_ctx, write_config, run):
        """Test a partially drained backlog keeps the failed chunk"""
        write_config()
        ctx = replace(agent_ctx, limits=SyncLimits(lock_timeout=0.3, max_buffer_entries=20, chunk_size=10))
        backlog = make_records(25)
        BufferStore(ctx.buffer_file).save(backlog)

        report = run(FakeSubmitter(fail=fail_chunks_containing(backlog[12])), ctx=ctx)

        assert report.outcome is RunOutcome.PARTIAL
        buffer = _buffer(ctx)
        assert buffer.pending_entries == backlog[10:20]
        assert buffer.retry_count == 1
        assert _state_hashes(ctx) == _hashes(backlog[:10] + backlog[20:])


    def test_unreadable_large_buffer_does_not_block_collection(self, agent_ctx, write_config, run):
        """Test a truncated oversized buffer is replaced by a fresh scan"""
        write_config()
        ctx = replace(agent_ctx, limits=SyncLimits(lock_timeout=0.3, max_buffer_bytes=1000))
        text = json.dumps({"pendingEntries": [r.to_dict() for r in make_records(30)]})
        ctx.buffer_file.parent.mkdir(parents=True, exist_ok=True)
        ctx.buffer_file.write_text(text[: len(text) // 2])
        assert ctx.buffer_file.stat().st_size > 1000
        fresh = _seed(ctx, 3)
        submitter = FakeSubmitter()

        report = run(submitter, ctx=ctx)

        assert report.mode is RunMode.COLLECT
        assert report.outcome is RunOutcome.SENT
        assert submitter.delivered == fresh
        assert not ctx.buffer_file.exists()

    def test_manual_flush_discards_unreadable_buffer(self, agent_ctx, stats_config, no_sleep):
        """Test flushing an unreadable buffer removes it"""
        agent_ctx.buffer_file.parent.mkdir(parents=True, exist_ok=True)
        agent_ctx.buffer_file.write_text("{\"pendingEntries\": [")

        report = UsageSyncRunner(agent_ctx, stats_config, submitter=FakeSubmitter(), sleep=no_sleep).flush()

        assert report.outcome is RunOutcome.NOTHING_TO_SEND
        assert not agent_ctx.buffer_file.exists()

    def test_lock_kept_fresh_during_slow_attempts(self, agent_ctx, write_config, run):
        """Test the lock is refreshed before every attempt of a slow failing chunk"""
        write_config()
        _seed(agent_ctx, 5)
        ages = []

        class SlowFailing(FakeSubmitter):
            def submit(self, config, chunk):
                lock_file = agent_ctx.lock_file
                ages.append(time.time() - lock_file.stat().st_mtime)
                # a request that hangs past the stale window
                aged = time.time() - 60
                os.utime(lock_file, (aged, aged))
                raise TransportError("Request timeout")

        report = run(SlowFailing())

        assert report.outcome is RunOutcome.FAILED
        assert len(ages) == 3
        assert all(age < 5 for age in ages)


class TestFlushAndDiagnostics:
    """Test manual flush and the debug log of a run"""

    def test_manual_flush(self, agent_ctx, stats_config, no_sleep):
        """Test flush sends whatever is buffered"""
        pending = make_records(3)
        BufferStore(agent_ctx.buffer_file).save(pending)
        submitter = FakeSubmitter()

        report = UsageSyncRunner(agent_ctx, stats_config, submitter=submitter, sleep=no_sleep).flush()

        assert report.outcome is RunOutcome.SENT
        assert report.mode is RunMode.MANUAL
        assert submitter.delivered == pending

    def test_manual_flush_empty(self, agent_ctx, stats_config, no_sleep):
        """Test flushing an empty buffer"""
        report = UsageSyncRunner(agent_ctx, stats_config, submitter=FakeSubmitter(), sleep=no_sleep).flush()
        assert report.outcome is RunOutcome.NOTHING_TO_SEND

    def test_debug_log_written(self, agent_ctx, write_config, run):
        """Test a debug run leaves JSONL diagnostics"""
        ctx = replace(agent_ctx, debug=True)
        write_config()
        _seed(ctx, 2)
        run(FakeSubmitter(), ctx=ctx)

        messages = [json.loads(line)["message"] for line in ctx.log_file.read_text().splitlines()]
        assert "Starting usage collection" in messages
        assert "Run finished" in messages
