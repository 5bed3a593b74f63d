"""Chunked submission of usage records to the aggregation endpoint.

Records are split into fixed-size chunks, each POSTed as one request and
retried with linear backoff. The result tracks which original positions
were delivered so the caller can keep exactly the undelivered records.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

import requests

from .config import StatsConfig
from .errors import TransportError
from .records import UsageRecord

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 100
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_SECONDS = 1.0
DEFAULT_TIMEOUT = 5.0


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


@dataclass
class SubmitResponse:
    """Parsed body of a 2xx submit response.

    The server reports ``inserted`` (or ``submitted`` on older builds) and
    silently skips hashes it already stores.
    """

    status_code: int
    inserted: Optional[int] = None
    skipped: Optional[int] = None
    total: Optional[int] = None

    @classmethod
    def from_response(cls, response: requests.Response) -> "SubmitResponse":
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            return cls(status_code=response.status_code)

        def _int(key: str) -> Optional[int]:
            value = body.get(key)
            return value if isinstance(value, int) and not isinstance(value, bool) else None

        inserted = _int("inserted")
        if inserted is None:
            inserted = _int("submitted")
        return cls(
            status_code=response.status_code,
            inserted=inserted,
            skipped=_int("skipped"),
            total=_int("total"),
        )


class UsageSubmitter:
    """POST one chunk of records to ``{serverUrl}/api/usage/submit``.

    Args:
        timeout: Per-request timeout in seconds.
        session: Optional ``requests.Session`` (one is created lazily).
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, session: Optional[requests.Session] = None) -> None:
        self.timeout = timeout
        self._session = session

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def submit(self, config: StatsConfig, records: Sequence[UsageRecord]) -> SubmitResponse:
        """Deliver *records* in a single request.

        Raises:
            TransportError: On a non-2xx status, timeout or connection error.
        """
        payload: dict[str, Any] = {
            "username": config.username,
            "usage": [r.to_dict() for r in records],
        }
        try:
            response = self.session.post(
                config.submit_url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise TransportError("Request timeout") from e
        except requests.exceptions.ConnectionError as e:
            raise TransportError(f"Connection error: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransportError(str(e)) from e

        if not 200 <= response.status_code < 300:
            raise TransportError(f"HTTP {response.status_code}", status_code=response.status_code)
        return SubmitResponse.from_response(response)

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class ChunkResult:
    """Outcome of one chunk after all of its attempts."""

    chunk_index: int
    start_index: int
    end_index: int
    success: bool
    attempts: int
    error: Optional[str] = None
    inserted: Optional[int] = None

    @property
    def size(self) -> int:
        return self.end_index - self.start_index


@dataclass
class BatchSendResult:
    """Aggregate of a :func:`send_batch` call.

    Attributes:
        total_entries: Number of records handed in.
        chunks: One ``ChunkResult`` per chunk, in send order.
        sent_entries: Records of succeeded chunks, in original order.
        failed_entries: Records of failed chunks, in original order. These
            are the very objects passed in, so the caller can persist them
            as-is.
    """

    total_entries: int = 0
    chunks: list[ChunkResult] = field(default_factory=list)
    sent_entries: list[UsageRecord] = field(default_factory=list)
    failed_entries: list[UsageRecord] = field(default_factory=list)

    @property
    def total_sent(self) -> int:
        return len(self.sent_entries)

    @property
    def has_any_sent(self) -> bool:
        return self.total_sent > 0

    @property
    def success(self) -> bool:
        """True when every chunk was delivered (vacuously true for no records)."""
        return all(c.success for c in self.chunks)

    @property
    def error_messages(self) -> list[str]:
        return [f"chunk {c.chunk_index}: {c.error}" for c in self.chunks if not c.success and c.error]

    def summary(self) -> dict[str, Any]:
        """Compact JSON-friendly view for diagnostics."""
        return {
            "success": self.success,
            "totalEntries": self.total_entries,
            "totalSent": self.total_sent,
            "failed": len(self.failed_entries),
            "chunks": len(self.chunks),
            "failedChunks": [c.chunk_index for c in self.chunks if not c.success],
        }


def format_send_summary(result: BatchSendResult) -> str:
    """Human-readable one-block summary.

    Example output::

        Sent: 100/150 in 2 chunk(s), Failed: 50
          chunk 1: HTTP 503
    """
    lines = [
        f"Sent: {result.total_sent}/{result.total_entries} in {len(result.chunks)} chunk(s), "
        f"Failed: {len(result.failed_entries)}"
    ]
    for message in result.error_messages:
        lines.append(f"  {message}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Core send
# ---------------------------------------------------------------------------


def chunk_bounds(total: int, chunk_size: int) -> list[tuple[int, int]]:
    """Return ``(start, end)`` index pairs covering ``range(total)``."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    return [(start, min(start + chunk_size, total)) for start in range(0, total, chunk_size)]


def send_batch(
    config: StatsConfig,
    records: Sequence[UsageRecord],
    submitter: Optional[UsageSubmitter] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    max_retries: int = DEFAULT_MAX_RETRIES,
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    on_attempt: Optional[Callable[[], None]] = None,
    on_chunk: Optional[Callable[[ChunkResult], None]] = None,
) -> BatchSendResult:
    """Deliver *records* in chunks with per-chunk retry.

    Each chunk gets up to *max_retries* attempts, sleeping
    ``attempt * backoff_seconds`` between attempts. A chunk is failed only
    after its last attempt. Later chunks are still tried after a failure.

    Args:
        config: Username and server to submit to.
        records: Records to deliver, in order.
        submitter: Transport; a default ``UsageSubmitter`` when omitted.
        chunk_size: Records per request.
        max_retries: Attempts per chunk.
        backoff_seconds: Linear backoff unit.
        sleep: Sleep function (injectable for tests).
        on_attempt: Called before every request and every backoff sleep,
            e.g. to refresh a lock.
        on_chunk: Called after each chunk settles.

    Returns:
        BatchSendResult with per-chunk outcomes and the exact sent/failed
        record partition.
    """
    owns_submitter = submitter is None
    if submitter is None:
        submitter = UsageSubmitter()

    result = BatchSendResult(total_entries=len(records))
    succeeded: set[int] = set()

    try:
        for chunk_index, (start, end) in enumerate(chunk_bounds(len(records), chunk_size)):
            chunk = records[start:end]
            chunk_result = _send_chunk(
                submitter,
                config,
                chunk,
                chunk_index,
                start,
                end,
                max_retries=max_retries,
                backoff_seconds=backoff_seconds,
                sleep=sleep,
                on_attempt=on_attempt,
            )
            if chunk_result.success:
                succeeded.update(range(start, end))
            result.chunks.append(chunk_result)
            if on_chunk is not None:
                on_chunk(chunk_result)
    finally:
        if owns_submitter:
            submitter.close()

    for index, record in enumerate(records):
        if index in succeeded:
            result.sent_entries.append(record)
        else:
            result.failed_entries.append(record)
    return result


def _send_chunk(
    submitter: UsageSubmitter,
    config: StatsConfig,
    chunk: Sequence[UsageRecord],
    chunk_index: int,
    start: int,
    end: int,
    max_retries: int,
    backoff_seconds: float,
    sleep: Callable[[float], None],
    on_attempt: Optional[Callable[[], None]] = None,
) -> ChunkResult:
    last_error: Optional[str] = None
    attempt = 0
    while attempt < max_retries:
        attempt += 1
        if on_attempt is not None:
            on_attempt()
        try:
            response = submitter.submit(config, chunk)
        except TransportError as e:
            last_error = str(e)
            logger.debug(
                "Chunk %d attempt %d failed: %s",
                chunk_index,
                attempt,
                e,
                extra={"data": {"chunk": chunk_index, "attempt": attempt, "error": last_error}},
            )
            if attempt < max_retries:
                if on_attempt is not None:
                    on_attempt()
                sleep(attempt * backoff_seconds)
            continue

        return ChunkResult(
            chunk_index=chunk_index,
            start_index=start,
            end_index=end,
            success=True,
            attempts=attempt,
            inserted=response.inserted,
        )

    logger.warning(
        "Chunk %d failed after %d attempts: %s",
        chunk_index,
        attempt,
        last_error,
        extra={"data": {"chunk": chunk_index, "records": end - start, "error": last_error}},
    )
    return ChunkResult(
        chunk_index=chunk_index,
        start_index=start,
        end_index=end,
        success=False,
        attempts=attempt,
        error=last_error,
    )
