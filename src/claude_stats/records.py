"""Usage records parsed from host transcript lines.

A transcript line is one JSON object. Lines that carry an assistant
``message.usage`` block become a :class:`UsageRecord`; everything else is
dropped without complaint since transcripts hold many non-usage lines.
"""

from __future__ import annotations

import hashlib
import json
import math
from dataclasses import dataclass
from typing import Any, Optional


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and math.isfinite(value)


def _count(value: Any) -> int:
    """Coerce an optional token count, treating junk and negatives as zero."""
    if not _is_number(value) or value < 0:
        return 0
    return int(value)


def compute_interaction_hash(timestamp: str, message_id: str = "", request_id: str = "") -> str:
    """Return the dedup identity of one interaction.

    SHA-256 over ``timestamp + message_id + request_id`` with absent ids
    as empty strings. Stable across rescans of the same log content.
    """
    raw = f"{timestamp}{message_id}{request_id}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class TokenCounts:
    input: int = 0
    output: int = 0
    cache_creation: int = 0
    cache_read: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output + self.cache_creation + self.cache_read

    def to_dict(self) -> dict[str, int]:
        return {
            "input": self.input,
            "output": self.output,
            "cache_creation": self.cache_creation,
            "cache_read": self.cache_read,
        }


@dataclass(frozen=True)
class UsageRecord:
    """Token consumption of one host interaction.

    Records are immutable; the same instance travels from the scanner into
    the pending buffer, through the sender and into the processed state.

    Attributes:
        timestamp: Event time as found in the transcript (ISO-8601).
        tokens: Input, output and cache token counts.
        model: Model identifier, ``"unknown"`` when absent.
        session_id: Host session the interaction belongs to, if known.
        interaction_hash: Dedup identity, see :func:`compute_interaction_hash`.
    """

    timestamp: str
    tokens: TokenCounts
    interaction_hash: str
    model: str = "unknown"
    session_id: Optional[str] = None

    @property
    def day_key(self) -> str:
        """``YYYY-MM-DD`` part of the event timestamp."""
        return self.timestamp.split("T", 1)[0]

    def to_dict(self) -> dict[str, Any]:
        """Wire/buffer representation, as submitted to the server."""
        return {
            "timestamp": self.timestamp,
            "tokens": self.tokens.to_dict(),
            "model": self.model,
            "session_id": self.session_id,
            "interaction_hash": self.interaction_hash,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["UsageRecord"]:
        """Rebuild a record from :meth:`to_dict` output; None if malformed."""
        if not isinstance(data, dict):
            return None
        timestamp = data.get("timestamp")
        interaction_hash = data.get("interaction_hash")
        tokens = data.get("tokens")
        if not isinstance(timestamp, str) or not timestamp:
            return None
        if not isinstance(interaction_hash, str) or not interaction_hash:
            return None
        if not isinstance(tokens, dict):
            return None

        session_id = data.get("session_id")
        model = data.get("model")
        return cls(
            timestamp=timestamp,
            tokens=TokenCounts(
                input=_count(tokens.get("input")),
                output=_count(tokens.get("output")),
                cache_creation=_count(tokens.get("cache_creation")),
                cache_read=_count(tokens.get("cache_read")),
            ),
            interaction_hash=interaction_hash,
            model=model if isinstance(model, str) and model else "unknown",
            session_id=session_id if isinstance(session_id, str) else None,
        )


def parse_usage_line(line: str) -> Optional[UsageRecord]:
    """Parse one transcript line into a :class:`UsageRecord`.

    Returns None when the line is not a JSON object, has no ``timestamp``,
    has no ``message.usage`` object, or its ``input_tokens`` /
    ``output_tokens`` are not numbers. Missing cache counts default to 0.
    """
    line = line.strip()
    if not line:
        return None
    try:
        data = json.loads(line)
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None

    timestamp = data.get("timestamp")
    message = data.get("message")
    if not timestamp or not isinstance(message, dict):
        return None
    usage = message.get("usage")
    if not isinstance(usage, dict):
        return None

    input_tokens = usage.get("input_tokens")
    output_tokens = usage.get("output_tokens")
    if not _is_number(input_tokens) or not _is_number(output_tokens):
        return None

    timestamp = str(timestamp)
    message_id = message.get("id") or ""
    request_id = data.get("requestId") or ""
    session_id = data.get("sessionId")

    return UsageRecord(
        timestamp=timestamp,
        tokens=TokenCounts(
            input=_count(input_tokens),
            output=_count(output_tokens),
            cache_creation=_count(usage.get("cache_creation_input_tokens")),
            cache_read=_count(usage.get("cache_read_input_tokens")),
        ),
        interaction_hash=compute_interaction_hash(timestamp, str(message_id), str(request_id)),
        model=str(message.get("model") or "unknown"),
        session_id=str(session_id) if session_id else None,
    )
