"""Locate host transcript logs and collect records not yet shipped.

The host writes one append-only ``.jsonl`` transcript per session below
``<root>/projects/``. Each line is parsed independently; a bad line, a bad
file or an unreadable directory never stops the scan of its siblings.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable

from .records import UsageRecord, parse_usage_line
from .state import ProcessedState

logger = logging.getLogger(__name__)

PROJECTS_DIR = "projects"
LOG_SUFFIX = ".jsonl"


def existing_source_roots(roots: Iterable[Path]) -> list[Path]:
    """Keep only roots that contain a ``projects/`` directory."""
    return [root for root in roots if (root / PROJECTS_DIR).is_dir()]


def find_log_files(directory: Path) -> list[Path]:
    """Recursively list ``*.jsonl`` files below *directory*, sorted.

    Unreadable subdirectories are skipped.
    """
    files: list[Path] = []
    for dirpath, _dirnames, filenames in os.walk(directory):
        for name in filenames:
            if name.endswith(LOG_SUFFIX):
                files.append(Path(dirpath) / name)
    return sorted(files)


def parse_log_file(path: Path) -> tuple[list[UsageRecord], int]:
    """Parse every line of *path*.

    Returns:
        The parsed records and the number of non-empty lines read.

    Raises:
        OSError: If the file cannot be opened or read.
    """
    records: list[UsageRecord] = []
    line_count = 0
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            if not line.strip():
                continue
            line_count += 1
            record = parse_usage_line(line)
            if record is not None:
                records.append(record)
    return records, line_count


def collect_unprocessed(
    state: ProcessedState,
    roots: Iterable[Path],
    max_file_bytes: int = 20 * 1024 * 1024,
) -> list[UsageRecord]:
    """Collect records from all transcripts whose hash is not in *state*.

    Files larger than *max_file_bytes* are skipped with a warning. Records
    that appear in several transcripts are returned once.

    Args:
        state: Ledger of hashes already shipped.
        roots: Host config roots; only those with ``projects/`` are scanned.
        max_file_bytes: Per-file size ceiling.

    Returns:
        New records in scan order (root, then sorted file path, then line).
    """
    seen = state.processed_hashes()
    scan_roots = existing_source_roots(roots)
    if not scan_roots:
        logger.warning("No host config directories with transcripts found")
        return []

    logger.info("Starting data collection", extra={"data": {"roots": len(scan_roots)}})
    unprocessed: list[UsageRecord] = []

    for root in scan_roots:
        projects_dir = root / PROJECTS_DIR
        files = find_log_files(projects_dir)
        logger.debug("Found transcript files", extra={"data": {"path": str(projects_dir), "count": len(files)}})

        for file_path in files:
            try:
                size = file_path.stat().st_size
                if size > max_file_bytes:
                    logger.warning(
                        "Skipping large file %s",
                        file_path.name,
                        extra={"data": {"file": file_path.name, "size": size}},
                    )
                    continue

                records, line_count = parse_log_file(file_path)
            except OSError as e:
                logger.warning(
                    "Failed to process file %s: %s",
                    file_path.name,
                    e,
                    extra={"data": {"file": file_path.name, "error": str(e)}},
                )
                continue

            new_in_file = 0
            for record in records:
                if record.interaction_hash in seen:
                    continue
                seen.add(record.interaction_hash)
                unprocessed.append(record)
                new_in_file += 1

            if new_in_file:
                logger.debug(
                    "Parsed transcript",
                    extra={"data": {"file": file_path.name, "lines": line_count, "new": new_in_file}},
                )

    logger.info("Collected unprocessed entries", extra={"data": {"count": len(unprocessed)}})
    return unprocessed
