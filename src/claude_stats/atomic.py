"""Crash-safe JSON file writes shared by the state and buffer stores."""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any

from .errors import StateWriteError


def backup_path(path: Path) -> Path:
    """Return the ``.backup`` sibling of *path*."""
    return path.with_name(path.name + ".backup")


def atomic_write_json(path: Path, data: Any) -> None:
    """Persist *data* to *path* so readers never observe a partial file.

    Steps: write a temp file in the same directory, copy the current
    target to its ``.backup`` sibling (when one exists), then ``os.replace``
    the temp file over the target. If anything fails the temp file is
    removed, a missing target is restored from the backup, and
    :class:`StateWriteError` is raised.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    backup = backup_path(path)

    fd, tmp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f"{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())

        if path.exists():
            shutil.copyfile(path, backup)

        os.replace(tmp_path, path)
    except (OSError, TypeError, ValueError) as e:
        try:
            if backup.exists() and not path.exists():
                shutil.copyfile(backup, path)
        except OSError:
            pass
        raise StateWriteError(str(path), str(e)) from e
    finally:
        # Already renamed on success
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
