"""Atomic file writes for pool bookkeeping.

Write-to-temp + fsync + rename, so an interrupted write never leaves a
truncated index or metadata file behind.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any


class AtomicWriteError(OSError):
    """Raised when an atomic write fails."""


def atomic_write_text(path: Path | str, content: str, encoding: str = "utf-8") -> None:
    """Write text to ``path`` atomically.

    Raises:
        AtomicWriteError: If the write or the rename fails.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise AtomicWriteError(f"Failed to write {path}: {e}") from e


def atomic_write_json(path: Path | str, data: dict[str, Any] | list[Any], indent: int = 2) -> None:
    """Serialize ``data`` as JSON and write it atomically."""
    content = json.dumps(data, indent=indent, sort_keys=True, ensure_ascii=False)
    atomic_write_text(path, content + "\n")


def read_json(path: Path | str) -> Any | None:
    """Load JSON from ``path``; None if the file is missing or unreadable."""
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError):
        return None
