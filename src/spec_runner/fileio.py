"""Small file helpers shared by the stores."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from spec_runner.errors import PersistenceError


def atomic_write_text(path: Path, content: str) -> None:
    """Replace ``path`` with ``content`` via temp file + rename.

    Creates parent directories. Readers never observe a half-written file.

    Raises:
        PersistenceError: If the directory or file cannot be written.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    except OSError as exc:
        raise PersistenceError(f"Cannot write {path}: {exc}") from exc
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_path, path)
    except OSError as exc:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise PersistenceError(f"Cannot write {path}: {exc}") from exc


def atomic_write_json(path: Path, data: Any) -> None:
    """Serialize ``data`` as indented JSON and write it atomically."""
    atomic_write_text(path, json.dumps(data, indent=2) + "\n")


__all__ = ["atomic_write_text", "atomic_write_json"]
