"""Whole-file JSON persistence with atomic replace."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def read_json(path: Path) -> Any | None:
    """Read a JSON document. Returns None when the file does not exist.

    Raises:
        OSError: On read failure.
        ValueError: If the file is not valid JSON.
    """
    if not path.exists():
        return None
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def write_json_atomic(path: Path, data: Any) -> None:
    """Write a JSON document via temp file + rename.

    Readers never observe a half-written file: the new content is fsynced
    to a sibling temp file and then swapped in with os.replace.

    Raises:
        OSError: On write failure (the previous file is left untouched).
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, default=str)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def remove_file(path: Path) -> bool:
    """Delete a file. Returns False if it did not exist."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True
