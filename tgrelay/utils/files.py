"""Atomic snapshot helpers for the flat-file stores."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

__all__ = ["read_json", "write_bytes_atomic", "write_json_atomic"]


def write_bytes_atomic(path: Path, data: bytes, *, mode: int = 0o600) -> None:
    """Replace ``path`` with ``data`` so readers never observe a partial file."""

    tmp_dir = path.parent
    tmp_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=tmp_dir,
        prefix=f".{path.stem}.",
        suffix=".tmp",
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except Exception:
        try:
            tmp_path.unlink(missing_ok=True)
        finally:
            raise


def write_json_atomic(path: Path, payload: Any, *, mode: int = 0o600) -> None:
    encoded = json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)
    write_bytes_atomic(path, encoded.encode("utf-8"), mode=mode)


def read_json(path: Path, *, default: Any = None) -> Any:
    """Return the decoded contents of ``path`` or ``default`` when it is missing."""

    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    if not raw.strip():
        return default
    return json.loads(raw)
