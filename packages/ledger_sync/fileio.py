"""Small JSON file helpers shared by the file-backed stores.

Atomicity: writes target ``<name>.tmp`` first and then ``os.replace`` into
place, so readers only ever see the previous or the new payload.
"""

from __future__ import annotations

import contextlib
import json
import os
from pathlib import Path
from typing import Any


def write_json_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        tmp.write_text(
            json.dumps(payload, ensure_ascii=False, separators=(",", ":")),
            encoding="utf-8",
        )
        os.replace(tmp, path)
    except Exception:
        with contextlib.suppress(FileNotFoundError):
            tmp.unlink()
        raise


def read_json(path: Path) -> Any | None:
    """Return the decoded payload, or ``None`` when the file does not exist.

    Raises ``ValueError`` (``json.JSONDecodeError``) for corrupt content and
    ``OSError`` for unreadable files; callers decide how to recover.
    """

    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    return json.loads(text)


__all__ = ["read_json", "write_json_atomic"]
