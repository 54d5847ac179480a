"""
File I/O Helpers — Atomic JSON writes and content hashing

Shared by the config store, rollback manager, manifest ledger and the
backend sync.  Every persisted JSON document is written to a unique
temporary file in the destination directory, verified, then renamed
over the target, so concurrent readers see either the old or the new
document, never a partial one.
"""

from __future__ import annotations

import hashlib
import json
import os
import tempfile
import time
import uuid
from datetime import datetime, timezone
from typing import Any

FILE_MODE = 0o600
DIR_MODE = 0o700


def now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    digits = []
    while n:
        n, r = divmod(n, 36)
        digits.append(_BASE36[r])
    return "".join(reversed(digits))


def generate_id(prefix: str) -> str:
    """Time-ordered unique id: <prefix>-<base36 epoch ms>-<8 hex>."""
    millis = int(time.time() * 1000)
    return f"{prefix}-{_base36(millis)}-{uuid.uuid4().hex[:8]}"


def ensure_private_dir(path: str) -> None:
    """Create path (0700) if missing."""
    os.makedirs(path, mode=DIR_MODE, exist_ok=True)


def atomic_write_json(path: str, data: Any, mode: int = FILE_MODE) -> None:
    """Write data as JSON to path via temp file + rename.

    Raises:
        OSError: On any write/rename failure; the temp file is removed.
    """
    directory = os.path.dirname(os.path.abspath(path))
    ensure_private_dir(directory)
    fd, tmp_path = tempfile.mkstemp(
        prefix=os.path.basename(path) + ".", suffix=".tmp", dir=directory,
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        # Guard against a truncated write before it becomes visible
        with open(tmp_path, "r", encoding="utf-8") as f:
            json.load(f)
        try:
            os.chmod(tmp_path, mode)
        except OSError:
            pass
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def read_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def file_sha256(path: str) -> str:
    """Compute SHA-256 hex digest of a file."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(65536), b""):
            h.update(block)
    return h.hexdigest()


def canonical_json(data: Any) -> str:
    """JSON with object keys sorted at every level."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def json_checksum(data: Any) -> str:
    """SHA-256 of the canonical JSON form of data."""
    return hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()
