"""Shared helpers — hashing, timestamps, etc."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from pathlib import Path

_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9_.-]+")


def sha256_file(path: Path) -> str:
    """Return the hex SHA-256 digest of *path*."""
    h = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def utcnow_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def safe_filename_part(label: str, fallback: str = "record") -> str:
    """Reduce *label* to characters that are safe in a file name."""
    cleaned = _UNSAFE_FILENAME_RE.sub("_", label.strip()).strip("._")
    return cleaned[:80] or fallback
