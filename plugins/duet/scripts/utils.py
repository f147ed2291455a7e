#!/usr/bin/env python3
"""
Duet Arena Utilities

Common helpers for durable file I/O, name validation, identifiers and the
live log used for `tail -f` monitoring of a running debate.
"""
from __future__ import annotations

import datetime as dt
import json
import os
import re
import stat
import tempfile
import uuid
from pathlib import Path
from typing import Any, Dict, IO, Optional

import logging

logger = logging.getLogger("duet")

# Valid characters for persona/profile/run names (security: prevent path traversal)
VALID_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

TITLE_MAX_LENGTH = 30

# Global live log file handle (set by the CLI for the duration of a run)
_live_log: Optional[IO[str]] = None


def set_live_log(log_file: Optional[IO[str]]) -> None:
    """Set the global live log file handle."""
    global _live_log
    _live_log = log_file


def write_live(msg: str, prefix: str = "") -> None:
    """Write to live log file for real-time monitoring via tail -f."""
    if _live_log:
        ts = dt.datetime.now().strftime("%H:%M:%S")
        line = f"[{ts}] {prefix}{msg}\n" if prefix else f"[{ts}] {msg}\n"
        _live_log.write(line)
        _live_log.flush()


def utc_now_iso() -> str:
    """Return current UTC time in ISO format."""
    return dt.datetime.now(dt.timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def make_title(text: str) -> str:
    """Conversation title from the first user request."""
    if len(text) > TITLE_MAX_LENGTH:
        return text[:TITLE_MAX_LENGTH] + "..."
    return text


def read_text(path: Path) -> str:
    """Read text from file, return empty string if file doesn't exist."""
    return path.read_text(encoding="utf-8") if path.exists() else ""


def ensure_secure_dir(path: Path) -> None:
    """Create directory with 0700 permissions (owner only) for security."""
    path.mkdir(parents=True, exist_ok=True)
    path.chmod(stat.S_IRWXU)


def write_text_atomic(path: Path, text: str) -> None:
    """Atomic write: write to temp file, fsync, then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.rename(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def append_jsonl_durable(path: Path, obj: Dict[str, Any]) -> None:
    """Append to JSONL with fsync for durability (not atomic, but durable)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(obj, ensure_ascii=False) + "\n"
    with path.open("a", encoding="utf-8") as f:
        f.write(line)
        f.flush()
        os.fsync(f.fileno())


def load_json(path: Path, default: Any) -> Any:
    """Load JSON from file. Returns default if file missing or invalid."""
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        logger.warning(f"Invalid JSON in {path}: {e}")
        return default


def save_json_atomic(path: Path, obj: Any) -> None:
    """Save object as JSON with atomic write."""
    write_text_atomic(path, json.dumps(obj, indent=2, ensure_ascii=False))


def validate_name(name: str, kind: str) -> None:
    """Validate persona/profile/run name to prevent path traversal."""
    if not VALID_NAME_PATTERN.match(name):
        raise ValueError(
            f"Invalid {kind} name '{name}': must contain only alphanumeric, underscore, or hyphen"
        )
