"""Session transcript extraction and append-delta tracking."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from ..utils import hash_text, normalize_rel_path

SESSION_SOURCE_DIR = "sessions"
NEWLINE_READ_CHUNK = 64 * 1024

_LINE_BREAK_RE = re.compile(r"\s*\n+\s*")
_WHITESPACE_RE = re.compile(r"\s+")
_ROLE_LABELS = {"user": "User", "assistant": "Assistant"}


@dataclass(slots=True)
class SessionDeltaState:
    last_size: int = 0
    pending_bytes: int = 0
    pending_messages: int = 0


@dataclass(slots=True)
class SessionFileEntry:
    """A transcript flattened to ``Role: text`` lines."""

    path: str
    abs_path: Path
    mtime: float
    size: int
    hash: str
    content: str
    line_map: list[int] = field(default_factory=list)


def session_path_for_file(abs_path: Path) -> str:
    return normalize_rel_path(os.path.join(SESSION_SOURCE_DIR, abs_path.name))


def normalize_session_text(value: str) -> str:
    collapsed = _LINE_BREAK_RE.sub(" ", value)
    return _WHITESPACE_RE.sub(" ", collapsed).strip()


def extract_session_text(content: object) -> str | None:
    """Return the plain text of a message ``content`` field, or None."""

    if isinstance(content, str):
        return normalize_session_text(content) or None
    if not isinstance(content, list):
        return None
    parts: list[str] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        if block.get("type") != "text" or not isinstance(block.get("text"), str):
            continue
        normalized = normalize_session_text(block["text"])
        if normalized:
            parts.append(normalized)
    return " ".join(parts) if parts else None


def list_session_files(sessions_dir: Path) -> list[Path]:
    try:
        entries = sorted(sessions_dir.iterdir())
    except OSError:
        return []
    return [entry for entry in entries if entry.name.endswith(".jsonl") and entry.is_file()]


def build_session_entry(abs_path: Path) -> SessionFileEntry | None:
    """Flatten the user/assistant messages of a JSONL transcript.

    ``line_map[i]`` is the transcript line (1-based) that produced content
    line ``i + 1``. Returns None when the file cannot be read.
    """

    try:
        info = abs_path.stat()
        raw = abs_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        logger.debug(f"Failed reading session file {abs_path}: {exc}")
        return None
    collected: list[str] = []
    line_map: list[int] = []
    for line_no, line in enumerate(raw.split("\n"), start=1):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(record, dict) or record.get("type") != "message":
            continue
        message = record.get("message")
        if not isinstance(message, dict):
            continue
        label = _ROLE_LABELS.get(message.get("role"))
        if label is None:
            continue
        text = extract_session_text(message.get("content"))
        if not text:
            continue
        collected.append(f"{label}: {text}")
        line_map.append(line_no)
    content = "\n".join(collected)
    return SessionFileEntry(
        path=session_path_for_file(abs_path),
        abs_path=abs_path,
        mtime=info.st_mtime,
        size=info.st_size,
        hash=hash_text(content),
        content=content,
        line_map=line_map,
    )


def count_newlines(abs_path: Path, start: int, end: int) -> int:
    """Count ``\\n`` bytes in ``[start, end)`` of *abs_path*."""

    if end <= start:
        return 0
    count = 0
    with abs_path.open("rb") as handle:
        handle.seek(start)
        remaining = end - start
        while remaining > 0:
            block = handle.read(min(NEWLINE_READ_CHUNK, remaining))
            if not block:
                break
            count += block.count(b"\n")
            remaining -= len(block)
    return count


def update_session_delta(
    state: SessionDeltaState,
    abs_path: Path,
    size: int,
    *,
    delta_bytes: int,
    delta_messages: int,
) -> bool:
    """Fold the file's new *size* into *state*; True when a threshold is met.

    A shrinking file is measured again from offset zero. Newlines are only
    counted while the byte threshold has not been reached yet.
    """

    if size < state.last_size:
        state.last_size = 0
    growth = size - state.last_size
    if growth > 0:
        start = state.last_size
        state.pending_bytes += growth
        if delta_messages > 0 and (delta_bytes <= 0 or state.pending_bytes < delta_bytes):
            try:
                state.pending_messages += count_newlines(abs_path, start, size)
            except OSError as exc:
                logger.debug(f"memory sync: failed counting lines in {abs_path}: {exc}")
        state.last_size = size
    return _threshold_hit(state.pending_bytes, delta_bytes) or _threshold_hit(
        state.pending_messages, delta_messages
    )


def _threshold_hit(pending: int, threshold: int) -> bool:
    if threshold <= 0:
        return pending > 0
    return pending >= threshold


def consume_delta_thresholds(
    state: SessionDeltaState, *, delta_bytes: int, delta_messages: int
) -> None:
    """Subtract the thresholds from the pending counters after a trigger."""

    if delta_bytes > 0:
        state.pending_bytes = max(0, state.pending_bytes - delta_bytes)
    else:
        state.pending_bytes = 0
    if delta_messages > 0:
        state.pending_messages = max(0, state.pending_messages - delta_messages)
    else:
        state.pending_messages = 0


def reset_session_delta(state: SessionDeltaState, size: int) -> None:
    state.last_size = size
    state.pending_bytes = 0
    state.pending_messages = 0
