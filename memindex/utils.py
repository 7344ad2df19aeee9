"""Utility helpers for hashing, memory file discovery and path handling."""

from __future__ import annotations

import hashlib
import os
import re
import stat
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Callable, Iterable, Sequence, TypeVar

T = TypeVar("T")


@dataclass(slots=True)
class MemoryFileEntry:
    """A markdown file eligible for indexing."""

    path: str
    abs_path: Path
    mtime: float
    size: int
    hash: str


def hash_text(text: str) -> str:
    """Return the SHA-256 hex digest of *text*."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def resolve_user_path(value: str | os.PathLike[str]) -> Path:
    """Expand ``~`` and return an absolute path."""
    return Path(os.path.expanduser(os.fspath(value))).resolve()


def normalize_rel_path(value: str) -> str:
    return value.replace("\\", "/")


def is_memory_path(rel_path: str) -> bool:
    """Return True for ``MEMORY.md``, ``memory.md`` and ``memory/**.md``."""
    normalized = normalize_rel_path(rel_path)
    if normalized.startswith("./"):
        normalized = normalized[2:]
    if normalized in {"MEMORY.md", "memory.md"}:
        return True
    return normalized.startswith("memory/") and normalized.endswith(".md")


def is_within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


def normalize_extra_paths(workspace_dir: Path, extra_paths: Sequence[str] | None) -> list[Path]:
    """Resolve extra memory roots against the workspace, dropping duplicates."""

    if not extra_paths:
        return []
    resolved: list[Path] = []
    seen: set[Path] = set()
    for raw in extra_paths:
        token = (raw or "").strip()
        if not token:
            continue
        candidate = Path(os.path.expanduser(token))
        if not candidate.is_absolute():
            candidate = workspace_dir / candidate
        candidate = Path(os.path.abspath(candidate))
        if candidate in seen:
            continue
        seen.add(candidate)
        resolved.append(candidate)
    return resolved


def _lstat(path: Path) -> os.stat_result | None:
    try:
        return path.lstat()
    except OSError:
        return None


def _walk_markdown(root: Path) -> Iterable[Path]:
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames.sort()
        for name in sorted(filenames):
            if not name.endswith(".md"):
                continue
            candidate = Path(dirpath) / name
            info = _lstat(candidate)
            if info is None or stat.S_ISLNK(info.st_mode) or not stat.S_ISREG(info.st_mode):
                continue
            yield candidate


def _collect_markdown(target: Path) -> list[Path]:
    info = _lstat(target)
    if info is None or stat.S_ISLNK(info.st_mode):
        return []
    if stat.S_ISDIR(info.st_mode):
        return list(_walk_markdown(target))
    if stat.S_ISREG(info.st_mode) and target.name.endswith(".md"):
        return [target]
    return []


def list_memory_files(
    workspace_dir: Path,
    extra_paths: Sequence[str] | None = None,
) -> list[Path]:
    """Return absolute paths of every indexable memory markdown file.

    Symlinks are never followed and files reachable through more than one
    root are returned once.
    """

    candidates: list[Path] = []
    for name in ("MEMORY.md", "memory.md", "memory"):
        candidates.extend(_collect_markdown(workspace_dir / name))
    for extra in normalize_extra_paths(workspace_dir, extra_paths):
        candidates.extend(_collect_markdown(extra))
    unique: list[Path] = []
    seen: set[str] = set()
    for path in candidates:
        key = os.path.realpath(path)
        if key in seen:
            continue
        seen.add(key)
        unique.append(path)
    return unique


def build_file_entry(abs_path: Path, workspace_dir: Path) -> MemoryFileEntry:
    info = abs_path.stat()
    content = abs_path.read_text(encoding="utf-8")
    rel_path = os.path.relpath(abs_path, workspace_dir)
    return MemoryFileEntry(
        path=normalize_rel_path(rel_path),
        abs_path=abs_path,
        mtime=info.st_mtime,
        size=info.st_size,
        hash=hash_text(content),
    )


_SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}"),
    re.compile(r"\bAIza[0-9A-Za-z_\-]{10,}"),
    re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._\-]{8,}"),
    re.compile(r"(?i)([?&](?:api_)?key=)[^&\s]+"),
)


def redact_secrets(message: str) -> str:
    """Mask API keys and bearer tokens embedded in *message*."""

    redacted = message
    for pattern in _SECRET_PATTERNS:
        if pattern.groups:
            redacted = pattern.sub(lambda match: f"{match.group(1)}***", redacted)
        else:
            redacted = pattern.sub("***", redacted)
    return redacted


def run_with_concurrency(tasks: Sequence[Callable[[], T]], limit: int) -> list[T | None]:
    """Run *tasks* on at most *limit* threads, preserving result order.

    Workers claim the next task from a shared cursor. After the first
    failure no new task is started; tasks already running finish and the
    first error is raised.
    """

    if not tasks:
        return []
    workers = max(1, min(int(limit or 1), len(tasks)))
    results: list[T | None] = [None] * len(tasks)
    lock = Lock()
    cursor = 0
    first_error: BaseException | None = None

    def worker() -> None:
        nonlocal cursor, first_error
        while True:
            with lock:
                if first_error is not None or cursor >= len(tasks):
                    return
                index = cursor
                cursor += 1
            try:
                results[index] = tasks[index]()
            except Exception as exc:
                with lock:
                    if first_error is None:
                        first_error = exc
                return

    if workers == 1:
        worker()
    else:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="memindex-index") as executor:
            for future in [executor.submit(worker) for _ in range(workers)]:
                future.result()
    if first_error is not None:
        raise first_error
    return results


def call_with_timeout(
    executor: Executor,
    func: Callable[[], T],
    timeout: float,
    make_error: Callable[[], BaseException],
) -> T:
    """Return ``func()`` or raise ``make_error()`` after *timeout* seconds.

    A call that times out keeps running on its worker; its result is dropped.
    """

    future = executor.submit(func)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        future.cancel()
        raise make_error() from None
