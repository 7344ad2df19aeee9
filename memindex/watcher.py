"""Background watcher that reports memory markdown changes."""

from __future__ import annotations

import os
from pathlib import Path
from threading import Event, Thread
from typing import Callable, Sequence

from loguru import logger
from watchfiles import Change, watch

from .utils import is_memory_path, is_within, normalize_extra_paths


class MemoryWatcher:
    """Watches the workspace memory files and extra paths on a daemon thread.

    *on_change* is called once per debounced group of changes.
    """

    def __init__(
        self,
        workspace_dir: Path,
        *,
        extra_paths: Sequence[str] = (),
        debounce_ms: int = 1500,
        on_change: Callable[[set[str]], None],
    ) -> None:
        self.workspace_dir = workspace_dir
        self.extra_roots = normalize_extra_paths(workspace_dir, extra_paths)
        self.debounce_ms = debounce_ms
        self.on_change = on_change
        self._stop_event = Event()
        self._thread: Thread | None = None

    def watch_paths(self) -> list[Path]:
        candidates = [self.workspace_dir, *self.extra_roots]
        return [path for path in candidates if path.exists()]

    def watch_filter(self, _change: Change, path: str) -> bool:
        candidate = Path(path)
        if is_within(candidate, self.workspace_dir):
            rel_path = os.path.relpath(candidate, self.workspace_dir)
            if is_memory_path(rel_path) or rel_path == "memory":
                return True
        if not path.endswith(".md"):
            return False
        return any(is_within(candidate, root) for root in self.extra_roots)

    def start(self) -> None:
        if self._thread is not None:
            return
        paths = self.watch_paths()
        if not paths:
            logger.debug("memory watch: nothing to watch")
            return
        self._stop_event.clear()
        self._thread = Thread(
            target=self._watch_loop,
            args=(paths,),
            name="memindex-watch",
            daemon=True,
        )
        self._thread.start()
        logger.debug(f"memory watch: started on {[str(path) for path in paths]}")

    def close(self) -> None:
        self._stop_event.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread.is_alive():
            thread.join(timeout=5)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _watch_loop(self, paths: list[Path]) -> None:
        try:
            for changes in watch(
                *paths,
                watch_filter=self.watch_filter,
                debounce=max(1, self.debounce_ms),
                stop_event=self._stop_event,
                recursive=True,
            ):
                if self._stop_event.is_set():
                    break
                self.on_change({path for _, path in changes})
        except FileNotFoundError as exc:
            logger.debug(f"memory watch: path no longer exists: {exc}")
        except Exception as exc:
            logger.warning(f"memory watch: stopped after error: {exc}")
