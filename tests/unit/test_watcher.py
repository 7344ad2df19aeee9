from __future__ import annotations

import threading
import time

from watchfiles import Change

from memindex.watcher import MemoryWatcher


def test_watch_filter_accepts_memory_files_and_extra_markdown(tmp_path):
    workspace = tmp_path / "ws"
    extra = tmp_path / "shared"
    workspace.mkdir()
    extra.mkdir()
    watcher = MemoryWatcher(workspace, extra_paths=[str(extra)], on_change=lambda paths: None)

    assert watcher.watch_filter(Change.modified, str(workspace / "MEMORY.md"))
    assert watcher.watch_filter(Change.added, str(workspace / "memory" / "day.md"))
    assert watcher.watch_filter(Change.deleted, str(workspace / "memory"))
    assert watcher.watch_filter(Change.added, str(extra / "team.md"))
    assert not watcher.watch_filter(Change.added, str(extra / "team.txt"))
    assert not watcher.watch_filter(Change.modified, str(workspace / "src" / "app.md"))
    assert not watcher.watch_filter(Change.modified, str(tmp_path / "other.md"))


def test_watch_paths_skip_missing_roots(tmp_path):
    watcher = MemoryWatcher(
        tmp_path, extra_paths=["missing-dir"], on_change=lambda paths: None
    )

    assert watcher.watch_paths() == [tmp_path]


def test_watcher_reports_changes_and_stops(tmp_path):
    (tmp_path / "memory").mkdir()
    seen: list[set[str]] = []
    changed = threading.Event()

    def on_change(paths):
        seen.append(paths)
        changed.set()

    watcher = MemoryWatcher(tmp_path, debounce_ms=50, on_change=on_change)
    watcher.start()
    try:
        assert watcher.is_running()
        time.sleep(0.3)
        (tmp_path / "memory" / "day.md").write_text("note")
        assert changed.wait(10)
    finally:
        watcher.close()

    assert not watcher.is_running()
    assert any(path.endswith("day.md") for paths in seen for path in paths)
