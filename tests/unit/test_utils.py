from __future__ import annotations

import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

import memindex.utils as utils


def test_is_memory_path():
    assert utils.is_memory_path("MEMORY.md")
    assert utils.is_memory_path("memory.md")
    assert utils.is_memory_path("./memory/2024-01-01.md")
    assert utils.is_memory_path("memory\\notes\\today.md")
    assert not utils.is_memory_path("memory/notes.txt")
    assert not utils.is_memory_path("docs/MEMORY.md")
    assert not utils.is_memory_path("memoryx/notes.md")


def test_list_memory_files_collects_roots_and_skips_symlinks(tmp_path):
    workspace = tmp_path / "ws"
    (workspace / "memory" / "nested").mkdir(parents=True)
    (workspace / "MEMORY.md").write_text("root", encoding="utf-8")
    (workspace / "memory" / "a.md").write_text("a", encoding="utf-8")
    (workspace / "memory" / "nested" / "b.md").write_text("b", encoding="utf-8")
    (workspace / "memory" / "ignored.txt").write_text("x", encoding="utf-8")
    extra = tmp_path / "extra"
    extra.mkdir()
    (extra / "c.md").write_text("c", encoding="utf-8")
    os.symlink(extra / "c.md", workspace / "memory" / "link.md")

    files = utils.list_memory_files(workspace, [str(extra), str(extra)])

    names = [path.name for path in files]
    assert names == ["MEMORY.md", "a.md", "b.md", "c.md"]


def test_list_memory_files_dedupes_overlapping_roots(tmp_path):
    (tmp_path / "memory").mkdir()
    (tmp_path / "memory" / "a.md").write_text("a", encoding="utf-8")

    files = utils.list_memory_files(tmp_path, ["memory"])

    assert [path.name for path in files] == ["a.md"]


def test_build_file_entry_uses_relative_posix_path(tmp_path):
    target = tmp_path / "memory" / "day.md"
    target.parent.mkdir()
    target.write_text("hello", encoding="utf-8")

    entry = utils.build_file_entry(target, tmp_path)

    assert entry.path == "memory/day.md"
    assert entry.size == 5
    assert entry.hash == utils.hash_text("hello")


def test_redact_secrets_masks_keys():
    message = "bad key sk-abcdefghijklmnop and Bearer abc.def.ghi123 via ?key=AIzaSyXXXXXXXXXXXX"

    redacted = utils.redact_secrets(message)

    assert "sk-abcdefghijklmnop" not in redacted
    assert "abc.def.ghi123" not in redacted
    assert "AIzaSyXXXXXXXXXXXX" not in redacted
    assert "***" in redacted


def test_run_with_concurrency_preserves_order_and_limit():
    active = 0
    peak = 0
    lock = threading.Lock()

    def make(value):
        def task():
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.01)
            with lock:
                active -= 1
            return value * 2

        return task

    results = utils.run_with_concurrency([make(i) for i in range(8)], 3)

    assert results == [i * 2 for i in range(8)]
    assert peak <= 3


def test_run_with_concurrency_stops_after_first_error():
    started = []

    def ok(value):
        def task():
            started.append(value)
            return value

        return task

    def boom():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        utils.run_with_concurrency([ok(1), boom, ok(2), ok(3)], 1)

    assert started == [1]


def test_call_with_timeout_raises_custom_error():
    release = threading.Event()
    with ThreadPoolExecutor(max_workers=1) as executor:
        with pytest.raises(TimeoutError, match="too slow"):
            utils.call_with_timeout(
                executor,
                lambda: release.wait(5),
                0.05,
                lambda: TimeoutError("too slow"),
            )
        release.set()
        assert utils.call_with_timeout(executor, lambda: 42, 1, lambda: TimeoutError()) == 42
