"""Logic for keeping the memory index in step with files on disk."""

from __future__ import annotations

import os
import uuid
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Callable, Iterable, Sequence

from loguru import logger

from ..chunking import chunk_markdown, remap_chunk_lines
from ..config import MemorySettings
from ..embeddings import (
    ProviderFactory,
    compute_provider_key,
    create_embedding_provider,
    default_model_for,
    should_fallback_on_error,
)
from ..store import FileRecord, IndexMeta, IndexStore
from ..text import Messages
from ..utils import (
    MemoryFileEntry,
    build_file_entry,
    hash_text,
    list_memory_files,
    redact_secrets,
    run_with_concurrency,
)
from .batch_service import EmbeddingPipeline, resolve_batch_config
from .session_service import (
    SessionDeltaState,
    SessionFileEntry,
    build_session_entry,
    consume_delta_thresholds,
    list_session_files,
    reset_session_delta,
    session_path_for_file,
    update_session_delta,
)

INDEX_FILE_SUFFIXES = ("", "-wal", "-shm")
_LOW_VALUE_SESSION_REASONS = {"session-start", "watch"}


@dataclass(slots=True)
class SyncProgress:
    completed: int
    total: int
    label: str | None = None


ProgressCallback = Callable[[SyncProgress], None]


@dataclass
class SyncState:
    """Mutable bookkeeping shared by sync passes and change notifications."""

    dirty: bool = False
    sessions_dirty: bool = False
    sessions_dirty_files: set[Path] = field(default_factory=set)
    session_deltas: dict[Path, SessionDeltaState] = field(default_factory=dict)
    fallback_from: str | None = None
    fallback_reason: str | None = None
    lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def dirty_files(self) -> set[Path]:
        with self.lock:
            return set(self.sessions_dirty_files)

    def clear_session_dirty(self) -> None:
        with self.lock:
            self.sessions_dirty = False
            self.sessions_dirty_files.clear()

    def refresh_sessions_dirty(self) -> None:
        with self.lock:
            self.sessions_dirty = bool(self.sessions_dirty_files)

    def reset_delta(self, abs_path: Path, size: int) -> None:
        with self.lock:
            state = self.session_deltas.get(abs_path)
            if state is not None:
                reset_session_delta(state, size)


class _ProgressTracker:
    def __init__(self, callback: ProgressCallback | None) -> None:
        self._callback = callback
        self._lock = Lock()
        self.completed = 0
        self.total = 0
        self.label: str | None = None

    def report(self, *, label: str | None = None, add_total: int = 0) -> None:
        with self._lock:
            if label:
                self.label = label
            self.total += add_total
            self._emit()

    def advance(self) -> None:
        with self._lock:
            self.completed += 1
            self._emit()

    def _emit(self) -> None:
        if self._callback is None:
            return
        label = self.label
        if self.total > 0 and label:
            label = f"{label} {self.completed}/{self.total}"
        self._callback(SyncProgress(completed=self.completed, total=self.total, label=label))


def _move_file(src: Path, dst: Path) -> None:
    os.replace(src, dst)


def _with_suffix(path: Path, suffix: str) -> Path:
    return Path(f"{path}{suffix}")


def _move_index_files(src: Path, dst: Path) -> None:
    for suffix in INDEX_FILE_SUFFIXES:
        try:
            _move_file(_with_suffix(src, suffix), _with_suffix(dst, suffix))
        except FileNotFoundError:
            continue


def _remove_index_files(base: Path) -> None:
    for suffix in INDEX_FILE_SUFFIXES:
        _with_suffix(base, suffix).unlink(missing_ok=True)


def swap_index_files(db_path: Path, temp_path: Path) -> None:
    """Move *temp_path* over *db_path*, restoring the live files on failure."""

    backup_path = Path(f"{db_path}.backup-{uuid.uuid4()}")
    _move_index_files(db_path, backup_path)
    try:
        _move_index_files(temp_path, db_path)
    except Exception:
        _move_index_files(backup_path, db_path)
        raise
    _remove_index_files(backup_path)


class SyncEngine:
    """Single-flight indexer for one agent's memory and session sources."""

    def __init__(
        self,
        settings: MemorySettings,
        *,
        workspace_dir: Path,
        db_path: Path,
        sessions_dir: Path,
        pipeline: EmbeddingPipeline,
        state: SyncState | None = None,
        provider_factory: ProviderFactory | None = None,
    ) -> None:
        self.settings = settings
        self.workspace_dir = workspace_dir
        self.db_path = db_path
        self.sessions_dir = sessions_dir
        self.pipeline = pipeline
        self.sources = tuple(settings.sources)
        self.state = state or SyncState(dirty="memory" in self.sources)
        self._provider_factory = provider_factory
        self._lock = Lock()
        self._syncing: Future | None = None
        self.store = self.open_store(db_path)

    def open_store(self, path: Path) -> IndexStore:
        return IndexStore(
            path,
            fts_enabled=self.settings.query.hybrid.enabled,
            vector_enabled=self.settings.store.vector.enabled,
            extension_path=self.settings.store.vector.extension_path,
        )

    def close(self) -> None:
        self.store.close()

    @property
    def syncing(self) -> bool:
        with self._lock:
            return self._syncing is not None

    def sync(
        self,
        *,
        reason: str | None = None,
        force: bool = False,
        progress: ProgressCallback | None = None,
    ) -> None:
        """Run one sync pass, or wait for the pass already in flight."""

        with self._lock:
            future = self._syncing
            owner = future is None
            if owner:
                future = Future()
                self._syncing = future
        if not owner:
            future.result()
            return
        error: Exception | None = None
        try:
            self._run_sync(reason=reason, force=force, progress=_ProgressTracker(progress))
        except Exception as exc:
            error = exc
            self.state.dirty = True
            raise
        finally:
            with self._lock:
                self._syncing = None
            if error is None:
                future.set_result(None)
            else:
                future.set_exception(error)

    def needs_full_reindex(self, meta: IndexMeta | None, vector_ready: bool) -> bool:
        if meta is None:
            return True
        provider = self.pipeline.provider
        chunking = self.settings.chunking
        return (
            meta.model != provider.model
            or meta.provider != provider.id
            or meta.provider_key != self.pipeline.provider_key
            or meta.chunk_tokens != chunking.tokens
            or meta.chunk_overlap != chunking.overlap
            or (vector_ready and not meta.vector_dims)
        )

    def should_sync_sessions(
        self, *, reason: str | None, force: bool, needs_full: bool = False
    ) -> bool:
        if "sessions" not in self.sources:
            return False
        if force:
            return True
        if reason in _LOW_VALUE_SESSION_REASONS:
            return False
        if needs_full:
            return True
        with self.state.lock:
            return self.state.sessions_dirty and bool(self.state.sessions_dirty_files)

    def _run_sync(self, *, reason: str | None, force: bool, progress: _ProgressTracker) -> None:
        progress.report(label=Messages.INFO_SYNC_VECTOR)
        vector_ready = self.store.ensure_vector_ready()
        meta = self.store.read_meta()
        needs_full = force or self.needs_full_reindex(meta, vector_ready)
        try:
            if needs_full:
                self._run_safe_reindex(reason=reason, force=force, progress=progress)
                return
            if "memory" in self.sources and self.state.dirty:
                self._sync_memory_files(needs_full=False, progress=progress)
                self.state.dirty = False
            self._sync_sessions_if_needed(
                self.should_sync_sessions(reason=reason, force=False),
                needs_full=False,
                progress=progress,
            )
        except Exception as exc:
            message = str(exc)
            if should_fallback_on_error(message) and self.activate_fallback(message):
                self._run_safe_reindex(
                    reason=reason or "fallback", force=True, progress=progress
                )
                return
            raise

    def _sync_sessions_if_needed(
        self, should_sync: bool, *, needs_full: bool, progress: _ProgressTracker
    ) -> None:
        if should_sync:
            self._sync_session_files(needs_full=needs_full, progress=progress)
            self.state.clear_session_dirty()
        else:
            self.state.refresh_sessions_dirty()

    def activate_fallback(self, reason: str) -> bool:
        """Switch to the configured fallback provider, at most once."""

        fallback = (self.settings.fallback or "").lower()
        current = self.pipeline.provider
        if not fallback or fallback == "none" or fallback == current.id:
            return False
        if self.state.fallback_from:
            return False
        result = create_embedding_provider(
            self.settings,
            provider_id=fallback,
            model=default_model_for(fallback, self.settings.model),
            fallback="none",
            factory=self._provider_factory,
        )
        provider = result.provider
        self.state.fallback_from = current.id
        self.state.fallback_reason = redact_secrets(reason)
        self.pipeline.configure(
            provider,
            provider_key=compute_provider_key(provider),
            batch=resolve_batch_config(self.settings, provider),
        )
        logger.warning(
            f"memory embeddings: switched to fallback provider ({fallback}): "
            f"{self.state.fallback_reason}"
        )
        return True

    # Safe reindex

    def _run_safe_reindex(
        self, *, reason: str | None, force: bool, progress: _ProgressTracker
    ) -> None:
        """Rebuild into a temp database, then swap it over the live file."""

        db_path = self.db_path
        temp_path = Path(f"{db_path}.tmp-{uuid.uuid4()}")
        original = self.store
        original_closed = False
        temp = self.open_store(temp_path)
        self.store = temp
        try:
            seeded = temp.seed_cache_from(original)
            logger.debug(
                f"memory sync: full reindex ({reason or 'manual'}), seeded {seeded} cache entries"
            )
            if "memory" in self.sources:
                self._sync_memory_files(needs_full=True, progress=progress)
                self.state.dirty = False
            # The temp database replaces the live one, so every source is rebuilt.
            self._sync_sessions_if_needed(
                "sessions" in self.sources,
                needs_full=True,
                progress=progress,
            )
            provider = self.pipeline.provider
            vector = temp.vector
            meta = IndexMeta(
                provider=provider.id,
                model=provider.model,
                provider_key=self.pipeline.provider_key,
                chunk_tokens=self.settings.chunking.tokens,
                chunk_overlap=self.settings.chunking.overlap,
                vector_dims=vector.dims if vector.available and vector.dims else None,
            )
            temp.write_meta(meta)
            if self.pipeline.cache_enabled:
                temp.prune_cache(self.settings.cache.max_entries)
            temp.close()
            original.close()
            original_closed = True
            swap_index_files(db_path, temp_path)
        except Exception:
            temp.close()
            _remove_index_files(temp_path)
            self.store = self.open_store(db_path) if original_closed else original
            raise
        self.store = self.open_store(db_path)
        files, chunks = self.store.counts(self.sources)
        logger.info(Messages.INFO_INDEX_DONE.format(files=files, chunks=chunks))

    # Memory files

    def _sync_memory_files(self, *, needs_full: bool, progress: _ProgressTracker) -> None:
        store = self.store
        entries = self._memory_entries()
        concurrency = self.pipeline.index_concurrency()
        logger.debug(
            f"memory sync: indexing memory files (files={len(entries)}, full={needs_full}, "
            f"batch={self.pipeline.batch.enabled}, concurrency={concurrency})"
        )
        label = (
            Messages.INFO_SYNC_MEMORY_BATCH if self.pipeline.batch.enabled else Messages.INFO_SYNC_MEMORY
        )
        progress.report(label=label, add_total=len(entries))

        def task(entry: MemoryFileEntry) -> None:
            if not needs_full and store.file_hash(entry.path, "memory") == entry.hash:
                progress.advance()
                return
            content = entry.abs_path.read_text(encoding="utf-8")
            self._index_file(store, entry.path, "memory", content, mtime=entry.mtime, size=entry.size)
            progress.advance()

        run_with_concurrency([lambda entry=entry: task(entry) for entry in entries], concurrency)
        self._delete_stale(store, "memory", {entry.path for entry in entries})

    def _memory_entries(self) -> list[MemoryFileEntry]:
        entries: list[MemoryFileEntry] = []
        for abs_path in list_memory_files(self.workspace_dir, self.settings.extra_paths):
            try:
                entries.append(build_file_entry(abs_path, self.workspace_dir))
            except FileNotFoundError:
                logger.debug(f"memory sync: {abs_path} vanished before indexing")
        return entries

    # Session files

    def _sync_session_files(self, *, needs_full: bool, progress: _ProgressTracker) -> None:
        store = self.store
        files = list_session_files(self.sessions_dir)
        dirty_files = self.state.dirty_files()
        index_all = needs_full or not dirty_files
        concurrency = self.pipeline.index_concurrency()
        logger.debug(
            f"memory sync: indexing session files (files={len(files)}, index_all={index_all}, "
            f"dirty={len(dirty_files)}, batch={self.pipeline.batch.enabled})"
        )
        label = (
            Messages.INFO_SYNC_SESSIONS_BATCH
            if self.pipeline.batch.enabled
            else Messages.INFO_SYNC_SESSIONS
        )
        progress.report(label=label, add_total=len(files))

        def task(abs_path: Path) -> None:
            if not index_all and abs_path not in dirty_files:
                progress.advance()
                return
            entry = build_session_entry(abs_path)
            if entry is None:
                progress.advance()
                return
            if not needs_full and store.file_hash(entry.path, "sessions") == entry.hash:
                self.state.reset_delta(abs_path, entry.size)
                progress.advance()
                return
            self._index_session(store, entry)
            self.state.reset_delta(abs_path, entry.size)
            progress.advance()

        run_with_concurrency([lambda path=path: task(path) for path in files], concurrency)
        self._delete_stale(store, "sessions", {session_path_for_file(path) for path in files})

    def _index_session(self, store: IndexStore, entry: SessionFileEntry) -> None:
        self._index_file(
            store,
            entry.path,
            "sessions",
            entry.content,
            mtime=entry.mtime,
            size=entry.size,
            line_map=entry.line_map,
        )

    def process_session_deltas(self, paths: Iterable[Path]) -> bool:
        """Fold appended bytes into the delta trackers.

        Returns True when at least one file crossed a threshold and was
        marked dirty.
        """

        thresholds = self.settings.sync.sessions
        triggered = False
        for abs_path in paths:
            try:
                size = abs_path.stat().st_size
            except OSError:
                continue
            with self.state.lock:
                delta = self.state.session_deltas.setdefault(abs_path, SessionDeltaState())
                hit = update_session_delta(
                    delta,
                    abs_path,
                    size,
                    delta_bytes=thresholds.delta_bytes,
                    delta_messages=thresholds.delta_messages,
                )
                if not hit:
                    continue
                self.state.sessions_dirty_files.add(abs_path)
                self.state.sessions_dirty = True
                consume_delta_thresholds(
                    delta,
                    delta_bytes=thresholds.delta_bytes,
                    delta_messages=thresholds.delta_messages,
                )
            triggered = True
        return triggered

    # Shared

    def _index_file(
        self,
        store: IndexStore,
        path: str,
        source: str,
        content: str,
        *,
        mtime: float,
        size: int,
        line_map: Sequence[int] | None = None,
    ) -> None:
        chunking = self.settings.chunking
        chunks = [
            chunk
            for chunk in chunk_markdown(content, tokens=chunking.tokens, overlap=chunking.overlap)
            if chunk.text.strip()
        ]
        if line_map:
            remap_chunk_lines(chunks, list(line_map))
        embeddings = self.pipeline.embed_chunks(store, chunks, path=path, source=source)
        sample = next((vector for vector in embeddings if vector.size), None)
        vector_ready = store.ensure_vector_ready(int(sample.size)) if sample is not None else False
        record = FileRecord(
            path=path,
            source=source,
            hash=hash_text(content),
            mtime=mtime,
            size=size,
        )
        store.replace_file(
            record,
            chunks,
            embeddings,
            model=self.pipeline.provider.model,
            vector_ready=vector_ready,
        )

    def _delete_stale(self, store: IndexStore, source: str, active: set[str]) -> None:
        model = self.pipeline.provider.model
        for path in store.file_paths(source):
            if path in active:
                continue
            logger.debug(f"memory sync: removing stale {source} entry {path}")
            store.delete_file(path, source, model)
