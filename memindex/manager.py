"""Memory index manager facade and the registry that owns manager instances."""

from __future__ import annotations

import os
import sqlite3
import stat
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from threading import Event, Lock, Thread, Timer
from typing import Callable

import numpy as np
from loguru import logger

from .config import (
    MemorySettings,
    load_settings,
    resolve_sessions_dir,
    resolve_store_path,
    settings_fingerprint,
)
from .embeddings import (
    ProviderFactory,
    ProviderResult,
    compute_provider_key,
    create_embedding_provider,
)
from .errors import MemoryIndexError, PathNotAllowedError
from .services.batch_service import EmbeddingPipeline, resolve_batch_config
from .services.index_service import ProgressCallback, SyncEngine, SyncState
from .services.search_service import (
    SearchResult,
    candidate_limit,
    filter_results,
    merge_hybrid_results,
    search_keyword,
    vector_hits_to_results,
)
from .text import Messages
from .utils import (
    is_memory_path,
    is_within,
    normalize_extra_paths,
    normalize_rel_path,
    redact_secrets,
)
from .watcher import MemoryWatcher

SESSION_DIRTY_DEBOUNCE = 5.0


@dataclass(slots=True)
class ReadFileResult:
    text: str
    path: str


@dataclass(slots=True)
class EmbeddingProbe:
    ok: bool
    error: str | None = None


@dataclass(slots=True)
class IndexStatus:
    backend: str
    files: int
    chunks: int
    dirty: bool
    workspace_dir: str
    db_path: str
    provider: str
    model: str
    requested_provider: str
    sources: list[str]
    extra_paths: list[str]
    source_counts: list[dict[str, object]]
    cache: dict[str, object]
    fts: dict[str, object]
    fallback: dict[str, object] | None
    vector: dict[str, object]
    batch: dict[str, object]


class MemoryIndexManager:
    """Hybrid memory search over one agent's workspace notes and transcripts."""

    def __init__(
        self,
        *,
        agent_id: str,
        workspace_dir: Path,
        settings: MemorySettings,
        provider_result: ProviderResult,
        provider_factory: ProviderFactory | None = None,
        on_close: Callable[["MemoryIndexManager"], None] | None = None,
    ) -> None:
        self.agent_id = agent_id
        self.workspace_dir = Path(workspace_dir).resolve()
        self.settings = settings
        self.sources = tuple(settings.sources)
        self.requested_provider = provider_result.requested_provider
        self.db_path = resolve_store_path(settings, agent_id)
        self.sessions_dir = resolve_sessions_dir(settings, agent_id)
        provider = provider_result.provider
        pipeline = EmbeddingPipeline(
            provider,
            provider_key=compute_provider_key(provider),
            batch=resolve_batch_config(settings, provider),
            cache_enabled=settings.cache.enabled,
        )
        state = SyncState(
            dirty="memory" in self.sources,
            fallback_from=provider_result.fallback_from,
            fallback_reason=provider_result.fallback_reason,
        )
        self.engine = SyncEngine(
            settings,
            workspace_dir=self.workspace_dir,
            db_path=self.db_path,
            sessions_dir=self.sessions_dir,
            pipeline=pipeline,
            state=state,
            provider_factory=provider_factory,
        )
        self._on_close = on_close
        self._lock = Lock()
        self._closed = False
        self._background = ThreadPoolExecutor(max_workers=1, thread_name_prefix="memindex-sync")
        self._warm_sessions: set[str] = set()
        self._session_pending: set[Path] = set()
        self._session_timer: Timer | None = None
        self._interval_stop = Event()
        self._interval_thread: Thread | None = None
        self._watcher: MemoryWatcher | None = None
        self._ensure_watcher()
        self._ensure_interval_sync()

    @classmethod
    def create(
        cls,
        agent_id: str,
        workspace_dir: Path | str,
        settings: MemorySettings,
        *,
        provider_factory: ProviderFactory | None = None,
        on_close: Callable[["MemoryIndexManager"], None] | None = None,
    ) -> "MemoryIndexManager":
        provider_result = create_embedding_provider(settings, factory=provider_factory)
        return cls(
            agent_id=agent_id,
            workspace_dir=Path(workspace_dir),
            settings=settings,
            provider_result=provider_result,
            provider_factory=provider_factory,
            on_close=on_close,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    # Search

    def search(
        self,
        query: str,
        *,
        max_results: int | None = None,
        min_score: float | None = None,
        session_key: str | None = None,
    ) -> list[SearchResult]:
        self._ensure_open()
        self.warm_session(session_key)
        state = self.engine.state
        if self.settings.sync.on_search and (state.dirty or state.sessions_dirty):
            self._schedule_sync("search")
        cleaned = query.strip()
        if not cleaned:
            return []
        query_settings = self.settings.query
        hybrid = query_settings.hybrid
        limit = max_results or query_settings.max_results
        floor = query_settings.min_score if min_score is None else min_score
        candidates = candidate_limit(limit, hybrid.candidate_multiplier)
        pipeline = self.engine.pipeline
        store = self.engine.store
        model = pipeline.provider.model

        keyword: list[SearchResult] = []
        if hybrid.enabled:
            keyword = search_keyword(
                store, cleaned, model=model, sources=self.sources, limit=candidates
            )
        query_vector = pipeline.embed_query(cleaned)
        vector: list[SearchResult] = []
        if np.any(query_vector):
            try:
                hits = store.search_vector(
                    query_vector, model=model, sources=self.sources, limit=candidates
                )
                vector = vector_hits_to_results(hits)
            except sqlite3.Error as exc:
                logger.debug(f"memory search: vector query failed: {exc}")
        if not hybrid.enabled:
            return filter_results(vector, min_score=floor, max_results=limit)
        merged = merge_hybrid_results(
            vector,
            keyword,
            vector_weight=hybrid.vector_weight,
            text_weight=hybrid.text_weight,
        )
        return filter_results(merged, min_score=floor, max_results=limit)

    # Sync

    def sync(
        self,
        *,
        reason: str | None = None,
        force: bool = False,
        progress: ProgressCallback | None = None,
    ) -> None:
        self._ensure_open()
        self.engine.sync(reason=reason, force=force, progress=progress)

    def mark_dirty(self) -> None:
        self.engine.state.dirty = True

    def warm_session(self, session_key: str | None = None) -> None:
        """Schedule a background sync once per session key."""

        if not self.settings.sync.on_session_start:
            return
        key = (session_key or "").strip()
        with self._lock:
            if key and key in self._warm_sessions:
                return
            if key:
                self._warm_sessions.add(key)
        self._schedule_sync("session-start")

    def notify_session_update(self, session_file: Path | str) -> None:
        """Record that a transcript under the sessions directory grew."""

        if self._closed or "sessions" not in self.sources:
            return
        abs_path = Path(session_file).resolve()
        if abs_path.suffix != ".jsonl" or not is_within(abs_path, self.sessions_dir):
            return
        with self._lock:
            self._session_pending.add(abs_path)
            if self._session_timer is not None:
                return
            timer = Timer(SESSION_DIRTY_DEBOUNCE, self._process_session_updates)
            timer.daemon = True
            self._session_timer = timer
        timer.start()

    def flush_session_updates(self) -> None:
        """Process pending transcript notifications now instead of after the debounce."""

        with self._lock:
            timer = self._session_timer
        if timer is not None:
            timer.cancel()
        self._process_session_updates()

    def _process_session_updates(self) -> None:
        with self._lock:
            pending = sorted(self._session_pending)
            self._session_pending.clear()
            self._session_timer = None
        if not pending or self._closed:
            return
        try:
            triggered = self.engine.process_session_deltas(pending)
        except Exception as exc:
            logger.warning(f"memory session delta failed: {exc}")
            return
        if triggered:
            self._schedule_sync("session-delta")

    def _schedule_sync(self, reason: str) -> None:
        if self._closed:
            return
        try:
            self._background.submit(self._background_sync, reason)
        except RuntimeError:
            logger.debug(f"memory sync: skipped {reason} sync after shutdown")

    def _background_sync(self, reason: str) -> None:
        if self._closed:
            return
        try:
            self.engine.sync(reason=reason)
        except Exception as exc:
            logger.warning(f"memory sync failed ({reason}): {redact_secrets(str(exc))}")

    def _ensure_watcher(self) -> None:
        sync = self.settings.sync
        if "memory" not in self.sources or not sync.watch or self._watcher is not None:
            return
        self._watcher = MemoryWatcher(
            self.workspace_dir,
            extra_paths=self.settings.extra_paths,
            debounce_ms=sync.watch_debounce_ms,
            on_change=self._on_memory_change,
        )
        self._watcher.start()

    def _on_memory_change(self, paths: set[str]) -> None:
        logger.debug(f"memory watch: {len(paths)} changed path(s)")
        self.mark_dirty()
        self._schedule_sync("watch")

    def _ensure_interval_sync(self) -> None:
        minutes = self.settings.sync.interval_minutes
        if minutes <= 0 or self._interval_thread is not None:
            return
        interval = minutes * 60

        def loop() -> None:
            while not self._interval_stop.wait(interval):
                self._schedule_sync("interval")

        self._interval_thread = Thread(target=loop, name="memindex-interval", daemon=True)
        self._interval_thread.start()

    # Files

    def read_file(
        self,
        rel_path: str,
        *,
        from_line: int | None = None,
        lines: int | None = None,
    ) -> ReadFileResult:
        """Read a memory markdown file, optionally a slice of its lines.

        Only ``.md`` files inside the workspace memory area or an extra
        path are readable; symlinks are refused.
        """

        raw = (rel_path or "").strip()
        if not raw:
            raise PathNotAllowedError(Messages.ERROR_PATH_REQUIRED)
        if os.path.isabs(raw):
            abs_path = Path(os.path.abspath(raw))
        else:
            abs_path = Path(os.path.abspath(self.workspace_dir / raw))
        rel = normalize_rel_path(os.path.relpath(abs_path, self.workspace_dir))
        in_workspace = rel not in {"", "."} and not rel.startswith("..") and not os.path.isabs(rel)
        allowed = in_workspace and is_memory_path(rel)
        if not allowed:
            allowed = self._allowed_extra_path(abs_path)
        if not allowed or not abs_path.name.endswith(".md"):
            raise PathNotAllowedError(Messages.ERROR_PATH_REQUIRED)
        info = abs_path.lstat()
        if stat.S_ISLNK(info.st_mode) or not stat.S_ISREG(info.st_mode):
            raise PathNotAllowedError(Messages.ERROR_PATH_REQUIRED)
        content = abs_path.read_text(encoding="utf-8")
        if not from_line and not lines:
            return ReadFileResult(text=content, path=rel)
        all_lines = content.split("\n")
        start = max(1, from_line or 1)
        count = max(1, lines or len(all_lines))
        return ReadFileResult(text="\n".join(all_lines[start - 1 : start - 1 + count]), path=rel)

    def _allowed_extra_path(self, abs_path: Path) -> bool:
        for root in normalize_extra_paths(self.workspace_dir, self.settings.extra_paths):
            try:
                info = root.lstat()
            except OSError:
                continue
            if stat.S_ISLNK(info.st_mode):
                continue
            if stat.S_ISDIR(info.st_mode) and is_within(abs_path, root):
                return True
            if stat.S_ISREG(info.st_mode) and abs_path == root and root.name.endswith(".md"):
                return True
        return False

    # Status and probes

    def status(self) -> IndexStatus:
        engine = self.engine
        store = engine.store
        state = engine.state
        pipeline = engine.pipeline
        breaker = pipeline.breaker
        files, chunks = store.counts(self.sources)
        cache: dict[str, object] = {
            "enabled": pipeline.cache_enabled,
            "max_entries": self.settings.cache.max_entries,
        }
        if pipeline.cache_enabled:
            cache["entries"] = store.cache_entries()
        fallback = None
        if state.fallback_reason:
            fallback = {"from": state.fallback_from or "local", "reason": state.fallback_reason}
        batch = pipeline.batch
        return IndexStatus(
            backend="builtin",
            files=files,
            chunks=chunks,
            dirty=state.dirty or state.sessions_dirty,
            workspace_dir=str(self.workspace_dir),
            db_path=str(self.db_path),
            provider=pipeline.provider.id,
            model=pipeline.provider.model,
            requested_provider=self.requested_provider,
            sources=list(self.sources),
            extra_paths=list(self.settings.extra_paths),
            source_counts=store.source_counts(self.sources),
            cache=cache,
            fts={
                "enabled": store.fts.enabled,
                "available": store.fts.available,
                "error": store.fts.error,
            },
            fallback=fallback,
            vector={
                "enabled": store.vector.enabled,
                "available": store.vector.available,
                "extension_path": store.vector.extension_path,
                "load_error": store.vector.load_error,
                "dims": store.vector.dims,
            },
            batch={
                "enabled": batch.enabled,
                "failures": breaker.failures,
                "limit": breaker.limit,
                "wait": batch.wait,
                "concurrency": batch.concurrency,
                "poll_interval_ms": batch.poll_interval_ms,
                "timeout_ms": batch.timeout_ms,
                "last_error": breaker.last_error,
                "last_provider": breaker.last_provider,
            },
        )

    def probe_vector_availability(self) -> bool:
        if not self.settings.store.vector.enabled:
            return False
        return self.engine.store.ensure_vector_ready()

    def probe_embedding_availability(self) -> EmbeddingProbe:
        try:
            self.engine.pipeline.embed_batch_with_retry(["ping"])
        except Exception as exc:
            return EmbeddingProbe(ok=False, error=redact_secrets(str(exc)))
        return EmbeddingProbe(ok=True)

    # Lifecycle

    def _ensure_open(self) -> None:
        if self._closed:
            raise MemoryIndexError(Messages.ERROR_MANAGER_CLOSED)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            timer = self._session_timer
            self._session_timer = None
            self._session_pending.clear()
        if timer is not None:
            timer.cancel()
        self._interval_stop.set()
        if self._watcher is not None:
            self._watcher.close()
            self._watcher = None
        self._background.shutdown(wait=True, cancel_futures=True)
        self.engine.close()
        self.engine.pipeline.close()
        if self._on_close is not None:
            self._on_close(self)


class ManagerRegistry:
    """Owns one manager per agent, workspace and settings fingerprint."""

    def __init__(self, *, provider_factory: ProviderFactory | None = None) -> None:
        self._provider_factory = provider_factory
        self._managers: dict[str, MemoryIndexManager] = {}
        self._lock = Lock()

    @staticmethod
    def cache_key(agent_id: str, workspace_dir: Path, settings: MemorySettings) -> str:
        return f"{agent_id}:{workspace_dir}:{settings_fingerprint(settings)}"

    def get(
        self,
        agent_id: str,
        workspace_dir: Path | str,
        settings: MemorySettings | None = None,
    ) -> MemoryIndexManager | None:
        """Return the manager for the key, creating it on first use.

        Returns None when memory search is disabled for the agent.
        """

        resolved = settings if settings is not None else load_settings(agent_id)
        if not resolved.enabled:
            return None
        workspace = Path(workspace_dir).resolve()
        key = self.cache_key(agent_id, workspace, resolved)
        with self._lock:
            existing = self._managers.get(key)
            if existing is not None:
                return existing
            manager = MemoryIndexManager.create(
                agent_id,
                workspace,
                resolved,
                provider_factory=self._provider_factory,
                on_close=lambda closed, key=key: self._discard(key, closed),
            )
            self._managers[key] = manager
            return manager

    def _discard(self, key: str, manager: MemoryIndexManager) -> None:
        with self._lock:
            if self._managers.get(key) is manager:
                del self._managers[key]

    def close_all(self) -> None:
        with self._lock:
            managers = list(self._managers.values())
            self._managers.clear()
        for manager in managers:
            manager.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._managers)
