"""Configuration management for memindex."""

from __future__ import annotations

import hashlib
import json
import os
from collections.abc import Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any

from .text import Messages

DEFAULT_CONFIG_DIR = Path(os.path.expanduser("~")) / ".memindex"
CONFIG_DIR = DEFAULT_CONFIG_DIR
CONFIG_FILE = CONFIG_DIR / "config.json"
_CONFIG_DIR_OVERRIDE: ContextVar[Path | None] = ContextVar(
    "memindex_config_dir_override",
    default=None,
)
DEFAULT_AGENT_ID = "main"
DEFAULT_PROVIDER = "openai"
DEFAULT_MODEL = "text-embedding-3-small"
DEFAULT_GEMINI_MODEL = "gemini-embedding-001"
DEFAULT_LOCAL_MODEL = "intfloat/multilingual-e5-small"
DEFAULT_FALLBACK = "none"
DEFAULT_STORE_PATH = "{configDir}/memory/{agentId}.sqlite"
DEFAULT_SESSIONS_DIR = "{configDir}/agents/{agentId}/sessions"
SUPPORTED_PROVIDERS: tuple[str, ...] = (DEFAULT_PROVIDER, "gemini", "local")
SUPPORTED_FALLBACKS: tuple[str, ...] = (DEFAULT_FALLBACK, *SUPPORTED_PROVIDERS)
SUPPORTED_SOURCES: tuple[str, ...] = ("memory", "sessions")
ENV_API_KEY = "MEMINDEX_API_KEY"
OPENAI_ENV = "OPENAI_API_KEY"
GEMINI_ENVS: tuple[str, ...] = ("GEMINI_API_KEY", "GOOGLE_API_KEY")


@dataclass
class BatchSettings:
    enabled: bool = False
    wait: bool = True
    concurrency: int = 2
    poll_interval_ms: int = 2000
    timeout_minutes: int = 60


@dataclass
class RemoteSettings:
    base_url: str | None = None
    api_key: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    batch: BatchSettings = field(default_factory=BatchSettings)


@dataclass
class LocalSettings:
    model_path: str | None = None
    cache_dir: str | None = None
    cuda: bool = False


@dataclass
class ChunkingSettings:
    tokens: int = 400
    overlap: int = 80


@dataclass
class VectorSettings:
    enabled: bool = True
    extension_path: str | None = None


@dataclass
class StoreSettings:
    path: str = DEFAULT_STORE_PATH
    vector: VectorSettings = field(default_factory=VectorSettings)


@dataclass
class CacheSettings:
    enabled: bool = True
    max_entries: int | None = None


@dataclass
class SessionSyncSettings:
    delta_bytes: int = 100_000
    delta_messages: int = 50


@dataclass
class SyncSettings:
    watch: bool = True
    watch_debounce_ms: int = 1500
    on_session_start: bool = True
    on_search: bool = True
    interval_minutes: int = 0
    sessions: SessionSyncSettings = field(default_factory=SessionSyncSettings)


@dataclass
class HybridSettings:
    enabled: bool = True
    vector_weight: float = 0.7
    text_weight: float = 0.3
    candidate_multiplier: int = 4


@dataclass
class QuerySettings:
    max_results: int = 6
    min_score: float = 0.35
    hybrid: HybridSettings = field(default_factory=HybridSettings)


@dataclass
class MemorySettings:
    enabled: bool = True
    sources: tuple[str, ...] = ("memory",)
    extra_paths: tuple[str, ...] = ()
    provider: str = DEFAULT_PROVIDER
    model: str = DEFAULT_MODEL
    fallback: str = DEFAULT_FALLBACK
    sessions_dir: str = DEFAULT_SESSIONS_DIR
    remote: RemoteSettings = field(default_factory=RemoteSettings)
    local: LocalSettings = field(default_factory=LocalSettings)
    chunking: ChunkingSettings = field(default_factory=ChunkingSettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    query: QuerySettings = field(default_factory=QuerySettings)


def _resolve_config_dir() -> Path:
    override = _CONFIG_DIR_OVERRIDE.get()
    return override if override is not None else CONFIG_DIR


def _resolve_config_file() -> Path:
    override = _CONFIG_DIR_OVERRIDE.get()
    if override is not None:
        return override / "config.json"
    return CONFIG_FILE


def config_dir() -> Path:
    return _resolve_config_dir()


@contextmanager
def config_dir_context(path: Path | str | None):
    """Temporarily override the config directory for the current context."""

    if path is None:
        yield
        return
    dir_path = Path(path).expanduser().resolve()
    if dir_path.exists() and not dir_path.is_dir():
        raise NotADirectoryError(f"Path is not a directory: {dir_path}")
    token = _CONFIG_DIR_OVERRIDE.set(dir_path)
    try:
        yield
    finally:
        _CONFIG_DIR_OVERRIDE.reset(token)


def set_config_dir(path: Path | str | None) -> None:
    global CONFIG_DIR, CONFIG_FILE
    if path is None:
        CONFIG_DIR = DEFAULT_CONFIG_DIR
    else:
        dir_path = Path(path).expanduser().resolve()
        if dir_path.exists() and not dir_path.is_dir():
            raise NotADirectoryError(f"Path is not a directory: {dir_path}")
        CONFIG_DIR = dir_path
    CONFIG_FILE = CONFIG_DIR / "config.json"


def local_model_dir() -> Path:
    return _resolve_config_dir() / "models"


def load_settings(agent_id: str = DEFAULT_AGENT_ID) -> MemorySettings:
    """Load memory settings for *agent_id* from the config file.

    The file holds the shared settings at the top level; an optional
    ``agents`` mapping carries per-agent overrides merged on top.
    """

    config_file = _resolve_config_file()
    if not config_file.exists():
        return MemorySettings()
    raw = json.loads(config_file.read_text(encoding="utf-8"))
    if not isinstance(raw, Mapping):
        raise ValueError(Messages.ERROR_CONFIG_JSON_INVALID)
    settings = settings_from_json({k: v for k, v in raw.items() if k != "agents"})
    agents = raw.get("agents")
    if isinstance(agents, Mapping):
        override = agents.get(agent_id)
        if isinstance(override, Mapping):
            settings = settings_from_json(override, base=settings)
    return settings


def save_settings(settings: MemorySettings) -> None:
    config_dir_path = _resolve_config_dir()
    config_dir_path.mkdir(parents=True, exist_ok=True)
    data = asdict(settings)
    data["sources"] = list(settings.sources)
    data["extra_paths"] = list(settings.extra_paths)
    _resolve_config_file().write_text(
        json.dumps(data, ensure_ascii=False, indent=2),
        encoding="utf-8",
    )


def settings_from_json(
    payload: str | Mapping[str, object], *, base: MemorySettings | None = None
) -> MemorySettings:
    """Return MemorySettings from a JSON string or mapping without saving it."""
    data = _coerce_config_payload(payload)
    settings = MemorySettings() if base is None else _clone_settings(base)
    _apply_settings_payload(settings, data)
    return normalize_settings(settings)


def normalize_settings(settings: MemorySettings) -> MemorySettings:
    """Clamp numeric settings into their valid ranges."""

    chunking = settings.chunking
    chunking.tokens = max(1, chunking.tokens)
    chunking.overlap = max(0, min(chunking.overlap, chunking.tokens - 1))
    query = settings.query
    query.max_results = max(1, query.max_results)
    query.min_score = max(0.0, min(1.0, query.min_score))
    hybrid = query.hybrid
    hybrid.candidate_multiplier = max(1, min(20, hybrid.candidate_multiplier))
    vector_weight = max(0.0, min(1.0, hybrid.vector_weight))
    text_weight = max(0.0, min(1.0, hybrid.text_weight))
    total = vector_weight + text_weight
    if total > 0:
        hybrid.vector_weight = vector_weight / total
        hybrid.text_weight = text_weight / total
    else:
        hybrid.vector_weight = HybridSettings.vector_weight
        hybrid.text_weight = HybridSettings.text_weight
    batch = settings.remote.batch
    batch.concurrency = max(1, batch.concurrency)
    batch.poll_interval_ms = max(0, batch.poll_interval_ms)
    batch.timeout_minutes = max(1, batch.timeout_minutes)
    sync = settings.sync
    sync.watch_debounce_ms = max(0, sync.watch_debounce_ms)
    sync.interval_minutes = max(0, sync.interval_minutes)
    if settings.cache.max_entries is not None and settings.cache.max_entries <= 0:
        settings.cache.max_entries = None
    settings.model = resolve_default_model(settings.provider, settings.model)
    return settings


def resolve_default_model(provider: str | None, model: str | None) -> str:
    """Return the effective model name for the selected provider."""
    clean_model = (model or "").strip()
    normalized = (provider or DEFAULT_PROVIDER).lower()
    if normalized == "gemini" and (not clean_model or clean_model == DEFAULT_MODEL):
        return DEFAULT_GEMINI_MODEL
    if normalized == "local" and (not clean_model or clean_model == DEFAULT_MODEL):
        return DEFAULT_LOCAL_MODEL
    if clean_model:
        return clean_model
    return DEFAULT_MODEL


def resolve_api_key(configured: str | None, provider: str) -> str | None:
    """Return the first available API key from config or environment."""

    normalized = (provider or DEFAULT_PROVIDER).lower()
    if normalized == "local":
        return None
    if configured:
        return configured
    general = os.getenv(ENV_API_KEY)
    if general:
        return general
    if normalized == "gemini":
        for name in GEMINI_ENVS:
            value = os.getenv(name)
            if value:
                return value
    if normalized == "openai":
        openai_key = os.getenv(OPENAI_ENV)
        if openai_key:
            return openai_key
    return None


def expand_agent_path(template: str, agent_id: str) -> Path:
    """Expand ``{agentId}``/``{configDir}`` placeholders and ``~`` in *template*."""
    value = template.replace("{agentId}", agent_id).replace(
        "{configDir}", str(_resolve_config_dir())
    )
    return Path(os.path.expanduser(value)).resolve()


def resolve_store_path(settings: MemorySettings, agent_id: str) -> Path:
    return expand_agent_path(settings.store.path, agent_id)


def resolve_sessions_dir(settings: MemorySettings, agent_id: str) -> Path:
    return expand_agent_path(settings.sessions_dir, agent_id)


def settings_fingerprint(settings: MemorySettings) -> str:
    """Return a stable digest of *settings*; secrets contribute only a hash."""

    data = asdict(settings)
    api_key = data["remote"].get("api_key")
    if api_key:
        data["remote"]["api_key"] = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    headers = data["remote"].get("headers") or {}
    data["remote"]["headers"] = {
        key: hashlib.sha256(str(value).encode("utf-8")).hexdigest()
        for key, value in sorted(headers.items())
    }
    payload = json.dumps(data, sort_keys=True, ensure_ascii=False, default=list)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _coerce_config_payload(payload: str | Mapping[str, object]) -> Mapping[str, object]:
    if isinstance(payload, str):
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValueError(Messages.ERROR_CONFIG_JSON_INVALID) from exc
    elif isinstance(payload, Mapping):
        data = dict(payload)
    else:
        raise ValueError(Messages.ERROR_CONFIG_JSON_INVALID)
    if not isinstance(data, Mapping):
        raise ValueError(Messages.ERROR_CONFIG_JSON_INVALID)
    return data


def _clone_settings(settings: MemorySettings) -> MemorySettings:
    return MemorySettings(
        enabled=settings.enabled,
        sources=tuple(settings.sources),
        extra_paths=tuple(settings.extra_paths),
        provider=settings.provider,
        model=settings.model,
        fallback=settings.fallback,
        sessions_dir=settings.sessions_dir,
        remote=replace(
            settings.remote,
            headers=dict(settings.remote.headers),
            batch=replace(settings.remote.batch),
        ),
        local=replace(settings.local),
        chunking=replace(settings.chunking),
        store=replace(settings.store, vector=replace(settings.store.vector)),
        cache=replace(settings.cache),
        sync=replace(settings.sync, sessions=replace(settings.sync.sessions)),
        query=replace(settings.query, hybrid=replace(settings.query.hybrid)),
    )


def _section(payload: Mapping[str, object], key: str) -> Mapping[str, object] | None:
    if key not in payload:
        return None
    value = payload[key]
    if value is None:
        return {}
    if isinstance(value, Mapping):
        return value
    raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=key))


def _apply_settings_payload(settings: MemorySettings, payload: Mapping[str, object]) -> None:
    if "enabled" in payload:
        settings.enabled = _coerce_bool(payload["enabled"], "enabled")
    if "sources" in payload:
        settings.sources = _coerce_sources(payload["sources"])
    if "extra_paths" in payload:
        settings.extra_paths = _coerce_str_list(payload["extra_paths"], "extra_paths")
    if "provider" in payload:
        settings.provider = _coerce_choice(
            payload["provider"],
            "provider",
            DEFAULT_PROVIDER,
            SUPPORTED_PROVIDERS,
            Messages.ERROR_PROVIDER_INVALID,
        )
    if "model" in payload:
        settings.model = _coerce_required_str(payload["model"], "model", "")
    if "fallback" in payload:
        settings.fallback = _coerce_choice(
            payload["fallback"],
            "fallback",
            DEFAULT_FALLBACK,
            SUPPORTED_FALLBACKS,
            Messages.ERROR_FALLBACK_INVALID,
        )
    if "sessions_dir" in payload:
        settings.sessions_dir = _coerce_required_str(
            payload["sessions_dir"], "sessions_dir", DEFAULT_SESSIONS_DIR
        )

    remote = _section(payload, "remote")
    if remote is not None:
        if "base_url" in remote:
            settings.remote.base_url = _coerce_optional_str(remote["base_url"], "remote.base_url")
        if "api_key" in remote:
            settings.remote.api_key = _coerce_optional_str(remote["api_key"], "remote.api_key")
        if "headers" in remote:
            settings.remote.headers = _coerce_headers(remote["headers"])
        batch = _section(remote, "batch")
        if batch is not None:
            target = settings.remote.batch
            if "enabled" in batch:
                target.enabled = _coerce_bool(batch["enabled"], "remote.batch.enabled")
            if "wait" in batch:
                target.wait = _coerce_bool(batch["wait"], "remote.batch.wait")
            if "concurrency" in batch:
                target.concurrency = _coerce_int(batch["concurrency"], "remote.batch.concurrency", 2)
            if "poll_interval_ms" in batch:
                target.poll_interval_ms = _coerce_int(
                    batch["poll_interval_ms"], "remote.batch.poll_interval_ms", 2000
                )
            if "timeout_minutes" in batch:
                target.timeout_minutes = _coerce_int(
                    batch["timeout_minutes"], "remote.batch.timeout_minutes", 60
                )

    local = _section(payload, "local")
    if local is not None:
        if "model_path" in local:
            settings.local.model_path = _coerce_optional_str(local["model_path"], "local.model_path")
        if "cache_dir" in local:
            settings.local.cache_dir = _coerce_optional_str(local["cache_dir"], "local.cache_dir")
        if "cuda" in local:
            settings.local.cuda = _coerce_bool(local["cuda"], "local.cuda")

    chunking = _section(payload, "chunking")
    if chunking is not None:
        if "tokens" in chunking:
            settings.chunking.tokens = _coerce_int(chunking["tokens"], "chunking.tokens", 400)
        if "overlap" in chunking:
            settings.chunking.overlap = _coerce_int(chunking["overlap"], "chunking.overlap", 80)

    store = _section(payload, "store")
    if store is not None:
        if "path" in store:
            settings.store.path = _coerce_required_str(store["path"], "store.path", DEFAULT_STORE_PATH)
        vector = _section(store, "vector")
        if vector is not None:
            if "enabled" in vector:
                settings.store.vector.enabled = _coerce_bool(vector["enabled"], "store.vector.enabled")
            if "extension_path" in vector:
                settings.store.vector.extension_path = _coerce_optional_str(
                    vector["extension_path"], "store.vector.extension_path"
                )

    cache = _section(payload, "cache")
    if cache is not None:
        if "enabled" in cache:
            settings.cache.enabled = _coerce_bool(cache["enabled"], "cache.enabled")
        if "max_entries" in cache:
            value = cache["max_entries"]
            settings.cache.max_entries = (
                None if value is None else _coerce_int(value, "cache.max_entries", 0)
            )

    sync = _section(payload, "sync")
    if sync is not None:
        target_sync = settings.sync
        if "watch" in sync:
            target_sync.watch = _coerce_bool(sync["watch"], "sync.watch")
        if "watch_debounce_ms" in sync:
            target_sync.watch_debounce_ms = _coerce_int(
                sync["watch_debounce_ms"], "sync.watch_debounce_ms", 1500
            )
        if "on_session_start" in sync:
            target_sync.on_session_start = _coerce_bool(
                sync["on_session_start"], "sync.on_session_start"
            )
        if "on_search" in sync:
            target_sync.on_search = _coerce_bool(sync["on_search"], "sync.on_search")
        if "interval_minutes" in sync:
            target_sync.interval_minutes = _coerce_int(
                sync["interval_minutes"], "sync.interval_minutes", 0
            )
        sessions = _section(sync, "sessions")
        if sessions is not None:
            if "delta_bytes" in sessions:
                target_sync.sessions.delta_bytes = _coerce_int(
                    sessions["delta_bytes"], "sync.sessions.delta_bytes", 100_000
                )
            if "delta_messages" in sessions:
                target_sync.sessions.delta_messages = _coerce_int(
                    sessions["delta_messages"], "sync.sessions.delta_messages", 50
                )

    query = _section(payload, "query")
    if query is not None:
        if "max_results" in query:
            settings.query.max_results = _coerce_int(query["max_results"], "query.max_results", 6)
        if "min_score" in query:
            settings.query.min_score = _coerce_float(query["min_score"], "query.min_score", 0.35)
        hybrid = _section(query, "hybrid")
        if hybrid is not None:
            target_hybrid = settings.query.hybrid
            if "enabled" in hybrid:
                target_hybrid.enabled = _coerce_bool(hybrid["enabled"], "query.hybrid.enabled")
            if "vector_weight" in hybrid:
                target_hybrid.vector_weight = _coerce_float(
                    hybrid["vector_weight"], "query.hybrid.vector_weight", 0.7
                )
            if "text_weight" in hybrid:
                target_hybrid.text_weight = _coerce_float(
                    hybrid["text_weight"], "query.hybrid.text_weight", 0.3
                )
            if "candidate_multiplier" in hybrid:
                target_hybrid.candidate_multiplier = _coerce_int(
                    hybrid["candidate_multiplier"], "query.hybrid.candidate_multiplier", 4
                )


def _coerce_optional_str(value: object, field: str) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        cleaned = value.strip()
        return cleaned or None
    raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))


def _coerce_required_str(value: object, field: str, default: str) -> str:
    if value is None:
        return default
    if isinstance(value, str):
        cleaned = value.strip()
        return cleaned or default
    raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))


def _coerce_choice(
    value: object,
    field: str,
    default: str,
    allowed: tuple[str, ...],
    message: str,
) -> str:
    normalized = _coerce_required_str(value, field, default).lower()
    if normalized not in allowed:
        raise ValueError(message.format(value=normalized, allowed=", ".join(allowed)))
    return normalized


def _coerce_int(value: object, field: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))
    if isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            return default
        try:
            return int(cleaned)
        except ValueError as exc:
            raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field)) from exc
    raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))


def _coerce_float(value: object, field: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            return default
        try:
            return float(cleaned)
        except ValueError as exc:
            raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field)) from exc
    raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))


def _coerce_bool(value: object, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        cleaned = value.strip().lower()
        if cleaned in {"true", "1", "yes", "on"}:
            return True
        if cleaned in {"false", "0", "no", "off"}:
            return False
    raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))


def _coerce_str_list(value: object, field: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))
    items: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))
        cleaned = item.strip()
        if cleaned and cleaned not in items:
            items.append(cleaned)
    return tuple(items)


def _coerce_sources(value: object) -> tuple[str, ...]:
    sources = tuple(item.lower() for item in _coerce_str_list(value, "sources"))
    for source in sources:
        if source not in SUPPORTED_SOURCES:
            raise ValueError(
                Messages.ERROR_SOURCE_INVALID.format(
                    value=source, allowed=", ".join(SUPPORTED_SOURCES)
                )
            )
    return tuple(dict.fromkeys(sources)) or ("memory",)


def _coerce_headers(value: object) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field="remote.headers"))
    headers: dict[str, str] = {}
    for key, item in value.items():
        if not isinstance(key, str) or not isinstance(item, (str, int, float)):
            raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field="remote.headers"))
        headers[key] = str(item)
    return headers
