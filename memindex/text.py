"""Centralized user-facing text for memindex."""

from __future__ import annotations


class Styles:
    ERROR = "red"
    WARNING = "yellow"
    SUCCESS = "green"
    INFO = "dim"
    TITLE = "bold cyan"
    TABLE_HEADER = "bold magenta"


class Messages:
    APP_HELP = "memindex - hybrid vector + keyword search over agent memory notes and session transcripts."
    HELP_AGENT = "Agent id whose memory index should be used."
    HELP_WORKSPACE = "Workspace directory holding MEMORY.md and memory/."
    HELP_JSON = "Print JSON instead of a table."
    HELP_VERBOSE = "Enable debug logging."
    HELP_DEEP = "Probe vector extension and embedding provider availability."
    HELP_STATUS_INDEX = "Reindex if the index is dirty (implies --deep)."
    HELP_FORCE = "Force a full reindex."
    HELP_QUERY = "Text to search for in memory."
    HELP_MAX_RESULTS = "Maximum number of results."
    HELP_MIN_SCORE = "Minimum fused score."

    ERROR_API_KEY_MISSING = (
        "Embedding API key is missing or still set to the placeholder. "
        "Set it in ~/.memindex/config.json or an environment variable."
    )
    ERROR_API_KEY_INVALID = (
        "Gemini API key is invalid. Verify the stored token and try again."
    )
    ERROR_GENAI_PREFIX = "Gemini embedding request failed: "
    ERROR_OPENAI_PREFIX = "OpenAI embedding request failed: "
    ERROR_NO_EMBEDDINGS = "Embedding provider returned no embeddings."
    ERROR_EMBEDDING_COUNT = "Embedding provider returned {got} embeddings for {expected} inputs."
    ERROR_LOCAL_DEP_MISSING = (
        "Local embeddings require fastembed. Install it with `pip install fastembed`."
    )
    ERROR_LOCAL_MODEL_LOAD = "Failed to load local embedding model {model}: {reason}"
    ERROR_LOCAL_MODEL_EMBED = "Local embedding failed: {reason}"
    ERROR_PROVIDER_INVALID = "Unsupported embedding provider: {value}. Allowed: {allowed}."
    ERROR_FALLBACK_INVALID = "Unsupported fallback provider: {value}. Allowed: {allowed}."
    ERROR_SOURCE_INVALID = "Unsupported memory source: {value}. Allowed: {allowed}."
    ERROR_CONFIG_JSON_INVALID = "Config payload must be a JSON object."
    ERROR_CONFIG_VALUE_INVALID = "Invalid config value for {field}."
    ERROR_PATH_REQUIRED = "path required"
    ERROR_QUERY_TIMEOUT = "memory embeddings query timed out after {seconds}s"
    ERROR_BATCH_TIMEOUT = "memory embeddings batch timed out after {seconds}s"
    ERROR_VECTOR_TIMEOUT = "sqlite-vec load timed out after {seconds}s"
    ERROR_VECTOR_UNKNOWN = "unknown sqlite-vec load error"
    ERROR_BATCH_NOT_AVAILABLE = "embedding batch API not available for provider {provider}"
    ERROR_BATCH_FAILED = "embedding batch {batch_id} ended with status {status}"
    ERROR_BATCH_PENDING = "embedding batch {batch_id} still {status}; wait is disabled"
    ERROR_BATCH_ITEM = "embedding batch item {custom_id} failed: {reason}"
    ERROR_MANAGER_CLOSED = "memory index manager is closed"
    ERROR_CONFIG_LOAD = "Failed to load memindex config: {reason}"

    INFO_SYNC_MEMORY = "Indexing memory files..."
    INFO_SYNC_MEMORY_BATCH = "Indexing memory files (batch)..."
    INFO_SYNC_SESSIONS = "Indexing session files..."
    INFO_SYNC_SESSIONS_BATCH = "Indexing session files (batch)..."
    INFO_SYNC_VECTOR = "Loading vector extension..."
    INFO_INDEX_DONE = "Memory index updated ({files} files, {chunks} chunks)."
    INFO_NO_RESULTS = "No matching memory found."
    INFO_DISABLED = "Memory search is disabled for agent {agent}."
    INFO_SYNC_RUNNING = "Syncing memory index for agent {agent}..."
    INFO_STATUS_REINDEX = "Index is dirty; syncing before reporting status..."

    TABLE_TITLE = "Memory search results"
    TABLE_HEADER_INDEX = "#"
    TABLE_HEADER_SCORE = "Score"
    TABLE_HEADER_PATH = "Location"
    TABLE_HEADER_SNIPPET = "Snippet"
    STATUS_TITLE = "Memory index status"
    STATUS_LABEL_VECTOR = "Vector extension"
    STATUS_LABEL_EMBEDDINGS = "Embedding provider"
