"""
Shared configuration for ContextMatch core.
"""

from __future__ import annotations

import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("contextmatch")


def _get_bool(env_name: str, default: bool) -> bool:
    value = os.environ.get(env_name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(env_name: str, default: int) -> int:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(env_name: str, default: float) -> float:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _derive_effective_backends(db_backend: str, vector_backend: str) -> tuple[str, str]:
    db_effective = db_backend if db_backend in {"postgres", "sqlite"} else "postgres"
    vector_effective = vector_backend if vector_backend in {"pgvector", "none"} else "none"
    if db_effective == "sqlite" and vector_effective == "pgvector":
        vector_effective = "none"
    return db_effective, vector_effective


# Database settings
DB_BACKEND = os.environ.get("DB_BACKEND", "postgres").strip().lower()
VECTOR_BACKEND = os.environ.get("VECTOR_BACKEND", "pgvector").strip().lower()
SQLITE_PATH = os.environ.get("SQLITE_PATH", "/data/contextmatch.db")
DATABASE_URL = os.environ.get("DATABASE_URL")
DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE = _derive_effective_backends(
    DB_BACKEND,
    VECTOR_BACKEND,
)

# Database initialization controls
AUTO_CREATE_EXTENSIONS = _get_bool("AUTO_CREATE_EXTENSIONS", True)
AUTO_MIGRATE_ON_STARTUP = _get_bool("AUTO_MIGRATE_ON_STARTUP", True)

# Provider settings
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
EMBEDDING_PROVIDER = os.environ.get("EMBEDDING_PROVIDER", "openai").strip().lower()
EMBEDDING_MODEL = os.environ.get("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DIM = 1536
EMBEDDING_BATCH_SIZE = _get_int("EMBEDDING_BATCH_SIZE", 64)
GENERATION_MODEL = os.environ.get("GENERATION_MODEL", "gpt-3.5-turbo")
GENERATION_TEMPERATURE = _get_float("GENERATION_TEMPERATURE", 0.3)
GENERATION_TIMEOUT_SECONDS = _get_float("GENERATION_TIMEOUT_SECONDS", 60.0)

# OpenAI retry/backoff
EMBEDDING_TIMEOUT_SECONDS = _get_float("EMBEDDING_TIMEOUT_SECONDS", 30.0)
EMBEDDING_RETRY_MAX = _get_int("EMBEDDING_RETRY_MAX", 2)
EMBEDDING_RETRY_BACKOFF_SECONDS = _get_float("EMBEDDING_RETRY_BACKOFF_SECONDS", 0.5)
EMBEDDING_RETRY_JITTER_SECONDS = _get_float("EMBEDDING_RETRY_JITTER_SECONDS", 0.25)
EMBEDDING_FAILURE_THRESHOLD = _get_int("EMBEDDING_FAILURE_THRESHOLD", 5)
EMBEDDING_COOLDOWN_SECONDS = _get_int("EMBEDDING_COOLDOWN_SECONDS", 60)
EMBEDDING_HEALTHCHECK_ENABLED = _get_bool("EMBEDDING_HEALTHCHECK_ENABLED", True)

# Recommendation defaults
RECOMMENDATION_USER_WEIGHT = _get_float("RECOMMENDATION_USER_WEIGHT", 0.75)
RECOMMENDATION_THREAD_WEIGHT = _get_float("RECOMMENDATION_THREAD_WEIGHT", 0.25)
RECOMMENDATION_DEFAULT_LIMIT = _get_int("RECOMMENDATION_DEFAULT_LIMIT", 10)
RECOMMENDATION_MAX_LIMIT = _get_int("RECOMMENDATION_MAX_LIMIT", 50)
RECOMMENDATION_DEFAULT_THRESHOLD = _get_float("RECOMMENDATION_DEFAULT_THRESHOLD", 0.7)
SIMILAR_PRODUCTS_DEFAULT_LIMIT = _get_int("SIMILAR_PRODUCTS_DEFAULT_LIMIT", 5)
SIMILAR_PRODUCTS_DEFAULT_THRESHOLD = _get_float("SIMILAR_PRODUCTS_DEFAULT_THRESHOLD", 0.8)
SIMILAR_USERS_DEFAULT_LIMIT = _get_int("SIMILAR_USERS_DEFAULT_LIMIT", 5)
SIMILAR_USERS_DEFAULT_THRESHOLD = _get_float("SIMILAR_USERS_DEFAULT_THRESHOLD", 0.8)
CANDIDATE_SCAN_LIMIT = _get_int("CANDIDATE_SCAN_LIMIT", 5000)

# Context aggregation
CONTEXT_HISTORY_MODE = os.environ.get("CONTEXT_HISTORY_MODE", "full").strip().lower()
CONTEXT_HISTORY_WINDOW = _get_int("CONTEXT_HISTORY_WINDOW", 10)
CONTEXT_NARRATIVE_ENABLED = _get_bool("CONTEXT_NARRATIVE_ENABLED", True)
CONTEXT_WRITE_RETRY_MAX = _get_int("CONTEXT_WRITE_RETRY_MAX", 2)
SUMMARY_CACHE_ENABLED = _get_bool("SUMMARY_CACHE_ENABLED", True)
SUMMARY_CACHE_MAX_ENTRIES = _get_int("SUMMARY_CACHE_MAX_ENTRIES", 1024)
INTENT_CLASSIFICATION_ENABLED = _get_bool("INTENT_CLASSIFICATION_ENABLED", True)
PIPELINE_TIMEOUT_SECONDS = _get_float("PIPELINE_TIMEOUT_SECONDS", 120.0)

# Retention
MESSAGE_RETENTION_DAYS = _get_int("MESSAGE_RETENTION_DAYS", 90)
RETENTION_TICK_SECONDS = _get_int("RETENTION_TICK_SECONDS", 0)

# Request/input limits
MAX_RESULT_LIMIT = _get_int("CONTEXTMATCH_MAX_RESULT_LIMIT", 100)
MAX_QUERY_LENGTH = _get_int("CONTEXTMATCH_MAX_QUERY_LENGTH", 4000)
MAX_TEXT_LENGTH = _get_int("CONTEXTMATCH_MAX_TEXT_LENGTH", 8000)
MAX_SHORT_TEXT_LENGTH = _get_int("CONTEXTMATCH_MAX_SHORT_TEXT_LENGTH", 255)
MAX_TITLE_LENGTH = _get_int("CONTEXTMATCH_MAX_TITLE_LENGTH", 500)
MAX_URL_LENGTH = _get_int("CONTEXTMATCH_MAX_URL_LENGTH", 1000)
MAX_METADATA_BYTES = _get_int("CONTEXTMATCH_MAX_METADATA_BYTES", 20000)
MAX_LIST_ITEMS = _get_int("CONTEXTMATCH_MAX_LIST_ITEMS", 50)
MAX_LIST_ITEM_LENGTH = _get_int("CONTEXTMATCH_MAX_LIST_ITEM_LENGTH", 1000)
MAX_EMBEDDING_TEXT_LENGTH = _get_int("CONTEXTMATCH_MAX_EMBEDDING_TEXT_LENGTH", 32000)
MAX_NARRATIVE_LENGTH = _get_int("CONTEXTMATCH_MAX_NARRATIVE_LENGTH", 20000)


def validate_and_prepare_config() -> None:
    """Validate configuration and apply derived settings at startup."""
    global DATABASE_URL, DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE

    errors = []
    if DB_BACKEND not in {"postgres", "sqlite"}:
        errors.append("DB_BACKEND must be 'postgres' or 'sqlite'")

    if VECTOR_BACKEND not in {"pgvector", "none"}:
        errors.append("VECTOR_BACKEND must be 'pgvector' or 'none'")

    if DB_BACKEND == "sqlite" and VECTOR_BACKEND == "pgvector":
        errors.append("VECTOR_BACKEND=pgvector requires DB_BACKEND=postgres")

    if not DATABASE_URL:
        if DB_BACKEND == "sqlite":
            if not SQLITE_PATH:
                errors.append("SQLITE_PATH environment variable is required for sqlite")
            else:
                DATABASE_URL = f"sqlite:///{SQLITE_PATH}"
        else:
            errors.append("DATABASE_URL environment variable is required")
    else:
        url_lower = DATABASE_URL.lower()
        is_sqlite_url = url_lower.startswith("sqlite")
        if DB_BACKEND == "sqlite" and not is_sqlite_url:
            errors.append("DATABASE_URL must be a sqlite URL when DB_BACKEND=sqlite")
        if DB_BACKEND == "postgres" and is_sqlite_url:
            errors.append("DATABASE_URL must be a postgres URL when DB_BACKEND=postgres")

    DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE = _derive_effective_backends(
        DB_BACKEND,
        VECTOR_BACKEND,
    )

    if EMBEDDING_PROVIDER not in {"openai", "none"}:
        errors.append("EMBEDDING_PROVIDER must be 'openai' or 'none'")

    if VECTOR_BACKEND_EFFECTIVE == "pgvector":
        from core.models import PGVECTOR_AVAILABLE

        if not PGVECTOR_AVAILABLE:
            errors.append("pgvector package is required when VECTOR_BACKEND=pgvector")

    for name, weight in (
        ("RECOMMENDATION_USER_WEIGHT", RECOMMENDATION_USER_WEIGHT),
        ("RECOMMENDATION_THREAD_WEIGHT", RECOMMENDATION_THREAD_WEIGHT),
    ):
        if weight < 0:
            errors.append(f"{name} must be non-negative")
    if RECOMMENDATION_USER_WEIGHT + RECOMMENDATION_THREAD_WEIGHT <= 0:
        errors.append("recommendation weights must not both be zero")

    if not 0.0 <= RECOMMENDATION_DEFAULT_THRESHOLD <= 1.0:
        errors.append("RECOMMENDATION_DEFAULT_THRESHOLD must be between 0.0 and 1.0")

    if CONTEXT_HISTORY_MODE not in {"full", "recent"}:
        errors.append("CONTEXT_HISTORY_MODE must be 'full' or 'recent'")
    if CONTEXT_HISTORY_WINDOW <= 0:
        errors.append("CONTEXT_HISTORY_WINDOW must be positive")

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))
