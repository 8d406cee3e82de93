from dataclasses import dataclass
from functools import lru_cache
import os


def _to_bool(value: str | None, *, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _to_int(value: str | None, *, default: int, minimum: int) -> int:
    if value is None:
        return default
    parsed = int(value)
    return max(minimum, parsed)


def _to_float(value: str | None, *, default: float, minimum: float) -> float:
    if value is None:
        return default
    parsed = float(value)
    return max(minimum, parsed)


@dataclass(frozen=True)
class Settings:
    database_url: str
    db_echo: bool
    source_dir: str
    data_dir: str
    ledger_path: str
    store_backend: str
    store_path: str
    qdrant_url: str
    collection: str
    parent_target_size: int
    child_target_size: int
    vector_weight: float
    keyword_weight: float
    candidate_k: int
    context_char_budget: int
    adjacent_lines: int
    embed_max_attempts: int
    embed_retry_base_seconds: float
    embed_retry_max_seconds: float
    embed_concurrency: int
    ingest_concurrency: int
    ollama_base_url: str
    ollama_model: str
    ollama_fallback_model: str
    ollama_embed_base_url: str
    ollama_embed_model: str
    ollama_timeout_seconds: float


@lru_cache
def get_settings() -> Settings:
    data_dir = os.getenv("RAGKB_DATA_DIR", "./data")
    ollama_base_url = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434/v1")

    return Settings(
        database_url=os.getenv(
            "RAGKB_DATABASE_URL",
            f"sqlite+pysqlite:///{os.path.join(data_dir, 'ragkb.db')}",
        ),
        db_echo=_to_bool(os.getenv("RAGKB_DB_ECHO"), default=False),
        source_dir=os.getenv("RAGKB_SOURCE_DIR", "./ingest"),
        data_dir=data_dir,
        ledger_path=os.getenv(
            "RAGKB_LEDGER_PATH", os.path.join(data_dir, ".ingested_checksums")
        ),
        store_backend=os.getenv("RAGKB_STORE_BACKEND", "sqlite").strip().lower(),
        store_path=os.getenv("RAGKB_STORE_PATH", os.path.join(data_dir, "vectors.db")),
        qdrant_url=os.getenv("QDRANT_URL", "http://localhost:6333"),
        collection=os.getenv("RAGKB_COLLECTION", "documents"),
        parent_target_size=_to_int(
            os.getenv("RAGKB_PARENT_TARGET_SIZE"), default=3500, minimum=200
        ),
        child_target_size=_to_int(
            os.getenv("RAGKB_CHILD_TARGET_SIZE"), default=750, minimum=50
        ),
        vector_weight=_to_float(os.getenv("RAGKB_VECTOR_WEIGHT"), default=0.7, minimum=0.0),
        keyword_weight=_to_float(os.getenv("RAGKB_KEYWORD_WEIGHT"), default=0.3, minimum=0.0),
        candidate_k=_to_int(os.getenv("RAGKB_CANDIDATE_K"), default=40, minimum=1),
        context_char_budget=_to_int(
            os.getenv("RAGKB_CONTEXT_CHAR_BUDGET"), default=12000, minimum=200
        ),
        adjacent_lines=_to_int(os.getenv("RAGKB_ADJACENT_LINES"), default=50, minimum=0),
        embed_max_attempts=_to_int(os.getenv("RAGKB_EMBED_MAX_ATTEMPTS"), default=5, minimum=1),
        embed_retry_base_seconds=_to_float(
            os.getenv("RAGKB_EMBED_RETRY_BASE_SECONDS"), default=0.5, minimum=0.0
        ),
        embed_retry_max_seconds=_to_float(
            os.getenv("RAGKB_EMBED_RETRY_MAX_SECONDS"), default=8.0, minimum=0.0
        ),
        embed_concurrency=_to_int(os.getenv("RAGKB_EMBED_CONCURRENCY"), default=4, minimum=1),
        ingest_concurrency=_to_int(os.getenv("RAGKB_INGEST_CONCURRENCY"), default=2, minimum=1),
        ollama_base_url=ollama_base_url,
        ollama_model=os.getenv("OLLAMA_MODEL", "qwen2.5:7b-instruct-q4_K_M"),
        ollama_fallback_model=os.getenv("OLLAMA_FALLBACK_MODEL", "qwen2.5:3b-instruct-q4_K_M"),
        ollama_embed_base_url=os.getenv("OLLAMA_EMBED_BASE_URL", ollama_base_url),
        ollama_embed_model=os.getenv("OLLAMA_EMBED_MODEL", "nomic-embed-text"),
        ollama_timeout_seconds=float(os.getenv("OLLAMA_TIMEOUT_SECONDS", "30")),
    )
