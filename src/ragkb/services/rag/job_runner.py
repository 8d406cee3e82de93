from __future__ import annotations

from pathlib import Path
from time import perf_counter
from typing import Any, TypedDict

from ragkb.config import get_settings
from ragkb.services.rag.embedding_client import EmbeddingClient
from ragkb.services.rag.ingest import ingest_documents
from ragkb.services.rag.loader import load_documents
from ragkb.services.rag.vector_store import VectorStore


class IngestJobResult(TypedDict):
    documents: int
    ingested: int
    skipped: int
    chunks: int
    duration_ms: int
    embed_model: str


def resolve_paths(payload: dict[str, Any] | None, default: str) -> list[Path]:
    raw_paths = (payload or {}).get("paths")
    if raw_paths is None:
        return [Path(default)]
    if isinstance(raw_paths, str):
        return [Path(raw_paths)]
    if not isinstance(raw_paths, list) or not all(isinstance(path, str) for path in raw_paths):
        raise ValueError("paths must be a string or a list of strings")
    if not raw_paths:
        raise ValueError("paths must not be empty")
    return [Path(path) for path in raw_paths]


def run_ingest_job(
    payload: dict[str, Any] | None = None,
    *,
    embedding_client: EmbeddingClient | None = None,
    store: VectorStore | None = None,
) -> IngestJobResult:
    """Ingest the job's paths; raises when any document failed so the job is retried.

    Documents that made it into the ledger are skipped on the retry.
    """
    settings = get_settings()
    start = perf_counter()

    documents = load_documents(resolve_paths(payload, settings.source_dir))
    summary = ingest_documents(
        documents,
        embedding_client=embedding_client,
        store=store,
        settings=settings,
    )

    if summary.failed_count:
        failures = summary.as_dict()["failures"]
        raise RuntimeError(f"{summary.failed_count} document(s) failed to ingest: {failures}")

    return {
        "documents": len(summary.outcomes),
        "ingested": summary.ingested_count,
        "skipped": summary.skipped_count,
        "chunks": summary.chunk_count,
        "duration_ms": int((perf_counter() - start) * 1000),
        "embed_model": settings.ollama_embed_model,
    }
