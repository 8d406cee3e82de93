from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import logging
from time import sleep
from typing import Any, Callable, Sequence

from ragkb.config import Settings, get_settings
from ragkb.services.rag.chunker import HierarchicalChunker
from ragkb.services.rag.embedder import embed_children
from ragkb.services.rag.embedding_client import EmbeddingClient, OllamaEmbeddingClient
from ragkb.services.rag.errors import DuplicateIngestionSkip, EmbeddingFailedError, TransientServiceError
from ragkb.services.rag.fingerprint import FingerprintLedger, compute_fingerprint
from ragkb.services.rag.types import (
    ChildChunk,
    CorpusDocument,
    IngestionOutcome,
    IngestionSummary,
    ParentChunk,
    SourceDocument,
    StoredPoint,
)
from ragkb.services.rag.vector_store import VectorStore, build_store

logger = logging.getLogger(__name__)


def default_embedding_client(settings: Settings) -> EmbeddingClient:
    return OllamaEmbeddingClient(
        base_url=settings.ollama_embed_base_url,
        model=settings.ollama_embed_model,
        timeout_seconds=settings.ollama_timeout_seconds,
    )


def build_chunker(settings: Settings) -> HierarchicalChunker:
    return HierarchicalChunker(
        parent_target_size=settings.parent_target_size,
        child_target_size=settings.child_target_size,
    )


def _parent_payload(parent: ParentChunk, source: str) -> dict[str, Any]:
    return {
        "text": parent.text,
        "source": source,
        "document_id": parent.document_id,
        "chunk_type": "parent",
        "is_code": False,
        "parent_id": None,
        "index_in_parent": parent.index,
        "start_line": parent.start_line,
        "end_line": parent.end_line,
        "char_count": len(parent.text),
        "headers": list(parent.headers),
        "parent_summary": parent.summary,
    }


def _child_payload(child: ChildChunk, parent: ParentChunk, source: str) -> dict[str, Any]:
    return {
        "text": child.text,
        "source": source,
        "document_id": child.document_id,
        "chunk_type": child.kind.value,
        "is_code": child.kind.value == "code",
        "parent_id": child.parent_id,
        "index_in_parent": child.index,
        "start_line": child.start_line,
        "end_line": child.end_line,
        "char_count": len(child.text),
        "headers": list(parent.headers),
        "parent_summary": parent.summary,
    }


def build_points(
    hierarchy: Sequence[tuple[ParentChunk, list[ChildChunk]]],
    source: str,
) -> list[StoredPoint]:
    points: list[StoredPoint] = []
    for parent, children in hierarchy:
        points.append(StoredPoint(chunk_id=parent.chunk_id, vector=None, payload=_parent_payload(parent, source)))
        for child in children:
            if child.embedding is None:
                raise ValueError(f"child {child.chunk_id} has no embedding")
            points.append(
                StoredPoint(
                    chunk_id=child.chunk_id,
                    vector=list(child.embedding),
                    payload=_child_payload(child, parent, source),
                )
            )
    return points


def ingest_document(
    document: SourceDocument,
    *,
    ledger: FingerprintLedger,
    chunker: HierarchicalChunker,
    embedding_client: EmbeddingClient,
    store: VectorStore,
    max_attempts: int = 5,
    base_seconds: float = 0.5,
    max_seconds: float = 8.0,
    embed_concurrency: int = 4,
    sleeper: Callable[[float], None] = sleep,
) -> IngestionOutcome:
    fingerprint = compute_fingerprint(document.raw)

    existing = ledger.get(fingerprint)
    if existing is not None:
        skip = DuplicateIngestionSkip(
            fingerprint=fingerprint,
            source=document.source,
            previous_source=existing.source,
            previous_timestamp=existing.timestamp,
        )
        if existing.source != document.source:
            logger.warning(
                "%s has the same content as %s; treating it as already ingested",
                document.source,
                existing.source,
            )
        logger.info("skipping %s: %s", document.source, skip.describe())
        return IngestionOutcome(source=document.source, status="skipped", fingerprint=fingerprint, skip=skip)

    text = document.raw.decode("utf-8")
    document_id = fingerprint[:16]
    hierarchy = chunker.chunk(text, document_id=document_id)

    parents = {parent.chunk_id: parent for parent, _ in hierarchy}
    children = [child for _, group in hierarchy for child in group]
    embedded = embed_children(
        embedding_client,
        children,
        parents=parents,
        document=document.source,
        max_attempts=max_attempts,
        base_seconds=base_seconds,
        max_seconds=max_seconds,
        concurrency=embed_concurrency,
        sleeper=sleeper,
    )
    by_id = {child.chunk_id: child for child in embedded}
    hierarchy = [
        (parent, [by_id[child.chunk_id] for child in group])
        for parent, group in hierarchy
    ]

    if embedded:
        store.ensure_collection(len(embedded[0].embedding or ()))
        store.upsert(build_points(hierarchy, document.source))

    record = ledger.record(fingerprint, document.source, len(embedded))
    logger.info(
        "ingested %s parents=%d children=%d fingerprint=%s",
        document.source,
        len(hierarchy),
        len(embedded),
        fingerprint[:12],
    )
    return IngestionOutcome(
        source=document.source,
        status="ingested",
        fingerprint=fingerprint,
        document=CorpusDocument(
            document_id=document_id,
            source=document.source,
            fingerprint=fingerprint,
            ingested_at=record.timestamp,
            parent_count=len(hierarchy),
            child_count=len(embedded),
        ),
    )


def _batch_duplicate(document: SourceDocument, fingerprint: str, first: IngestionOutcome) -> IngestionOutcome:
    if first.status == "failed":
        return IngestionOutcome(
            source=document.source,
            status="failed",
            fingerprint=fingerprint,
            error=f"same content as {first.source}, which failed: {first.error}",
        )

    if first.document is not None:
        previous_source, previous_timestamp = first.source, first.document.ingested_at
    elif first.skip is not None:
        previous_source, previous_timestamp = first.skip.previous_source, first.skip.previous_timestamp
    else:
        previous_source, previous_timestamp = first.source, ""

    skip = DuplicateIngestionSkip(
        fingerprint=fingerprint,
        source=document.source,
        previous_source=previous_source,
        previous_timestamp=previous_timestamp,
    )
    logger.warning(
        "%s has the same content as %s; treating it as already ingested",
        document.source,
        previous_source,
    )
    return IngestionOutcome(source=document.source, status="skipped", fingerprint=fingerprint, skip=skip)


def ingest_documents(
    documents: Sequence[SourceDocument],
    *,
    ledger: FingerprintLedger | None = None,
    chunker: HierarchicalChunker | None = None,
    embedding_client: EmbeddingClient | None = None,
    store: VectorStore | None = None,
    settings: Settings | None = None,
    sleeper: Callable[[float], None] = sleep,
) -> IngestionSummary:
    """Ingest documents in parallel; one document failing never stops the others.

    Byte-identical documents within the batch are ingested once; the later
    copies come back as ``skipped``.
    """
    settings = settings or get_settings()
    ledger = ledger or FingerprintLedger(settings.ledger_path)
    chunker = chunker or build_chunker(settings)
    embedding_client = embedding_client or default_embedding_client(settings)
    store = store or build_store(settings)

    def _ingest(document: SourceDocument) -> IngestionOutcome:
        try:
            return ingest_document(
                document,
                ledger=ledger,
                chunker=chunker,
                embedding_client=embedding_client,
                store=store,
                max_attempts=settings.embed_max_attempts,
                base_seconds=settings.embed_retry_base_seconds,
                max_seconds=settings.embed_retry_max_seconds,
                embed_concurrency=settings.embed_concurrency,
                sleeper=sleeper,
            )
        except (EmbeddingFailedError, TransientServiceError, ValueError) as exc:
            logger.error("failed to ingest %s: %s", document.source, exc)
            return IngestionOutcome(
                source=document.source,
                status="failed",
                fingerprint=compute_fingerprint(document.raw),
                error=str(exc),
            )

    fingerprints = [compute_fingerprint(document.raw) for document in documents]
    first_index: dict[str, int] = {}
    for index, fingerprint in enumerate(fingerprints):
        first_index.setdefault(fingerprint, index)
    unique = [documents[index] for index in first_index.values()]

    with ThreadPoolExecutor(max_workers=max(1, settings.ingest_concurrency)) as executor:
        unique_outcomes = dict(zip(first_index, executor.map(_ingest, unique)))

    outcomes: list[IngestionOutcome] = []
    for index, (document, fingerprint) in enumerate(zip(documents, fingerprints)):
        first = unique_outcomes[fingerprint]
        if first_index[fingerprint] == index:
            outcomes.append(first)
        else:
            outcomes.append(_batch_duplicate(document, fingerprint, first))

    summary = IngestionSummary(outcomes=outcomes)
    logger.info("ingestion finished: %s", summary.as_dict())
    return summary
