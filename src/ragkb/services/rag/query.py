from __future__ import annotations

import logging
from time import perf_counter
from typing import Sequence

from ragkb.services.rag.assembler import assemble
from ragkb.services.rag.embedding_client import EmbeddingClient
from ragkb.services.rag.errors import TransientServiceError, ValidationError
from ragkb.services.rag.filters import Predicate, filter_candidates
from ragkb.services.rag.scorer import DEFAULT_KEYWORD_WEIGHT, DEFAULT_VECTOR_WEIGHT, score_candidates
from ragkb.services.rag.types import QueryResponse
from ragkb.services.rag.vector_store import VectorStore

logger = logging.getLogger(__name__)


def search(
    query_text: str,
    *,
    embedding_client: EmbeddingClient,
    store: VectorStore,
    top_k: int = 5,
    candidate_k: int = 40,
    vector_weight: float = DEFAULT_VECTOR_WEIGHT,
    keyword_weight: float = DEFAULT_KEYWORD_WEIGHT,
    predicates: Sequence[Predicate] | None = None,
    with_parent: bool = False,
    with_adjacent: bool = False,
    adjacent_lines: int = 50,
) -> QueryResponse:
    """Vector search for candidates, rescore them, filter, then attach context."""
    started_at = perf_counter()
    normalized_query = query_text.strip()
    if not normalized_query:
        raise ValidationError("query_text must not be empty")
    if top_k <= 0:
        raise ValidationError("top_k must be > 0")
    if vector_weight < 0 or keyword_weight < 0:
        raise ValidationError("vector_weight and keyword_weight must be >= 0")
    predicates = list(predicates or [])

    vectors = embedding_client.embed_texts([normalized_query])
    if len(vectors) != 1 or not vectors[0]:
        raise TransientServiceError("embedding service returned no query vector")

    candidates = store.approximate_search(vectors[0], max(candidate_k, top_k), predicates)
    # stores may ignore push-down filters; evaluate them again on what came back
    candidates = filter_candidates(candidates, predicates, lambda candidate: candidate.payload)

    ranked = score_candidates(
        normalized_query,
        candidates,
        vector_weight=vector_weight,
        keyword_weight=keyword_weight,
    )[:top_k]

    response = assemble(
        ranked,
        {candidate.chunk_id: candidate for candidate in candidates},
        query=normalized_query,
        with_parent=with_parent,
        fetch_parent=store.fetch,
        with_adjacent=with_adjacent,
        adjacent_lines=adjacent_lines,
        fetch_adjacent=store.children_in_range,
        started_at=started_at,
        candidate_count=len(candidates),
    )
    logger.debug(
        "query %r: %d candidates, %d results in %.1fms",
        normalized_query,
        response.candidate_count,
        len(response.results),
        response.elapsed_ms,
    )
    return response
