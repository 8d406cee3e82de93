from __future__ import annotations

import logging
from time import perf_counter
from typing import Any, Callable, Mapping, Sequence

from ragkb.services.rag.errors import CorpusInconsistency
from ragkb.services.rag.types import (
    AdjacentChunk,
    AssembledResult,
    Candidate,
    QueryResponse,
    ScoreComponents,
    StoredPoint,
)

logger = logging.getLogger(__name__)

NO_CONTEXT = "No relevant context found in local retrieval index."

ParentFetcher = Callable[[str], Mapping[str, Any] | None]
AdjacentFetcher = Callable[[str, int, int], Sequence[StoredPoint]]


def _payload_str(payload: Mapping[str, Any], key: str) -> str | None:
    value = payload.get(key)
    return value if isinstance(value, str) else None


def _payload_int(payload: Mapping[str, Any], key: str) -> int | None:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _adjacent_chunks(
    chunk_id: str,
    payload: Mapping[str, Any],
    *,
    window: int,
    fetch_adjacent: AdjacentFetcher,
    cache: dict[tuple[str, int, int], Sequence[StoredPoint]],
) -> tuple[AdjacentChunk, ...] | None:
    document_id = _payload_str(payload, "document_id")
    start_line = _payload_int(payload, "start_line")
    end_line = _payload_int(payload, "end_line")
    if document_id is None or start_line is None or end_line is None:
        return None

    key = (document_id, max(1, start_line - window), end_line + window)
    if key not in cache:
        cache[key] = fetch_adjacent(*key)

    chunks: list[AdjacentChunk] = []
    for point in cache[key]:
        text = _payload_str(point.payload, "text")
        first = _payload_int(point.payload, "start_line")
        last = _payload_int(point.payload, "end_line")
        if point.chunk_id == chunk_id or text is None or first is None or last is None:
            continue
        chunks.append(AdjacentChunk(chunk_id=point.chunk_id, text=text, start_line=first, end_line=last))
    return tuple(chunks)


def assemble(
    ranked: Sequence[tuple[str, ScoreComponents]],
    candidates: Mapping[str, Candidate],
    *,
    query: str = "",
    with_parent: bool = False,
    fetch_parent: ParentFetcher | None = None,
    with_adjacent: bool = False,
    adjacent_lines: int = 50,
    fetch_adjacent: AdjacentFetcher | None = None,
    started_at: float | None = None,
    candidate_count: int | None = None,
) -> QueryResponse:
    """Attach text, source and (optionally) parent context to ranked chunks.

    Output order is exactly the order of ``ranked``. A child whose parent cannot
    be resolved keeps its place and carries a ``CorpusInconsistency`` warning.
    With ``with_adjacent`` each result also carries the other children of its
    document that overlap its line span widened by ``adjacent_lines``.
    """
    if started_at is None:
        started_at = perf_counter()

    parent_cache: dict[str, Mapping[str, Any] | None] = {}
    adjacent_cache: dict[tuple[str, int, int], Sequence[StoredPoint]] = {}
    results: list[AssembledResult] = []

    for chunk_id, components in ranked:
        candidate = candidates[chunk_id]
        payload = candidate.payload
        parent_id = _payload_str(payload, "parent_id")
        parent_text: str | None = None
        warnings: list[CorpusInconsistency] = []

        if with_parent:
            if parent_id is None:
                warnings.append(
                    CorpusInconsistency(chunk_id=chunk_id, parent_id=None, reason="payload has no parent_id")
                )
            elif fetch_parent is None:
                warnings.append(
                    CorpusInconsistency(chunk_id=chunk_id, parent_id=parent_id, reason="no parent lookup available")
                )
            else:
                if parent_id not in parent_cache:
                    parent_cache[parent_id] = fetch_parent(parent_id)
                parent_payload = parent_cache[parent_id]
                parent_text = _payload_str(parent_payload, "text") if parent_payload else None
                if parent_text is None:
                    warnings.append(
                        CorpusInconsistency(
                            chunk_id=chunk_id,
                            parent_id=parent_id,
                            reason=f"parent {parent_id} not found",
                        )
                    )

        adjacent: tuple[AdjacentChunk, ...] = ()
        if with_adjacent and fetch_adjacent is not None:
            found = _adjacent_chunks(
                chunk_id,
                payload,
                window=max(0, adjacent_lines),
                fetch_adjacent=fetch_adjacent,
                cache=adjacent_cache,
            )
            if found is None:
                warnings.append(
                    CorpusInconsistency(chunk_id=chunk_id, parent_id=parent_id, reason="payload has no line range")
                )
            else:
                adjacent = found

        for warning in warnings:
            logger.warning("corpus inconsistency: %s", warning.describe())

        results.append(
            AssembledResult(
                chunk_id=chunk_id,
                text=candidate.text,
                source=_payload_str(payload, "source") or "",
                score=components,
                parent_id=parent_id,
                parent_text=parent_text,
                chunk_type=_payload_str(payload, "chunk_type"),
                warnings=tuple(warnings),
                adjacent=adjacent,
            )
        )

    return QueryResponse(
        query=query,
        results=results,
        candidate_count=len(candidates) if candidate_count is None else candidate_count,
        elapsed_ms=(perf_counter() - started_at) * 1000,
    )


def _context_block(result: AssembledResult) -> str:
    header = f"[{result.source}#{result.chunk_id}]"
    sections: list[str] = []
    if result.parent_text:
        sections.append(f"=== CONTEXT (Parent Chunk) ===\n{result.parent_text.strip()}")
    for chunk in result.adjacent:
        # siblings are already inside the parent text
        if result.parent_text and result.parent_id and chunk.chunk_id.startswith(f"{result.parent_id}-c"):
            continue
        sections.append(f"=== NEARBY (Lines {chunk.start_line}-{chunk.end_line}) ===\n{chunk.text.strip()}")
    if not sections:
        return f"{header}\n{result.text.strip()}"
    sections.append(f"=== PRECISE MATCH (Child Chunk) ===\n{result.text.strip()}")
    return header + "\n" + "\n\n".join(sections)


def build_context(results: Sequence[AssembledResult], char_budget: int) -> str:
    """Render results for the answer generator without exceeding ``char_budget``."""
    if char_budget <= 0:
        raise ValueError("char_budget must be > 0")
    if not results:
        return NO_CONTEXT[:char_budget]

    separator = "\n\n"
    blocks: list[str] = []
    used = 0
    seen_parents: set[str] = set()

    for result in results:
        if result.parent_id and result.parent_id in seen_parents and result.parent_text:
            # the parent context is already in the window
            block = f"[{result.source}#{result.chunk_id}]\n{result.text.strip()}"
        else:
            block = _context_block(result)
        if result.parent_id and result.parent_text:
            seen_parents.add(result.parent_id)

        extra = len(block) + (len(separator) if blocks else 0)
        if used + extra > char_budget:
            if not blocks:
                blocks.append(block[:char_budget])
            break
        blocks.append(block)
        used += extra

    return separator.join(blocks)
