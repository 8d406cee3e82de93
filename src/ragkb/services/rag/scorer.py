"""Blend lexical and vector relevance over a bounded candidate set.

The lexical score is BM25 computed over the candidates only: document
frequencies and the average length come from the candidate set, not from the
whole corpus. Each score family is min-max normalized before blending.
"""

from __future__ import annotations

from collections import Counter
import math
import re
from typing import Sequence

from ragkb.services.rag.errors import ValidationError
from ragkb.services.rag.types import Candidate, ScoreComponents

K1 = 1.2
B = 0.75

DEFAULT_VECTOR_WEIGHT = 0.7
DEFAULT_KEYWORD_WEIGHT = 0.3

_TOKEN_RE = re.compile(r"[a-z0-9]+(?:\.[0-9]+)*")


def tokenize(text: str) -> list[str]:
    return [token for token in _TOKEN_RE.findall(text.lower()) if len(token) > 1]


def query_terms(query: str) -> list[str]:
    return list(dict.fromkeys(tokenize(query)))


def bm25_scores(
    terms: Sequence[str],
    documents: Sequence[Sequence[str]],
    *,
    k1: float = K1,
    b: float = B,
) -> list[float]:
    n_docs = len(documents)
    if n_docs == 0:
        return []

    avgdl = sum(len(tokens) for tokens in documents) / n_docs
    term_counts = [Counter(tokens) for tokens in documents]
    doc_freqs = {term: sum(1 for counts in term_counts if term in counts) for term in terms}

    scores: list[float] = []
    for tokens, counts in zip(documents, term_counts):
        length_ratio = len(tokens) / avgdl if avgdl else 0.0
        score = 0.0
        for term in terms:
            tf = counts.get(term, 0)
            df = doc_freqs[term]
            if tf == 0 or df == 0:
                continue
            idf = math.log(n_docs / df)
            score += idf * (tf * (k1 + 1)) / (tf + k1 * (1 - b + b * length_ratio))
        scores.append(score)
    return scores


def min_max_normalize(values: Sequence[float]) -> list[float]:
    if not values:
        return []
    low = min(values)
    high = max(values)
    if high == low:
        return [0.0 for _ in values]
    span = high - low
    return [(value - low) / span for value in values]


def _check_weights(vector_weight: float, keyword_weight: float) -> None:
    if vector_weight < 0 or keyword_weight < 0:
        raise ValidationError("vector_weight and keyword_weight must be >= 0")


def blend(
    norm_vector: Sequence[float],
    norm_lexical: Sequence[float],
    vector_weight: float = DEFAULT_VECTOR_WEIGHT,
    keyword_weight: float = DEFAULT_KEYWORD_WEIGHT,
) -> list[float]:
    if len(norm_vector) != len(norm_lexical):
        raise ValidationError("vector and lexical score lists must have the same length")
    _check_weights(vector_weight, keyword_weight)
    return [
        vector_weight * vector + keyword_weight * lexical
        for vector, lexical in zip(norm_vector, norm_lexical)
    ]


def rank_order(final_scores: Sequence[float]) -> list[int]:
    return sorted(range(len(final_scores)), key=lambda index: -final_scores[index])


def score(
    query: str,
    candidates: Sequence[str],
    vector_scores: Sequence[float],
    vector_weight: float = DEFAULT_VECTOR_WEIGHT,
    keyword_weight: float = DEFAULT_KEYWORD_WEIGHT,
    *,
    chunk_ids: Sequence[str] | None = None,
) -> list[tuple[str, ScoreComponents]]:
    """Score candidate texts and return them best first.

    ``candidates`` are the candidate texts, ``vector_scores`` the similarity
    reported by the vector store for each of them. Ties keep input order.
    """
    if len(candidates) != len(vector_scores):
        raise ValidationError("candidates and vector_scores must have the same length")
    if chunk_ids is None:
        chunk_ids = [str(index) for index in range(len(candidates))]
    if len(chunk_ids) != len(candidates):
        raise ValidationError("chunk_ids and candidates must have the same length")
    _check_weights(vector_weight, keyword_weight)

    if not candidates:
        return []

    raw_lexical = bm25_scores(query_terms(query), [tokenize(text) for text in candidates])
    raw_vector = [float(value) for value in vector_scores]

    norm_lexical = min_max_normalize(raw_lexical)
    norm_vector = min_max_normalize(raw_vector)
    final = blend(norm_vector, norm_lexical, vector_weight, keyword_weight)

    return [
        (
            chunk_ids[index],
            ScoreComponents(
                raw_lexical=raw_lexical[index],
                raw_vector=raw_vector[index],
                norm_lexical=norm_lexical[index],
                norm_vector=norm_vector[index],
                final=final[index],
                vector_weight=vector_weight,
                keyword_weight=keyword_weight,
            ),
        )
        for index in rank_order(final)
    ]


def score_candidates(
    query: str,
    candidates: Sequence[Candidate],
    *,
    vector_weight: float = DEFAULT_VECTOR_WEIGHT,
    keyword_weight: float = DEFAULT_KEYWORD_WEIGHT,
) -> list[tuple[str, ScoreComponents]]:
    return score(
        query,
        [candidate.text for candidate in candidates],
        [candidate.vector_score for candidate in candidates],
        vector_weight,
        keyword_weight,
        chunk_ids=[candidate.chunk_id for candidate in candidates],
    )
