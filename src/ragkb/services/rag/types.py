from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ragkb.services.rag.errors import CorpusInconsistency, DuplicateIngestionSkip


class ChunkKind(str, Enum):
    TEXT = "text"
    CODE = "code"
    HEADING = "heading"
    MIXED = "mixed"


@dataclass(frozen=True)
class SourceDocument:
    source: str
    raw: bytes


@dataclass(frozen=True)
class CorpusDocument:
    document_id: str
    source: str
    fingerprint: str
    ingested_at: str
    parent_count: int
    child_count: int


@dataclass(frozen=True)
class ParentChunk:
    chunk_id: str
    document_id: str
    index: int
    text: str
    start_line: int
    end_line: int
    headers: tuple[str, ...] = ()
    summary: str = ""


@dataclass(frozen=True)
class ChildChunk:
    chunk_id: str
    parent_id: str
    document_id: str
    index: int
    text: str
    kind: ChunkKind
    start_line: int
    end_line: int
    embedding: tuple[float, ...] | None = None


@dataclass(frozen=True)
class FingerprintRecord:
    fingerprint: str
    source: str
    chunk_count: int
    timestamp: str


@dataclass(frozen=True)
class StoredPoint:
    chunk_id: str
    vector: list[float] | None
    payload: dict[str, Any]


@dataclass(frozen=True)
class Candidate:
    chunk_id: str
    vector_score: float
    payload: dict[str, Any]

    @property
    def text(self) -> str:
        value = self.payload.get("text")
        return value if isinstance(value, str) else ""


@dataclass(frozen=True)
class ScoreComponents:
    raw_lexical: float
    raw_vector: float
    norm_lexical: float
    norm_vector: float
    final: float
    vector_weight: float
    keyword_weight: float

    def as_dict(self) -> dict[str, float]:
        return {
            "final": round(self.final, 6),
            "vector": round(self.raw_vector, 6),
            "lexical": round(self.raw_lexical, 6),
            "norm_vector": round(self.norm_vector, 6),
            "norm_lexical": round(self.norm_lexical, 6),
            "vector_weight": self.vector_weight,
            "keyword_weight": self.keyword_weight,
        }


@dataclass(frozen=True)
class AdjacentChunk:
    chunk_id: str
    text: str
    start_line: int
    end_line: int


@dataclass(frozen=True)
class AssembledResult:
    chunk_id: str
    text: str
    source: str
    score: ScoreComponents
    parent_id: str | None = None
    parent_text: str | None = None
    chunk_type: str | None = None
    warnings: tuple[CorpusInconsistency, ...] = ()
    adjacent: tuple[AdjacentChunk, ...] = ()


@dataclass(frozen=True)
class QueryResponse:
    query: str
    results: list[AssembledResult]
    candidate_count: int
    elapsed_ms: float


@dataclass(frozen=True)
class IngestionOutcome:
    source: str
    status: str
    fingerprint: str | None = None
    document: CorpusDocument | None = None
    skip: DuplicateIngestionSkip | None = None
    error: str | None = None

    @property
    def chunk_count(self) -> int:
        if self.document is None:
            return 0
        return self.document.child_count


@dataclass(frozen=True)
class IngestionSummary:
    outcomes: list[IngestionOutcome] = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def ingested_count(self) -> int:
        return self._count("ingested")

    @property
    def skipped_count(self) -> int:
        return self._count("skipped")

    @property
    def failed_count(self) -> int:
        return self._count("failed")

    @property
    def chunk_count(self) -> int:
        return sum(outcome.chunk_count for outcome in self.outcomes)

    def as_dict(self) -> dict[str, object]:
        return {
            "documents": len(self.outcomes),
            "ingested": self.ingested_count,
            "skipped": self.skipped_count,
            "failed": self.failed_count,
            "chunks": self.chunk_count,
            "failures": {
                outcome.source: outcome.error
                for outcome in self.outcomes
                if outcome.status == "failed"
            },
        }
