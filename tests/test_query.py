from pathlib import Path

import pytest

from ragkb.services.rag import search
from ragkb.services.rag.embedding_client import EmbeddingClientError
from ragkb.services.rag.errors import TransientServiceError, ValidationError
from ragkb.services.rag.filters import Predicate
from ragkb.services.rag.types import StoredPoint
from ragkb.services.rag.vector_store import SQLiteVectorStore


class KeywordEmbeddingClient:
    def __init__(self) -> None:
        self.calls = 0

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        vectors: list[list[float]] = []
        for text in texts:
            normalized = text.lower()
            vectors.append(
                [
                    float(normalized.count("pump")),
                    float(normalized.count("invoice")),
                    0.1,
                ]
            )
        return vectors


def _child(chunk_id: str, parent_id: str, text: str, vector: list[float], **extra: object) -> StoredPoint:
    payload = {
        "text": text,
        "source": "manual.md",
        "document_id": "doc",
        "chunk_type": "text",
        "is_code": False,
        "parent_id": parent_id,
    }
    payload.update(extra)
    return StoredPoint(chunk_id=chunk_id, vector=vector, payload=payload)


@pytest.fixture
def store(tmp_path: Path) -> SQLiteVectorStore:
    store = SQLiteVectorStore(tmp_path / "vectors.db")
    store.ensure_collection(3)
    store.upsert(
        [
            StoredPoint(
                chunk_id="doc-p0000",
                vector=None,
                payload={"text": "# Pumps\nFull pump chapter.", "chunk_type": "parent", "document_id": "doc"},
            ),
            _child("doc-p0000-c000", "doc-p0000", "pump pump maintenance schedule", [2.0, 0.0, 0.1]),
            _child(
                "doc-p0000-c001",
                "doc-p0000",
                "def restart_pump(): pass",
                [1.0, 0.0, 0.1],
                chunk_type="code",
                is_code=True,
            ),
            _child("doc-p0001-c000", "doc-p0001", "invoice totals for the quarter", [0.0, 1.0, 0.1], source="finance.md"),
        ]
    )
    return store


def test_search_ranks_matching_chunks_first(store: SQLiteVectorStore) -> None:
    response = search(
        "pump maintenance",
        embedding_client=KeywordEmbeddingClient(),
        store=store,
        top_k=2,
    )

    assert [result.chunk_id for result in response.results] == ["doc-p0000-c000", "doc-p0000-c001"]
    assert response.candidate_count == 3
    assert response.results[0].score.final >= response.results[1].score.final
    assert response.results[0].parent_text is None


def test_search_attaches_parent_context(store: SQLiteVectorStore) -> None:
    response = search(
        "pump maintenance",
        embedding_client=KeywordEmbeddingClient(),
        store=store,
        top_k=3,
        with_parent=True,
    )

    by_id = {result.chunk_id: result for result in response.results}
    assert by_id["doc-p0000-c000"].parent_text == "# Pumps\nFull pump chapter."
    assert by_id["doc-p0000-c000"].warnings == ()

    orphan = by_id["doc-p0001-c000"]
    assert orphan.parent_text is None
    assert [warning.parent_id for warning in orphan.warnings] == ["doc-p0001"]


def test_search_applies_predicates(store: SQLiteVectorStore) -> None:
    response = search(
        "pump",
        embedding_client=KeywordEmbeddingClient(),
        store=store,
        top_k=5,
        predicates=[Predicate.equals("is_code", True)],
    )

    assert [result.chunk_id for result in response.results] == ["doc-p0000-c001"]
    assert response.results[0].chunk_type == "code"


def test_search_with_no_match_returns_empty_results(store: SQLiteVectorStore) -> None:
    response = search(
        "pump",
        embedding_client=KeywordEmbeddingClient(),
        store=store,
        predicates=[Predicate.one_of("source", ["missing.md"])],
    )

    assert response.results == []
    assert response.candidate_count == 0


def test_keyword_weight_only_follows_lexical_ranking(store: SQLiteVectorStore) -> None:
    response = search(
        "invoice quarter",
        embedding_client=KeywordEmbeddingClient(),
        store=store,
        top_k=1,
        vector_weight=0.0,
        keyword_weight=1.0,
    )

    assert response.results[0].chunk_id == "doc-p0001-c000"
    assert response.results[0].source == "finance.md"


@pytest.mark.parametrize(
    ("query", "kwargs"),
    [
        ("   ", {}),
        ("pump", {"top_k": 0}),
        ("pump", {"vector_weight": -0.1}),
        ("pump", {"keyword_weight": -1.0}),
    ],
)
def test_search_validates_before_embedding(store: SQLiteVectorStore, query: str, kwargs: dict) -> None:
    client = KeywordEmbeddingClient()

    with pytest.raises(ValidationError):
        search(query, embedding_client=client, store=store, **kwargs)

    assert client.calls == 0


def test_search_requires_an_existing_store(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError, match="ragkb ingest"):
        search("pump", embedding_client=KeywordEmbeddingClient(), store=SQLiteVectorStore(tmp_path / "none.db"))


def test_search_surfaces_embedding_failures(store: SQLiteVectorStore) -> None:
    class FailingClient:
        def embed_texts(self, texts: list[str]) -> list[list[float]]:
            raise EmbeddingClientError("connection refused")

    with pytest.raises(TransientServiceError):
        search("pump", embedding_client=FailingClient(), store=store)


def test_search_with_adjacent_pulls_neighbouring_lines(tmp_path: Path) -> None:
    store = SQLiteVectorStore(tmp_path / "lines.db")
    store.ensure_collection(3)
    store.upsert(
        [
            _child("doc-p0000-c000", "doc-p0000", "intro to the station", [0.0, 0.0, 1.0], start_line=1, end_line=30),
            _child("doc-p0000-c001", "doc-p0000", "pump pump pressure", [2.0, 0.0, 0.1], start_line=31, end_line=60),
            _child("doc-p0000-c002", "doc-p0000", "far away appendix", [0.0, 0.0, 1.0], start_line=400, end_line=420),
        ]
    )

    response = search(
        "pump pressure",
        embedding_client=KeywordEmbeddingClient(),
        store=store,
        top_k=1,
        with_adjacent=True,
        adjacent_lines=10,
    )

    result = response.results[0]
    assert result.chunk_id == "doc-p0000-c001"
    assert [chunk.chunk_id for chunk in result.adjacent] == ["doc-p0000-c000"]
