from pathlib import Path
from threading import Lock

import pytest

from ragkb.config import get_settings
from ragkb.services.rag.chunker import HierarchicalChunker
from ragkb.services.rag.embedding_client import EmbeddingClientError
from ragkb.services.rag.fingerprint import FingerprintLedger, compute_fingerprint
from ragkb.services.rag.ingest import ingest_document, ingest_documents
from ragkb.services.rag.types import SourceDocument
from ragkb.services.rag.vector_store import SQLiteVectorStore


class FakeEmbeddingClient:
    def __init__(self) -> None:
        self._lock = Lock()
        self.calls = 0

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if any("explode" in text for text in texts):
            raise EmbeddingClientError("embedding backend unavailable")
        with self._lock:
            self.calls += 1
        vectors: list[list[float]] = []
        for text in texts:
            normalized = text.lower()
            vectors.append(
                [
                    float(normalized.count("automation") + normalized.count("robotics")),
                    float(normalized.count("finance") + normalized.count("accounting")),
                    1.0,
                ]
            )
        return vectors


MANUAL = (
    "# Line maintenance\n\n"
    "Robotics cells need weekly automation checks.\n\n"
    "```bash\nrun-diagnostics --cell 4\n```\n"
)


def _ingest(document: SourceDocument, tmp_path: Path, client: FakeEmbeddingClient):
    return ingest_document(
        document,
        ledger=FingerprintLedger(tmp_path / ".ingested_checksums"),
        chunker=HierarchicalChunker(),
        embedding_client=client,
        store=SQLiteVectorStore(tmp_path / "vectors.db"),
        sleeper=lambda _: None,
    )


def test_ingest_document_stores_parents_and_children(tmp_path: Path) -> None:
    client = FakeEmbeddingClient()
    document = SourceDocument(source="manual.md", raw=MANUAL.encode("utf-8"))

    outcome = _ingest(document, tmp_path, client)

    assert outcome.status == "ingested"
    assert outcome.document is not None
    fingerprint = compute_fingerprint(document.raw)
    assert outcome.document.document_id == fingerprint[:16]
    assert outcome.document.parent_count == 1

    store = SQLiteVectorStore(tmp_path / "vectors.db")
    assert store.count() == outcome.document.parent_count + outcome.document.child_count

    record = FingerprintLedger(tmp_path / ".ingested_checksums").get(fingerprint)
    assert record is not None
    assert record.source == "manual.md"
    assert record.chunk_count == outcome.chunk_count


def test_child_payload_carries_metadata(tmp_path: Path) -> None:
    document = SourceDocument(source="manual.md", raw=MANUAL.encode("utf-8"))
    outcome = _ingest(document, tmp_path, FakeEmbeddingClient())
    assert outcome.document is not None

    store = SQLiteVectorStore(tmp_path / "vectors.db")
    child = store.fetch(f"{outcome.document.document_id}-p0000-c000")
    parent = store.fetch(f"{outcome.document.document_id}-p0000")

    assert child is not None and parent is not None
    assert {
        "text",
        "source",
        "document_id",
        "chunk_type",
        "is_code",
        "parent_id",
        "index_in_parent",
        "start_line",
        "end_line",
        "char_count",
        "headers",
        "parent_summary",
    } == set(child)
    assert child["parent_id"] == f"{outcome.document.document_id}-p0000"
    assert child["source"] == "manual.md"
    assert child["start_line"] == 1
    assert parent["chunk_type"] == "parent"
    assert parent["text"] == MANUAL


def test_reingesting_identical_bytes_is_a_no_op(tmp_path: Path) -> None:
    client = FakeEmbeddingClient()
    document = SourceDocument(source="manual.md", raw=MANUAL.encode("utf-8"))
    _ingest(document, tmp_path, client)
    calls_after_first = client.calls
    points_after_first = SQLiteVectorStore(tmp_path / "vectors.db").count()

    outcome = _ingest(document, tmp_path, client)

    assert outcome.status == "skipped"
    assert outcome.chunk_count == 0
    assert outcome.skip is not None
    assert outcome.skip.previous_source == "manual.md"
    assert client.calls == calls_after_first
    assert SQLiteVectorStore(tmp_path / "vectors.db").count() == points_after_first
    assert len(FingerprintLedger(tmp_path / ".ingested_checksums").records()) == 1


def test_same_content_under_new_name_is_skipped(tmp_path: Path) -> None:
    client = FakeEmbeddingClient()
    _ingest(SourceDocument(source="manual.md", raw=MANUAL.encode("utf-8")), tmp_path, client)

    outcome = _ingest(SourceDocument(source="copy/manual.md", raw=MANUAL.encode("utf-8")), tmp_path, client)

    assert outcome.status == "skipped"
    assert outcome.skip is not None
    assert outcome.skip.source == "copy/manual.md"
    assert outcome.skip.previous_source == "manual.md"


def test_empty_document_records_zero_chunks(tmp_path: Path) -> None:
    outcome = _ingest(SourceDocument(source="empty.md", raw=b"  \n\n"), tmp_path, FakeEmbeddingClient())

    assert outcome.status == "ingested"
    assert outcome.chunk_count == 0
    assert SQLiteVectorStore(tmp_path / "vectors.db").count() == 0
    records = FingerprintLedger(tmp_path / ".ingested_checksums").records()
    assert [(record.source, record.chunk_count) for record in records] == [("empty.md", 0)]


def test_one_failing_document_does_not_stop_the_batch(data_dir: Path) -> None:
    client = FakeEmbeddingClient()
    documents = [
        SourceDocument(source="robotics.md", raw=b"robotics automation line"),
        SourceDocument(source="broken.md", raw=b"this chunk will explode"),
        SourceDocument(source="finance.md", raw=b"finance accounting report"),
        SourceDocument(source="latin1.txt", raw="caf\xe9".encode("latin-1")),
    ]

    summary = ingest_documents(documents, embedding_client=client, sleeper=lambda _: None)

    statuses = {outcome.source: outcome.status for outcome in summary.outcomes}
    assert statuses == {
        "robotics.md": "ingested",
        "broken.md": "failed",
        "finance.md": "ingested",
        "latin1.txt": "failed",
    }
    assert summary.ingested_count == 2
    assert summary.failed_count == 2
    assert "broken.md" in summary.as_dict()["failures"]

    settings = get_settings()
    recorded = {record.source for record in FingerprintLedger(settings.ledger_path).records()}
    assert recorded == {"robotics.md", "finance.md"}


def test_failed_document_is_retried_on_next_run(data_dir: Path) -> None:
    document = SourceDocument(source="flaky.md", raw=b"robotics explode")

    first = ingest_documents([document], embedding_client=FakeEmbeddingClient(), sleeper=lambda _: None)
    assert first.failed_count == 1

    class HealthyClient(FakeEmbeddingClient):
        def embed_texts(self, texts: list[str]) -> list[list[float]]:
            return [[1.0, 0.0, 1.0] for _ in texts]

    second = ingest_documents([document], embedding_client=HealthyClient(), sleeper=lambda _: None)

    assert second.ingested_count == 1


@pytest.mark.parametrize("concurrency", ["1", "4"])
def test_parallel_ingestion_records_every_document(
    monkeypatch: pytest.MonkeyPatch, data_dir: Path, concurrency: str
) -> None:
    monkeypatch.setenv("RAGKB_INGEST_CONCURRENCY", concurrency)
    documents = [
        SourceDocument(source=f"doc-{index}.md", raw=f"robotics note {index}\n".encode())
        for index in range(12)
    ]

    summary = ingest_documents(documents, embedding_client=FakeEmbeddingClient())

    assert summary.ingested_count == 12
    assert [outcome.source for outcome in summary.outcomes] == [document.source for document in documents]
    assert len(FingerprintLedger(get_settings().ledger_path).records()) == 12


def test_identical_documents_in_one_batch_are_ingested_once(
    monkeypatch: pytest.MonkeyPatch, data_dir: Path
) -> None:
    monkeypatch.setenv("RAGKB_INGEST_CONCURRENCY", "2")
    raw = b"# Pumps\n\nrobotics automation checklist\n"
    documents = [
        SourceDocument(source="a.md", raw=raw),
        SourceDocument(source="copy/a.md", raw=raw),
        SourceDocument(source="b.md", raw=b"finance notes"),
    ]

    summary = ingest_documents(documents, embedding_client=FakeEmbeddingClient(), sleeper=lambda _: None)

    assert [(outcome.source, outcome.status) for outcome in summary.outcomes] == [
        ("a.md", "ingested"),
        ("copy/a.md", "skipped"),
        ("b.md", "ingested"),
    ]
    duplicate = summary.outcomes[1]
    assert duplicate.skip is not None
    assert duplicate.skip.previous_source == "a.md"
    assert summary.chunk_count == 2

    settings = get_settings()
    records = FingerprintLedger(settings.ledger_path).records()
    assert sorted(record.source for record in records) == ["a.md", "b.md"]
    store = SQLiteVectorStore(settings.store_path)
    document_id = compute_fingerprint(raw)[:16]
    assert store.fetch(f"{document_id}-p0000-c000")["source"] == "a.md"


def test_copy_of_a_failing_document_in_one_batch_also_fails(data_dir: Path) -> None:
    raw = b"this chunk will explode"
    documents = [
        SourceDocument(source="broken.md", raw=raw),
        SourceDocument(source="again/broken.md", raw=raw),
    ]

    summary = ingest_documents(documents, embedding_client=FakeEmbeddingClient(), sleeper=lambda _: None)

    assert [outcome.status for outcome in summary.outcomes] == ["failed", "failed"]
    assert "broken.md" in (summary.outcomes[1].error or "")
    assert FingerprintLedger(get_settings().ledger_path).records() == []
