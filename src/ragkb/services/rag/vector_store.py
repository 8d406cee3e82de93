from __future__ import annotations

from array import array
import json
import math
from pathlib import Path
import sqlite3
from typing import Any, Iterator, Protocol, Sequence

from ragkb.services.rag.errors import TransientServiceError
from ragkb.services.rag.filters import Predicate, matches
from ragkb.services.rag.types import Candidate, StoredPoint


class VectorStoreError(TransientServiceError):
    pass


class VectorStore(Protocol):
    def ensure_collection(self, dimension: int) -> None: ...

    def upsert(self, points: Sequence[StoredPoint]) -> None: ...

    def approximate_search(
        self,
        query_vector: Sequence[float],
        k: int,
        predicates: Sequence[Predicate] | None = None,
    ) -> list[Candidate]: ...

    def fetch(self, chunk_id: str) -> dict[str, Any] | None: ...

    def children_in_range(self, document_id: str, start_line: int, end_line: int) -> list[StoredPoint]: ...

    def scroll(self) -> Iterator[StoredPoint]: ...

    def count(self) -> int: ...


def _encode_embedding(values: Sequence[float]) -> bytes:
    vector = array("f", values)
    return vector.tobytes()


def _decode_embedding(blob: bytes) -> list[float]:
    vector = array("f")
    vector.frombytes(blob)
    return vector.tolist()


def cosine(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def _overlaps(payload: dict[str, Any], start_line: int, end_line: int) -> bool:
    first = payload.get("start_line")
    last = payload.get("end_line")
    if not isinstance(first, int) or not isinstance(last, int):
        return False
    return first <= end_line and last >= start_line


def _ensure_schema(connection: sqlite3.Connection) -> None:
    connection.executescript(
        """
        CREATE TABLE IF NOT EXISTS collection_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS points (
            id TEXT PRIMARY KEY,
            document_id TEXT NOT NULL,
            chunk_type TEXT NOT NULL,
            is_child INTEGER NOT NULL,
            payload TEXT NOT NULL,
            embedding BLOB,
            embedding_dim INTEGER,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE INDEX IF NOT EXISTS idx_points_document_id ON points(document_id);
        CREATE INDEX IF NOT EXISTS idx_points_is_child ON points(is_child);
        """
    )


class SQLiteVectorStore:
    """Local store: exact cosine scan over child vectors kept in one sqlite file."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self._db_path, timeout=30.0)

    def _require_db(self) -> None:
        if not self._db_path.exists():
            raise FileNotFoundError(
                f"Vector store not found: {self._db_path}. Run `ragkb ingest` first."
            )

    def dimension(self) -> int | None:
        if not self._db_path.exists():
            return None
        try:
            with self._connect() as connection:
                _ensure_schema(connection)
                row = connection.execute(
                    "SELECT value FROM collection_meta WHERE key = 'dimension'"
                ).fetchone()
        except sqlite3.Error as exc:
            raise VectorStoreError(str(exc)) from exc
        return int(row[0]) if row else None

    def ensure_collection(self, dimension: int) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be > 0")

        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self._connect() as connection:
                _ensure_schema(connection)
                # concurrent ingest threads may race to create the collection
                connection.execute(
                    "INSERT OR IGNORE INTO collection_meta (key, value) VALUES ('dimension', ?)",
                    (str(dimension),),
                )
                connection.execute(
                    "INSERT OR IGNORE INTO collection_meta (key, value) VALUES ('distance', 'cosine')"
                )
                row = connection.execute(
                    "SELECT value FROM collection_meta WHERE key = 'dimension'"
                ).fetchone()
                if int(row[0]) != dimension:
                    raise ValueError(
                        f"collection dimension is {row[0]}, refusing vectors of dimension {dimension}"
                    )
        except sqlite3.Error as exc:
            raise VectorStoreError(str(exc)) from exc

    def upsert(self, points: Sequence[StoredPoint]) -> None:
        if not points:
            return

        dimension = self.dimension()
        for point in points:
            if point.vector is not None and dimension is not None and len(point.vector) != dimension:
                raise ValueError(
                    f"point {point.chunk_id} has dimension {len(point.vector)}, expected {dimension}"
                )

        rows = [
            (
                point.chunk_id,
                str(point.payload.get("document_id", "")),
                str(point.payload.get("chunk_type", "")),
                0 if point.payload.get("chunk_type") == "parent" else 1,
                json.dumps(point.payload, ensure_ascii=False),
                sqlite3.Binary(_encode_embedding(point.vector)) if point.vector is not None else None,
                len(point.vector) if point.vector is not None else None,
            )
            for point in points
        ]

        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            # one transaction per batch: readers see all of it or none of it
            with self._connect() as connection:
                _ensure_schema(connection)
                connection.executemany(
                    """
                    INSERT INTO points (id, document_id, chunk_type, is_child, payload, embedding, embedding_dim)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        document_id = excluded.document_id,
                        chunk_type = excluded.chunk_type,
                        is_child = excluded.is_child,
                        payload = excluded.payload,
                        embedding = excluded.embedding,
                        embedding_dim = excluded.embedding_dim
                    """,
                    rows,
                )
        except sqlite3.Error as exc:
            raise VectorStoreError(str(exc)) from exc

    def approximate_search(
        self,
        query_vector: Sequence[float],
        k: int,
        predicates: Sequence[Predicate] | None = None,
    ) -> list[Candidate]:
        self._require_db()
        if k <= 0:
            return []

        try:
            with self._connect() as connection:
                _ensure_schema(connection)
                rows = connection.execute(
                    """
                    SELECT id, payload, embedding, embedding_dim
                    FROM points
                    WHERE is_child = 1 AND embedding IS NOT NULL
                    ORDER BY rowid
                    """
                ).fetchall()
        except sqlite3.Error as exc:
            raise VectorStoreError(str(exc)) from exc

        candidates: list[Candidate] = []
        for chunk_id, payload_json, embedding_blob, embedding_dim in rows:
            embedding = _decode_embedding(embedding_blob)
            if len(embedding) != embedding_dim:
                continue
            payload = json.loads(payload_json)
            if predicates and not matches(payload, predicates):
                continue
            candidates.append(
                Candidate(
                    chunk_id=chunk_id,
                    vector_score=cosine(query_vector, embedding),
                    payload=payload,
                )
            )

        candidates.sort(key=lambda candidate: -candidate.vector_score)
        return candidates[:k]

    def fetch(self, chunk_id: str) -> dict[str, Any] | None:
        self._require_db()
        try:
            with self._connect() as connection:
                _ensure_schema(connection)
                row = connection.execute(
                    "SELECT payload FROM points WHERE id = ?", (chunk_id,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise VectorStoreError(str(exc)) from exc
        if row is None:
            return None
        return json.loads(row[0])

    def children_in_range(self, document_id: str, start_line: int, end_line: int) -> list[StoredPoint]:
        """Children of ``document_id`` whose line span overlaps ``start_line..end_line``."""
        self._require_db()
        try:
            with self._connect() as connection:
                _ensure_schema(connection)
                rows = connection.execute(
                    "SELECT id, payload FROM points WHERE document_id = ? AND is_child = 1 ORDER BY rowid",
                    (document_id,),
                ).fetchall()
        except sqlite3.Error as exc:
            raise VectorStoreError(str(exc)) from exc

        points: list[StoredPoint] = []
        for chunk_id, payload_json in rows:
            payload = json.loads(payload_json)
            if _overlaps(payload, start_line, end_line):
                points.append(StoredPoint(chunk_id=chunk_id, vector=None, payload=payload))
        return sorted(points, key=lambda point: point.payload["start_line"])

    def scroll(self) -> Iterator[StoredPoint]:
        self._require_db()
        try:
            with self._connect() as connection:
                _ensure_schema(connection)
                rows = connection.execute(
                    "SELECT id, payload, embedding FROM points ORDER BY rowid"
                ).fetchall()
        except sqlite3.Error as exc:
            raise VectorStoreError(str(exc)) from exc

        for chunk_id, payload_json, embedding_blob in rows:
            yield StoredPoint(
                chunk_id=chunk_id,
                vector=_decode_embedding(embedding_blob) if embedding_blob is not None else None,
                payload=json.loads(payload_json),
            )

    def count(self) -> int:
        if not self._db_path.exists():
            return 0
        try:
            with self._connect() as connection:
                _ensure_schema(connection)
                return int(connection.execute("SELECT COUNT(*) FROM points").fetchone()[0])
        except sqlite3.Error as exc:
            raise VectorStoreError(str(exc)) from exc


def build_store(settings: Any) -> VectorStore:
    if settings.store_backend == "qdrant":
        from ragkb.services.rag.qdrant_store import QdrantVectorStore

        return QdrantVectorStore(
            base_url=settings.qdrant_url,
            collection=settings.collection,
            timeout_seconds=settings.ollama_timeout_seconds,
        )
    if settings.store_backend == "sqlite":
        return SQLiteVectorStore(Path(settings.store_path))
    raise ValueError(f"unknown store backend: {settings.store_backend!r}")
